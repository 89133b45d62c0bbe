"""
Client for the file transfer protocol.

This module provides:
- Client: wires a SessionManager and a TransferEngine together
- Automatic saving of received files to the downloads directory
"""

import logging
from pathlib import Path
from typing import Optional

from ..config import PeerDropConfig
from ..engine.engine import (
    EngineConfig,
    ErrorCallback,
    FileCallback,
    OtherCallback,
    ProgressCallback,
    ReceivedFile,
    ReceiveProgressCallback,
    SendResult,
    TransferEngine,
)
from ..network.peer import PeerConnection
from ..network.session import SessionConfig, SessionManager

logger = logging.getLogger(__name__)


class Client:
    """
    Main client for sending and receiving files.

    Manages:
    - The listening session and peer connections
    - Attaching the transfer engine to every open connection
    - Saving received files
    """

    def __init__(self, config: Optional[PeerDropConfig] = None, auto_save: bool = True) -> None:
        """
        Initialize client.

        Args:
            config: Optional node configuration
            auto_save: Save received files to config.downloads_dir
        """
        self.config = config or PeerDropConfig()
        self.auto_save = auto_save

        self.session = SessionManager(self.session_config())
        self.engine = TransferEngine(self.session, config=self.engine_config())

        self.session.on_incoming_connection(self._on_incoming)
        if auto_save:
            self.engine.on_file(self._save_file)

    def session_config(self) -> SessionConfig:
        return SessionConfig(
            host=self.config.host,
            port=self.config.port,
            advertise_host=self.config.advertise_host,
            peer_id=self.config.peer_id,
            name=self.config.name,
            connect_timeout=self.config.connect_timeout,
            handshake_timeout=self.config.handshake_timeout,
            max_frame_size=self.config.max_frame_size,
        )

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            chunk_size=self.config.chunk_size,
            chunk_delay=self.config.chunk_delay,
        )

    @property
    def peer_id(self) -> Optional[str]:
        return self.session.local_peer_id

    @property
    def is_running(self) -> bool:
        return self.session.is_running

    async def start(self) -> str:
        """Start listening. Returns the local peer ID."""
        peer_id = await self.session.start()
        logger.info(f"Client {self.config.name} started as {peer_id}")
        return peer_id

    async def stop(self) -> None:
        """Stop the client."""
        await self.session.stop()
        logger.info("Client stopped")

    async def __aenter__(self) -> "Client":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def connect(self, peer_id: str) -> PeerConnection:
        """
        Connect to a peer and attach the engine to the connection.

        Raises:
            AlreadyConnectedError, PeerUnavailableError, ConnectionFailedError
        """
        conn = await self.session.connect(peer_id)
        self.engine.attach(peer_id)
        return conn

    async def disconnect(self, peer_id: str) -> bool:
        return await self.session.disconnect(peer_id)

    async def send_file(
        self,
        peer_id: str,
        file_path: str | Path,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SendResult:
        """
        Send a file from disk, connecting first if needed.

        Args:
            peer_id: Destination peer ID (host:port)
            file_path: Path to the file to send
            on_progress: Called with the percentage sent

        Returns:
            SendResult of the transfer
        """
        if not self.session.is_connected(peer_id):
            await self.connect(peer_id)
        return await self.engine.send_path(peer_id, file_path, on_progress)

    async def send_text(self, peer_id: str, text: str) -> None:
        """Send an application message, connecting first if needed."""
        if not self.session.is_connected(peer_id):
            await self.connect(peer_id)
        await self.engine.send_text(peer_id, text)

    def on_file(self, callback: FileCallback) -> None:
        """Register a file received callback."""
        self.engine.on_file(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self.engine.on_error(callback)

    def on_other(self, callback: OtherCallback) -> None:
        self.engine.on_other(callback)

    def on_receive_progress(self, callback: ReceiveProgressCallback) -> None:
        self.engine.on_receive_progress(callback)

    def get_connected_peers(self) -> list[str]:
        """Get list of connected peer IDs."""
        return self.session.connected_peers

    async def _on_incoming(self, peer_id: str) -> None:
        self.engine.attach(peer_id)

    async def _save_file(self, received: ReceivedFile) -> None:
        received.save(self.config.downloads_dir)
