"""
Session management over WebSockets.

This module provides:
- SessionManager: owns the local listening session and one connection per peer
- Hello exchange identifying both ends of a connection
- Per-connection reader tasks delivering messages in order
- The Channel contract consumed by the transfer engine
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional

import websockets
from websockets import ClientConnection, ServerConnection
from pydantic import BaseModel, ConfigDict

from ..core.message import Message, encode_message, decode_message
from ..exceptions import (
    AlreadyConnectedError,
    ConnectionFailedError,
    ConnectionLostError,
    PeerUnavailableError,
    SessionStartError,
    TransportError,
)
from .channel import Channel, CloseHandler, ReceiveHandler
from .peer import ConnectionState, PeerConnection, format_peer_id, parse_peer_id
from .protocol import (
    FrameType,
    HelloAck,
    HelloMessage,
    ProtocolFrame,
    HEADER_SIZE,
    MAX_FRAME_SIZE,
)

logger = logging.getLogger(__name__)


# Type aliases
ConnectionHandler = Callable[[str], Coroutine[Any, Any, None]]


class SessionConfig(BaseModel):
    """Configuration for the session manager."""

    host: str = "0.0.0.0"
    port: int = 9000
    advertise_host: str = "127.0.0.1"
    peer_id: Optional[str] = None
    name: Optional[str] = None
    connect_timeout: float = 10.0
    handshake_timeout: float = 10.0
    max_frame_size: int = MAX_FRAME_SIZE

    model_config = ConfigDict(arbitrary_types_allowed=True)


class SessionManager(Channel):
    """
    The local end of the peer network.

    The manager can:
    - Listen for incoming connections
    - Open outbound connections to a peer ID (``host:port``)
    - Deliver messages from each connection, in order, to registered handlers
    - Notify handlers when a connection closes

    The connection registry is the single source of truth for whether a peer
    is reachable; a second connect to a live peer is rejected.
    """

    def __init__(self, config: Optional[SessionConfig] = None) -> None:
        """
        Initialize session manager.

        Args:
            config: Optional configuration
        """
        self.config = config or SessionConfig()

        self._server: Optional[websockets.Server] = None
        self._connections: dict[str, PeerConnection] = {}
        self._local_peer_id: Optional[str] = None

        # Event handlers
        self._incoming_handlers: list[ConnectionHandler] = []
        self._receive_handlers: dict[str, list[ReceiveHandler]] = {}
        self._close_handlers: dict[str, list[CloseHandler]] = {}

        # Running state
        self._running = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def local_peer_id(self) -> Optional[str]:
        """This node's peer ID, set by start()."""
        return self._local_peer_id

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def connected_peers(self) -> list[str]:
        """IDs of peers with an open connection."""
        return [pid for pid, conn in self._connections.items() if conn.is_open]

    def is_connected(self, peer_id: str) -> bool:
        conn = self._connections.get(peer_id)
        return conn is not None and conn.is_open

    def get_connection(self, peer_id: str) -> Optional[PeerConnection]:
        return self._connections.get(peer_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> str:
        """
        Open the listening session.

        Returns:
            The local peer ID

        Raises:
            SessionStartError: If the socket cannot be bound
        """
        if self._running:
            return self._local_peer_id

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self.config.host,
                self.config.port,
                max_size=self.config.max_frame_size + HEADER_SIZE,
            )
        except OSError as e:
            raise SessionStartError(
                f"Cannot listen on {self.config.host}:{self.config.port}: {e}"
            ) from e

        port = self.config.port
        # Update port if it was 0 (ephemeral)
        if port == 0 and self._server.sockets:
            port = self._server.sockets[0].getsockname()[1]

        self._local_peer_id = self.config.peer_id or format_peer_id(self.config.advertise_host, port)
        self._running = True

        logger.info(f"Session started on {self.config.host}:{port}")
        logger.info(f"My ID: {self._local_peer_id}")
        return self._local_peer_id

    async def stop(self) -> None:
        """Close every connection and the listening session."""
        if not self._running:
            return

        self._running = False

        for peer_id in list(self._connections):
            await self.disconnect(peer_id)

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("Session stopped")

    async def connect(self, peer_id: str) -> PeerConnection:
        """
        Open an outbound connection.

        Raises:
            AlreadyConnectedError: If a live connection to peer_id exists
            PeerUnavailableError: If peer_id cannot be resolved or reached
            ConnectionFailedError: If the hello exchange fails or is rejected
        """
        if not self._running:
            raise ConnectionFailedError("Session not started", peer_id)

        existing = self._connections.get(peer_id)
        if existing is not None and existing.state != ConnectionState.CLOSED:
            raise AlreadyConnectedError(peer_id)

        try:
            host, port = parse_peer_id(peer_id)
        except ValueError as e:
            raise PeerUnavailableError(peer_id, str(e)) from e

        endpoint = format_peer_id(host, port)
        conn = PeerConnection(peer_id=peer_id, outbound=True, address=endpoint)
        # Reserve the slot so a concurrent connect to the same peer is rejected
        self._connections[peer_id] = conn

        try:
            ws = await websockets.connect(
                f"ws://{endpoint}",
                open_timeout=self.config.connect_timeout,
                max_size=self.config.max_frame_size + HEADER_SIZE,
            )
        except OSError as e:
            self._release(conn)
            raise PeerUnavailableError(peer_id, str(e)) from e
        except websockets.exceptions.WebSocketException as e:
            self._release(conn)
            raise ConnectionFailedError(f"Failed to connect to {peer_id}: {e}", peer_id) from e

        conn.ws = ws
        try:
            ack = await self._perform_hello(ws)
        except (asyncio.TimeoutError, ValueError, websockets.ConnectionClosed) as e:
            self._release(conn)
            await ws.close()
            raise ConnectionFailedError(f"Hello with {peer_id} failed: {e}", peer_id) from e

        if not ack.accepted:
            self._release(conn)
            await ws.close()
            raise ConnectionFailedError(f"{peer_id} rejected connection: {ack.reason}", peer_id)

        if ack.peer_id != peer_id:
            logger.debug(f"{peer_id} identifies as {ack.peer_id}")

        conn.state = ConnectionState.OPEN
        task = asyncio.create_task(self._read_loop(conn), name=f"peer-reader-{peer_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(f"Connect to: {peer_id}")
        return conn

    async def disconnect(self, peer_id: str) -> bool:
        """Close the connection to peer_id."""
        conn = self._connections.get(peer_id)
        if conn is None:
            return False

        if conn.ws is not None and conn.is_open:
            try:
                await conn.ws.send(ProtocolFrame.close().to_bytes())
            except websockets.ConnectionClosed:
                pass

        await self._handle_disconnect(conn)
        return True

    def _release(self, conn: PeerConnection) -> None:
        conn.state = ConnectionState.CLOSED
        if self._connections.get(conn.peer_id) is conn:
            del self._connections[conn.peer_id]

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------

    def on_incoming_connection(self, handler: ConnectionHandler) -> None:
        """Register a handler called with the peer ID of each accepted connection."""
        self._incoming_handlers.append(handler)

    def on_disconnected(self, peer_id: str, handler: CloseHandler) -> None:
        """Register a handler called once when the connection to peer_id closes."""
        self._require(peer_id)
        self._close_handlers.setdefault(peer_id, []).append(handler)

    def on_receive(self, peer_id: str, handler: ReceiveHandler) -> None:
        """Register a handler for messages from peer_id."""
        conn = self._require(peer_id)
        self._receive_handlers.setdefault(peer_id, []).append(handler)
        conn.mark_ready()

    def on_close(self, peer_id: str, handler: CloseHandler) -> None:
        self.on_disconnected(peer_id, handler)

    def _require(self, peer_id: str) -> PeerConnection:
        conn = self._connections.get(peer_id)
        if conn is None:
            raise TransportError(f"Connection to {peer_id} does not exist", peer_id)
        return conn

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    async def send(self, peer_id: str, message: Message) -> None:
        """
        Send one message to a connected peer.

        Raises:
            ConnectionLostError: If there is no open connection to peer_id
        """
        conn = self._connections.get(peer_id)
        if conn is None or not conn.is_open:
            raise ConnectionLostError(f"No open connection to {peer_id}", peer_id)

        frame = ProtocolFrame.data(encode_message(message))
        try:
            await conn.ws.send(frame.to_bytes())
        except websockets.ConnectionClosed as e:
            await self._handle_disconnect(conn)
            raise ConnectionLostError(f"Connection to {peer_id} lost", peer_id) from e

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _perform_hello(self, ws: ClientConnection) -> HelloAck:
        """Send our hello and wait for the answer."""
        hello = HelloMessage(peer_id=self._local_peer_id, name=self.config.name)
        await ws.send(hello.to_frame().to_bytes())

        data = await asyncio.wait_for(ws.recv(), timeout=self.config.handshake_timeout)
        if isinstance(data, str):
            data = data.encode()

        return HelloAck.from_frame(ProtocolFrame.from_bytes(data, self.config.max_frame_size))

    async def _receive_hello(self, ws: ServerConnection) -> Optional[HelloMessage]:
        """Wait for the initiator's hello."""
        try:
            data = await asyncio.wait_for(ws.recv(), timeout=self.config.handshake_timeout)
            if isinstance(data, str):
                data = data.encode()
            return HelloMessage.from_frame(ProtocolFrame.from_bytes(data, self.config.max_frame_size))
        except asyncio.TimeoutError:
            logger.warning("Hello timeout")
            return None
        except ValueError as e:
            logger.warning(f"Invalid hello: {e}")
            return None

    async def _handle_connection(self, ws: ServerConnection) -> None:
        """Handle incoming WebSocket connection."""
        try:
            hello = await self._receive_hello(ws)
            if hello is None:
                return

            peer_id = hello.peer_id
            existing = self._connections.get(peer_id)
            if existing is not None and existing.state != ConnectionState.CLOSED:
                logger.warning(f"Rejecting duplicate connection from {peer_id}")
                await ws.send(
                    HelloAck(
                        accepted=False,
                        peer_id=self._local_peer_id,
                        reason="already connected",
                    ).to_frame().to_bytes()
                )
                return

            await ws.send(HelloAck(accepted=True, peer_id=self._local_peer_id).to_frame().to_bytes())

            remote = ws.remote_address
            conn = PeerConnection(
                peer_id=peer_id,
                ws=ws,
                state=ConnectionState.OPEN,
                outbound=False,
                address=format_peer_id(remote[0], remote[1]) if remote else None,
            )
            self._connections[peer_id] = conn
            logger.info(f"Incoming connection: {peer_id}")

            for handler in list(self._incoming_handlers):
                try:
                    await handler(peer_id)
                except Exception as e:
                    logger.error(f"Incoming connection handler error: {e}")

            await self._read_loop(conn)

        except websockets.ConnectionClosed:
            pass

    async def _read_loop(self, conn: PeerConnection) -> None:
        """Deliver messages from one connection until it closes."""
        try:
            if not await conn.wait_ready(self.config.handshake_timeout):
                logger.warning(f"No receive handler for {conn.peer_id}, messages will be dropped")

            async for data in conn.ws:
                if isinstance(data, str):
                    data = data.encode()

                try:
                    frame = ProtocolFrame.from_bytes(data, self.config.max_frame_size)
                except ValueError as e:
                    logger.warning(f"[{conn.peer_id}] invalid frame: {e}")
                    continue

                if frame.frame_type == FrameType.CLOSE:
                    break
                if frame.frame_type != FrameType.DATA:
                    continue

                try:
                    message = decode_message(frame.payload)
                except ValueError as e:
                    logger.warning(f"[{conn.peer_id}] invalid message: {e}")
                    continue

                conn.update_seen()
                for handler in list(self._receive_handlers.get(conn.peer_id, [])):
                    try:
                        await handler(conn.peer_id, message)
                    except Exception as e:
                        logger.error(f"Receive handler error: {e}")

        except websockets.ConnectionClosed:
            pass
        finally:
            await self._handle_disconnect(conn)

    async def _handle_disconnect(self, conn: PeerConnection) -> None:
        """Tear down one connection and notify its close handlers once."""
        if conn.state == ConnectionState.CLOSED:
            return

        self._release(conn)
        conn.mark_ready()

        if conn.ws is not None:
            try:
                await conn.ws.close()
            except websockets.ConnectionClosed:
                pass

        handlers: list[CloseHandler] = []
        # A newer connection may already be registered under the same ID
        if conn.peer_id not in self._connections:
            self._receive_handlers.pop(conn.peer_id, None)
            handlers = self._close_handlers.pop(conn.peer_id, [])

        logger.info(f"Connection closed: {conn.peer_id}")

        for handler in handlers:
            try:
                await handler(conn.peer_id)
            except Exception as e:
                logger.error(f"Disconnect handler error: {e}")
