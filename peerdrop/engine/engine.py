"""
Transfer engine for the encrypted file transfer protocol.

This module provides:
- TransferEngine: Sends files to peers and dispatches incoming messages
- Per-file key exchange and AES-GCM encryption of the whole payload
- Automatic chunking of large encrypted payloads with fixed pacing
- Progress reporting on both the send and the receive side
"""

import asyncio
import inspect
import logging
import time
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Coroutine, Optional

from pydantic import BaseModel, ConfigDict

from ..config import CHUNK_DELAY, CHUNK_SIZE
from ..core.crypto import generate_nonce
from ..core.keystore import KeyStore
from ..core.message import (
    DataType,
    Message,
    KeyExchangeMessage,
    FileMessage,
    FileChunkMessage,
    FileCompleteMessage,
    OtherMessage,
)
from ..exceptions import (
    AuthenticationError,
    ConnectionLostError,
    DecryptionError,
    KeyFormatError,
    MissingChunkError,
    MissingKeyError,
    PeerDropError,
    TransferError,
    UnknownTransferError,
)
from ..network.channel import Channel
from .chunker import DataChunker, ReassemblyStore, new_transfer_id
from .media import DEFAULT_MIME_TYPE, format_file_size, read_file, unique_path

logger = logging.getLogger(__name__)


class EngineConfig(BaseModel):
    """Configuration for the transfer engine."""

    chunk_size: int = CHUNK_SIZE
    chunk_delay: float = CHUNK_DELAY
    max_received_files: int = 100

    model_config = ConfigDict(arbitrary_types_allowed=True)


class ReceivedFile(BaseModel):
    """A received and decrypted file."""

    peer_id: str
    file_name: str
    mime_type: str
    data: bytes
    transfer_id: Optional[str] = None
    encrypted: bool = True
    timestamp: float = 0.0
    saved_path: Optional[Path] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def size(self) -> int:
        return len(self.data)

    def save(self, directory: Path, filename: Optional[str] = None) -> Path:
        """
        Save the received file to disk.

        Args:
            directory: Directory to save to
            filename: Optional filename override

        Returns:
            Path to saved file
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)

        save_path = unique_path(directory, filename or self.file_name)
        with open(save_path, "wb") as f:
            f.write(self.data)

        self.saved_path = save_path
        logger.info(f"Saved file to {save_path}")
        return save_path

    def __repr__(self) -> str:
        return f"ReceivedFile({self.file_name}, {format_file_size(self.size)}, from {self.peer_id})"


class SendResult(BaseModel):
    """Outcome of one send_file call."""

    peer_id: str
    file_name: str
    size: int
    encrypted_size: int
    total_chunks: int
    transfer_id: Optional[str] = None  # None when sent as a single FILE message

    @property
    def chunked(self) -> bool:
        return self.transfer_id is not None


# Type aliases for callbacks
ProgressCallback = Callable[[float], Any]
FileCallback = Callable[[ReceivedFile], Coroutine[Any, Any, None]]
ErrorCallback = Callable[[str, PeerDropError], Coroutine[Any, Any, None]]
OtherCallback = Callable[[str, OtherMessage], Coroutine[Any, Any, None]]
ReceiveProgressCallback = Callable[[str, str, float], Coroutine[Any, Any, None]]


class TransferEngine:
    """
    Main engine for sending and receiving files.

    Provides:
    - Sending a file: key exchange, encryption, chunking and pacing
    - Receiving: key bookkeeping, reassembly, decryption
    - Callbacks for received files, errors, application messages and progress

    Only one send per peer runs at a time so chunk streams of two transfers
    never interleave on a connection.
    """

    def __init__(
        self,
        channel: Channel,
        key_store: Optional[KeyStore] = None,
        reassembly: Optional[ReassemblyStore] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        """
        Initialize transfer engine.

        Args:
            channel: Message channel to peers
            key_store: Per-peer key registry (a new one if omitted)
            reassembly: Chunk buffer (a new one if omitted)
            config: Optional engine configuration
        """
        self.channel = channel
        self.key_store = key_store or KeyStore()
        self.reassembly = reassembly or ReassemblyStore()
        self.config = config or EngineConfig()
        self.chunker = DataChunker(chunk_size=self.config.chunk_size)

        # Callbacks
        self._file_callbacks: list[FileCallback] = []
        self._error_callbacks: list[ErrorCallback] = []
        self._other_callbacks: list[OtherCallback] = []
        self._progress_callbacks: list[ReceiveProgressCallback] = []

        # Recently received files
        self._received_files: list[ReceivedFile] = []

        self._send_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def crypto(self):
        return self.key_store.crypto

    def on_file(self, callback: FileCallback) -> None:
        """Register a callback for received files."""
        self._file_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        """Register a callback for per-message and per-transfer errors."""
        self._error_callbacks.append(callback)

    def on_other(self, callback: OtherCallback) -> None:
        """Register a callback for application (OTHER) messages."""
        self._other_callbacks.append(callback)

    def on_receive_progress(self, callback: ReceiveProgressCallback) -> None:
        """Register a callback for receive progress (peer_id, transfer_id, percent)."""
        self._progress_callbacks.append(callback)

    def attach(self, peer_id: str) -> None:
        """Start handling messages and close events of an open connection."""
        self.channel.on_receive(peer_id, self.handle_message)
        self.channel.on_close(peer_id, self.handle_disconnect)
        logger.debug(f"Engine attached to {peer_id}")

    # ------------------------------------------------------------------
    # Send path
    # ------------------------------------------------------------------

    async def send_file(
        self,
        peer_id: str,
        data: bytes,
        file_name: str,
        mime_type: str = DEFAULT_MIME_TYPE,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SendResult:
        """
        Send a file to a peer.

        Args:
            peer_id: Destination peer ID
            data: File contents
            file_name: Name shown to the receiver
            mime_type: MIME type of the file
            on_progress: Called with the percentage sent (sync or async)

        Returns:
            SendResult describing what went on the wire

        Raises:
            ConnectionLostError: If the connection closes mid-transfer
        """
        async with self._send_locks[peer_id]:
            key = await self.key_store.generate_key()
            self.key_store.store_key_for_peer(peer_id, key)

            raw_key = await self.key_store.export_key(key)
            await self.channel.send(
                peer_id,
                KeyExchangeMessage(encryption_key=raw_key, file_name=file_name, file_type=mime_type),
            )

            nonce = generate_nonce()
            encrypted = await self.crypto.encrypt(key, nonce, data)

            if not self.chunker.needs_chunking(encrypted):
                await self.channel.send(
                    peer_id,
                    FileMessage(
                        file=encrypted,
                        iv=nonce,
                        file_name=file_name,
                        file_type=mime_type,
                        encrypted=True,
                    ),
                )
                await self._notify_progress(on_progress, 100.0)
                logger.info(f"Sent {file_name} ({format_file_size(len(data))}) to {peer_id}")
                return SendResult(
                    peer_id=peer_id,
                    file_name=file_name,
                    size=len(data),
                    encrypted_size=len(encrypted),
                    total_chunks=1,
                )

            transfer_id = new_transfer_id()
            total_chunks = self.chunker.count(encrypted)
            logger.info(
                f"Starting transfer {transfer_id}: {file_name} "
                f"({format_file_size(len(data))}, {total_chunks} chunks) to {peer_id}"
            )

            await self.channel.send(
                peer_id,
                FileChunkMessage(
                    file_id=transfer_id,
                    file_name=file_name,
                    file_type=mime_type,
                    total_chunks=total_chunks,
                    iv=nonce,
                    encrypted=True,
                ),
            )

            sent = 0
            try:
                for index, chunk in enumerate(self.chunker.iter_chunks(encrypted)):
                    await self.channel.send(
                        peer_id,
                        FileChunkMessage(
                            file_id=transfer_id,
                            chunk_index=index,
                            total_chunks=total_chunks,
                            file=chunk,
                        ),
                    )
                    sent = index + 1
                    # 100% is only reported once FILE_COMPLETE is out
                    if sent < total_chunks:
                        await self._notify_progress(on_progress, sent / total_chunks * 100)

                    await asyncio.sleep(self.config.chunk_delay)

                await self.channel.send(peer_id, FileCompleteMessage(file_id=transfer_id))
            except ConnectionLostError:
                logger.error(f"Transfer {transfer_id} aborted after {sent}/{total_chunks} chunks")
                raise

            await self._notify_progress(on_progress, 100.0)
            logger.info(f"Transfer {transfer_id} complete: {file_name} to {peer_id}")

            return SendResult(
                peer_id=peer_id,
                file_name=file_name,
                size=len(data),
                encrypted_size=len(encrypted),
                total_chunks=total_chunks,
                transfer_id=transfer_id,
            )

    async def send_path(
        self,
        peer_id: str,
        file_path: str | Path,
        on_progress: Optional[ProgressCallback] = None,
    ) -> SendResult:
        """Read a file from disk and send it."""
        file_name, mime_type, data = read_file(file_path)
        return await self.send_file(peer_id, data, file_name, mime_type, on_progress)

    async def send_text(self, peer_id: str, text: str, **extra: Any) -> None:
        """Send an application (OTHER) message."""
        await self.channel.send(peer_id, OtherMessage(message=text, **extra))

    async def _notify_progress(self, callback: Optional[ProgressCallback], percent: float) -> None:
        if callback is None:
            return
        result = callback(percent)
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # Receive path
    # ------------------------------------------------------------------

    async def handle_message(self, peer_id: str, message: Message) -> None:
        """Dispatch one incoming message from peer_id."""
        kind = message.kind

        if kind == DataType.KEY_EXCHANGE:
            await self._handle_key_exchange(peer_id, message)

        elif kind == DataType.FILE:
            await self._handle_file(peer_id, message)

        elif kind == DataType.FILE_CHUNK:
            await self._handle_file_chunk(peer_id, message)

        elif kind == DataType.FILE_COMPLETE:
            await self._handle_file_complete(peer_id, message)

        elif kind == DataType.OTHER:
            for callback in self._other_callbacks:
                try:
                    await callback(peer_id, message)
                except Exception as e:
                    logger.error(f"Message callback error: {e}")

    async def handle_disconnect(self, peer_id: str) -> None:
        """Abandon partial transfers from a peer whose connection closed."""
        dropped = self.reassembly.cleanup_peer(peer_id)
        lock = self._send_locks.get(peer_id)
        # A send still holding the lock must keep serializing later sends
        if lock is not None and not lock.locked():
            del self._send_locks[peer_id]
        for transfer_id in dropped:
            logger.warning(f"Transfer {transfer_id} from {peer_id} abandoned: connection closed")

    async def _handle_key_exchange(self, peer_id: str, message: KeyExchangeMessage) -> None:
        try:
            key = await self.key_store.import_key(message.encryption_key)
        except KeyFormatError as e:
            logger.warning(f"Bad key from {peer_id}: {e}")
            await self._report(peer_id, e)
            return

        self.key_store.store_key_for_peer(peer_id, key)
        logger.debug(f"Key received from {peer_id} for {message.file_name!r}")

    async def _handle_file(self, peer_id: str, message: FileMessage) -> None:
        file_name = message.file_name or "file"
        mime_type = message.file_type or DEFAULT_MIME_TYPE
        logger.info(f"Receiving file {file_name} from {peer_id}")

        data = message.file
        if message.encrypted:
            try:
                data = await self._decrypt(peer_id, data, message.iv, file_name)
            except (MissingKeyError, DecryptionError) as e:
                await self._report(peer_id, e)
                return

        await self._emit(
            ReceivedFile(
                peer_id=peer_id,
                file_name=file_name,
                mime_type=mime_type,
                data=data,
                encrypted=message.encrypted,
                timestamp=time.time(),
            )
        )

    async def _handle_file_chunk(self, peer_id: str, message: FileChunkMessage) -> None:
        transfer_id = message.file_id

        if message.is_metadata:
            existing = self.reassembly.get(transfer_id)
            if existing is not None and existing.peer_id != peer_id:
                await self._report(
                    peer_id,
                    TransferError(f"Transfer {transfer_id} belongs to another peer", transfer_id),
                )
                return

            try:
                self.reassembly.init_transfer(
                    transfer_id,
                    message.file_name or "unknown",
                    message.file_type or DEFAULT_MIME_TYPE,
                    message.total_chunks,
                    iv=message.iv,
                    encrypted=bool(message.encrypted),
                    peer_id=peer_id,
                )
            except ValueError as e:
                await self._report(peer_id, TransferError(str(e), transfer_id, "INVALID_METADATA"))
                return
            logger.info(
                f"Starting to receive {message.file_name!r} from {peer_id} "
                f"({message.total_chunks} chunks)"
            )
            return

        if not message.is_chunk:
            logger.warning(f"Ignoring FILE_CHUNK without index or data for {transfer_id}")
            return

        transfer = self.reassembly.get(transfer_id)
        if transfer is None:
            logger.warning(f"Chunk {message.chunk_index} for unknown transfer {transfer_id}")
            return
        if transfer.peer_id != peer_id:
            logger.warning(f"Dropping chunk for {transfer_id} from {peer_id}: transfer belongs to {transfer.peer_id}")
            return

        # FILE_COMPLETE is the authoritative completion signal
        complete = self.reassembly.add_chunk(transfer_id, message.chunk_index, message.file)
        if complete:
            logger.debug(f"All chunks of {transfer_id} received")

        progress = self.reassembly.progress(transfer_id)
        if progress is not None:
            for callback in self._progress_callbacks:
                try:
                    await callback(peer_id, transfer_id, progress * 100)
                except Exception as e:
                    logger.error(f"Progress callback error: {e}")

    async def _handle_file_complete(self, peer_id: str, message: FileCompleteMessage) -> None:
        transfer_id = message.file_id
        transfer = self.reassembly.get(transfer_id)
        # Transfers are scoped to the peer that opened them
        if transfer is None or transfer.peer_id != peer_id:
            await self._report(peer_id, UnknownTransferError(transfer_id))
            return

        try:
            data = self.reassembly.assemble(transfer_id)
        except MissingChunkError as e:
            logger.error(f"Transfer {transfer_id} incomplete at FILE_COMPLETE: {e}")
            self.reassembly.cleanup(transfer_id)
            await self._report(peer_id, e)
            return
        except UnknownTransferError as e:
            await self._report(peer_id, e)
            return

        if transfer.encrypted:
            try:
                data = await self._decrypt(peer_id, data, transfer.iv, transfer.file_name)
            except (MissingKeyError, DecryptionError) as e:
                await self._report(peer_id, e)
                return

        logger.info(f"File {transfer.file_name!r} from {peer_id} received ({format_file_size(len(data))})")
        await self._emit(
            ReceivedFile(
                peer_id=peer_id,
                file_name=transfer.file_name,
                mime_type=transfer.mime_type,
                data=data,
                transfer_id=transfer_id,
                encrypted=transfer.encrypted,
                timestamp=time.time(),
            )
        )

    async def _decrypt(
        self,
        peer_id: str,
        ciphertext: bytes,
        iv: Optional[bytes],
        file_name: str,
    ) -> bytes:
        """
        Decrypt a received payload with the key exchanged with peer_id.

        Raises:
            MissingKeyError: If no key was exchanged
            DecryptionError: If the nonce is missing or authentication fails
        """
        key = self.key_store.get_key_for_peer(peer_id)
        if key is None:
            raise MissingKeyError(peer_id)
        if iv is None:
            raise DecryptionError(f"No nonce for {file_name!r}", file_name)

        try:
            return await self.crypto.decrypt(key, iv, ciphertext)
        except AuthenticationError as e:
            raise DecryptionError(f"Failed to decrypt {file_name!r}", file_name) from e

    async def _emit(self, received: ReceivedFile) -> None:
        self._received_files.append(received)
        if len(self._received_files) > self.config.max_received_files:
            self._received_files = self._received_files[-self.config.max_received_files:]

        for callback in self._file_callbacks:
            try:
                await callback(received)
            except Exception as e:
                logger.error(f"File callback error: {e}")

    async def _report(self, peer_id: str, error: PeerDropError) -> None:
        logger.error(f"[{peer_id}] {error.code}: {error.message}")
        for callback in self._error_callbacks:
            try:
                await callback(peer_id, error)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")

    def get_received_files(self) -> list[ReceivedFile]:
        """Get list of recently received files."""
        return self._received_files.copy()
