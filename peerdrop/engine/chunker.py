"""
Data chunker for handling large payloads.

This module provides:
- DataChunker: Split an (already encrypted) payload into fixed-size chunks
- Transfer: Receive-side buffer for one chunked transfer
- ReassemblyStore: Buffers out-of-order chunks per transfer and detects completion
"""

import logging
import secrets
import threading
import time
from enum import Enum, auto
from typing import Iterator, Optional

from pydantic import BaseModel, Field, ConfigDict

from ..config import CHUNK_SIZE
from ..exceptions import MissingChunkError, UnknownTransferError

logger = logging.getLogger(__name__)


def new_transfer_id() -> str:
    """Short random transfer ID."""
    return secrets.token_hex(6)


def chunk_count(size: int, chunk_size: int = CHUNK_SIZE) -> int:
    """Number of chunks needed for size bytes (at least one)."""
    return max(1, (size + chunk_size - 1) // chunk_size)


class DataChunker:
    """
    Splits data into chunks for transmission.

    Every chunk is exactly chunk_size bytes except the last one, which may
    be shorter.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE) -> None:
        """
        Initialize chunker.

        Args:
            chunk_size: Maximum size of each chunk in bytes
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size

    def needs_chunking(self, data: bytes) -> bool:
        """True if data does not fit in a single message."""
        return len(data) > self.chunk_size

    def count(self, data: bytes) -> int:
        """Number of chunks split() produces for data."""
        return chunk_count(len(data), self.chunk_size)

    def split(self, data: bytes) -> list[bytes]:
        """
        Split data into chunks.

        Args:
            data: Data to split

        Returns:
            Chunks in index order
        """
        return list(self.iter_chunks(data))

    def iter_chunks(self, data: bytes) -> Iterator[bytes]:
        """Iterate over chunks without building the whole list."""
        view = memoryview(data)
        for i in range(self.count(data)):
            start = i * self.chunk_size
            yield bytes(view[start:start + self.chunk_size])


class TransferState(Enum):
    """
    Receive-side state of a transfer.

    A Transfer only exists once its metadata arrived, so Transfer.state is
    RECEIVING or COMPLETE; ReassemblyStore.state() reports AWAITING_METADATA
    for IDs with nothing buffered.
    """

    AWAITING_METADATA = auto()
    RECEIVING = auto()
    COMPLETE = auto()


class Transfer(BaseModel):
    """Buffer for reassembling a single transfer."""

    transfer_id: str
    file_name: str
    mime_type: str
    total_chunks: int
    chunks: dict[int, bytes] = Field(default_factory=dict)
    iv: Optional[bytes] = None
    encrypted: bool = False
    peer_id: Optional[str] = None
    created_at: float = Field(default_factory=time.time)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def received_count(self) -> int:
        return len(self.chunks)

    @property
    def is_complete(self) -> bool:
        """Check if all chunks have been received."""
        return len(self.chunks) == self.total_chunks

    @property
    def state(self) -> TransferState:
        return TransferState.COMPLETE if self.is_complete else TransferState.RECEIVING

    @property
    def progress(self) -> float:
        """Get reassembly progress (0.0 to 1.0)."""
        return len(self.chunks) / self.total_chunks

    @property
    def missing(self) -> list[int]:
        """Get list of missing chunk indices."""
        return [i for i in range(self.total_chunks) if i not in self.chunks]

    @property
    def size(self) -> int:
        """Bytes buffered so far."""
        return sum(len(c) for c in self.chunks.values())

    def __repr__(self) -> str:
        return (
            f"Transfer({self.transfer_id}, {self.file_name!r}, "
            f"{self.received_count}/{self.total_chunks})"
        )


class ReassemblyStore:
    """
    Reassembles chunks back into the original payload.

    Manages multiple concurrent transfers keyed by transfer ID and handles
    out-of-order chunk arrival. A transfer is freed when it is assembled or
    cleaned up.
    """

    def __init__(self) -> None:
        self._transfers: dict[str, Transfer] = {}
        self._lock = threading.Lock()

    def init_transfer(
        self,
        transfer_id: str,
        file_name: str,
        mime_type: str,
        total_chunks: int,
        *,
        iv: Optional[bytes] = None,
        encrypted: bool = False,
        peer_id: Optional[str] = None,
    ) -> Transfer:
        """
        Start buffering a new transfer.

        An existing transfer with the same ID is replaced.

        Raises:
            ValueError: If total_chunks is less than 1
        """
        if total_chunks < 1:
            raise ValueError(f"total_chunks must be at least 1, got {total_chunks}")

        transfer = Transfer(
            transfer_id=transfer_id,
            file_name=file_name,
            mime_type=mime_type,
            total_chunks=total_chunks,
            iv=iv,
            encrypted=encrypted,
            peer_id=peer_id,
        )
        with self._lock:
            if transfer_id in self._transfers:
                logger.warning(f"Transfer {transfer_id} re-initialized, dropping buffered chunks")
            self._transfers[transfer_id] = transfer
        return transfer

    def add_chunk(self, transfer_id: str, index: int, data: bytes) -> bool:
        """
        Store one chunk.

        Re-adding an index replaces its bytes without changing the count.

        Returns:
            True if the transfer is complete after this insertion. False for
            unknown transfers and out-of-range indices.
        """
        with self._lock:
            transfer = self._transfers.get(transfer_id)
            if transfer is None:
                return False
            if not 0 <= index < transfer.total_chunks:
                logger.warning(
                    f"Chunk index {index} out of range for {transfer_id} "
                    f"(total {transfer.total_chunks})"
                )
                return False
            transfer.chunks[index] = data
            return transfer.is_complete

    def is_complete(self, transfer_id: str) -> bool:
        """Check whether every chunk arrived. Unknown transfers are not complete."""
        with self._lock:
            transfer = self._transfers.get(transfer_id)
            return transfer is not None and transfer.is_complete

    def state(self, transfer_id: str) -> TransferState:
        """State of a transfer; AWAITING_METADATA if none is buffered."""
        transfer = self.get(transfer_id)
        if transfer is None:
            return TransferState.AWAITING_METADATA
        return transfer.state

    def assemble(self, transfer_id: str) -> bytes:

        """
        Concatenate chunks in index order and free the transfer.

        Raises:
            UnknownTransferError: If no such transfer is buffered
            MissingChunkError: If an index in range has no bytes
        """
        with self._lock:
            transfer = self._transfers.get(transfer_id)
            if transfer is None:
                raise UnknownTransferError(transfer_id)

            parts = []
            for i in range(transfer.total_chunks):
                chunk = transfer.chunks.get(i)
                if chunk is None:
                    raise MissingChunkError(i, transfer_id)
                parts.append(chunk)

            del self._transfers[transfer_id]

        return b"".join(parts)

    def cleanup(self, transfer_id: str) -> bool:
        """Discard a transfer."""
        with self._lock:
            return self._transfers.pop(transfer_id, None) is not None

    def cleanup_peer(self, peer_id: str) -> list[str]:
        """Discard every transfer received from peer_id."""
        with self._lock:
            dropped = [tid for tid, t in self._transfers.items() if t.peer_id == peer_id]
            for tid in dropped:
                del self._transfers[tid]
        return dropped

    def get(self, transfer_id: str) -> Optional[Transfer]:
        """Get a transfer by ID."""
        with self._lock:
            return self._transfers.get(transfer_id)

    def progress(self, transfer_id: str) -> Optional[float]:
        """Get progress for a transfer."""
        transfer = self.get(transfer_id)
        if transfer:
            return transfer.progress
        return None

    def missing(self, transfer_id: str) -> Optional[list[int]]:
        """Get missing chunk indices for a transfer."""
        transfer = self.get(transfer_id)
        if transfer:
            return transfer.missing
        return None

    @property
    def active_transfers(self) -> list[str]:
        """Get list of buffered transfer IDs."""
        with self._lock:
            return list(self._transfers.keys())

    def __len__(self) -> int:
        return len(self._transfers)

    def __contains__(self, transfer_id: str) -> bool:
        return transfer_id in self._transfers
