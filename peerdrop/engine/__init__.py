"""
Transfer engine components for chunking, reassembly and file transfer.

This package provides:
- TransferEngine: Main interface for sending/receiving files
- DataChunker/ReassemblyStore: Large payload handling
- Media helpers: MIME detection and saving received files
"""

from .engine import (
    TransferEngine,
    EngineConfig,
    ReceivedFile,
    SendResult,
    ProgressCallback,
    FileCallback,
    ErrorCallback,
    OtherCallback,
)

from .chunker import (
    DataChunker,
    ReassemblyStore,
    Transfer,
    TransferState,
    chunk_count,
    new_transfer_id,
)

from .media import (
    detect_mime_type,
    format_file_size,
    read_file,
)

__all__ = [
    # Engine
    "TransferEngine",
    "EngineConfig",
    "ReceivedFile",
    "SendResult",
    "ProgressCallback",
    "FileCallback",
    "ErrorCallback",
    "OtherCallback",
    # Chunker
    "DataChunker",
    "ReassemblyStore",
    "Transfer",
    "TransferState",
    "chunk_count",
    "new_transfer_id",
    # Media
    "detect_mime_type",
    "format_file_size",
    "read_file",
]
