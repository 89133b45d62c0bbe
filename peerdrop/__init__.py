"""
PeerDrop - Encrypted peer-to-peer file transfer.

Every file is encrypted with a fresh AES-256-GCM key that is handed to the
receiver in a key exchange message just before the data. Payloads larger
than one chunk are split, paced, and reassembled on the receiving side.

Quick Start:
    from peerdrop import Client, PeerDropConfig

    async with Client(PeerDropConfig(port=0)) as client:
        await client.send_file("127.0.0.1:9000", "photo.jpg")
"""

__version__ = "0.1.0"

from .config import PeerDropConfig
from .exceptions import (
    PeerDropError,
    ConfigError,
    TransportError,
    ConnectionLostError,
    CryptoError,
    TransferError,
)
from .engine.engine import TransferEngine, ReceivedFile, SendResult
from .network.session import SessionManager
from .client.client import Client

__all__ = [
    # Core
    "Client",
    "TransferEngine",
    "SessionManager",
    "ReceivedFile",
    "SendResult",
    "PeerDropConfig",
    # Exceptions
    "PeerDropError",
    "ConfigError",
    "TransportError",
    "ConnectionLostError",
    "CryptoError",
    "TransferError",
    # Version
    "__version__",
]
