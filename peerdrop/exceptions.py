"""
PeerDrop Exceptions.

All exceptions inherit from PeerDropError for easy catching. None of them
is fatal to the process: transport errors abort the current send/connect,
crypto and transfer errors are scoped to a single message or transfer.
"""

from typing import Optional


class PeerDropError(Exception):
    """Base exception for all PeerDrop errors."""

    def __init__(self, message: str, code: str = "PEERDROP_ERROR"):
        super().__init__(message)
        self.code = code
        self.message = message


class ConfigError(PeerDropError):
    """Invalid configuration value."""

    def __init__(self, message: str):
        super().__init__(message, "CONFIG_ERROR")


# Transport

class TransportError(PeerDropError):
    """Connect or send failure on the underlying channel."""

    def __init__(self, message: str, peer_id: Optional[str] = None, code: str = "TRANSPORT_ERROR"):
        super().__init__(message, code)
        self.peer_id = peer_id


class ConnectionLostError(TransportError):
    """The connection closed while a send was in progress."""

    def __init__(self, message: str, peer_id: Optional[str] = None):
        super().__init__(message, peer_id, "CONNECTION_LOST")


class SessionStartError(TransportError):
    """The local listening session could not be opened."""

    def __init__(self, message: str):
        super().__init__(message, None, "SESSION_START_ERROR")


class ConnectionFailedError(TransportError):
    """Outbound connection failed for a reason other than reachability."""

    def __init__(self, message: str, peer_id: Optional[str] = None):
        super().__init__(message, peer_id, "CONNECTION_FAILED")


class AlreadyConnectedError(TransportError):
    """A live connection to this peer already exists."""

    def __init__(self, peer_id: str):
        super().__init__(f"Already connected to {peer_id}", peer_id, "ALREADY_CONNECTED")


class PeerUnavailableError(TransportError):
    """The peer identifier cannot be resolved or reached."""

    def __init__(self, peer_id: str, reason: str = ""):
        message = f"Peer unavailable: {peer_id}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, peer_id, "PEER_UNAVAILABLE")


# Crypto

class CryptoError(PeerDropError):
    """Key handling, encryption or decryption failed."""

    def __init__(self, message: str, code: str = "CRYPTO_ERROR"):
        super().__init__(message, code)


class KeyFormatError(CryptoError):
    """Raw key bytes have the wrong size or shape."""

    def __init__(self, message: str):
        super().__init__(message, "KEY_FORMAT_ERROR")


class MissingKeyError(CryptoError):
    """No key has been exchanged with this peer."""

    def __init__(self, peer_id: str):
        super().__init__(f"No encryption key for peer {peer_id}", "MISSING_KEY")
        self.peer_id = peer_id


class AuthenticationError(CryptoError):
    """AEAD tag check failed: wrong key, wrong nonce or tampered data."""

    def __init__(self, message: str = "Ciphertext authentication failed", code: str = "AUTHENTICATION_ERROR"):
        super().__init__(message, code)


class DecryptionError(AuthenticationError):
    """A received file could not be decrypted."""

    def __init__(self, message: str, file_name: Optional[str] = None):
        super().__init__(message, "DECRYPTION_ERROR")
        self.file_name = file_name


# Transfer

class TransferError(PeerDropError):
    """Reassembly-layer failure for a single transfer."""

    def __init__(self, message: str, transfer_id: Optional[str] = None, code: str = "TRANSFER_ERROR"):
        super().__init__(message, code)
        self.transfer_id = transfer_id


class MissingChunkError(TransferError):
    """Assembly found an index with no stored bytes."""

    def __init__(self, index: int, transfer_id: Optional[str] = None):
        super().__init__(f"Missing chunk {index}", transfer_id, "MISSING_CHUNK")
        self.index = index


class UnknownTransferError(TransferError):
    """No transfer with this ID is being reassembled."""

    def __init__(self, transfer_id: str):
        super().__init__(f"Unknown transfer: {transfer_id}", transfer_id, "UNKNOWN_TRANSFER")
