"""
Core cryptography, key management and message components.

This package provides:
- CryptoProvider / SymmetricKey: AES-256-GCM primitives
- KeyStore: per-peer symmetric key registry
- Message protocol: message kinds and msgpack serialization
"""

from .crypto import (
    CryptoProvider,
    SymmetricKey,
    generate_nonce,
    encrypt_data,
    decrypt_data,
    ALGORITHM,
    KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
)

from .keystore import KeyStore

from .message import (
    DataType,
    Message,
    KeyExchangeMessage,
    FileMessage,
    FileChunkMessage,
    FileCompleteMessage,
    OtherMessage,
    message_from_dict,
    encode_message,
    decode_message,
)

__all__ = [
    # Crypto
    "CryptoProvider",
    "SymmetricKey",
    "generate_nonce",
    "encrypt_data",
    "decrypt_data",
    "ALGORITHM",
    "KEY_SIZE",
    "NONCE_SIZE",
    "TAG_SIZE",
    # Keys
    "KeyStore",
    # Message
    "DataType",
    "Message",
    "KeyExchangeMessage",
    "FileMessage",
    "FileChunkMessage",
    "FileCompleteMessage",
    "OtherMessage",
    "message_from_dict",
    "encode_message",
    "decode_message",
]
