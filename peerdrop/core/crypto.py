"""
Cryptographic primitives for file transfer.

This module provides:
- SymmetricKey: AES-256-GCM key material with algorithm parameters
- CryptoProvider: key generation, raw export/import and AEAD encryption
- Nonce generation (96-bit random nonce per encryption)

Bulk encryption and decryption run in a worker thread so a large file never
blocks the event loop.
"""

import asyncio
import base64
import hashlib
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, field_serializer, field_validator, ConfigDict

from ..exceptions import AuthenticationError, KeyFormatError

ALGORITHM = "AES-GCM"
KEY_SIZE_BITS = 256
KEY_SIZE = KEY_SIZE_BITS // 8
NONCE_SIZE = 12
TAG_SIZE = 16


class SymmetricKey(BaseModel):
    """Opaque AEAD key material."""

    material: bytes
    algorithm: str = ALGORITHM
    length: int = KEY_SIZE_BITS

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    @field_serializer("material")
    def serialize_material(self, v: bytes, _info):
        """Serialize key bytes to base64 string."""
        return base64.b64encode(v).decode()

    @field_validator("material", mode="before")
    @classmethod
    def validate_material(cls, v: Any) -> bytes:
        """Decode base64 string to bytes if needed."""
        if isinstance(v, str):
            return base64.b64decode(v)
        return v

    @property
    def fingerprint(self) -> str:
        """Short, non-reversible identifier for logs."""
        return hashlib.sha256(self.material).hexdigest()[:16]

    def __repr__(self) -> str:
        return f"SymmetricKey({self.algorithm}-{self.length}, {self.fingerprint})"

    __str__ = __repr__


def generate_nonce() -> bytes:
    """Draw a fresh random 12-byte nonce."""
    return os.urandom(NONCE_SIZE)


def encrypt_data(plaintext: bytes, key: SymmetricKey, nonce: bytes) -> bytes:
    """
    Encrypt data using AES-GCM.

    Args:
        plaintext: Data to encrypt
        key: Symmetric key
        nonce: 12-byte nonce, never reused with the same key

    Returns:
        Ciphertext with the 16-byte auth tag appended
    """
    return AESGCM(key.material).encrypt(nonce, plaintext, None)


def decrypt_data(ciphertext: bytes, key: SymmetricKey, nonce: bytes) -> bytes:
    """
    Decrypt data using AES-GCM.

    Raises:
        AuthenticationError: If the tag does not verify
    """
    if len(nonce) != NONCE_SIZE:
        raise AuthenticationError(f"Invalid nonce length: {len(nonce)}")
    try:
        return AESGCM(key.material).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise AuthenticationError() from e


class CryptoProvider:
    """
    AEAD provider used by the key store and the transfer engine.

    Every operation is a coroutine; callers must treat each one as a
    suspension point.
    """

    async def generate_key(self) -> SymmetricKey:
        """Generate a fresh AES-256-GCM key."""
        return SymmetricKey(material=AESGCM.generate_key(bit_length=KEY_SIZE_BITS))

    async def export_key(self, key: SymmetricKey) -> bytes:
        """Export raw key bytes for transmission."""
        return bytes(key.material)

    async def import_key(self, key_data: bytes) -> SymmetricKey:
        """
        Import raw key bytes received from a peer.

        Raises:
            KeyFormatError: If the bytes are not a 256-bit key
        """
        if not isinstance(key_data, (bytes, bytearray)):
            raise KeyFormatError(f"Key must be bytes, got {type(key_data).__name__}")
        if len(key_data) != KEY_SIZE:
            raise KeyFormatError(f"Expected {KEY_SIZE} key bytes, got {len(key_data)}")
        return SymmetricKey(material=bytes(key_data))

    async def encrypt(self, key: SymmetricKey, nonce: bytes, plaintext: bytes) -> bytes:
        """Encrypt plaintext with key and nonce."""
        return await asyncio.to_thread(encrypt_data, plaintext, key, nonce)

    async def decrypt(self, key: SymmetricKey, nonce: bytes, ciphertext: bytes) -> bytes:
        """
        Decrypt ciphertext with key and nonce.

        Raises:
            AuthenticationError: On tampered data or the wrong key
        """
        return await asyncio.to_thread(decrypt_data, ciphertext, key, nonce)
