"""
Per-peer symmetric key registry.

Holds at most one current key per peer identifier. Storing a new key for a
peer replaces the previous binding; keys live for the lifetime of the
process and are never persisted.
"""

import logging
import threading
from typing import Optional

from .crypto import CryptoProvider, SymmetricKey

logger = logging.getLogger(__name__)


class KeyStore:
    """
    Registry of the current key for each peer.

    Key generation and (de)serialization are delegated to a CryptoProvider.
    Mutations are serialized with a lock so one store can be shared by
    engines running in different threads.
    """

    def __init__(self, crypto: Optional[CryptoProvider] = None) -> None:
        self.crypto = crypto or CryptoProvider()
        self._keys: dict[str, SymmetricKey] = {}
        self._lock = threading.Lock()

    async def generate_key(self) -> SymmetricKey:
        """Create a fresh key. Does not touch the store."""
        return await self.crypto.generate_key()

    async def export_key(self, key: SymmetricKey) -> bytes:
        """Serialize key material for transmission."""
        return await self.crypto.export_key(key)

    async def import_key(self, key_data: bytes) -> SymmetricKey:
        """
        Deserialize received key material.

        Raises:
            KeyFormatError: If the byte length is wrong
        """
        return await self.crypto.import_key(key_data)

    def store_key_for_peer(self, peer_id: str, key: SymmetricKey) -> None:
        """Bind key to peer_id, replacing any previous key."""
        with self._lock:
            previous = self._keys.get(peer_id)
            self._keys[peer_id] = key
        if previous is not None and previous != key:
            logger.debug(f"Replaced key for {peer_id}: {previous.fingerprint} -> {key.fingerprint}")
        else:
            logger.debug(f"Stored key {key.fingerprint} for {peer_id}")

    def get_key_for_peer(self, peer_id: str) -> Optional[SymmetricKey]:
        """Get the current key for peer_id, or None."""
        with self._lock:
            return self._keys.get(peer_id)

    def remove_key_for_peer(self, peer_id: str) -> bool:
        """Forget the key for peer_id."""
        with self._lock:
            return self._keys.pop(peer_id, None) is not None

    def clear(self) -> None:
        """Forget every key."""
        with self._lock:
            self._keys.clear()

    @property
    def peers(self) -> list[str]:
        """Peer IDs that currently have a key."""
        with self._lock:
            return list(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._keys
