"""
Peer connection records.

This module defines:
- ConnectionState: lifecycle of a connection (CONNECTING, OPEN, CLOSED)
- PeerConnection: one connection to a remote peer
- parse_peer_id: resolve a peer identifier to a network endpoint
"""

import asyncio
import time
from enum import Enum, auto
from typing import Any, Optional

from pydantic import BaseModel, Field, PrivateAttr, field_serializer, ConfigDict


class ConnectionState(Enum):
    """Connection state of a peer."""

    CONNECTING = auto()
    OPEN = auto()
    CLOSED = auto()


class PeerConnection(BaseModel):
    """
    Represents a connection to a remote peer.

    Owned by the SessionManager. The ws field holds the live WebSocket.
    """

    peer_id: str
    ws: Any = None
    state: ConnectionState = ConnectionState.CONNECTING
    outbound: bool = True
    address: Optional[str] = None
    connected_at: float = Field(default_factory=time.time)
    last_seen: float = Field(default_factory=time.time)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    # Set once something listens for this connection's messages
    _ready: asyncio.Event = PrivateAttr(default_factory=asyncio.Event)

    @field_serializer("state")
    def serialize_state(self, v: ConnectionState, _info):
        return v.name

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN

    def update_seen(self) -> None:
        """Update last seen timestamp."""
        self.last_seen = time.time()

    def mark_ready(self) -> None:
        self._ready.set()

    async def wait_ready(self, timeout: float) -> bool:
        """Wait until mark_ready() is called; False on timeout."""
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def to_dict(self) -> dict:
        """Convert to dictionary (without the socket)."""
        return self.model_dump(exclude={"ws"})

    def __repr__(self) -> str:
        direction = "out" if self.outbound else "in"
        return f"PeerConnection({self.peer_id}, {direction}, {self.state.name})"


def parse_peer_id(peer_id: str) -> tuple[str, int]:
    """
    Resolve a peer ID of the form ``host:port`` (or ``[v6]:port``).

    Raises:
        ValueError: If the ID is not an address
    """
    if not peer_id or ":" not in peer_id:
        raise ValueError(f"Peer ID is not host:port: {peer_id!r}")

    host, _, port_text = peer_id.rpartition(":")
    host = host.strip("[]")
    if not host:
        raise ValueError(f"Missing host in {peer_id!r}")

    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"Invalid port in {peer_id!r}") from None
    if not 0 < port <= 65535:
        raise ValueError(f"Port out of range in {peer_id!r}")

    return host, port


def format_peer_id(host: str, port: int) -> str:
    """Build the peer ID for an endpoint."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"
