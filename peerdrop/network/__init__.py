"""
Networking components for peer sessions.

This package provides:
- SessionManager: WebSocket listener and per-peer connections
- Channel: the message duplex contract used by the transfer engine
- Wire framing and hello messages
"""

from .channel import Channel, ReceiveHandler, CloseHandler

from .peer import (
    ConnectionState,
    PeerConnection,
    parse_peer_id,
    format_peer_id,
)

from .protocol import (
    FrameType,
    ProtocolFrame,
    HelloMessage,
    HelloAck,
    PROTOCOL_VERSION,
)

from .session import SessionManager, SessionConfig

__all__ = [
    # Channel
    "Channel",
    "ReceiveHandler",
    "CloseHandler",
    # Peers
    "ConnectionState",
    "PeerConnection",
    "parse_peer_id",
    "format_peer_id",
    # Protocol
    "FrameType",
    "ProtocolFrame",
    "HelloMessage",
    "HelloAck",
    "PROTOCOL_VERSION",
    # Session
    "SessionManager",
    "SessionConfig",
]
