"""
Wire protocol definitions for peer connections.

This module defines:
- Protocol frame structure
- Hello (identification) messages exchanged when a connection opens
- Protocol versioning
"""

import json
import struct
from enum import IntEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

# Protocol constants
PROTOCOL_VERSION = 1
PROTOCOL_MAGIC = b"PDP\x01"  # PeerDrop Protocol v1
HEADER_SIZE = 9
MAX_FRAME_SIZE = 16 * 1024 * 1024  # 16MB max frame


class FrameType(IntEnum):
    """Types of protocol frames."""

    DATA = 0x01
    HELLO = 0x02
    HELLO_ACK = 0x03
    CLOSE = 0x07


class ProtocolFrame(BaseModel):
    """
    A frame in the wire protocol.

    Frame structure:
    - 4 bytes: Magic number (PDP\x01)
    - 1 byte: Frame type
    - 4 bytes: Payload length (big-endian)
    - N bytes: Payload (msgpack message or JSON hello)
    """

    frame_type: FrameType
    payload: bytes

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def to_bytes(self) -> bytes:
        """Serialize frame to bytes."""
        return (
            PROTOCOL_MAGIC +
            struct.pack("!B", self.frame_type) +
            struct.pack("!I", len(self.payload)) +
            self.payload
        )

    @classmethod
    def from_bytes(cls, data: bytes, max_size: int = MAX_FRAME_SIZE) -> "ProtocolFrame":
        """
        Deserialize a frame from one WebSocket message.

        Raises:
            ValueError: On bad magic, unknown type or a length mismatch
        """
        if len(data) < HEADER_SIZE:
            raise ValueError("Incomplete frame header")

        if data[:4] != PROTOCOL_MAGIC:
            raise ValueError("Invalid protocol magic")

        try:
            frame_type = FrameType(data[4])
        except ValueError:
            raise ValueError(f"Unknown frame type: {data[4]:#04x}") from None

        payload_len = struct.unpack("!I", data[5:9])[0]
        if payload_len > max_size:
            raise ValueError(f"Frame too large: {payload_len} bytes")

        if len(data) != HEADER_SIZE + payload_len:
            raise ValueError("Frame length mismatch")

        return cls(frame_type=frame_type, payload=bytes(data[HEADER_SIZE:]))

    @classmethod
    def data(cls, payload: bytes) -> "ProtocolFrame":
        """Create a data frame."""
        return cls(frame_type=FrameType.DATA, payload=payload)

    @classmethod
    def close(cls, reason: str = "") -> "ProtocolFrame":
        """Create a close frame."""
        return cls(frame_type=FrameType.CLOSE, payload=reason.encode())


class HelloMessage(BaseModel):
    """
    First frame sent by the connecting side.

    Announces the peer ID the initiator is reachable under.
    """

    version: int = PROTOCOL_VERSION
    peer_id: str
    name: Optional[str] = None

    def to_frame(self) -> ProtocolFrame:
        """Create hello protocol frame."""
        payload = json.dumps(self.model_dump()).encode()
        return ProtocolFrame(frame_type=FrameType.HELLO, payload=payload)

    @classmethod
    def from_frame(cls, frame: ProtocolFrame) -> "HelloMessage":
        """Parse from protocol frame."""
        if frame.frame_type != FrameType.HELLO:
            raise ValueError("Not a hello frame")
        return cls(**_load_json(frame.payload))


class HelloAck(BaseModel):
    """
    Answer to a hello.
    """

    accepted: bool
    peer_id: str
    reason: Optional[str] = None  # Rejection reason if not accepted

    def to_frame(self) -> ProtocolFrame:
        """Create hello ack protocol frame."""
        payload = json.dumps(self.model_dump()).encode()
        return ProtocolFrame(frame_type=FrameType.HELLO_ACK, payload=payload)

    @classmethod
    def from_frame(cls, frame: ProtocolFrame) -> "HelloAck":
        """Parse from protocol frame."""
        if frame.frame_type != FrameType.HELLO_ACK:
            raise ValueError("Not a hello ack frame")
        return cls(**_load_json(frame.payload))


def _load_json(payload: bytes) -> dict[str, Any]:
    try:
        data = json.loads(payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid JSON payload: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("JSON payload is not an object")
    return data
