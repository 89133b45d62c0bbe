"""
Message protocol definitions for file transfer.

This module defines:
- DataType: the kinds of message exchanged over a peer connection
- One model per kind, combined into the Message tagged union
- msgpack encoding and decoding of messages

Field names on the wire are camelCase
(``dataType``, ``fileName``, ``chunkIndex``...).
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

import msgpack
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class DataType(str, Enum):
    """Types of messages in the protocol."""

    KEY_EXCHANGE = "KEY_EXCHANGE"    # Raw symmetric key for the next file
    FILE = "FILE"                    # Whole file in a single message
    FILE_CHUNK = "FILE_CHUNK"        # Transfer metadata or one chunk
    FILE_COMPLETE = "FILE_COMPLETE"  # All chunks of a transfer were sent
    OTHER = "OTHER"                  # Application data, passed through


class _BaseMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    @property
    def kind(self) -> DataType:
        """The active member of the union."""
        return DataType(self.data_type)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a wire dictionary (camelCase keys, absent fields omitted)."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_bytes(self) -> bytes:
        """Serialize to bytes using MessagePack."""
        return msgpack.packb(self.to_dict(), use_bin_type=True)


class KeyExchangeMessage(_BaseMessage):
    """Carries the raw key the sender will use for the next file."""

    data_type: Literal["KEY_EXCHANGE"] = Field("KEY_EXCHANGE", alias="dataType")
    encryption_key: bytes = Field(alias="encryptionKey")
    file_name: Optional[str] = Field(None, alias="fileName")
    file_type: Optional[str] = Field(None, alias="fileType")

    def __repr__(self) -> str:
        return f"KeyExchangeMessage(file={self.file_name!r}, key_bytes={len(self.encryption_key)})"


class FileMessage(_BaseMessage):
    """A whole (small) file, usually encrypted."""

    data_type: Literal["FILE"] = Field("FILE", alias="dataType")
    file: bytes
    file_name: Optional[str] = Field(None, alias="fileName")
    file_type: Optional[str] = Field(None, alias="fileType")
    iv: Optional[bytes] = None
    encrypted: bool = False

    def __repr__(self) -> str:
        return (
            f"FileMessage({self.file_name!r}, {len(self.file)} bytes, "
            f"encrypted={self.encrypted})"
        )


class FileChunkMessage(_BaseMessage):
    """
    Either the metadata that opens a transfer (no chunk index) or one chunk.

    The metadata variant carries the file name, MIME type, total chunk count
    and the nonce the whole payload was encrypted with. Chunk-bearing
    messages carry the index, the total and the bytes.
    """

    data_type: Literal["FILE_CHUNK"] = Field("FILE_CHUNK", alias="dataType")
    file_id: str = Field(alias="fileId")
    total_chunks: Optional[int] = Field(None, alias="totalChunks")
    chunk_index: Optional[int] = Field(None, alias="chunkIndex")
    file: Optional[bytes] = None
    file_name: Optional[str] = Field(None, alias="fileName")
    file_type: Optional[str] = Field(None, alias="fileType")
    iv: Optional[bytes] = None
    encrypted: Optional[bool] = None

    @property
    def is_metadata(self) -> bool:
        """Start-of-transfer signal."""
        return self.chunk_index is None and self.total_chunks is not None

    @property
    def is_chunk(self) -> bool:
        """Carries chunk bytes."""
        return self.chunk_index is not None and self.file is not None

    def __repr__(self) -> str:
        if self.is_metadata:
            return f"FileChunkMessage(meta {self.file_id}, {self.file_name!r}, total={self.total_chunks})"
        size = len(self.file) if self.file is not None else 0
        return f"FileChunkMessage({self.file_id} #{self.chunk_index}/{self.total_chunks}, {size} bytes)"


class FileCompleteMessage(_BaseMessage):
    """Terminal signal for a chunked transfer."""

    data_type: Literal["FILE_COMPLETE"] = Field("FILE_COMPLETE", alias="dataType")
    file_id: str = Field(alias="fileId")


class OtherMessage(_BaseMessage):
    """Application data; unknown fields are kept as-is."""

    data_type: Literal["OTHER"] = Field("OTHER", alias="dataType")
    message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="allow")


Message = Annotated[
    Union[
        KeyExchangeMessage,
        FileMessage,
        FileChunkMessage,
        FileCompleteMessage,
        OtherMessage,
    ],
    Field(discriminator="data_type"),
]

_message_adapter: TypeAdapter = TypeAdapter(Message)


def message_from_dict(data: dict[str, Any]) -> Message:
    """
    Build the message model matching ``data["dataType"]``.

    Raises:
        ValueError: If the kind is unknown or a required field is missing
    """
    try:
        return _message_adapter.validate_python(data)
    except ValidationError as e:
        raise ValueError(f"Invalid message: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e


def encode_message(message: Message) -> bytes:
    """Serialize a message to MessagePack bytes."""
    return message.to_bytes()


def decode_message(data: bytes) -> Message:
    """
    Deserialize a message from MessagePack bytes.

    Raises:
        ValueError: If the bytes are not a valid message
    """
    try:
        raw = msgpack.unpackb(data, raw=False)
    except (msgpack.UnpackException, ValueError) as e:
        raise ValueError(f"Malformed message body: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError("Message body is not a map")
    return message_from_dict(raw)
