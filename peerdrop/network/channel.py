"""
Channel contract consumed by the transfer engine.

A channel is a reliable, ordered, message-oriented duplex per peer
connection. Messages on one connection are delivered at most once and in
the order they were sent.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Coroutine

from ..core.message import Message

# Type aliases
ReceiveHandler = Callable[[str, Message], Coroutine[Any, Any, None]]
CloseHandler = Callable[[str], Coroutine[Any, Any, None]]


class Channel(ABC):
    """Per-peer message duplex."""

    @abstractmethod
    async def send(self, peer_id: str, message: Message) -> None:
        """
        Deliver one message to peer_id.

        Raises:
            ConnectionLostError: If the connection is closed or missing
        """

    @abstractmethod
    def on_receive(self, peer_id: str, handler: ReceiveHandler) -> None:
        """Register a handler for messages arriving from peer_id."""

    @abstractmethod
    def on_close(self, peer_id: str, handler: CloseHandler) -> None:
        """Register a handler called once when the connection to peer_id closes."""
