"""Shared fixtures: an in-memory channel pairing two transfer engines."""

from typing import Callable, Optional

import pytest

from peerdrop.core.message import Message, decode_message, encode_message
from peerdrop.engine.engine import EngineConfig, TransferEngine
from peerdrop.exceptions import ConnectionLostError
from peerdrop.network.channel import Channel

ALICE = "127.0.0.1:9001"
BOB = "127.0.0.1:9002"


class LoopbackChannel(Channel):
    """
    Ordered in-process channel to a single paired channel.

    Every message goes through the msgpack codec before delivery.
    """

    def __init__(self, local_id: str) -> None:
        self.local_id = local_id
        self.remote: Optional["LoopbackChannel"] = None
        self.sent: list[Message] = []
        self.closed = False

        # Close the pair instead of sending once this many messages went out
        self.fail_after: Optional[int] = None
        # Return True to drop a message silently
        self.drop: Optional[Callable[[Message], bool]] = None

        self._receive: dict[str, list] = {}
        self._close: dict[str, list] = {}

    async def send(self, peer_id: str, message: Message) -> None:
        if self.closed:
            raise ConnectionLostError(f"No open connection to {peer_id}", peer_id)
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            await self.close()
            raise ConnectionLostError(f"Connection to {peer_id} lost", peer_id)

        wire = decode_message(encode_message(message))
        self.sent.append(wire)
        if self.drop is not None and self.drop(wire):
            return

        for handler in list(self.remote._receive.get(self.local_id, [])):
            await handler(self.local_id, wire)

    def on_receive(self, peer_id, handler) -> None:
        self._receive.setdefault(peer_id, []).append(handler)

    def on_close(self, peer_id, handler) -> None:
        self._close.setdefault(peer_id, []).append(handler)

    async def close(self) -> None:
        for channel in (self, self.remote):
            if channel.closed:
                continue
            channel.closed = True
            other = channel.remote.local_id
            for handler in channel._close.pop(other, []):
                await handler(other)


def make_channels() -> tuple[LoopbackChannel, LoopbackChannel]:
    alice = LoopbackChannel(ALICE)
    bob = LoopbackChannel(BOB)
    alice.remote = bob
    bob.remote = alice
    return alice, bob


class EnginePair:
    """Alice sends, Bob receives; Bob's callbacks are recorded."""

    def __init__(self, chunk_size: int = 16 * 1024) -> None:
        config = EngineConfig(chunk_size=chunk_size, chunk_delay=0)
        self.alice_channel, self.bob_channel = make_channels()
        self.alice = TransferEngine(self.alice_channel, config=config)
        self.bob = TransferEngine(self.bob_channel, config=config)
        self.alice.attach(BOB)
        self.bob.attach(ALICE)

        self.files = []
        self.errors = []
        self.others = []
        self.progress = []

        async def on_file(received):
            self.files.append(received)

        async def on_error(peer_id, error):
            self.errors.append((peer_id, error))

        async def on_other(peer_id, message):
            self.others.append((peer_id, message))

        async def on_progress(peer_id, transfer_id, percent):
            self.progress.append(percent)

        self.bob.on_file(on_file)
        self.bob.on_error(on_error)
        self.bob.on_other(on_other)
        self.bob.on_receive_progress(on_progress)


@pytest.fixture
def pair():
    return EnginePair()
