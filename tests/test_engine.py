"""
Tests for the transfer engine.

These tests cover:
- Round trips around the chunking threshold
- Wire sequence of a chunked transfer
- Sender progress reporting
- Reordered, duplicated and missing chunks
- Wrong or missing keys
- Connection loss mid-transfer
- Transfers scoped to the peer that opened them
- Chunk pacing
"""

import asyncio
import os
from unittest.mock import AsyncMock, patch

import pytest

from peerdrop.core.crypto import CryptoProvider, generate_nonce, TAG_SIZE
from peerdrop.core.message import (
    DataType,
    FileChunkMessage,
    FileCompleteMessage,
    FileMessage,
    KeyExchangeMessage,
    message_from_dict,
)
from peerdrop.engine.chunker import DataChunker
from peerdrop.engine.engine import EngineConfig, ReceivedFile, TransferEngine
from peerdrop.exceptions import (
    ConnectionLostError,
    DecryptionError,
    MissingChunkError,
    MissingKeyError,
    TransferError,
    UnknownTransferError,
)

from conftest import ALICE, BOB, EnginePair

CHUNK = 16 * 1024
MALLORY = "127.0.0.1:9666"


def kinds(channel):
    return [m.kind for m in channel.sent]


@pytest.mark.asyncio
class TestRoundTrip:
    """Files of every size arrive intact."""

    @pytest.mark.parametrize("size", [0, 1, 1000, CHUNK - TAG_SIZE, CHUNK, CHUNK + 1, 200_000])
    async def test_round_trip(self, pair, size):
        data = os.urandom(size)

        await pair.alice.send_file(BOB, data, "blob.bin", "application/octet-stream")

        assert len(pair.files) == 1
        received = pair.files[0]
        assert received.data == data
        assert received.file_name == "blob.bin"
        assert received.mime_type == "application/octet-stream"
        assert received.peer_id == ALICE
        assert pair.errors == []

    async def test_empty_file_is_single_message(self, pair):
        result = await pair.alice.send_file(BOB, b"", "empty.txt", "text/plain")

        assert result.chunked is False
        assert result.encrypted_size == TAG_SIZE
        assert kinds(pair.alice_channel) == [DataType.KEY_EXCHANGE, DataType.FILE]

    async def test_ciphertext_equal_to_chunk_size_not_chunked(self, pair):
        result = await pair.alice.send_file(BOB, os.urandom(CHUNK - TAG_SIZE), "a.bin")

        assert result.encrypted_size == CHUNK
        assert result.chunked is False
        assert result.total_chunks == 1

    async def test_one_byte_over_threshold_is_chunked(self, pair):
        result = await pair.alice.send_file(BOB, os.urandom(CHUNK - TAG_SIZE + 1), "a.bin")

        assert result.chunked is True
        assert result.total_chunks == 2
        last = [m for m in pair.alice_channel.sent if m.kind == DataType.FILE_CHUNK][-1]
        assert len(last.file) == 1

    async def test_small_file_wire_sequence(self, pair):
        await pair.alice.send_file(BOB, b"hello", "hi.txt", "text/plain")

        key_msg, file_msg = pair.alice_channel.sent
        assert isinstance(key_msg, KeyExchangeMessage)
        assert len(key_msg.encryption_key) == 32
        assert key_msg.file_name == "hi.txt"
        assert isinstance(file_msg, FileMessage)
        assert file_msg.encrypted is True
        assert len(file_msg.iv) == 12
        assert file_msg.file != b"hello"

    async def test_fresh_key_per_file(self, pair):
        await pair.alice.send_file(BOB, b"one", "1.txt")
        await pair.alice.send_file(BOB, b"two", "2.txt")

        keys = [m.encryption_key for m in pair.alice_channel.sent if m.kind == DataType.KEY_EXCHANGE]
        assert len(keys) == 2
        assert keys[0] != keys[1]
        assert [f.data for f in pair.files] == [b"one", b"two"]


@pytest.mark.asyncio
class TestChunkedTransfer:
    """Wire layout and progress of a chunked transfer."""

    async def test_50000_byte_transfer(self, pair):
        data = os.urandom(50_000)
        progress = []

        result = await pair.alice.send_file(BOB, data, "photo.jpg", "image/jpeg", progress.append)

        assert result.encrypted_size == 50_016
        assert result.total_chunks == 4
        assert kinds(pair.alice_channel) == [
            DataType.KEY_EXCHANGE,
            DataType.FILE_CHUNK,
            DataType.FILE_CHUNK,
            DataType.FILE_CHUNK,
            DataType.FILE_CHUNK,
            DataType.FILE_CHUNK,
            DataType.FILE_COMPLETE,
        ]

        meta = pair.alice_channel.sent[1]
        assert meta.is_metadata
        assert meta.total_chunks == 4
        assert meta.file_name == "photo.jpg"
        assert meta.file_type == "image/jpeg"
        assert meta.encrypted is True
        assert len(meta.iv) == 12

        chunks = pair.alice_channel.sent[2:6]
        assert [c.chunk_index for c in chunks] == [0, 1, 2, 3]
        assert [len(c.file) for c in chunks] == [CHUNK, CHUNK, CHUNK, 50_016 - 3 * CHUNK]
        assert all(c.file_id == meta.file_id for c in chunks)
        assert pair.alice_channel.sent[6].file_id == meta.file_id

        assert progress == [25.0, 50.0, 75.0, 100.0]
        assert pair.files[0].data == data
        assert pair.files[0].transfer_id == result.transfer_id

    async def test_receive_progress(self, pair):
        await pair.alice.send_file(BOB, os.urandom(50_000), "photo.jpg")

        assert pair.progress == [25.0, 50.0, 75.0, 100.0]

    async def test_async_progress_callback(self, pair):
        seen = []

        async def on_progress(percent):
            seen.append(percent)

        await pair.alice.send_file(BOB, os.urandom(40_000), "x.bin", on_progress=on_progress)

        assert seen[-1] == 100.0
        assert seen == sorted(seen)

    async def test_transfer_freed_after_completion(self, pair):
        await pair.alice.send_file(BOB, os.urandom(50_000), "x.bin")

        assert len(pair.bob.reassembly) == 0

    async def test_concurrent_sends_do_not_interleave(self, pair):
        first = os.urandom(60_000)
        second = os.urandom(45_000)

        await asyncio.gather(
            pair.alice.send_file(BOB, first, "first.bin"),
            pair.alice.send_file(BOB, second, "second.bin"),
        )

        received = {f.file_name: f.data for f in pair.files}
        assert received == {"first.bin": first, "second.bin": second}
        assert pair.errors == []

    async def test_missing_chunk(self, pair):
        pair.alice_channel.drop = lambda m: m.kind == DataType.FILE_CHUNK and m.chunk_index == 1

        await pair.alice.send_file(BOB, os.urandom(50_000), "x.bin")

        assert pair.files == []
        assert len(pair.errors) == 1
        peer_id, error = pair.errors[0]
        assert peer_id == ALICE
        assert isinstance(error, MissingChunkError)
        assert error.index == 1
        assert len(pair.bob.reassembly) == 0

    async def test_disconnect_mid_transfer(self, pair):
        # KEY_EXCHANGE, metadata and 2 of 4 chunks go out
        pair.alice_channel.fail_after = 4
        progress = []

        with pytest.raises(ConnectionLostError):
            await pair.alice.send_file(BOB, os.urandom(50_000), "x.bin", on_progress=progress.append)

        assert progress == [25.0, 50.0]
        assert pair.files == []
        assert len(pair.bob.reassembly) == 0

    async def test_chunks_are_paced(self, pair):
        pair.alice.config = EngineConfig(chunk_size=CHUNK, chunk_delay=0.1)

        with patch("peerdrop.engine.engine.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            await pair.alice.send_file(BOB, os.urandom(50_000), "x.bin")

        assert mock_sleep.await_count == 4
        assert all(call.args == (0.1,) for call in mock_sleep.await_args_list)

    async def test_disconnect_keeps_held_send_lock(self, pair):
        lock = pair.alice._send_locks[BOB]
        await lock.acquire()

        await pair.alice.handle_disconnect(BOB)

        assert pair.alice._send_locks[BOB] is lock
        lock.release()

    async def test_disconnect_drops_idle_send_lock(self, pair):
        await pair.alice.send_file(BOB, b"data", "x.bin")
        assert BOB in pair.alice._send_locks

        await pair.alice.handle_disconnect(BOB)

        assert BOB not in pair.alice._send_locks

    async def test_send_on_closed_channel(self, pair):
        await pair.alice_channel.close()

        with pytest.raises(ConnectionLostError):
            await pair.alice.send_file(BOB, b"data", "x.bin")


@pytest.mark.asyncio
class TestReceivePath:
    """Messages fed straight into a receiving engine."""

    async def _encrypted(self, data, key=None):
        crypto = CryptoProvider()
        key = key or await crypto.generate_key()
        nonce = generate_nonce()
        return key, nonce, await crypto.encrypt(key, nonce, data)

    async def _send_key(self, pair, key):
        raw = await pair.bob.crypto.export_key(key)
        await pair.bob.handle_message(ALICE, KeyExchangeMessage(encryption_key=raw, file_name="x.bin"))

    async def test_out_of_order_chunks(self, pair):
        data = os.urandom(50_000)
        key, nonce, ciphertext = await self._encrypted(data)
        chunks = DataChunker(CHUNK).split(ciphertext)
        await self._send_key(pair, key)

        await pair.bob.handle_message(
            ALICE,
            FileChunkMessage(file_id="t1", file_name="x.bin", total_chunks=len(chunks), iv=nonce, encrypted=True),
        )
        for index in (2, 0, 3, 1):
            await pair.bob.handle_message(
                ALICE,
                FileChunkMessage(file_id="t1", chunk_index=index, total_chunks=len(chunks), file=chunks[index]),
            )
        await pair.bob.handle_message(ALICE, FileCompleteMessage(file_id="t1"))

        assert pair.files[0].data == data

    async def test_duplicate_chunk_is_idempotent(self, pair):
        data = os.urandom(20_000)
        key, nonce, ciphertext = await self._encrypted(data)
        chunks = DataChunker(CHUNK).split(ciphertext)
        await self._send_key(pair, key)

        await pair.bob.handle_message(
            ALICE, FileChunkMessage(file_id="t1", file_name="x.bin", total_chunks=2, iv=nonce, encrypted=True)
        )
        for index in (0, 0, 1):
            await pair.bob.handle_message(
                ALICE, FileChunkMessage(file_id="t1", chunk_index=index, total_chunks=2, file=chunks[index])
            )
        assert pair.bob.reassembly.get("t1").received_count == 2

        await pair.bob.handle_message(ALICE, FileCompleteMessage(file_id="t1"))
        assert pair.files[0].data == data

    async def test_wrong_key(self, pair):
        _, nonce, ciphertext = await self._encrypted(b"secret")
        await self._send_key(pair, await pair.bob.crypto.generate_key())

        await pair.bob.handle_message(
            ALICE, FileMessage(file=ciphertext, iv=nonce, file_name="s.txt", encrypted=True)
        )

        assert pair.files == []
        assert isinstance(pair.errors[0][1], DecryptionError)
        assert pair.errors[0][1].file_name == "s.txt"

    async def test_missing_key(self, pair):
        _, nonce, ciphertext = await self._encrypted(b"secret")

        await pair.bob.handle_message(
            ALICE, FileMessage(file=ciphertext, iv=nonce, file_name="s.txt", encrypted=True)
        )

        assert pair.files == []
        assert isinstance(pair.errors[0][1], MissingKeyError)

    async def test_bad_key_length_reported(self, pair):
        await pair.bob.handle_message(ALICE, KeyExchangeMessage(encryption_key=b"short"))

        assert pair.errors[0][1].code == "KEY_FORMAT_ERROR"
        assert ALICE not in pair.bob.key_store

    async def test_unencrypted_file_passes_through(self, pair):
        await pair.bob.handle_message(
            ALICE, FileMessage(file=b"plain", file_name="p.txt", file_type="text/plain")
        )

        assert pair.files[0].data == b"plain"
        assert pair.files[0].encrypted is False

    async def test_complete_for_unknown_transfer(self, pair):
        await pair.bob.handle_message(ALICE, FileCompleteMessage(file_id="nope"))

        assert isinstance(pair.errors[0][1], UnknownTransferError)

    async def test_chunk_for_unknown_transfer_ignored(self, pair):
        await pair.bob.handle_message(
            ALICE, FileChunkMessage(file_id="nope", chunk_index=0, total_chunks=2, file=b"x")
        )

        assert len(pair.bob.reassembly) == 0
        assert pair.errors == []

    @pytest.mark.parametrize("total", [-3, 0])
    async def test_invalid_total_chunks_reported(self, pair, total):
        message = message_from_dict({"dataType": "FILE_CHUNK", "fileId": "t1", "totalChunks": total})

        await pair.bob.handle_message(ALICE, message)

        peer_id, error = pair.errors[0]
        assert peer_id == ALICE
        assert isinstance(error, TransferError)
        assert error.code == "INVALID_METADATA"
        assert error.transfer_id == "t1"
        assert len(pair.bob.reassembly) == 0

    async def _open_from_alice(self, pair):
        await pair.bob.handle_message(ALICE, FileChunkMessage(file_id="tid", file_name="x", total_chunks=2))
        await pair.bob.handle_message(
            ALICE, FileChunkMessage(file_id="tid", chunk_index=0, total_chunks=2, file=b"a")
        )

    async def test_other_peer_cannot_touch_transfer(self, pair):
        await self._open_from_alice(pair)

        await pair.bob.handle_message(
            MALLORY, FileChunkMessage(file_id="tid", chunk_index=1, total_chunks=2, file=b"b")
        )
        await pair.bob.handle_message(MALLORY, FileCompleteMessage(file_id="tid"))

        transfer = pair.bob.reassembly.get("tid")
        assert transfer is not None
        assert transfer.peer_id == ALICE
        assert transfer.received_count == 1
        assert pair.files == []
        peer_id, error = pair.errors[0]
        assert peer_id == MALLORY
        assert isinstance(error, UnknownTransferError)

    async def test_other_peer_cannot_reopen_transfer(self, pair):
        await self._open_from_alice(pair)

        await pair.bob.handle_message(MALLORY, FileChunkMessage(file_id="tid", file_name="y", total_chunks=5))

        transfer = pair.bob.reassembly.get("tid")
        assert transfer.file_name == "x"
        assert transfer.total_chunks == 2
        assert transfer.received_count == 1
        assert pair.errors[0][0] == MALLORY
        assert isinstance(pair.errors[0][1], TransferError)

    async def test_owner_completes_after_interference(self, pair):
        await self._open_from_alice(pair)
        await pair.bob.handle_message(
            MALLORY, FileChunkMessage(file_id="tid", chunk_index=1, total_chunks=2, file=b"z")
        )

        await pair.bob.handle_message(
            ALICE, FileChunkMessage(file_id="tid", chunk_index=1, total_chunks=2, file=b"b")
        )
        await pair.bob.handle_message(ALICE, FileCompleteMessage(file_id="tid"))

        assert pair.files[0].data == b"ab"

    async def test_other_message(self, pair):
        await pair.alice.send_text(BOB, "hello", topic="greeting")

        peer_id, message = pair.others[0]
        assert peer_id == ALICE
        assert message.message == "hello"
        assert message.model_extra["topic"] == "greeting"

    async def test_callback_errors_are_contained(self, pair):
        async def broken(received):
            raise RuntimeError("boom")

        pair.bob.on_file(broken)
        await pair.alice.send_file(BOB, b"data", "x.bin")

        assert len(pair.files) == 1

    async def test_received_files_history(self):
        pair = EnginePair()
        pair.bob.config = EngineConfig(chunk_delay=0, max_received_files=2)

        for i in range(3):
            await pair.alice.send_file(BOB, f"file {i}".encode(), f"{i}.txt")

        names = [f.file_name for f in pair.bob.get_received_files()]
        assert names == ["1.txt", "2.txt"]


@pytest.mark.asyncio
class TestSendPath:
    """Sending files from disk."""

    async def test_send_path(self, pair, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_bytes(b"some notes")

        result = await pair.alice.send_path(BOB, path)

        assert result.file_name == "notes.txt"
        assert pair.files[0].mime_type == "text/plain"
        assert pair.files[0].data == b"some notes"

    async def test_send_path_missing(self, pair, tmp_path):
        with pytest.raises(FileNotFoundError):
            await pair.alice.send_path(BOB, tmp_path / "missing.txt")


class TestReceivedFile:
    """Tests for ReceivedFile."""

    def test_save_does_not_overwrite(self, tmp_path):
        received = ReceivedFile(peer_id=ALICE, file_name="a.txt", mime_type="text/plain", data=b"x")

        first = received.save(tmp_path)
        second = received.save(tmp_path)

        assert first.name == "a.txt"
        assert second.name == "a_1.txt"
        assert second.read_bytes() == b"x"
        assert received.saved_path == second

    def test_save_strips_directories(self, tmp_path):
        received = ReceivedFile(peer_id=ALICE, file_name="../../etc/passwd", mime_type="text/plain", data=b"x")

        path = received.save(tmp_path)

        assert path.parent == tmp_path
        assert path.name == "passwd"
