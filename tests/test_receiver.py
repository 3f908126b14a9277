import asyncio
import json

import pytest

from fakes import FakeChannel
from peer.transport import PeerTransport
from transfer.framing import encode_chunk
from transfer.models import FileTransferInfo, TransferSettings, TransferState
from transfer.registry import TransferRegistry
from transfer.receiver import ChunkedTransferReceiver


class Recorder:
    def __init__(self):
        self.progress = []
        self.states = []
        self.errors = []
        self.files = []

    async def on_progress(self, record, percent):
        self.progress.append(percent)

    async def on_state(self, record):
        self.states.append(record.status)

    async def on_error(self, transfer_id, reason):
        self.errors.append(reason)

    async def on_file(self, received):
        self.files.append(received)


def build(settings=None):
    channel = FakeChannel()
    registry = TransferRegistry()
    recorder = Recorder()
    receiver = ChunkedTransferReceiver(
        PeerTransport(channel),
        registry,
        settings or TransferSettings(),
        progress_callback=recorder.on_progress,
        state_callback=recorder.on_state,
        error_callback=recorder.on_error,
        file_callback=recorder.on_file,
    )
    return channel, registry, receiver, recorder


def split(data, chunk_size):
    return [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]


def acked_indices(channel):
    messages = [json.loads(m) for m in channel.text_messages]
    return [m["data"]["chunkIndex"] for m in messages if m["type"] == "file-chunk-ack"]


def sent_types(channel):
    return [json.loads(m)["type"] for m in channel.text_messages]


DATA = bytes(range(256)) * 20  # 5120 bytes
PIECES = split(DATA, 1024)
INFO = FileTransferInfo(id="t-1", name="notes.txt", size=len(DATA), mime_type="text/plain", chunk_count=5)


def test_assembles_out_of_order_chunks():
    async def scenario():
        channel, registry, receiver, recorder = build()
        await receiver.handle_file_info(INFO)
        for index in (3, 0, 4, 1, 2):
            await receiver.handle_chunk(encode_chunk("t-1", index, 5, PIECES[index]))
        return channel, registry, recorder

    channel, registry, recorder = asyncio.run(scenario())

    assert len(recorder.files) == 1
    received = recorder.files[0]
    assert received.data == DATA
    assert received.name == "notes.txt"
    assert received.mime_type == "text/plain"
    assert acked_indices(channel) == [3, 0, 4, 1, 2]
    assert recorder.states == [TransferState.IN_PROGRESS, TransferState.COMPLETED]
    assert len(registry) == 0


def test_duplicates_are_acked_but_counted_once():
    async def scenario():
        channel, registry, receiver, recorder = build()
        await receiver.handle_file_info(INFO)
        await receiver.handle_chunk(encode_chunk("t-1", 0, 5, PIECES[0]))
        await receiver.handle_chunk(encode_chunk("t-1", 0, 5, PIECES[0]))
        record = registry.get("t-1")
        snapshot = (record.received_count, record.transferred_bytes)
        for index in range(1, 5):
            await receiver.handle_chunk(encode_chunk("t-1", index, 5, PIECES[index]))
        return channel, recorder, snapshot

    channel, recorder, snapshot = asyncio.run(scenario())

    assert snapshot == (1, 1024)
    assert acked_indices(channel) == [0, 0, 1, 2, 3, 4]
    assert recorder.files[0].data == DATA
    # The duplicate does not produce a second progress report.
    assert recorder.progress.count(20.0) == 1


def test_progress_reports_scale_with_bytes():
    data = bytes(1_000_000)
    info = FileTransferInfo(id="big", name="big.bin", size=len(data), chunk_count=4)

    async def scenario():
        _, _, receiver, recorder = build()
        await receiver.handle_file_info(info)
        for index, piece in enumerate(split(data, 262144)):
            await receiver.handle_chunk(encode_chunk("big", index, 4, piece))
        return recorder

    recorder = asyncio.run(scenario())
    assert recorder.progress == pytest.approx([0.0, 26.2144, 52.4288, 78.6432, 100.0])


def test_missing_chunk_on_complete_fails():
    async def scenario():
        channel, registry, receiver, recorder = build()
        await receiver.handle_file_info(INFO)
        for index in (0, 1, 3, 4):
            await receiver.handle_chunk(encode_chunk("t-1", index, 5, PIECES[index]))
        await receiver.handle_complete("t-1")
        return channel, registry, recorder

    channel, registry, recorder = asyncio.run(scenario())

    assert recorder.files == []
    assert recorder.states[-1] == TransferState.FAILED
    assert "missing chunks [2]" in recorder.errors[0]
    assert sent_types(channel)[-1] == "file-transfer-cancel"
    assert len(registry) == 0


def test_size_mismatch_fails():
    info = FileTransferInfo(id="short", name="short.bin", size=1000, chunk_count=1)

    async def scenario():
        _, _, receiver, recorder = build()
        await receiver.handle_file_info(info)
        await receiver.handle_chunk(encode_chunk("short", 0, 1, bytes(900)))
        return recorder

    recorder = asyncio.run(scenario())
    assert recorder.files == []
    assert "Size mismatch" in recorder.errors[0]


def test_size_tolerance_allows_small_difference():
    info = FileTransferInfo(id="near", name="near.bin", size=1000, chunk_count=1)

    async def scenario():
        _, _, receiver, recorder = build(TransferSettings(size_tolerance=100))
        await receiver.handle_file_info(info)
        await receiver.handle_chunk(encode_chunk("near", 0, 1, bytes(900)))
        return recorder

    recorder = asyncio.run(scenario())
    assert recorder.errors == []
    assert recorder.files[0].size == 900


def test_chunks_for_unknown_transfer_are_dropped():
    async def scenario():
        channel, _, receiver, recorder = build()
        await receiver.handle_chunk(encode_chunk("ghost", 0, 1, b"boo"))
        await receiver.handle_chunk(b"\x00garbage")
        return channel, recorder

    channel, recorder = asyncio.run(scenario())
    assert channel.sent == []
    assert recorder.errors == []


def test_inconsistent_total_is_rejected():
    async def scenario():
        channel, registry, receiver, _ = build()
        await receiver.handle_file_info(INFO)
        await receiver.handle_chunk(encode_chunk("t-1", 5, 6, b"extra"))
        return channel, registry

    channel, registry = asyncio.run(scenario())
    assert acked_indices(channel) == []
    assert registry.get("t-1").received_count == 0


def test_duplicate_file_info_is_ignored():
    async def scenario():
        _, registry, receiver, recorder = build()
        await receiver.handle_file_info(INFO)
        await receiver.handle_chunk(encode_chunk("t-1", 0, 5, PIECES[0]))
        await receiver.handle_file_info(INFO)
        return registry, recorder

    registry, recorder = asyncio.run(scenario())
    assert registry.get("t-1").received_count == 1
    assert recorder.states == [TransferState.IN_PROGRESS]


def test_peer_cancel_discards_partial_data():
    async def scenario():
        channel, registry, receiver, recorder = build()
        await receiver.handle_file_info(INFO)
        await receiver.handle_chunk(encode_chunk("t-1", 0, 5, PIECES[0]))
        await receiver.handle_peer_cancel("t-1", "Chunk 1 unacknowledged after 3 retransmissions")
        await receiver.handle_chunk(encode_chunk("t-1", 1, 5, PIECES[1]))
        return channel, registry, recorder

    channel, registry, recorder = asyncio.run(scenario())
    assert recorder.states[-1] == TransferState.CANCELLED
    assert recorder.files == []
    assert acked_indices(channel) == [0]
    assert len(registry) == 0


def test_local_cancel_notifies_sender():
    async def scenario():
        channel, _, receiver, _ = build()
        await receiver.handle_file_info(INFO)
        first = await receiver.cancel("t-1")
        second = await receiver.cancel("t-1")
        return channel, first, second

    channel, first, second = asyncio.run(scenario())
    assert (first, second) == (True, False)
    assert sent_types(channel) == ["file-transfer-cancel"]
