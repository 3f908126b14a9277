"""
Chunked transfer sender.

Streams a file over the peer transport as indexed chunk frames and keeps
every chunk in an outstanding table until the receiver acks it. A periodic
monitor retransmits chunks whose ack is overdue; a chunk that exhausts its
retries fails the whole transfer.

Flow control has two gates before each chunk: the number of unacked chunks
must be below the in-flight window, and the data channel's buffered amount
must be at or below its low-water mark.
"""

import asyncio
import logging
import mimetypes
import uuid
from pathlib import Path

from errors import TransferError, TransportClosedError
from peer.transport import PeerTransport
from transfer.framing import MAX_CHUNK_COUNT, chunk_count_for, encode_chunk
from transfer.models import (
    CancelMessage,
    ChunkAck,
    FileCompleteMessage,
    FileInfoMessage,
    FileTransferInfo,
    TransferDirection,
    TransferRef,
    TransferSettings,
    TransferState,
    encode_control_message,
)
from transfer.registry import OutstandingChunk, TransferRecord, TransferRegistry

logger = logging.getLogger(__name__)

# Progress never reads 100 until the completion message has gone out.
PROGRESS_CAP = 99.5


async def _noop(*args) -> None:
    pass


class ChunkedTransferSender:
    """Sends files to the peer, one task pair (stream + ack monitor) per transfer."""

    def __init__(
        self,
        transport: PeerTransport,
        registry: TransferRegistry,
        settings: TransferSettings | None = None,
        progress_callback=None,
        state_callback=None,
        error_callback=None,
    ) -> None:
        self._transport = transport
        self._registry = registry
        self._settings = settings or TransferSettings()
        self._progress_callback = progress_callback or _noop  # async fn(record, percent)
        self._state_callback = state_callback or _noop  # async fn(record)
        self._error_callback = error_callback or _noop  # async fn(transfer_id, reason)
        self._windows: dict[str, asyncio.Event] = {}

    async def initiate(self, file_path: str | Path, mime_type: str | None = None) -> str:
        """Start sending ``file_path``. Returns the new transfer id."""
        path = Path(file_path)
        if not path.is_file():
            raise TransferError(f"Not a file: {path}")

        size = path.stat().st_size
        if size <= 0:
            raise TransferError(f"Cannot send empty file: {path.name}")

        chunk_count = chunk_count_for(size, self._settings.chunk_size)
        if chunk_count > MAX_CHUNK_COUNT:
            raise TransferError(
                f"{path.name} needs {chunk_count} chunks; the limit is {MAX_CHUNK_COUNT}. "
                f"Use a larger chunk size."
            )
        if not self._transport.is_open:
            raise TransportClosedError("Peer data channel is not open")

        info = FileTransferInfo(
            id=str(uuid.uuid4()),
            name=path.name,
            size=size,
            mime_type=mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream",
            chunk_count=chunk_count,
        )
        record = self._registry.create(info, TransferDirection.SENDING)
        self._windows[info.id] = asyncio.Event()

        try:
            self._transport.send(encode_control_message(FileInfoMessage(data=info)))
        except TransportClosedError as e:
            await self._fail(record, str(e))
            raise

        self._registry.transition(record, TransferState.IN_PROGRESS)
        logger.info(
            f"Sending {info.name} ({info.size} bytes, {info.chunk_count} chunks) as {info.id}"
        )
        await self._state_callback(record)
        await self._progress_callback(record, 0.0)

        record.tasks.append(asyncio.create_task(self._stream(record, path)))
        record.tasks.append(asyncio.create_task(self._monitor_acks(record)))
        return info.id

    async def handle_ack(self, ack: ChunkAck) -> None:
        record = self._registry.get(ack.transfer_id)
        if record is None or record.direction != TransferDirection.SENDING:
            logger.debug(f"Ack for unknown or finished transfer {ack.transfer_id}")
            return

        chunk = record.outstanding.pop(ack.chunk_index, None)
        if chunk is None:
            logger.debug(f"Duplicate ack for chunk {ack.chunk_index} of {ack.transfer_id}")
            return

        record.add_bytes(len(chunk.payload))
        self._windows[record.transfer_id].set()
        await self._progress_callback(record, min(PROGRESS_CAP, record.progress_percent))
        await self._maybe_complete(record)

    async def cancel(self, transfer_id: str) -> bool:
        """Cancel locally and tell the peer. Safe to call more than once."""
        record = self._registry.get(transfer_id)
        if record is None or record.direction != TransferDirection.SENDING:
            return False

        self._finish(record, TransferState.CANCELLED)
        logger.info(f"Transfer {transfer_id} cancelled")
        self._send_quietly(CancelMessage(data=TransferRef(transfer_id=transfer_id)))
        await self._state_callback(record)
        return True

    async def handle_peer_cancel(self, transfer_id: str, reason: str | None = None) -> bool:
        record = self._registry.get(transfer_id)
        if record is None or record.direction != TransferDirection.SENDING:
            return False

        record.error_message = reason
        self._finish(record, TransferState.CANCELLED)
        logger.info(f"Transfer {transfer_id} cancelled by peer" + (f": {reason}" if reason else ""))
        await self._state_callback(record)
        return True

    async def fail_all(self, reason: str) -> None:
        for record in self._registry.active():
            if record.direction == TransferDirection.SENDING:
                await self._fail(record, reason, notify_peer=False)

    # --- tasks ---

    async def _stream(self, record: TransferRecord, path: Path) -> None:
        info = record.info
        window = self._windows[info.id]
        loop = asyncio.get_running_loop()

        try:
            with open(path, "rb") as f:
                for index in range(info.chunk_count):
                    # Suspension point: in-flight window
                    while record.is_active and len(record.outstanding) >= self._settings.max_in_flight_chunks:
                        window.clear()
                        await window.wait()

                    # Suspension point: transport backpressure
                    await self._transport.wait_drained()
                    if not record.is_active:
                        return

                    payload = await asyncio.to_thread(f.read, self._settings.chunk_size)
                    if not record.is_active:
                        return
                    if not payload:
                        raise TransferError(f"{info.name} shrank while sending (chunk {index} empty)")

                    record.outstanding[index] = OutstandingChunk(payload=payload, sent_time=loop.time())
                    record.next_index = index + 1
                    self._transport.send(encode_chunk(info.id, index, info.chunk_count, payload))
                    logger.debug(f"Sent chunk {index + 1}/{info.chunk_count} of {info.id}")

            await self._maybe_complete(record)

        except (TransferError, OSError) as e:
            await self._fail(record, str(e))

    async def _monitor_acks(self, record: TransferRecord) -> None:
        loop = asyncio.get_running_loop()
        info = record.info

        while record.is_active:
            await asyncio.sleep(self._settings.ack_check_interval)
            now = loop.time()

            for index, chunk in list(record.outstanding.items()):
                if not record.is_active:
                    return
                if now - chunk.sent_time < self._settings.ack_timeout:
                    continue

                if chunk.retries >= self._settings.max_chunk_retries:
                    await self._fail(
                        record,
                        f"Chunk {index} unacknowledged after {chunk.retries} retransmissions",
                    )
                    return

                chunk.retries += 1
                chunk.sent_time = now
                logger.warning(
                    f"Retransmitting chunk {index} of {info.id} "
                    f"(retry {chunk.retries}/{self._settings.max_chunk_retries})"
                )
                try:
                    self._transport.send(encode_chunk(info.id, index, info.chunk_count, chunk.payload))
                except TransportClosedError as e:
                    await self._fail(record, str(e))
                    return

    # --- lifecycle ---

    async def _maybe_complete(self, record: TransferRecord) -> None:
        if not record.is_active or record.outstanding:
            return
        if record.next_index < record.info.chunk_count:
            return

        try:
            self._transport.send(
                encode_control_message(FileCompleteMessage(data=TransferRef(transfer_id=record.transfer_id)))
            )
        except TransportClosedError as e:
            await self._fail(record, str(e))
            return

        self._finish(record, TransferState.COMPLETED)
        logger.info(f"Transfer {record.transfer_id} ({record.info.name}) completed")
        await self._progress_callback(record, 100.0)
        await self._state_callback(record)

    async def _fail(self, record: TransferRecord, reason: str, notify_peer: bool = True) -> None:
        if not record.is_active:
            return
        record.error_message = reason
        self._finish(record, TransferState.FAILED)
        logger.error(f"Transfer {record.transfer_id} failed: {reason}")
        if notify_peer:
            self._send_quietly(
                CancelMessage(data=TransferRef(transfer_id=record.transfer_id, reason=reason))
            )
        await self._error_callback(record.transfer_id, reason)
        await self._state_callback(record)

    def _finish(self, record: TransferRecord, status: TransferState) -> None:
        self._registry.transition(record, status)
        window = self._windows.pop(record.transfer_id, None)
        if window is not None:
            window.set()

    def _send_quietly(self, message) -> None:
        if not self._transport.is_open:
            return
        try:
            self._transport.send(encode_control_message(message))
        except TransportClosedError:
            logger.debug(f"Could not deliver {message.type}, channel closed")
