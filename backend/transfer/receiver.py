"""
Chunked transfer receiver.

Places every incoming chunk in a slot by its explicit index, so arrival
order never matters, and acks each accepted chunk (duplicates included, so
a retransmission after a lost ack is acked again without being counted
twice). Once every slot is filled the slots are joined into the file and
handed to the file callback.
"""

import logging

from errors import InvalidTransitionError, TransportClosedError
from peer.transport import PeerTransport
from transfer.framing import decode_chunk
from transfer.models import (
    CancelMessage,
    ChunkAck,
    ChunkAckMessage,
    FileTransferInfo,
    ReceivedFile,
    TransferDirection,
    TransferRef,
    TransferSettings,
    TransferState,
    encode_control_message,
)
from transfer.registry import TransferRecord, TransferRegistry

logger = logging.getLogger(__name__)

PROGRESS_CAP = 99.5


async def _noop(*args) -> None:
    pass


class ChunkedTransferReceiver:
    """Reassembles files sent by the peer."""

    def __init__(
        self,
        transport: PeerTransport,
        registry: TransferRegistry,
        settings: TransferSettings | None = None,
        progress_callback=None,
        state_callback=None,
        error_callback=None,
        file_callback=None,
    ) -> None:
        self._transport = transport
        self._registry = registry
        self._settings = settings or TransferSettings()
        self._progress_callback = progress_callback or _noop  # async fn(record, percent)
        self._state_callback = state_callback or _noop  # async fn(record)
        self._error_callback = error_callback or _noop  # async fn(transfer_id, reason)
        self._file_callback = file_callback or _noop  # async fn(ReceivedFile)

    async def handle_file_info(self, info: FileTransferInfo) -> None:
        try:
            record = self._registry.create(
                info, TransferDirection.RECEIVING, status=TransferState.IN_PROGRESS
            )
        except InvalidTransitionError as e:
            logger.warning(f"Ignoring file-info: {e}")
            return

        record.slots = [None] * info.chunk_count
        logger.info(
            f"Receiving {info.name} ({info.size} bytes, {info.chunk_count} chunks) as {info.id}"
        )
        await self._state_callback(record)
        await self._progress_callback(record, 0.0)

    async def handle_chunk(self, frame: bytes) -> None:
        try:
            chunk = decode_chunk(frame)
        except ValueError as e:
            logger.warning(f"Dropping malformed chunk frame: {e}")
            return

        record = self._registry.get(chunk.transfer_id)
        if record is None or record.direction != TransferDirection.RECEIVING:
            logger.debug(f"Chunk for unknown or finished transfer {chunk.transfer_id}")
            return
        if not record.is_active:
            return

        if chunk.total_chunks != record.info.chunk_count or chunk.index >= len(record.slots):
            logger.warning(
                f"Rejecting chunk {chunk.index}/{chunk.total_chunks} for {chunk.transfer_id}: "
                f"transfer has {record.info.chunk_count} chunks"
            )
            return

        is_new = record.slots[chunk.index] is None
        if is_new:
            record.slots[chunk.index] = chunk.payload
            record.received_count += 1
            record.add_bytes(len(chunk.payload))
        else:
            logger.debug(f"Duplicate chunk {chunk.index} of {chunk.transfer_id}")

        try:
            self._transport.send(
                encode_control_message(
                    ChunkAckMessage(
                        data=ChunkAck(transfer_id=chunk.transfer_id, chunk_index=chunk.index)
                    )
                )
            )
        except TransportClosedError as e:
            await self._fail(record, str(e), notify_peer=False)
            return

        if record.received_count == record.info.chunk_count:
            await self._assemble(record)
        elif is_new:
            await self._progress_callback(record, min(PROGRESS_CAP, record.progress_percent))

    async def handle_complete(self, transfer_id: str) -> None:
        """The sender has nothing more to send; assemble what we have."""
        record = self._registry.get(transfer_id)
        if record is None or record.direction != TransferDirection.RECEIVING:
            return
        await self._assemble(record)

    async def cancel(self, transfer_id: str) -> bool:
        """Cancel locally and tell the peer. Safe to call more than once."""
        record = self._registry.get(transfer_id)
        if record is None or record.direction != TransferDirection.RECEIVING:
            return False

        self._registry.transition(record, TransferState.CANCELLED)
        logger.info(f"Transfer {transfer_id} cancelled")
        self._send_quietly(CancelMessage(data=TransferRef(transfer_id=transfer_id)))
        await self._state_callback(record)
        return True

    async def handle_peer_cancel(self, transfer_id: str, reason: str | None = None) -> bool:
        record = self._registry.get(transfer_id)
        if record is None or record.direction != TransferDirection.RECEIVING:
            return False

        record.error_message = reason
        self._registry.transition(record, TransferState.CANCELLED)
        logger.info(f"Transfer {transfer_id} cancelled by peer" + (f": {reason}" if reason else ""))
        await self._state_callback(record)
        return True

    async def fail_all(self, reason: str) -> None:
        for record in self._registry.active():
            if record.direction == TransferDirection.RECEIVING:
                await self._fail(record, reason, notify_peer=False)

    async def _assemble(self, record: TransferRecord) -> None:
        if not record.is_active:
            return
        info = record.info

        missing = [i for i, slot in enumerate(record.slots) if slot is None]
        if missing:
            await self._fail(
                record, f"Cannot assemble {info.name}: missing chunks {missing[:10]}"
            )
            return

        data = b"".join(record.slots)
        if abs(len(data) - info.size) > self._settings.size_tolerance:
            await self._fail(
                record,
                f"Size mismatch for {info.name}: expected {info.size} bytes, got {len(data)}",
            )
            return

        self._registry.transition(record, TransferState.COMPLETED)
        logger.info(f"Transfer {info.id} ({info.name}) received, {len(data)} bytes")
        await self._progress_callback(record, 100.0)
        await self._state_callback(record)
        await self._file_callback(
            ReceivedFile(
                transfer_id=info.id,
                name=info.name,
                size=len(data),
                mime_type=info.mime_type,
                data=data,
            )
        )

    async def _fail(self, record: TransferRecord, reason: str, notify_peer: bool = True) -> None:
        if not record.is_active:
            return
        record.error_message = reason
        self._registry.transition(record, TransferState.FAILED)
        logger.error(f"Transfer {record.transfer_id} failed: {reason}")
        if notify_peer:
            self._send_quietly(
                CancelMessage(data=TransferRef(transfer_id=record.transfer_id, reason=reason))
            )
        await self._error_callback(record.transfer_id, reason)
        await self._state_callback(record)

    def _send_quietly(self, message) -> None:
        if not self._transport.is_open:
            return
        try:
            self._transport.send(encode_control_message(message))
        except TransportClosedError:
            logger.debug(f"Could not deliver {message.type}, channel closed")
