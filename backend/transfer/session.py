"""
Peer Session: orchestrates one signaling room, one peer connection and the
transfers that run over it.

This is the object a UI (or the terminal client) talks to. It wires the
negotiation state machine to a chunked sender or receiver once the data
channel opens, pumps incoming messages to them, and reports everything
back through ``on_event`` callbacks.
"""

import asyncio
import logging
from enum import Enum
from pathlib import Path

from pydantic import ValidationError

from config import SIGNALING_URL
from errors import NegotiationError, TransferError
from peer.negotiation import (
    NegotiationState,
    NegotiationStateMachine,
    PeerRole,
    create_peer_connection,
)
from peer.transport import PeerTransport
from signaling.channel import SignalingChannel
from signaling.models import CancelPayload, CancelSignal
from transfer.models import (
    ControlMessageType,
    ReceivedFile,
    TransferSettings,
    parse_control_message,
)
from transfer.receiver import ChunkedTransferReceiver
from transfer.registry import TransferRecord, TransferRegistry
from transfer.sender import ChunkedTransferSender

logger = logging.getLogger(__name__)


class SessionEvent(str, Enum):
    CONNECTION_STATE_CHANGED = "connection_state_changed"
    CONNECTION_ERROR = "connection_error"
    DATA_CHANNEL_OPEN = "data_channel_open"
    RECEIVER_JOINED = "receiver_joined"
    PROGRESS_UPDATE = "progress_update"
    TRANSFER_STATE = "transfer_state"
    FILE_RECEIVED = "file_received"
    TRANSFER_ERROR = "transfer_error"


class PeerSession:
    """One side of a peer-to-peer file transfer session."""

    def __init__(
        self,
        settings: TransferSettings | None = None,
        signaling_url: str = SIGNALING_URL,
        signaling_factory=None,
        peer_connection_factory=create_peer_connection,
        negotiation_options: dict | None = None,
    ) -> None:
        self.settings = settings or TransferSettings()
        self._signaling_factory = signaling_factory or (
            lambda: SignalingChannel(base_url=signaling_url)
        )
        self._pc_factory = peer_connection_factory
        self._negotiation_options = negotiation_options or {}

        self._registry = TransferRegistry()
        self._signaling: SignalingChannel | None = None
        self._negotiation: NegotiationStateMachine | None = None
        self._transport: PeerTransport | None = None
        self._sender: ChunkedTransferSender | None = None
        self._receiver: ChunkedTransferReceiver | None = None
        self._pump_task: asyncio.Task | None = None
        self._event_callbacks: list = []  # async fn(event_type, data)

    @property
    def role(self) -> PeerRole | None:
        return self._negotiation.role if self._negotiation else None

    @property
    def connection_state(self) -> NegotiationState:
        return self._negotiation.state if self._negotiation else NegotiationState.IDLE

    @property
    def is_channel_open(self) -> bool:
        return self._transport is not None and self._transport.is_open

    @property
    def registry(self) -> TransferRegistry:
        return self._registry

    def get_transfers(self) -> list[dict]:
        """Return all live transfers."""
        return [record.to_dict() for record in self._registry.active()]

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: SessionEvent, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type.value, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    # --- collaborator API ---

    async def initiate_as_sender(self, room_id: str) -> None:
        await self._initiate(room_id, PeerRole.INITIATOR)

    async def initiate_as_receiver(self, room_id: str) -> None:
        await self._initiate(room_id, PeerRole.RESPONDER)

    async def send_file(self, file_path: str | Path, mime_type: str | None = None) -> str:
        """Start sending a file to the peer. Returns the transfer id."""
        if self.role == PeerRole.RESPONDER:
            raise TransferError("Only the sending peer can send files")
        if self._sender is None:
            raise TransferError("Peer data channel is not open yet")
        return await self._sender.initiate(file_path, mime_type)

    async def cancel_transfer(self, transfer_id: str) -> bool:
        handler = self._sender or self._receiver
        if handler is None:
            return False

        cancelled = await handler.cancel(transfer_id)
        if cancelled and self._signaling is not None:
            # Also over signaling, in case the data channel is the thing that broke.
            await self._signaling.send(
                CancelSignal(
                    room_id=self._signaling.room_id,
                    data=CancelPayload(transfer_id=transfer_id),
                )
            )
        return cancelled

    async def shutdown(self) -> None:
        """Cancel every live transfer and close the connection."""
        for record in self._registry.active():
            await self.cancel_transfer(record.transfer_id)
        await self._stop_pump()
        if self._negotiation is not None:
            await self._negotiation.close()
        self._transport = None
        self._sender = None
        self._receiver = None
        logger.info("Peer session shut down")

    # --- wiring ---

    async def _initiate(self, room_id: str, role: PeerRole) -> None:
        if self._negotiation is not None:
            raise NegotiationError("Session already initiated")

        self._signaling = self._signaling_factory()
        negotiation = NegotiationStateMachine(
            self._signaling,
            role,
            peer_connection_factory=self._pc_factory,
            low_water_mark=self.settings.buffered_amount_low_threshold,
            **self._negotiation_options,
        )
        negotiation.on_state_change(self._on_connection_state)
        negotiation.on_transport_open(self._on_transport_open)
        negotiation.on_transport_lost(self._on_transport_lost)
        negotiation.on_receiver_joined(self._on_receiver_joined)
        negotiation.on_cancel_request(self._on_cancel_request)
        self._negotiation = negotiation

        await negotiation.start(room_id)

    async def _on_connection_state(self, state: NegotiationState, reason: str | None) -> None:
        await self._emit(
            SessionEvent.CONNECTION_STATE_CHANGED, {"state": state.value, "reason": reason}
        )
        if state == NegotiationState.FAILED:
            await self._emit(SessionEvent.CONNECTION_ERROR, {"reason": reason})

    async def _on_receiver_joined(self) -> None:
        await self._emit(SessionEvent.RECEIVER_JOINED, {})

    async def _on_transport_open(self, transport: PeerTransport) -> None:
        if self._transport is not None and self._transport is not transport:
            await self._fail_all("Peer transport was replaced")
            await self._stop_pump()

        self._transport = transport
        if self.role == PeerRole.INITIATOR:
            self._sender = ChunkedTransferSender(
                transport,
                self._registry,
                self.settings,
                progress_callback=self._on_progress,
                state_callback=self._on_transfer_state,
                error_callback=self._on_transfer_error,
            )
        else:
            self._receiver = ChunkedTransferReceiver(
                transport,
                self._registry,
                self.settings,
                progress_callback=self._on_progress,
                state_callback=self._on_transfer_state,
                error_callback=self._on_transfer_error,
                file_callback=self._on_file_received,
            )

        self._pump_task = asyncio.create_task(self._pump(transport))
        await self._emit(SessionEvent.DATA_CHANNEL_OPEN, {"label": transport.label})

    async def _on_transport_lost(self, reason: str) -> None:
        await self._fail_all(f"Peer connection lost: {reason}")

    async def _on_cancel_request(self, transfer_id: str) -> None:
        handler = self._sender or self._receiver
        if handler is not None:
            await handler.handle_peer_cancel(transfer_id)

    async def _fail_all(self, reason: str) -> None:
        for handler in (self._sender, self._receiver):
            if handler is not None:
                await handler.fail_all(reason)

    async def _stop_pump(self) -> None:
        task, self._pump_task = self._pump_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # --- incoming data channel traffic ---

    async def _pump(self, transport: PeerTransport) -> None:
        while True:
            message = await transport.receive()
            if message is None:
                break
            if isinstance(message, (bytes, bytearray, memoryview)):
                if self._receiver is None:
                    logger.warning("Sending peer got a chunk frame, ignoring")
                    continue
                await self._receiver.handle_chunk(bytes(message))
            else:
                await self._dispatch_control(message)

        if transport is self._transport:
            await self._fail_all("Peer data channel closed")

    async def _dispatch_control(self, raw: str) -> None:
        try:
            message = parse_control_message(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid control message: {e.error_count()} error(s)")
            return

        kind = ControlMessageType(message.type)
        if kind == ControlMessageType.FILE_TRANSFER_CANCEL:
            handler = self._sender or self._receiver
            await handler.handle_peer_cancel(message.data.transfer_id, message.data.reason)
        elif kind == ControlMessageType.FILE_CHUNK_ACK and self._sender is not None:
            await self._sender.handle_ack(message.data)
        elif kind == ControlMessageType.FILE_INFO and self._receiver is not None:
            await self._receiver.handle_file_info(message.data)
        elif kind == ControlMessageType.FILE_COMPLETE and self._receiver is not None:
            await self._receiver.handle_complete(message.data.transfer_id)
        else:
            logger.warning(f"Unexpected {kind.value} for a {self.role.value} session")

    # --- transfer callbacks ---

    async def _on_progress(self, record: TransferRecord, percent: float) -> None:
        await self._emit(
            SessionEvent.PROGRESS_UPDATE,
            {
                "transfer_id": record.transfer_id,
                "percent": percent,
                "speed_bps": record.speed_bps,
                "eta_seconds": record.eta_seconds,
            },
        )

    async def _on_transfer_state(self, record: TransferRecord) -> None:
        await self._emit(SessionEvent.TRANSFER_STATE, record.to_dict())

    async def _on_transfer_error(self, transfer_id: str, reason: str) -> None:
        await self._emit(
            SessionEvent.TRANSFER_ERROR, {"transfer_id": transfer_id, "reason": reason}
        )

    async def _on_file_received(self, received: ReceivedFile) -> None:
        await self._emit(
            SessionEvent.FILE_RECEIVED,
            {
                "transfer_id": received.transfer_id,
                "name": received.name,
                "size": received.size,
                "mime_type": received.mime_type,
                "data": received.data,
            },
        )
