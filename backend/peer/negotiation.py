"""
Negotiation state machine.

Drives the offer/answer/candidate exchange over a SignalingChannel until an
RTCPeerConnection (aiortc) exposes an open data channel, then hands that
channel out as a PeerTransport.

States:

    IDLE -> WAITING_FOR_PEER (initiator only) -> NEGOTIATING -> CONNECTED
         -> DISCONNECTED | FAILED | CLOSED

Rules:
- The initiator creates the data channel and the offer only after the
  responder has announced itself with receiver-joined.
- An answer is applied only in the "have-local-offer" signaling state.
- Remote candidates are ignored before negotiation has begun and buffered
  until a remote description is set.
- A failed transport gets one automatic restart; after that the machine
  goes to FAILED.
"""

import asyncio
import logging
from enum import Enum

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from config import (
    BUFFERED_AMOUNT_LOW_THRESHOLD,
    CONNECTION_TIMEOUT,
    DATA_CHANNEL_LABEL,
    DISCONNECT_GRACE,
    ICE_SERVERS,
    OFFER_MAX_ATTEMPTS,
    OFFER_RETRY_DELAY,
    RECONNECT_MAX_DELAY,
)
from errors import NegotiationError
from peer.transport import PeerTransport
from signaling.channel import SignalingChannel, backoff_delay
from signaling.models import (
    AnswerSignal,
    IceCandidatePayload,
    IceCandidateSignal,
    OfferSignal,
    ReceiverReadySignal,
    SessionDescription,
    SignalingMessageType,
)

logger = logging.getLogger(__name__)


class PeerRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class NegotiationState(str, Enum):
    IDLE = "idle"
    WAITING_FOR_PEER = "waiting_for_peer"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


def create_peer_connection() -> RTCPeerConnection:
    """Default factory: an aiortc peer connection using the configured STUN servers."""
    return RTCPeerConnection(
        configuration=RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in ICE_SERVERS]
        )
    )


class NegotiationStateMachine:
    """Owns the peer connection and the PeerTransport it produces."""

    def __init__(
        self,
        signaling: SignalingChannel,
        role: PeerRole,
        peer_connection_factory=create_peer_connection,
        low_water_mark: int = BUFFERED_AMOUNT_LOW_THRESHOLD,
        offer_max_attempts: int = OFFER_MAX_ATTEMPTS,
        offer_retry_delay: float = OFFER_RETRY_DELAY,
        connection_timeout: float = CONNECTION_TIMEOUT,
        disconnect_grace: float = DISCONNECT_GRACE,
        max_restarts: int = 1,
    ) -> None:
        self._signaling = signaling
        self._role = role
        self._pc_factory = peer_connection_factory
        self._low_water_mark = low_water_mark
        self._offer_max_attempts = offer_max_attempts
        self._offer_retry_delay = offer_retry_delay
        self._connection_timeout = connection_timeout
        self._disconnect_grace = disconnect_grace
        self._max_restarts = max_restarts

        self._state = NegotiationState.IDLE
        self._room_id: str | None = None
        self._pc = None
        self._transport: PeerTransport | None = None
        self._peer_joined = False
        self._restarts = 0
        self._pending_remote_candidates: list[IceCandidatePayload] = []
        self._pending_local_candidates: list[IceCandidatePayload] = []
        self._establish_timer: asyncio.Task | None = None
        self._disconnect_timer: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

        self._on_state_change: list = []  # async fn(state, reason)
        self._on_transport_open: list = []  # async fn(transport)
        self._on_transport_lost: list = []  # async fn(reason)
        self._on_receiver_joined: list = []  # async fn()
        self._on_receiver_ready: list = []  # async fn()
        self._on_cancel_request: list = []  # async fn(transfer_id)

        signaling.on_message(self.handle_signal)
        signaling.on_failure(self._handle_signaling_failure)

    # --- public API ---

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def role(self) -> PeerRole:
        return self._role

    @property
    def is_initiator(self) -> bool:
        return self._role == PeerRole.INITIATOR

    @property
    def transport(self) -> PeerTransport | None:
        return self._transport

    def on_state_change(self, callback) -> None:
        self._on_state_change.append(callback)

    def on_transport_open(self, callback) -> None:
        self._on_transport_open.append(callback)

    def on_transport_lost(self, callback) -> None:
        self._on_transport_lost.append(callback)

    def on_receiver_joined(self, callback) -> None:
        self._on_receiver_joined.append(callback)

    def on_receiver_ready(self, callback) -> None:
        self._on_receiver_ready.append(callback)

    def on_cancel_request(self, callback) -> None:
        self._on_cancel_request.append(callback)

    async def start(self, room_id: str) -> None:
        """Join ``room_id`` on the rendezvous server in this machine's role."""
        if self._state != NegotiationState.IDLE:
            raise NegotiationError(f"Cannot start from state {self._state.value}")
        self._room_id = room_id
        if self.is_initiator:
            await self._set_state(NegotiationState.WAITING_FOR_PEER)
        await self._signaling.connect(room_id, announce_join=not self.is_initiator)
        logger.info(f"Negotiation started as {self._role.value} in room {room_id}")

    async def create_offer(self) -> bool:
        """
        Create and send an offer.

        A no-op until the responder has joined. Retries with backoff while
        the local signaling state is not "stable", then fails.
        """
        if not self.is_initiator:
            raise NegotiationError("Only the initiator creates offers")
        if not self._peer_joined or self._pc is None:
            logger.info("Deferring offer until the receiver has joined")
            return False

        for attempt in range(self._offer_max_attempts):
            if self._state in (NegotiationState.FAILED, NegotiationState.CLOSED):
                return False

            pc = self._pc
            if pc.signalingState == "stable":
                try:
                    offer = await pc.createOffer()
                    await pc.setLocalDescription(offer)
                except Exception as e:
                    logger.warning(f"Offer creation failed (attempt {attempt + 1}): {e}")
                else:
                    await self._send_local_description(OfferSignal)
                    logger.info(f"Offer sent to room {self._room_id}")
                    await self._flush_local_candidates()
                    return True
            else:
                logger.warning(
                    f"Signaling state is '{pc.signalingState}', not stable; "
                    f"offer attempt {attempt + 1}/{self._offer_max_attempts} deferred"
                )

            await asyncio.sleep(
                backoff_delay(attempt, self._offer_retry_delay, RECONNECT_MAX_DELAY)
            )

        await self._fail(
            f"Could not create an offer after {self._offer_max_attempts} attempts"
        )
        return False

    async def close(self) -> None:
        """Tear down the transport, peer connection and signaling channel."""
        self._cancel_timers()
        if self._transport is not None:
            self._transport.close()
        if self._pc is not None:
            await self._pc.close()
        await self._signaling.close()
        for task in list(self._background):
            task.cancel()
        await self._set_state(NegotiationState.CLOSED)

    # --- signaling ---

    async def handle_signal(self, message) -> None:
        if self._state in (NegotiationState.FAILED, NegotiationState.CLOSED):
            logger.debug(f"Ignoring {message.type} in state {self._state.value}")
            return

        handlers = {
            SignalingMessageType.RECEIVER_JOINED: self._handle_receiver_joined,
            SignalingMessageType.RECEIVER_READY: self._handle_receiver_ready,
            SignalingMessageType.OFFER: self._handle_offer,
            SignalingMessageType.ANSWER: self._handle_answer,
            SignalingMessageType.ICE_CANDIDATE: self._handle_remote_candidate,
            SignalingMessageType.FILE_TRANSFER_CANCEL: self._handle_cancel,
        }
        await handlers[SignalingMessageType(message.type)](message)

    async def _handle_receiver_joined(self, message) -> None:
        if not self.is_initiator:
            logger.warning("Responder received receiver-joined, ignoring")
            return

        self._peer_joined = True
        logger.info(f"Receiver joined room {self._room_id}")
        await self._notify(self._on_receiver_joined)

        if self._state == NegotiationState.WAITING_FOR_PEER:
            await self._begin_negotiation()
        elif (
            self._state == NegotiationState.NEGOTIATING
            and self._pc is not None
            and self._pc.signalingState == "have-local-offer"
        ):
            # The responder reconnected to signaling and missed our offer.
            await self._send_local_description(OfferSignal)

    async def _handle_receiver_ready(self, message) -> None:
        logger.info("Receiver reports its data channel is ready")
        await self._notify(self._on_receiver_ready)

    async def _handle_offer(self, message) -> None:
        if self.is_initiator:
            logger.warning("Initiator received an offer, ignoring")
            return
        if message.data.type != "offer":
            logger.warning(f"Malformed offer (description type {message.data.type}), ignoring")
            return

        if self._pc is None or self._pc.remoteDescription is not None:
            self._reset_peer_connection()
        await self._set_state(NegotiationState.NEGOTIATING)
        self._start_establish_timer()

        pc = self._pc
        try:
            await pc.setRemoteDescription(
                RTCSessionDescription(sdp=message.data.sdp, type="offer")
            )
            await self._apply_pending_remote_candidates()
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
        except Exception as e:
            await self._fail(f"Could not answer offer: {e}")
            return

        await self._send_local_description(AnswerSignal)
        logger.info(f"Answer sent to room {self._room_id}")
        await self._flush_local_candidates()

    async def _handle_answer(self, message) -> None:
        pc = self._pc
        if pc is None or pc.signalingState != "have-local-offer":
            state = pc.signalingState if pc is not None else "none"
            logger.warning(f"Ignoring stray answer in signaling state '{state}'")
            return
        if message.data.type != "answer":
            logger.warning(f"Malformed answer (description type {message.data.type}), ignoring")
            return

        try:
            await pc.setRemoteDescription(
                RTCSessionDescription(sdp=message.data.sdp, type="answer")
            )
            await self._apply_pending_remote_candidates()
        except Exception as e:
            await self._fail(f"Could not apply answer: {e}")
            return
        logger.info("Remote answer applied")

    async def _handle_remote_candidate(self, message) -> None:
        if self._pc is None or self._state not in (
            NegotiationState.NEGOTIATING,
            NegotiationState.CONNECTED,
            NegotiationState.DISCONNECTED,
        ):
            logger.debug("Ignoring ICE candidate before negotiation began")
            return
        if self._pc.remoteDescription is None:
            self._pending_remote_candidates.append(message.data)
            return
        await self._add_remote_candidate(message.data)

    async def _handle_cancel(self, message) -> None:
        await self._notify(self._on_cancel_request, message.data.transfer_id)

    async def _handle_signaling_failure(self, error) -> None:
        if self._state == NegotiationState.CONNECTED:
            logger.warning(f"Signaling lost while peers are connected, continuing: {error}")
            return
        await self._fail(str(error))

    # --- peer connection ---

    async def _begin_negotiation(self) -> None:
        self._reset_peer_connection()
        channel = self._pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True)
        self._attach_channel(self._pc, channel)
        await self._set_state(NegotiationState.NEGOTIATING)
        self._start_establish_timer()
        await self.create_offer()

    def _reset_peer_connection(self) -> None:
        old_pc = self._pc
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        if old_pc is not None:
            self._spawn(old_pc.close())
        self._pending_remote_candidates.clear()

        pc = self._pc_factory()
        self._pc = pc
        pc.on("iceconnectionstatechange", lambda: self._spawn(self._handle_ice_state(pc)))
        pc.on("icecandidate", lambda candidate: self._spawn(self._handle_local_candidate(pc, candidate)))
        if not self.is_initiator:
            pc.on("datachannel", lambda channel: self._attach_channel(pc, channel))

    def _attach_channel(self, pc, channel) -> None:
        if pc is not self._pc:
            return
        transport = PeerTransport(channel, low_water_mark=self._low_water_mark)
        self._transport = transport
        announced = False

        def announce() -> None:
            nonlocal announced
            if not announced and transport is self._transport:
                announced = True
                self._spawn(self._handle_transport_open(transport))

        channel.on("open", announce)
        if channel.readyState == "open":
            announce()

    async def _handle_transport_open(self, transport: PeerTransport) -> None:
        logger.info(f"Peer transport '{transport.label}' ready")
        await self._notify(self._on_transport_open, transport)
        if not self.is_initiator:
            await self._signaling.send(ReceiverReadySignal(room_id=self._room_id))

    async def _handle_ice_state(self, pc) -> None:
        if pc is not self._pc:
            return
        ice_state = pc.iceConnectionState
        logger.info(f"ICE connection state: {ice_state}")

        if ice_state == "checking":
            if self._establish_timer is None or self._establish_timer.done():
                self._establish_timer = self._spawn(self._establish_timeout())
        elif ice_state in ("connected", "completed"):
            self._cancel_timers()
            await self._set_state(NegotiationState.CONNECTED)
        elif ice_state == "disconnected":
            await self._set_state(NegotiationState.DISCONNECTED)
            if self._disconnect_timer is None or self._disconnect_timer.done():
                self._disconnect_timer = self._spawn(self._disconnect_timeout())
        elif ice_state == "failed":
            self._cancel_timers()
            await self._handle_transport_failure("ICE connection failed")

    async def _handle_local_candidate(self, pc, candidate) -> None:
        if candidate is None or pc is not self._pc:
            return
        payload = IceCandidatePayload(
            candidate="candidate:" + candidate_to_sdp(candidate),
            sdp_mid=candidate.sdpMid,
            sdp_m_line_index=candidate.sdpMLineIndex,
        )
        if pc.localDescription is None:
            self._pending_local_candidates.append(payload)
            return
        await self._signaling.send(IceCandidateSignal(room_id=self._room_id, data=payload))

    async def _flush_local_candidates(self) -> None:
        pending, self._pending_local_candidates = self._pending_local_candidates, []
        for payload in pending:
            await self._signaling.send(IceCandidateSignal(room_id=self._room_id, data=payload))

    async def _apply_pending_remote_candidates(self) -> None:
        pending, self._pending_remote_candidates = self._pending_remote_candidates, []
        for payload in pending:
            await self._add_remote_candidate(payload)

    async def _add_remote_candidate(self, payload: IceCandidatePayload) -> None:
        sdp = payload.candidate
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        try:
            candidate = candidate_from_sdp(sdp)
        except (ValueError, IndexError) as e:
            logger.warning(f"Ignoring malformed ICE candidate: {e}")
            return
        candidate.sdpMid = payload.sdp_mid
        candidate.sdpMLineIndex = payload.sdp_m_line_index
        await self._pc.addIceCandidate(candidate)

    async def _send_local_description(self, signal_cls) -> None:
        local = self._pc.localDescription
        await self._signaling.send(
            signal_cls(
                room_id=self._room_id,
                data=SessionDescription(sdp=local.sdp, type=local.type),
            )
        )

    # --- failure handling ---

    async def _handle_transport_failure(self, reason: str) -> None:
        if self._restarts >= self._max_restarts:
            await self._fail(reason)
            return

        self._restarts += 1
        logger.warning(f"{reason}; restarting negotiation ({self._restarts}/{self._max_restarts})")
        await self._notify(self._on_transport_lost, reason)

        if self.is_initiator:
            await self._begin_negotiation()
        else:
            # Wait for the initiator's fresh offer.
            await self._set_state(NegotiationState.NEGOTIATING)
            self._start_establish_timer()

    def _start_establish_timer(self) -> None:
        """(Re)start the window for reaching CONNECTED from NEGOTIATING."""
        timer = self._establish_timer
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()
        self._establish_timer = self._spawn(self._establish_timeout())

    async def _establish_timeout(self) -> None:
        await asyncio.sleep(self._connection_timeout)
        if self._state != NegotiationState.CONNECTED:
            await self._fail(
                f"Connection not established within {self._connection_timeout:.0f}s"
            )

    async def _disconnect_timeout(self) -> None:
        await asyncio.sleep(self._disconnect_grace)
        if self._state == NegotiationState.DISCONNECTED:
            await self._handle_transport_failure(
                f"Peer disconnected for more than {self._disconnect_grace:.0f}s"
            )

    async def _fail(self, reason: str) -> None:
        if self._state in (NegotiationState.FAILED, NegotiationState.CLOSED):
            return
        logger.error(f"Negotiation failed: {reason}")
        self._cancel_timers()
        await self._set_state(NegotiationState.FAILED, reason)
        await self._notify(self._on_transport_lost, reason)
        if self._transport is not None:
            self._transport.close()

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for timer in (self._establish_timer, self._disconnect_timer):
            if timer is not None and timer is not current and not timer.done():
                timer.cancel()
        self._establish_timer = None
        self._disconnect_timer = None

    # --- helpers ---

    async def _set_state(self, state: NegotiationState, reason: str | None = None) -> None:
        if state == self._state:
            return
        logger.info(f"Negotiation state: {self._state.value} -> {state.value}")
        self._state = state
        await self._notify(self._on_state_change, state, reason)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _notify(self, callbacks: list, *args) -> None:
        for cb in callbacks:
            try:
                await cb(*args)
            except Exception as e:
                logger.error(f"Negotiation callback error: {e}", exc_info=True)
