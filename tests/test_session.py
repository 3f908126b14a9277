import asyncio

import pytest

from errors import TransferError
from fakes import FakeChannel, FakePeerConnection, FakeSignaling, eventually
from signaling.models import ReceiverJoinedSignal
from transfer.models import TransferSettings
from transfer.session import PeerSession, SessionEvent

ROOM = "K7QX2M"


class LinkedSignaling(FakeSignaling):
    """Hands every sent message straight to the other side's handlers."""

    def __init__(self):
        super().__init__()
        self.peer: "LinkedSignaling | None" = None
        self._deliveries: set = set()

    async def connect(self, room_id, announce_join=False):
        await super().connect(room_id, announce_join)
        if announce_join:
            await self.send(ReceiverJoinedSignal(room_id=room_id))

    async def send(self, message):
        self.sent.append(message)
        task = asyncio.ensure_future(self.peer.deliver(message))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)
        return True


class Wire:
    """Connects the initiator's data channel to whatever the responder answers with."""

    def __init__(self):
        self.initiator_pc = None
        self.initiator_end: FakeChannel | None = None
        self.responder_end: FakeChannel | None = None

    def make_initiator_pc(self):
        wire = self

        class InitiatorPeerConnection(FakePeerConnection):
            def createDataChannel(self, label, ordered=True):
                a = FakeChannel(label, ready_state="connecting")
                b = FakeChannel(label, ready_state="connecting")
                a.peer, b.peer = b, a
                wire.initiator_end, wire.responder_end = a, b
                self.channels.append(a)
                return a

        self.initiator_pc = InitiatorPeerConnection()
        return self.initiator_pc

    def make_responder_pc(self):
        wire = self

        class ResponderPeerConnection(FakePeerConnection):
            async def setLocalDescription(self, description):
                await super().setLocalDescription(description)
                if description.type == "answer":
                    asyncio.get_running_loop().call_soon(wire.establish, self)

        return ResponderPeerConnection()

    def establish(self, responder_pc):
        responder_pc.emit("datachannel", self.responder_end)
        self.responder_end.open()
        self.initiator_end.open()
        self.initiator_pc.set_ice_state("connected")
        responder_pc.set_ice_state("connected")


class EventLog:
    def __init__(self):
        self.events = []

    async def __call__(self, event_type, data):
        self.events.append((event_type, data))

    def of(self, event: SessionEvent):
        return [data for kind, data in self.events if kind == event.value]


async def connected_pair(settings):
    wire = Wire()
    sender_signaling, receiver_signaling = LinkedSignaling(), LinkedSignaling()
    sender_signaling.peer, receiver_signaling.peer = receiver_signaling, sender_signaling

    sender = PeerSession(
        settings,
        signaling_factory=lambda: sender_signaling,
        peer_connection_factory=wire.make_initiator_pc,
    )
    receiver = PeerSession(
        settings,
        signaling_factory=lambda: receiver_signaling,
        peer_connection_factory=wire.make_responder_pc,
    )
    sender_log, receiver_log = EventLog(), EventLog()
    sender.on_event(sender_log)
    receiver.on_event(receiver_log)

    await sender.initiate_as_sender(ROOM)
    await receiver.initiate_as_receiver(ROOM)
    await eventually(lambda: sender.is_channel_open and receiver.is_channel_open)
    return wire, sender, receiver, sender_log, receiver_log


def test_file_arrives_intact(tmp_path):
    data = bytes((i * 7) % 256 for i in range(1_000_000))
    path = tmp_path / "photo.jpg"
    path.write_bytes(data)

    async def scenario():
        _, sender, receiver, sender_log, receiver_log = await connected_pair(
            TransferSettings(chunk_size=65536)
        )
        transfer_id = await sender.send_file(path)
        await eventually(lambda: receiver_log.of(SessionEvent.FILE_RECEIVED), timeout=5.0)
        await eventually(
            lambda: any(s["state"] == "completed" for s in sender_log.of(SessionEvent.TRANSFER_STATE))
        )
        await sender.shutdown()
        await receiver.shutdown()
        return transfer_id, sender_log, receiver_log

    transfer_id, sender_log, receiver_log = asyncio.run(scenario())

    received = receiver_log.of(SessionEvent.FILE_RECEIVED)[0]
    assert received["transfer_id"] == transfer_id
    assert received["name"] == "photo.jpg"
    assert received["mime_type"] == "image/jpeg"
    assert received["data"] == data

    assert sender_log.of(SessionEvent.RECEIVER_JOINED) == [{}]
    assert sender_log.of(SessionEvent.DATA_CHANNEL_OPEN) == [{"label": "fileTransfer"}]
    assert sender_log.of(SessionEvent.PROGRESS_UPDATE)[-1]["percent"] == 100.0
    assert receiver_log.of(SessionEvent.PROGRESS_UPDATE)[-1]["percent"] == 100.0
    final = sender_log.of(SessionEvent.PROGRESS_UPDATE)[-1]
    assert final["speed_bps"] == 0.0 and final["eta_seconds"] == 0.0
    assert {"state": "connected", "reason": None} in sender_log.of(SessionEvent.CONNECTION_STATE_CHANGED)
    assert sender_log.of(SessionEvent.TRANSFER_ERROR) == []


def test_only_the_initiator_sends(tmp_path):
    path = tmp_path / "a.txt"
    path.write_text("hello")

    async def scenario():
        _, sender, receiver, _, _ = await connected_pair(TransferSettings())
        with pytest.raises(TransferError):
            await receiver.send_file(path)
        await sender.shutdown()
        await receiver.shutdown()

    asyncio.run(scenario())


def test_send_before_channel_open_is_rejected(tmp_path):
    path = tmp_path / "a.txt"
    path.write_text("hello")

    async def scenario():
        session = PeerSession(
            signaling_factory=FakeSignaling, peer_connection_factory=FakePeerConnection
        )
        await session.initiate_as_sender(ROOM)
        with pytest.raises(TransferError):
            await session.send_file(path)
        await session.shutdown()

    asyncio.run(scenario())


def test_closed_channel_fails_live_transfers(tmp_path):
    path = tmp_path / "big.bin"
    path.write_bytes(bytes(512 * 1024))

    async def scenario():
        wire, sender, receiver, sender_log, _ = await connected_pair(
            TransferSettings(chunk_size=1024, max_in_flight_chunks=1)
        )
        transfer_id = await sender.send_file(path)
        wire.initiator_end.close()
        await eventually(lambda: sender_log.of(SessionEvent.TRANSFER_ERROR))
        await sender.shutdown()
        await receiver.shutdown()
        return transfer_id, sender, sender_log

    transfer_id, sender, sender_log = asyncio.run(scenario())

    error = sender_log.of(SessionEvent.TRANSFER_ERROR)[0]
    assert error["transfer_id"] == transfer_id
    assert sender.get_transfers() == []
    assert sender_log.of(SessionEvent.TRANSFER_STATE)[-1]["state"] == "failed"


def test_receiver_cancel_reaches_sender(tmp_path):
    path = tmp_path / "big.bin"
    path.write_bytes(bytes(2 * 1024 * 1024))

    async def scenario():
        _, sender, receiver, sender_log, receiver_log = await connected_pair(
            TransferSettings(chunk_size=1024, max_in_flight_chunks=1)
        )
        transfer_id = await sender.send_file(path)
        await eventually(lambda: receiver.get_transfers())
        cancelled = await receiver.cancel_transfer(transfer_id)
        await eventually(
            lambda: any(s["state"] == "cancelled" for s in sender_log.of(SessionEvent.TRANSFER_STATE))
        )
        await sender.shutdown()
        await receiver.shutdown()
        return cancelled, sender, receiver_log

    cancelled, sender, receiver_log = asyncio.run(scenario())
    assert cancelled
    assert sender.get_transfers() == []
    assert receiver_log.of(SessionEvent.FILE_RECEIVED) == []
