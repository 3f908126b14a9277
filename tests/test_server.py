import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from api.websocket import RoomManager
from config import ROOM_FULL_CLOSE_CODE
from main import app
from signaling.models import (
    OfferSignal,
    ReceiverJoinedSignal,
    SessionDescription,
    encode_signaling_message,
)


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_issue_code(client):
    code = client.post("/api/rooms").json()["code"]
    assert len(code) == 6
    assert client.get(f"/api/rooms/{code}").json() == {"code": code, "peers": 0}


def test_relays_between_peers(client):
    joined = encode_signaling_message(ReceiverJoinedSignal(room_id="RELAY1"))
    offer = encode_signaling_message(
        OfferSignal(room_id="RELAY1", data=SessionDescription(sdp="v=0", type="offer"))
    )
    with client.websocket_connect("/ws/RELAY1") as initiator:
        with client.websocket_connect("/ws/RELAY1") as responder:
            assert client.get("/api/rooms/RELAY1").json()["peers"] == 2

            responder.send_text(joined)
            assert initiator.receive_text() == joined

            initiator.send_text(offer)
            assert json.loads(responder.receive_text())["data"]["sdp"] == "v=0"


def test_invalid_and_foreign_messages_are_dropped(client):
    foreign = encode_signaling_message(ReceiverJoinedSignal(room_id="ELSEWH"))
    valid = encode_signaling_message(ReceiverJoinedSignal(room_id="DROP01"))
    with client.websocket_connect("/ws/DROP01") as a:
        with client.websocket_connect("/ws/DROP01") as b:
            a.send_text("not json")
            a.send_text(foreign)
            a.send_text(valid)
            assert b.receive_text() == valid


def test_third_peer_is_rejected(client):
    with client.websocket_connect("/ws/FULL01"):
        with client.websocket_connect("/ws/FULL01"):
            with client.websocket_connect("/ws/FULL01") as third:
                with pytest.raises(WebSocketDisconnect) as excinfo:
                    third.receive_text()
                assert excinfo.value.code == ROOM_FULL_CLOSE_CODE
            assert client.get("/api/rooms/FULL01").json()["peers"] == 2


def test_empty_room_is_removed(client):
    with client.websocket_connect("/ws/GONE01"):
        pass
    assert client.get("/api/rooms/GONE01").json()["peers"] == 0


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_unused_code_reservation_expires():
    clock = FakeClock()
    rooms = RoomManager(reservation_ttl=60.0, clock=clock)
    rooms.reserve("IDLE01")
    assert rooms.is_reserved("IDLE01")

    clock.now += 59.0
    assert rooms.is_reserved("IDLE01")

    clock.now += 1.0
    assert not rooms.is_reserved("IDLE01")
    assert rooms.occupancy("IDLE01") == 0


def test_reserve_prunes_expired_codes():
    clock = FakeClock()
    rooms = RoomManager(reservation_ttl=60.0, clock=clock)
    for n in range(100):
        rooms.reserve(f"OLD{n:03d}")
    clock.now += 120.0
    rooms.reserve("NEW001")
    assert list(rooms._reserved) == ["NEW001"]
    assert rooms.is_reserved("NEW001")
    assert not any(rooms.is_reserved(f"OLD{n:03d}") for n in range(100))
