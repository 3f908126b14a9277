"""WebSocket rooms for the signaling rendezvous."""

import asyncio
import logging
import time

from fastapi import WebSocket

from config import MAX_PEERS_PER_ROOM, ROOM_FULL_CLOSE_CODE, ROOM_RESERVATION_TTL

logger = logging.getLogger(__name__)


class RoomManager:
    """Tracks which sockets are in which room and relays messages between them."""

    def __init__(
        self,
        max_peers: int = MAX_PEERS_PER_ROOM,
        reservation_ttl: float = ROOM_RESERVATION_TTL,
        clock=time.monotonic,
    ) -> None:
        self._rooms: dict[str, list[WebSocket]] = {}
        self._reserved: dict[str, float] = {}  # code -> issued at
        self._max_peers = max_peers
        self._reservation_ttl = reservation_ttl
        self._clock = clock
        self._lock = asyncio.Lock()

    def occupancy(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, []))

    def is_reserved(self, room_id: str) -> bool:
        """True while a room has members or its code was issued recently."""
        self._expire_reservations()
        return room_id in self._rooms or room_id in self._reserved

    def reserve(self, room_id: str) -> None:
        """Hold a freshly issued code until someone joins or it expires."""
        self._expire_reservations()
        self._reserved[room_id] = self._clock()

    def _expire_reservations(self) -> None:
        cutoff = self._clock() - self._reservation_ttl
        for code in [c for c, issued in self._reserved.items() if issued <= cutoff]:
            del self._reserved[code]
            logger.debug(f"Connection code {code} expired unused")

    async def join(self, room_id: str, websocket: WebSocket) -> bool:
        """Accept ``websocket`` into ``room_id``. Returns False if the room is full."""
        async with self._lock:
            members = self._rooms.setdefault(room_id, [])
            if len(members) >= self._max_peers:
                full = True
            else:
                members.append(websocket)
                self._reserved.pop(room_id, None)
                full = False

        await websocket.accept()
        if full:
            logger.warning(f"Room {room_id} is full, rejecting client")
            await websocket.close(code=ROOM_FULL_CLOSE_CODE, reason="Room is full")
            return False

        logger.info(f"Client joined room {room_id}. Members: {self.occupancy(room_id)}")
        return True

    async def leave(self, room_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            members = self._rooms.get(room_id)
            if members and websocket in members:
                members.remove(websocket)
            if members is not None and not members:
                del self._rooms[room_id]
        logger.info(f"Client left room {room_id}. Members: {self.occupancy(room_id)}")

    async def relay(self, room_id: str, sender: WebSocket, message: str) -> int:
        """Forward ``message`` to every other member of the room. Returns the count."""
        async with self._lock:
            targets = [ws for ws in self._rooms.get(room_id, []) if ws is not sender]

        delivered = 0
        dead: list[WebSocket] = []
        for ws in targets:
            try:
                await ws.send_text(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Relay to a member of room {room_id} failed: {e}")
                dead.append(ws)

        for ws in dead:
            await self.leave(room_id, ws)
        return delivered
