"""
Signaling channel: persistent WebSocket connection to the rendezvous server.

One connection per room. Abnormal closures are retried with capped
exponential backoff; a normal close (or ``close()``) ends the channel, and
a room-full close (4003) fails it immediately.
Messages sent while the socket is down are dropped rather than queued:
negotiation state is only meaningful on the connection it was made for.
"""

import asyncio
import logging
from urllib.parse import quote

from pydantic import ValidationError
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException
from websockets.protocol import State

from config import (
    MAX_RECONNECT_ATTEMPTS,
    RECONNECT_BASE_DELAY,
    RECONNECT_MAX_DELAY,
    RECONNECT_STABLE_AFTER,
    ROOM_FULL_CLOSE_CODE,
    SIGNALING_URL,
)
from errors import SignalingError
from signaling.models import (
    ReceiverJoinedSignal,
    SignalingMessage,
    encode_signaling_message,
    parse_signaling_message,
)

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base: float = RECONNECT_BASE_DELAY,
                  cap: float = RECONNECT_MAX_DELAY) -> float:
    """Delay before reconnection attempt ``attempt`` (0-based): min(base * 2^n, cap)."""
    return min(base * (2 ** attempt), cap)


class SignalingChannel:
    """Client side of the rendezvous protocol for a single room."""

    def __init__(
        self,
        base_url: str = SIGNALING_URL,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        base_delay: float = RECONNECT_BASE_DELAY,
        max_delay: float = RECONNECT_MAX_DELAY,
        stable_after: float = RECONNECT_STABLE_AFTER,
        connector=connect,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._max_reconnect_attempts = max_reconnect_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._stable_after = stable_after
        self._connector = connector

        self._room_id: str | None = None
        self._announce_join = False
        self._ws = None
        self._run_task: asyncio.Task | None = None
        self._closing = False

        self._on_message: list = []  # async fn(message)
        self._on_connected: list = []  # async fn()
        self._on_failure: list = []  # async fn(error)
        self._on_reconnecting: list = []  # async fn(attempt, delay)

    @property
    def room_id(self) -> str | None:
        return self._room_id

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    def url_for(self, room_id: str) -> str:
        return f"{self._base_url}/{quote(room_id, safe='')}"

    def on_message(self, callback) -> None:
        self._on_message.append(callback)

    def on_connected(self, callback) -> None:
        self._on_connected.append(callback)

    def on_failure(self, callback) -> None:
        self._on_failure.append(callback)

    def on_reconnecting(self, callback) -> None:
        self._on_reconnecting.append(callback)

    async def connect(self, room_id: str, announce_join: bool = False) -> None:
        """
        Start the connection loop for ``room_id``.

        With ``announce_join`` (the responder) a receiver-joined message is
        sent every time the socket opens, so the initiator never negotiates
        into an empty room.
        """
        if self._run_task is not None:
            raise SignalingError(f"Already connected to room {self._room_id}")
        self._room_id = room_id
        self._announce_join = announce_join
        self._closing = False
        self._run_task = asyncio.create_task(self._run())

    async def send(self, message: SignalingMessage) -> bool:
        """Send if the socket is open. Returns False when the message was dropped."""
        if not self.is_open:
            logger.debug(f"Signaling not open, dropping {message.type}")
            return False
        try:
            await self._ws.send(encode_signaling_message(message))
        except ConnectionClosed:
            logger.debug(f"Signaling closed mid-send, dropping {message.type}")
            return False
        return True

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            try:
                await self._ws.close()
            except WebSocketException as e:
                logger.debug(f"Error closing signaling socket: {e}")
        if self._run_task and not self._run_task.done():
            self._run_task.cancel()
            await asyncio.gather(self._run_task, return_exceptions=True)
        self._run_task = None
        logger.info(f"Signaling channel for room {self._room_id} closed")

    async def _run(self) -> None:
        url = self.url_for(self._room_id)
        loop = asyncio.get_running_loop()
        attempt = 0

        while not self._closing:
            opened_at = None
            received = False
            try:
                async with self._connector(url) as ws:
                    self._ws = ws
                    opened_at = loop.time()
                    logger.info(f"Signaling connected to room {self._room_id}")

                    if self._announce_join:
                        await self.send(ReceiverJoinedSignal(room_id=self._room_id))
                    await self._notify(self._on_connected)

                    async for raw in ws:
                        received = True
                        await self._dispatch(raw)

                logger.info(f"Signaling connection for room {self._room_id} closed normally")
                break

            except ConnectionClosedOK:
                logger.info(f"Signaling connection for room {self._room_id} closed normally")
                break

            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                if self._closing:
                    break
                if _close_code(e) == ROOM_FULL_CLOSE_CODE:
                    error = SignalingError(f"Room {self._room_id} is full")
                    logger.error(f"Signaling for room {self._room_id} failed: {error}")
                    await self._notify(self._on_failure, error)
                    break

                # Consecutive failures count until a connection carries traffic or stays up.
                if opened_at is not None and (
                    received or loop.time() - opened_at >= self._stable_after
                ):
                    attempt = 0

                if attempt >= self._max_reconnect_attempts:
                    error = SignalingError(
                        f"Gave up after {attempt} reconnection attempts: {e}"
                    )
                    logger.error(f"Signaling for room {self._room_id} failed: {error}")
                    await self._notify(self._on_failure, error)
                    break

                delay = backoff_delay(attempt, self._base_delay, self._max_delay)
                attempt += 1
                logger.warning(
                    f"Signaling connection lost ({e}); reconnecting in {delay:.1f}s "
                    f"(attempt {attempt}/{self._max_reconnect_attempts})"
                )
                await self._notify(self._on_reconnecting, attempt, delay)
                await asyncio.sleep(delay)

            finally:
                self._ws = None

    async def _dispatch(self, raw) -> None:
        try:
            message = parse_signaling_message(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid signaling message: {e.error_count()} error(s)")
            return

        if message.room_id != self._room_id:
            logger.warning(f"Ignoring {message.type} for foreign room {message.room_id}")
            return

        await self._notify(self._on_message, message)

    async def _notify(self, callbacks: list, *args) -> None:
        for cb in callbacks:
            try:
                await cb(*args)
            except Exception as e:
                logger.error(f"Signaling callback error: {e}", exc_info=True)


def _close_code(error: Exception) -> int | None:
    """Close code the server sent, if ``error`` is a websocket closure."""
    if isinstance(error, ConnectionClosed) and error.rcvd is not None:
        return error.rcvd.code
    return None
