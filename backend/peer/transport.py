"""
Peer transport: a thin async wrapper over an RTCDataChannel.

The channel itself (ICE, DTLS, SCTP) is provided by aiortc. This wrapper
only turns its event-emitter interface into awaitable operations:
``receive()`` for incoming messages, ``wait_drained()`` for backpressure.
"""

import asyncio
import logging

from config import BUFFERED_AMOUNT_LOW_THRESHOLD
from errors import TransportClosedError

logger = logging.getLogger(__name__)

# Fallback re-check while waiting for "bufferedamountlow", in case the
# buffer drained without crossing the threshold from above.
_DRAIN_POLL_INTERVAL = 0.1


class PeerTransport:
    """Ordered, reliable message channel between the two peers."""

    def __init__(self, channel, low_water_mark: int = BUFFERED_AMOUNT_LOW_THRESHOLD) -> None:
        self._channel = channel
        self._low_water_mark = low_water_mark
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._opened = asyncio.Event()
        self._drained = asyncio.Event()
        self._closed = False

        channel.bufferedAmountLowThreshold = low_water_mark
        channel.on("open", self._handle_open)
        channel.on("message", self._handle_message)
        channel.on("close", self._handle_close)
        channel.on("bufferedamountlow", self._handle_drained)

        if channel.readyState == "open":
            self._opened.set()

    @property
    def label(self) -> str:
        return self._channel.label

    @property
    def is_open(self) -> bool:
        return not self._closed and self._channel.readyState == "open"

    async def wait_open(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._opened.wait(), timeout=timeout)

    def send(self, data: str | bytes) -> None:
        """Queue a text or binary message on the channel."""
        if not self.is_open:
            raise TransportClosedError("Peer data channel is not open")
        self._channel.send(data)

    async def wait_drained(self) -> None:
        """Suspend until the send buffer is at or below the low-water mark."""
        while self._channel.bufferedAmount > self._low_water_mark:
            if not self.is_open:
                raise TransportClosedError("Peer data channel closed while draining")
            self._drained.clear()
            try:
                await asyncio.wait_for(self._drained.wait(), timeout=_DRAIN_POLL_INTERVAL)
            except asyncio.TimeoutError:
                pass
        if not self.is_open:
            raise TransportClosedError("Peer data channel is not open")

    async def receive(self) -> str | bytes | None:
        """Next incoming message, or None once the channel has closed."""
        if self._closed and self._incoming.empty():
            return None
        return await self._incoming.get()

    def close(self) -> None:
        if not self._closed:
            self._channel.close()
            self._handle_close()

    # --- channel events ---

    def _handle_open(self) -> None:
        logger.info(f"Data channel '{self.label}' open")
        self._opened.set()

    def _handle_message(self, message) -> None:
        self._incoming.put_nowait(message)

    def _handle_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info(f"Data channel '{self.label}' closed")
        self._incoming.put_nowait(None)
        self._drained.set()

    def _handle_drained(self) -> None:
        self._drained.set()
