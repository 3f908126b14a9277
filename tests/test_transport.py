import asyncio

import pytest

from errors import TransportClosedError
from fakes import FakeChannel
from peer.transport import PeerTransport


def test_sets_low_water_mark_on_channel():
    channel = FakeChannel()
    PeerTransport(channel, low_water_mark=4096)
    assert channel.bufferedAmountLowThreshold == 4096


def test_wait_drained_blocks_until_buffer_low():
    async def scenario():
        channel = FakeChannel()
        transport = PeerTransport(channel, low_water_mark=1000)
        channel.bufferedAmount = 5000

        waiter = asyncio.create_task(transport.wait_drained())
        await asyncio.sleep(0.02)
        blocked = not waiter.done()

        channel.set_buffered(800)
        await asyncio.wait_for(waiter, timeout=1.0)
        return blocked

    assert asyncio.run(scenario())


def test_wait_drained_raises_when_closed():
    async def scenario():
        channel = FakeChannel()
        transport = PeerTransport(channel, low_water_mark=1000)
        channel.bufferedAmount = 5000
        waiter = asyncio.create_task(transport.wait_drained())
        await asyncio.sleep(0.01)
        channel.close()
        with pytest.raises(TransportClosedError):
            await asyncio.wait_for(waiter, timeout=1.0)

    asyncio.run(scenario())


def test_receive_returns_none_after_close():
    async def scenario():
        channel = FakeChannel()
        transport = PeerTransport(channel)
        channel.emit("message", b"frame")
        channel.emit("message", "text")
        channel.close()
        return [await transport.receive() for _ in range(4)]

    assert asyncio.run(scenario()) == [b"frame", "text", None, None]


def test_send_after_close_raises():
    async def scenario():
        channel = FakeChannel()
        transport = PeerTransport(channel)
        transport.close()
        assert channel.readyState == "closed"
        with pytest.raises(TransportClosedError):
            transport.send("hello")

    asyncio.run(scenario())


def test_wait_open():
    async def scenario():
        channel = FakeChannel(ready_state="connecting")
        transport = PeerTransport(channel)
        assert not transport.is_open
        asyncio.get_running_loop().call_later(0.01, channel.open)
        await transport.wait_open(timeout=1.0)
        return transport.is_open

    assert asyncio.run(scenario())
