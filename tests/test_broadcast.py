"""Tests for BroadcastHub fan-out and the WebSocket sink adapter."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.websockets import WebSocketState

from conftest import FakeSink, StalledSink
from pricefeed.pairs import PairKey
from pricefeed.providers.base import NormalizedTick
from pricefeed.streaming.broadcast import BroadcastHub, WebSocketSink


TICK = NormalizedTick(pair=PairKey.ETH_USDT, price=2001.25, ts=1_700_000_000_123, hourly_avg=2000.0)


def test_encode_wire_format():
    msg = json.loads(BroadcastHub.encode(TICK))
    assert msg == {
        "type": "price",
        "data": {"pair": "ETH/USDT", "price": 2001.25, "ts": 1_700_000_000_123, "hourlyAvg": 2000.0},
    }


@pytest.mark.asyncio
async def test_broadcast_reaches_all_ready_sinks():
    hub = BroadcastHub()
    sinks = [FakeSink() for _ in range(3)]
    for s in sinks:
        hub.add(s)

    delivered = await hub.broadcast(TICK)

    assert delivered == 3
    for s in sinks:
        assert len(s.messages) == 1
        assert json.loads(s.messages[0])["data"]["pair"] == "ETH/USDT"


@pytest.mark.asyncio
async def test_failing_sink_does_not_block_others():
    hub = BroadcastHub()
    good_a, bad, good_b = FakeSink(), FakeSink(fail=True), FakeSink()
    for s in (good_a, bad, good_b):
        hub.add(s)

    delivered = await hub.broadcast(TICK)  # must not raise

    assert delivered == 2
    assert len(good_a.messages) == 1
    assert len(good_b.messages) == 1
    assert bad.messages == []
    # The hub never removes sinks itself
    assert len(hub) == 3


@pytest.mark.asyncio
async def test_stalled_sink_times_out_without_blocking_others():
    hub = BroadcastHub(send_timeout=0.05)
    healthy, stalled = FakeSink(), StalledSink()
    hub.add(healthy)
    hub.add(stalled)

    delivered = await asyncio.wait_for(hub.broadcast(TICK), 1.0)

    assert delivered == 1
    assert stalled.attempts == 1
    assert len(healthy.messages) == 1
    assert len(hub) == 2


@pytest.mark.asyncio
async def test_not_ready_sinks_are_skipped():
    hub = BroadcastHub()
    ready, connecting = FakeSink(), FakeSink(ready=False)
    hub.add(ready)
    hub.add(connecting)

    assert await hub.broadcast(TICK) == 1
    assert connecting.messages == []


@pytest.mark.asyncio
async def test_broadcast_with_no_sinks():
    assert await BroadcastHub().broadcast(TICK) == 0


def test_add_remove():
    hub = BroadcastHub()
    sink = FakeSink()
    hub.add(sink)
    assert len(hub) == 1
    hub.remove(sink)
    hub.remove(sink)  # removing twice is harmless
    assert len(hub) == 0


@pytest.mark.asyncio
async def test_websocket_sink_ready_and_send():
    ws = MagicMock()
    ws.client_state = WebSocketState.CONNECTED
    ws.application_state = WebSocketState.CONNECTED
    ws.send_text = AsyncMock()
    sink = WebSocketSink(ws)

    assert sink.ready is True
    await sink.send_text("hello")
    ws.send_text.assert_awaited_once_with("hello")

    ws.application_state = WebSocketState.DISCONNECTED
    assert sink.ready is False
    ws.client_state = WebSocketState.CONNECTING
    ws.application_state = WebSocketState.CONNECTED
    assert sink.ready is False
