from __future__ import annotations

import json

import pytest

from homedash.controllers.telemetry import TelemetryFeed
from homedash.core.models import StreamStatus
from homedash.core.store import Slice, StateStore


FRAME = {
    "cpu": {"usage": 37.5, "cores": 8, "modelName": "Ryzen 7", "temperature": 64.0},
    "memory": {"used": 8589934592, "total": 17179869184, "available": 8589934592, "usedPercent": 50.0},
    "gpu": {"available": False},
    "network": {"speedSent": 2048, "speedRecv": 1048576, "bytesSent": 1024, "bytesRecv": 4096},
    "disks": [{"mountPoint": "/", "used": 50, "total": 100, "usedPercent": 50.0}],
    "time": 1700000000,
}


@pytest.mark.asyncio
async def test_frames_replace_telemetry_slice(connector, wait_until):
    store = StateStore()
    feed = TelemetryFeed(store, "ws://dash/ws/monitor", reconnect_delay=0.05, connector=connector)
    await feed.connect()
    await wait_until(lambda: feed.status is StreamStatus.OPEN)

    connector.latest.feed(json.dumps(FRAME))
    await wait_until(lambda: feed.frames == 1)
    assert feed.latest.cpu.model_name == "Ryzen 7"
    assert list(store.items(Slice.TELEMETRY)) == ["host"]

    second = dict(FRAME, cpu={"usage": 90.0, "cores": 8})
    connector.latest.feed(json.dumps(second))
    await wait_until(lambda: feed.frames == 2)
    assert feed.latest.cpu.usage == 90.0
    assert feed.latest.cpu.temperature is None
    await feed.dispose()
    assert store.owner(Slice.TELEMETRY, "host") is None


@pytest.mark.asyncio
async def test_malformed_frame_is_dropped(connector, wait_until):
    store = StateStore()
    feed = TelemetryFeed(store, "ws://dash/ws/monitor", connector=connector)
    await feed.connect()
    await wait_until(lambda: feed.status is StreamStatus.OPEN)

    connector.latest.feed(json.dumps(FRAME))
    connector.latest.feed("{not json")
    connector.latest.feed(json.dumps({"disks": [{"used": 1}]}))
    connector.latest.feed(json.dumps(dict(FRAME, time=1700000005)))
    await wait_until(lambda: feed.frames == 2)

    assert feed.latest.time == 1700000005
    assert feed.status is StreamStatus.OPEN
    await feed.dispose()


def test_telemetry_slot_has_a_single_owner():
    store = StateStore()
    store.claim(Slice.TELEMETRY, "host", "someone")
    with pytest.raises(ValueError):
        TelemetryFeed(store, "ws://dash/ws/monitor")
