from __future__ import annotations

import asyncio

import pytest

from homedash.core.errors import StreamClosed
from homedash.core.models import StreamStatus
from homedash.core.store import Slice, StateStore
from homedash.core.stream import StreamHandlers, StreamSession


@pytest.mark.asyncio
async def test_remote_close_schedules_one_reconnect_while_view_active(connector, wait_until):
    store = StateStore()
    session = StreamSession("telemetry", "ws://dash/ws/monitor", reconnect_delay=0.05, connector=connector, store=store)
    session.activate()
    await session.open()
    await wait_until(lambda: session.is_open)
    assert store.get(Slice.CONNECTION, "telemetry").status is StreamStatus.OPEN

    connector.latest.drop()
    await wait_until(lambda: session.reconnect_pending)
    assert session.status is StreamStatus.CLOSED
    assert store.get(Slice.CONNECTION, "telemetry").reconnect_pending is True

    await wait_until(lambda: len(connector.connections) == 2 and session.is_open)
    assert connector.urls == ["ws://dash/ws/monitor", "ws://dash/ws/monitor"]
    assert not session.reconnect_pending
    await session.dispose()


@pytest.mark.asyncio
async def test_deactivating_view_cancels_pending_reconnect(connector, wait_until):
    session = StreamSession("telemetry", "ws://dash/ws/monitor", reconnect_delay=0.05, connector=connector)
    session.activate()
    await session.open()
    await wait_until(lambda: session.is_open)

    connector.latest.drop()
    await wait_until(lambda: session.reconnect_pending)
    session.deactivate()

    assert not session.reconnect_pending
    assert session.status is StreamStatus.IDLE
    await asyncio.sleep(0.1)
    assert len(connector.connections) == 1
    await session.dispose()


@pytest.mark.asyncio
async def test_close_while_view_inactive_goes_idle_without_reconnect(connector, wait_until):
    session = StreamSession("telemetry", "ws://dash/ws/monitor", reconnect_delay=0.01, connector=connector)
    await session.open()
    await wait_until(lambda: session.is_open)

    connector.latest.drop()
    await wait_until(lambda: session.status is StreamStatus.IDLE)
    await asyncio.sleep(0.05)
    assert len(connector.connections) == 1


@pytest.mark.asyncio
async def test_session_without_reconnect_policy_never_reopens(connector, wait_until):
    closed = []
    session = StreamSession(
        "terminal",
        "ws://dash/ws/terminal",
        handlers=StreamHandlers(on_close=closed.append),
        reconnect_delay=None,
        connector=connector,
    )
    session.activate()
    await session.open()
    await wait_until(lambda: session.is_open)

    connector.latest.drop()
    await wait_until(lambda: session.status is StreamStatus.CLOSED)
    await asyncio.sleep(0.05)

    assert not session.reconnect_pending
    assert len(connector.connections) == 1
    assert len(closed) == 1 and isinstance(closed[0], StreamClosed)


@pytest.mark.asyncio
async def test_explicit_close_suppresses_racing_reconnect(connector, wait_until):
    session = StreamSession("telemetry", "ws://dash/ws/monitor", reconnect_delay=0.01, connector=connector)
    session.activate()
    await session.open()
    await wait_until(lambda: session.is_open)

    connection = connector.latest
    connection.drop()
    await session.close()
    await asyncio.sleep(0.05)

    assert connection.closed
    assert session.status is StreamStatus.CLOSED
    assert not session.reconnect_pending
    assert len(connector.connections) == 1


@pytest.mark.asyncio
async def test_failed_connect_marks_error_then_recovers(connector_factory, wait_until):
    connector = connector_factory(failures=1)
    errors = []
    session = StreamSession(
        "telemetry",
        "ws://dash/ws/monitor",
        handlers=StreamHandlers(on_error=errors.append),
        reconnect_delay=0.02,
        connector=connector,
    )
    session.activate()
    await session.open()
    await wait_until(lambda: len(errors) == 1)

    await wait_until(lambda: session.is_open)
    assert not session.errored
    assert len(connector.urls) == 2
    await session.dispose()


@pytest.mark.asyncio
async def test_messages_dispatched_in_order_and_handler_errors_contained(connector, wait_until):
    received = []

    async def on_message(raw):
        if raw == "bad":
            raise ValueError("cannot handle")
        received.append(raw)

    session = StreamSession(
        "telemetry",
        "ws://dash/ws/monitor",
        handlers=StreamHandlers(on_message=on_message),
        connector=connector,
    )
    await session.open()
    await wait_until(lambda: session.is_open)

    for message in ("a", "bad", "b", "c"):
        connector.latest.feed(message)
    await wait_until(lambda: len(received) == 3)

    assert received == ["a", "b", "c"]
    assert session.is_open
    await session.dispose()


@pytest.mark.asyncio
async def test_send_only_while_open(connector, wait_until):
    session = StreamSession("terminal", "ws://dash/ws/terminal", connector=connector)
    assert await session.send("ls") is False

    await session.open()
    await wait_until(lambda: session.is_open)
    assert await session.send("ls") is True
    assert connector.latest.sent == ["ls"]

    await session.close()
    assert await session.send("pwd") is False


@pytest.mark.asyncio
async def test_dispose_releases_connection_slot(connector, wait_until):
    store = StateStore()
    session = StreamSession("terminal", "ws://dash/ws/terminal", connector=connector, store=store)
    with pytest.raises(ValueError):
        StreamSession("terminal", "ws://dash/ws/terminal", connector=connector, store=store)

    await session.open()
    await wait_until(lambda: session.is_open)
    await session.dispose()

    assert store.owner(Slice.CONNECTION, "terminal") is None
    assert session.status is StreamStatus.IDLE
    with pytest.raises(StreamClosed):
        await session.open()
