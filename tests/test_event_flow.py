from __future__ import annotations

import asyncio
import json

import pytest

from homedash.controllers.base import OutcomeReporter
from homedash.core.message_bus import MessageBus
from homedash.core.models import ActionKind, EventEnvelope, EventType, Notice, Severity
from homedash.core.store import StateStore
from homedash.core.tracker import ActionTracker
from homedash.services.audit_logger import DEFAULT_AUDIT_LOG, AuditLogger


@pytest.mark.asyncio
async def test_subscribers_only_see_their_target():
    bus = MessageBus()

    async def first(target_id):
        async for envelope in bus.subscribe(EventType.NOTICE, target_id=target_id):
            return envelope

    comfy = asyncio.create_task(first("comfy"))
    anything = asyncio.create_task(first(None))
    await asyncio.sleep(0)

    bus.notify(Notice(severity=Severity.INFO, message="Jupyter stopped", target_id="jupyter"))
    bus.notify(Notice(severity=Severity.SUCCESS, message="ComfyUI started", target_id="comfy"))

    assert (await asyncio.wait_for(anything, timeout=1)).target_id == "jupyter"
    assert (await asyncio.wait_for(comfy, timeout=1)).payload["message"] == "ComfyUI started"
    await bus.close()


@pytest.mark.asyncio
async def test_close_unblocks_subscribers_and_rejects_publishes():
    bus = MessageBus()
    received = []

    async def drain():
        async for envelope in bus.subscribe(EventType.STREAM_STATUS):
            received.append(envelope)

    task = asyncio.create_task(drain())
    await asyncio.sleep(0)
    await bus.close()
    await asyncio.wait_for(task, timeout=1)

    assert received == []
    bus.notify(Notice(severity=Severity.INFO, message="ignored"))
    with pytest.raises(RuntimeError):
        bus.publish_nowait(EventEnvelope(type=EventType.NOTICE, target_id="*", payload={}))


@pytest.mark.asyncio
async def test_outcome_is_reported_once_to_bus_and_audit_log(tmp_path):
    bus = MessageBus()
    audit = AuditLogger(tmp_path / "audit" / "actions.log")
    reporter = OutcomeReporter(message_bus=bus, audit_logger=audit)
    tracker = ActionTracker(StateStore(), message_bus=bus)

    async def outcomes():
        async for envelope in bus.subscribe(EventType.ACTION_OUTCOME, target_id="comfy"):
            return envelope

    outcome_waiter = asyncio.create_task(outcomes())
    await asyncio.sleep(0)

    async def issue():
        return {"success": True}

    async def probe(_ack):
        return {"running": True}

    action = tracker.track(
        "comfy",
        ActionKind.LAUNCH,
        issue=issue,
        probe=probe,
        is_done=lambda status: status["running"],
        budget=3,
        interval=0.01,
    )
    reporter.watch(action, lambda outcome: "ComfyUI started")
    reporter.watch(action, lambda outcome: "reported twice")
    await action.wait()
    await reporter.aclose()

    envelope = await asyncio.wait_for(outcome_waiter, timeout=1)
    assert envelope.payload["outcome"] == "succeeded"

    (line,) = audit.path.read_text().splitlines()
    record = json.loads(line)
    assert record["event"] == "launch_outcome"
    assert record["target_id"] == "comfy"
    assert record["payload"]["attempts_used"] == 1
    assert record["payload"]["last_status"] == {"running": True}
    await bus.close()


@pytest.mark.parametrize("configured", [None, "", "   "])
def test_audit_log_falls_back_to_default_path(configured, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    if configured is None:
        monkeypatch.delenv("HOMEDASH_AUDIT_LOG", raising=False)
    else:
        monkeypatch.setenv("HOMEDASH_AUDIT_LOG", configured)

    audit = AuditLogger()

    assert audit.path == DEFAULT_AUDIT_LOG
    assert (tmp_path / "artifacts").is_dir()


def test_audit_log_path_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("HOMEDASH_AUDIT_LOG", str(tmp_path / "logs" / "audit.jsonl"))
    assert AuditLogger().path == tmp_path / "logs" / "audit.jsonl"
