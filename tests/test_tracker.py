from __future__ import annotations

import asyncio
from typing import Any, List

import pytest

from homedash.core.errors import (
    IssueFailed,
    ProbeExhausted,
    ProbeTransientError,
    RemoteFailed,
    Timeout,
    WriterConflict,
)
from homedash.core.message_bus import MessageBus
from homedash.core.models import ActionKind, EventType, JobStatus, ProcessStatus, Severity
from homedash.core.store import Slice, StateStore
from homedash.core.tracker import ActionTracker, OutcomeKind, StoreSlot, pending_key


class ScriptedProbe:
    """Returns the scripted results in order, repeating the last one."""

    def __init__(self, results: List[Any]) -> None:
        self.results = results
        self.calls: List[Any] = []

    async def __call__(self, ack: Any) -> Any:
        self.calls.append(ack)
        result = self.results[min(len(self.calls), len(self.results)) - 1]
        if isinstance(result, Exception):
            raise result
        return result


class CountingIssue:
    def __init__(self, ack: Any = "ack", error: Exception | None = None) -> None:
        self.ack = ack
        self.error = error
        self.calls = 0

    async def __call__(self) -> Any:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.ack


def _track_launch(tracker: ActionTracker, probe, *, issue=None, budget: int = 180, **kwargs):
    return tracker.track(
        "svc1",
        ActionKind.LAUNCH,
        issue=issue or CountingIssue(),
        probe=probe,
        is_done=lambda status: status.running,
        budget=budget,
        interval=0.01,
        slot=StoreSlot(Slice.PROCESS, "svc1"),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_launch_confirmed_after_fourth_probe():
    store = StateStore()
    tracker = ActionTracker(store)
    probe = ScriptedProbe([ProcessStatus(running=False)] * 3 + [ProcessStatus(running=True, pid=4242)])

    action = _track_launch(tracker, probe)
    assert store.get(Slice.PENDING, pending_key("svc1", ActionKind.LAUNCH)) is not None

    outcome = await asyncio.wait_for(action.wait(), timeout=2)

    assert outcome.outcome is OutcomeKind.SUCCEEDED
    assert outcome.attempts_used == 4
    assert outcome.severity is Severity.SUCCESS
    assert len(probe.calls) == 4
    assert probe.calls[0] == "ack"
    assert store.get(Slice.PROCESS, "svc1") == ProcessStatus(running=True, pid=4242)
    assert store.items(Slice.PENDING) == {}
    assert store.owner(Slice.PROCESS, "svc1") is None


@pytest.mark.asyncio
async def test_launch_times_out_and_keeps_last_observed_status():
    store = StateStore()
    tracker = ActionTracker(store)
    probe = ScriptedProbe([ProcessStatus(running=False)])

    action = _track_launch(tracker, probe, budget=5)
    outcome = await asyncio.wait_for(action.wait(), timeout=2)

    assert outcome.outcome is OutcomeKind.TIMED_OUT
    assert isinstance(outcome.error, Timeout)
    assert not isinstance(outcome.error, ProbeExhausted)
    assert outcome.severity is Severity.WARNING
    assert outcome.attempts_used == 5
    assert len(probe.calls) == 5
    assert store.get(Slice.PROCESS, "svc1") == ProcessStatus(running=False)
    with pytest.raises(Timeout):
        outcome.raise_for_outcome()


@pytest.mark.asyncio
async def test_rejected_issue_fails_without_probing():
    store = StateStore()
    tracker = ActionTracker(store)
    probe = ScriptedProbe([ProcessStatus(running=True)])

    action = _track_launch(tracker, probe, issue=CountingIssue(error=IssueFailed("port in use")))
    outcome = await asyncio.wait_for(action.wait(), timeout=2)

    assert outcome.outcome is OutcomeKind.FAILED
    assert outcome.reason == "port in use"
    assert outcome.attempts_used == 0
    assert probe.calls == []
    assert store.get(Slice.PROCESS, "svc1") is None


@pytest.mark.asyncio
async def test_unexpected_issue_error_is_reported_as_issue_failure():
    tracker = ActionTracker(StateStore())
    action = _track_launch(
        tracker, ScriptedProbe([ProcessStatus()]), issue=CountingIssue(error=RuntimeError("socket reset"))
    )
    outcome = await asyncio.wait_for(action.wait(), timeout=2)

    assert isinstance(outcome.error, IssueFailed)
    assert outcome.reason == "socket reset"


@pytest.mark.asyncio
async def test_transient_probe_errors_are_retried():
    store = StateStore()
    tracker = ActionTracker(store)
    probe = ScriptedProbe(
        [ProbeTransientError("502"), ProbeTransientError("502"), ProcessStatus(running=True, pid=7)]
    )

    outcome = await asyncio.wait_for(_track_launch(tracker, probe).wait(), timeout=2)

    assert outcome.outcome is OutcomeKind.SUCCEEDED
    assert outcome.attempts_used == 3


@pytest.mark.asyncio
async def test_budget_spent_on_probe_errors_only_is_reported_as_unknown_status():
    tracker = ActionTracker(StateStore())
    probe = ScriptedProbe([ProbeTransientError("backend down")])

    action = _track_launch(tracker, probe, budget=3, error_interval=0.01)
    outcome = await asyncio.wait_for(action.wait(), timeout=2)

    assert outcome.outcome is OutcomeKind.TIMED_OUT
    assert isinstance(outcome.error, ProbeExhausted)
    assert outcome.severity is Severity.ERROR
    assert outcome.attempts_used == 3


@pytest.mark.asyncio
async def test_same_kind_while_pending_returns_running_action():
    tracker = ActionTracker(StateStore())
    issue = CountingIssue()
    probe = ScriptedProbe([ProcessStatus(running=False)])

    first = _track_launch(tracker, probe, issue=issue)
    second = _track_launch(tracker, probe, issue=issue)
    assert first is second
    assert len(tracker.pending()) == 1

    await asyncio.sleep(0.05)
    assert issue.calls == 1
    first.cancel()
    outcome = await first.wait()
    assert outcome.outcome is OutcomeKind.CANCELLED
    assert outcome.severity is Severity.INFO
    assert tracker.pending() == []


@pytest.mark.asyncio
async def test_stop_supersedes_pending_launch():
    store = StateStore()
    tracker = ActionTracker(store)
    launch = _track_launch(tracker, ScriptedProbe([ProcessStatus(running=False)]))

    stop = tracker.track(
        "svc1",
        ActionKind.STOP,
        issue=CountingIssue(),
        probe=ScriptedProbe([ProcessStatus(running=False)]),
        is_done=lambda status: not status.running,
        budget=10,
        interval=0.01,
        slot=StoreSlot(Slice.PROCESS, "svc1"),
    )

    assert (await launch.wait()).outcome is OutcomeKind.CANCELLED
    assert tracker.get("svc1", ActionKind.STOP) is stop
    assert (await asyncio.wait_for(stop.wait(), timeout=2)).outcome is OutcomeKind.SUCCEEDED
    assert store.get(Slice.PROCESS, "svc1") == ProcessStatus(running=False)


@pytest.mark.asyncio
async def test_no_store_writes_after_cancel_even_if_probe_resolves_later():
    store = StateStore()
    tracker = ActionTracker(store)
    probe_started = asyncio.Event()
    release_probe = asyncio.Event()

    async def slow_probe(ack: Any) -> ProcessStatus:
        probe_started.set()
        await release_probe.wait()
        return ProcessStatus(running=True, pid=99)

    action = _track_launch(tracker, slow_probe)
    await asyncio.wait_for(probe_started.wait(), timeout=2)

    assert tracker.cancel("svc1") == 1
    outcome = await action.wait()
    assert outcome.outcome is OutcomeKind.CANCELLED

    writes = []
    store.subscribe(writes.append)
    release_probe.set()
    await asyncio.sleep(0.05)

    assert writes == []
    assert store.get(Slice.PROCESS, "svc1") is None
    assert store.items(Slice.PENDING) == {}


@pytest.mark.asyncio
async def test_remote_failure_reported_by_status():
    store = StateStore()
    tracker = ActionTracker(store)
    probe = ScriptedProbe(
        [
            JobStatus(progress=30),
            JobStatus(progress=60, failed=True, error="CUDA out of memory"),
        ]
    )

    action = tracker.track(
        "wf",
        ActionKind.JOB_EXECUTE,
        issue=CountingIssue(),
        probe=probe,
        is_done=lambda status: status.completed,
        is_failed=lambda status: status.error if status.failed else None,
        budget=10,
        interval=0.01,
        slot=StoreSlot(Slice.JOBS, "wf"),
    )
    outcome = await asyncio.wait_for(action.wait(), timeout=2)

    assert outcome.outcome is OutcomeKind.FAILED
    assert isinstance(outcome.error, RemoteFailed)
    assert outcome.reason == "CUDA out of memory"
    assert store.get(Slice.JOBS, "wf").progress == 60


@pytest.mark.asyncio
async def test_clear_slot_drops_previous_status():
    store = StateStore()
    store.set(Slice.JOBS, "wf", JobStatus(progress=100, completed=True), writer="tracker:job:wf")
    tracker = ActionTracker(store)

    action = tracker.track(
        "wf",
        ActionKind.JOB_EXECUTE,
        issue=CountingIssue(),
        probe=ScriptedProbe([JobStatus(progress=5)]),
        is_done=lambda status: status.completed,
        budget=50,
        interval=0.01,
        slot=StoreSlot(Slice.JOBS, "wf"),
        clear_slot=True,
    )
    assert store.get(Slice.JOBS, "wf") is None
    action.cancel()
    await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_slot_owned_by_someone_else_rejects_tracking():
    store = StateStore()
    store.claim(Slice.PROCESS, "svc1", "somebody")
    tracker = ActionTracker(store)

    with pytest.raises(WriterConflict):
        _track_launch(tracker, ScriptedProbe([ProcessStatus()]))
    assert store.items(Slice.PENDING) == {}
    assert tracker.pending() == []


@pytest.mark.asyncio
async def test_invalid_budget_and_interval_are_rejected():
    tracker = ActionTracker(StateStore())
    with pytest.raises(ValueError):
        _track_launch(tracker, ScriptedProbe([ProcessStatus()]), budget=0)
    with pytest.raises(ValueError):
        tracker.track(
            "svc1",
            ActionKind.LAUNCH,
            issue=CountingIssue(),
            probe=ScriptedProbe([ProcessStatus()]),
            is_done=lambda status: status.running,
            budget=1,
            interval=0,
        )


@pytest.mark.asyncio
async def test_outcome_published_on_message_bus():
    bus = MessageBus()
    tracker = ActionTracker(StateStore(), message_bus=bus)

    async def first_outcome():
        async for envelope in bus.subscribe(EventType.ACTION_OUTCOME, target_id="svc1"):
            return envelope

    waiter = asyncio.create_task(first_outcome())
    await asyncio.sleep(0)
    _track_launch(tracker, ScriptedProbe([ProcessStatus(running=True, pid=1)]))

    envelope = await asyncio.wait_for(waiter, timeout=2)
    assert envelope.payload["outcome"] == "succeeded"
    assert envelope.payload["kind"] == "launch"
    assert envelope.payload["last_status"] == {"running": True, "pid": 1}
    await bus.close()


@pytest.mark.asyncio
async def test_first_probe_waits_one_interval_and_errors_back_off_longer():
    loop = asyncio.get_running_loop()
    store = StateStore()
    tracker = ActionTracker(store)
    issued_at: List[float] = []
    probed_at: List[float] = []
    results = [ProbeTransientError("502"), ProcessStatus(running=False), ProcessStatus(running=True)]

    async def issue():
        issued_at.append(loop.time())
        return "ack"

    async def probe(ack):
        probed_at.append(loop.time())
        result = results[len(probed_at) - 1]
        if isinstance(result, Exception):
            raise result
        return result

    action = tracker.track(
        "svc1",
        ActionKind.LAUNCH,
        issue=issue,
        probe=probe,
        is_done=lambda status: status.running,
        budget=10,
        interval=0.05,
        error_interval=0.3,
    )
    outcome = await asyncio.wait_for(action.wait(), timeout=3)

    assert outcome.outcome is OutcomeKind.SUCCEEDED
    assert outcome.attempts_used == 3
    first, after_error, after_status = probed_at
    assert first - issued_at[0] >= 0.045
    assert after_error - first >= 0.28
    assert 0.045 <= after_status - after_error < 0.28


@pytest.mark.asyncio
async def test_each_tick_publishes_a_fresh_pending_record():
    store = StateStore()
    tracker = ActionTracker(store)
    key = pending_key("svc1", ActionKind.LAUNCH)
    seen = []
    store.subscribe(
        lambda change: seen.append(store.get(Slice.PENDING, key))
        if change.slice is Slice.PENDING and change.key == key
        else None
    )

    action = _track_launch(tracker, ScriptedProbe([ProcessStatus(running=False)] * 2 + [ProcessStatus(running=True)]))
    snapshot = store.snapshot()
    await asyncio.wait_for(action.wait(), timeout=2)

    assert [record.attempts_used for record in seen[:-1]] == [0, 1, 2, 3]
    assert seen[-1] is None
    assert snapshot.get(Slice.PENDING, key).attempts_used == 0
    assert action.pending.attempts_used == 3
