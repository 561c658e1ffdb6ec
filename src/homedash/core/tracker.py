"""Action tracker: confirms fire-and-forget remote commands by polling.

A tracked action goes through three phases:

1. ``issue()`` sends the command. If it raises, the action ends ``failed``
   right away and nothing is probed.
2. After one interval, ``probe(ack)`` runs once per tick. Every successful
   probe is written to the action's store slot (last observed status). Probe
   exceptions are inconclusive and only retried.
3. The action ends ``succeeded`` when ``is_done(status)`` holds, ``failed``
   when ``is_failed(status)`` reports a reason, and ``timed_out`` once the
   attempt budget is used up.

At most one action runs per ``(target_id, kind class)``. Cancelling an action
stops its tick schedule at once; a probe already in flight may finish, but its
result is thrown away.
"""

from __future__ import annotations

import asyncio
import datetime as dt
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from homedash.core.errors import (
    DashboardError,
    IssueFailed,
    ProbeExhausted,
    RemoteFailed,
    Timeout,
    WriterConflict,
)
from homedash.core.message_bus import MessageBus
from homedash.core.models import ActionKind, EventEnvelope, EventType, Severity
from homedash.core.store import Slice, StateStore
from homedash.utils.logging import get_logger


IssueFn = Callable[[], Awaitable[Any]]
ProbeFn = Callable[[Any], Awaitable[Any]]
DonePredicate = Callable[[Any], bool]
FailurePredicate = Callable[[Any], Optional[str]]


class OutcomeKind(str, Enum):
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"


def pending_key(target_id: str, kind: ActionKind) -> str:
    """Key of a pending action in the ``pending`` slice."""
    return f"{kind.kind_class}:{target_id}"


@dataclass(frozen=True, slots=True)
class PendingAction:
    """Snapshot of an in-flight action. Every tick publishes a new one."""

    target_id: str
    kind: ActionKind
    attempt_budget: int
    interval_seconds: float
    started_at: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))
    attempts_used: int = 0


@dataclass(frozen=True, slots=True)
class StoreSlot:
    """Store key an action writes its probed status into."""

    slice: Slice
    key: str


@dataclass(slots=True)
class ActionOutcome:
    target_id: str
    kind: ActionKind
    outcome: OutcomeKind
    attempts_used: int
    error: Optional[DashboardError] = None
    last_status: Any = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is OutcomeKind.SUCCEEDED

    @property
    def reason(self) -> Optional[str]:
        if self.error is None:
            return None
        if isinstance(self.error, IssueFailed):
            return self.error.message
        if isinstance(self.error, RemoteFailed):
            return self.error.reason
        return str(self.error)

    @property
    def severity(self) -> Severity:
        if self.outcome is OutcomeKind.SUCCEEDED:
            return Severity.SUCCESS
        if self.outcome is OutcomeKind.CANCELLED:
            return Severity.INFO
        if isinstance(self.error, ProbeExhausted):
            return Severity.ERROR
        if isinstance(self.error, Timeout):
            return Severity.WARNING
        return Severity.ERROR

    def raise_for_outcome(self) -> None:
        if self.error is not None:
            raise self.error

    def to_payload(self) -> Dict[str, Any]:
        status = self.last_status
        if hasattr(status, "model_dump"):
            status = status.model_dump(mode="json")
        return {
            "target_id": self.target_id,
            "kind": self.kind.value,
            "outcome": self.outcome.value,
            "attempts_used": self.attempts_used,
            "reason": self.reason,
            "severity": self.severity.value,
            "last_status": status,
        }


class TrackedAction:
    """One running issue-then-poll cycle. Created through :meth:`ActionTracker.track`."""

    def __init__(
        self,
        tracker: "ActionTracker",
        pending: PendingAction,
        *,
        issue: IssueFn,
        probe: ProbeFn,
        is_done: DonePredicate,
        is_failed: Optional[FailurePredicate],
        error_interval: float,
        slot: Optional[StoreSlot],
        clear_slot: bool = False,
    ) -> None:
        self.pending = pending
        self.slot = slot
        self._clear_slot = clear_slot
        self.writer = f"tracker:{pending.kind.kind_class}:{pending.target_id}"
        self._tracker = tracker
        self._store = tracker.store
        self._issue = issue
        self._probe = probe
        self._is_done = is_done
        self._is_failed = is_failed
        self._error_interval = error_interval
        self._cancel_event = asyncio.Event()
        self._cancelled = False
        self._future: "asyncio.Future[ActionOutcome]" = asyncio.get_running_loop().create_future()
        self._task: Optional["asyncio.Task[None]"] = None
        self._last_status: Any = None
        self.logger = tracker.logger

    @property
    def target_id(self) -> str:
        return self.pending.target_id

    @property
    def kind(self) -> ActionKind:
        return self.pending.kind

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._future.done()

    async def wait(self) -> ActionOutcome:
        return await asyncio.shield(self._future)

    def cancel(self) -> None:
        """Stop scheduling ticks and resolve the outcome as ``cancelled``."""
        if self._future.done():
            return
        self._cancelled = True
        self._cancel_event.set()
        self.logger.info("Cancelled %s for %s", self.kind.value, self.target_id)
        self._finish(OutcomeKind.CANCELLED)

    def _start(self) -> None:
        for slot in self._owned_slots():
            if not self._store.claim(slot.slice, slot.key, self.writer):
                self._release()
                raise WriterConflict(
                    slot.slice.value, slot.key, self._store.owner(slot.slice, slot.key) or "?", self.writer
                )
        if self._clear_slot and self.slot is not None:
            self._store.delete(self.slot.slice, self.slot.key, writer=self.writer)
        self._store.set(
            Slice.PENDING, pending_key(self.target_id, self.kind), self.pending, writer=self.writer
        )
        self._task = asyncio.create_task(self._run(), name=f"track-{self.kind.value}-{self.target_id}")

    def _owned_slots(self) -> List[StoreSlot]:
        slots = [StoreSlot(Slice.PENDING, pending_key(self.target_id, self.kind))]
        if self.slot is not None:
            slots.append(self.slot)
        return slots

    def _release(self) -> None:
        for slot in self._owned_slots():
            self._store.release(slot.slice, slot.key, self.writer)

    async def _run(self) -> None:
        try:
            await self._run_cycle()
        except asyncio.CancelledError:
            self.cancel()
            raise
        except Exception as exc:
            self.logger.exception("Tracker for %s crashed: %s", self.target_id, exc)
            error = exc if isinstance(exc, DashboardError) else DashboardError(str(exc))
            self._finish(OutcomeKind.FAILED, error)

    async def _run_cycle(self) -> None:
        pending = self.pending
        try:
            ack = await self._issue()
        except Exception as exc:
            if self._cancelled:
                return
            error = exc if isinstance(exc, IssueFailed) else IssueFailed(str(exc) or exc.__class__.__name__)
            self.logger.warning("Issuing %s for %s failed: %s", self.kind.value, self.target_id, error)
            self._finish(OutcomeKind.FAILED, error)
            return

        if self._cancelled:
            return
        self.logger.info(
            "%s issued for %s; polling up to %d x %.1fs",
            self.kind.value,
            self.target_id,
            pending.attempt_budget,
            pending.interval_seconds,
        )

        confirmed_once = False
        delay = pending.interval_seconds
        while True:
            if await self._sleep(delay):
                return
            attempt = self._count_attempt()
            try:
                status = await self._probe(ack)
            except Exception as exc:
                if self._cancelled:
                    return
                self.logger.debug(
                    "Probe %d/%d for %s inconclusive: %s",
                    attempt,
                    pending.attempt_budget,
                    self.target_id,
                    exc,
                )
                if attempt >= pending.attempt_budget:
                    error: Timeout = Timeout(attempt) if confirmed_once else ProbeExhausted(attempt)
                    self._finish(OutcomeKind.TIMED_OUT, error)
                    return
                delay = self._error_interval
                continue

            if self._cancelled:
                return
            confirmed_once = True
            self._last_status = status
            if self.slot is not None:
                self._store.set(self.slot.slice, self.slot.key, status, writer=self.writer)

            if self._is_done(status):
                self._finish(OutcomeKind.SUCCEEDED)
                return
            reason = self._is_failed(status) if self._is_failed else None
            if reason:
                self._finish(OutcomeKind.FAILED, RemoteFailed(reason))
                return
            if attempt >= pending.attempt_budget:
                self._finish(OutcomeKind.TIMED_OUT, Timeout(attempt))
                return
            delay = pending.interval_seconds

    def _count_attempt(self) -> int:
        self.pending = replace(self.pending, attempts_used=self.pending.attempts_used + 1)
        self._store.set(
            Slice.PENDING, pending_key(self.target_id, self.kind), self.pending, writer=self.writer
        )
        return self.pending.attempts_used

    async def _sleep(self, delay: float) -> bool:
        """Wait one tick. True when the action got cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return self._cancelled
        return True

    def _finish(self, outcome: OutcomeKind, error: Optional[DashboardError] = None) -> None:
        if self._future.done():
            return
        result = ActionOutcome(
            target_id=self.target_id,
            kind=self.kind,
            outcome=outcome,
            attempts_used=self.pending.attempts_used,
            error=error,
            last_status=self._last_status,
        )
        self._store.delete(Slice.PENDING, pending_key(self.target_id, self.kind), writer=self.writer)
        self._release()
        self._future.set_result(result)
        self._tracker._finished(self, result)


class ActionTracker:
    """Registry of tracked actions, at most one per target and kind class."""

    def __init__(self, store: StateStore, *, message_bus: Optional[MessageBus] = None) -> None:
        self.store = store
        self.message_bus = message_bus
        self.logger = get_logger("ActionTracker")
        self._actions: Dict[Tuple[str, str], TrackedAction] = {}

    def track(
        self,
        target_id: str,
        kind: ActionKind,
        *,
        issue: IssueFn,
        probe: ProbeFn,
        is_done: DonePredicate,
        budget: int,
        interval: float,
        error_interval: Optional[float] = None,
        is_failed: Optional[FailurePredicate] = None,
        slot: Optional[StoreSlot] = None,
        clear_slot: bool = False,
    ) -> TrackedAction:
        """Issue a command and poll until it is confirmed.

        Returns the already running action when the same ``(target_id, kind)``
        is pending. A different kind of the same class (stop during launch)
        supersedes the running one.

        With ``clear_slot`` the status left in ``slot`` by an earlier action is
        dropped before the new one is issued.
        """
        if budget < 1:
            raise ValueError("budget must be at least 1")
        if interval <= 0:
            raise ValueError("interval must be positive")

        key = (target_id, kind.kind_class)
        existing = self._actions.get(key)
        if existing is not None and not existing.done:
            if existing.kind is kind:
                self.logger.info("%s already pending for %s; not starting another", kind.value, target_id)
                return existing
            self.logger.info("%s supersedes pending %s for %s", kind.value, existing.kind.value, target_id)
            existing.cancel()

        action = TrackedAction(
            self,
            PendingAction(
                target_id=target_id,
                kind=kind,
                attempt_budget=budget,
                interval_seconds=interval,
            ),
            issue=issue,
            probe=probe,
            is_done=is_done,
            is_failed=is_failed,
            error_interval=error_interval if error_interval is not None else interval,
            slot=slot,
            clear_slot=clear_slot,
        )
        action._start()
        self._actions[key] = action
        return action

    def get(self, target_id: str, kind: ActionKind) -> Optional[TrackedAction]:
        action = self._actions.get((target_id, kind.kind_class))
        if action is None or action.done or action.kind is not kind:
            return None
        return action

    def pending(self) -> List[PendingAction]:
        return [action.pending for action in self._actions.values() if not action.done]

    def cancel(self, target_id: str, kind: Optional[ActionKind] = None) -> int:
        """Cancel the pending actions of a target. Returns how many were cancelled."""
        cancelled = 0
        for (action_target, kind_class), action in list(self._actions.items()):
            if action_target != target_id:
                continue
            if kind is not None and kind_class != kind.kind_class:
                continue
            if not action.done:
                action.cancel()
                cancelled += 1
        return cancelled

    def cancel_all(self) -> None:
        for action in list(self._actions.values()):
            action.cancel()

    def _finished(self, action: TrackedAction, outcome: ActionOutcome) -> None:
        key = (action.target_id, action.kind.kind_class)
        if self._actions.get(key) is action:
            del self._actions[key]
        self.logger.info(
            "%s for %s finished: %s after %d attempts",
            outcome.kind.value,
            outcome.target_id,
            outcome.outcome.value,
            outcome.attempts_used,
        )
        if self.message_bus is not None and not self.message_bus.closed:
            self.message_bus.publish_nowait(
                EventEnvelope(
                    type=EventType.ACTION_OUTCOME,
                    target_id=outcome.target_id,
                    payload=outcome.to_payload(),
                )
            )
