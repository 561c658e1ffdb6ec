"""Common controller abstractions."""

from __future__ import annotations

import abc
import asyncio
from typing import Callable, Dict, Optional

from homedash.core.message_bus import MessageBus
from homedash.core.models import Notice
from homedash.core.tracker import ActionOutcome, TrackedAction
from homedash.services.audit_logger import AuditLogger
from homedash.utils.logging import get_logger


class BaseController(abc.ABC):
    """Abstract controller with a background loop and lifecycle helpers."""

    def __init__(self, *, name: Optional[str] = None) -> None:
        self._name = name or self.__class__.__name__
        self.logger = get_logger(self._name)
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self.logger.info("Starting %s", self._name)
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_wrapper(), name=self._name)

    async def stop(self) -> None:
        self.logger.info("Stopping %s", self._name)
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None

    async def _run_wrapper(self) -> None:
        try:
            await self.setup()
            await self.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover - ensure errors are logged
            self.logger.exception("Unhandled exception: %s", exc)
        finally:
            await self.teardown()

    def should_stop(self) -> bool:
        return self._stop_event.is_set()

    async def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True when stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(seconds, 0))
        except asyncio.TimeoutError:
            return False
        return True

    async def setup(self) -> None:
        """Optional hook executed once before run loop."""

    async def teardown(self) -> None:
        """Optional hook executed once after run loop."""

    @abc.abstractmethod
    async def run(self) -> None:
        """Main controller body."""


Describe = Callable[[ActionOutcome], str]


class OutcomeReporter:
    """Turns each finished action into exactly one notice and one audit record."""

    def __init__(
        self,
        *,
        message_bus: Optional[MessageBus] = None,
        audit_logger: Optional[AuditLogger] = None,
        name: str = "OutcomeReporter",
    ) -> None:
        self.message_bus = message_bus
        self.audit_logger = audit_logger
        self.logger = get_logger(name)
        self._watchers: Dict[TrackedAction, "asyncio.Task[ActionOutcome]"] = {}

    def watch(self, action: TrackedAction, describe: Describe) -> "asyncio.Task[ActionOutcome]":
        existing = self._watchers.get(action)
        if existing is not None:
            return existing
        task = asyncio.create_task(self._report(action, describe), name=f"report-{action.target_id}")
        self._watchers[action] = task
        task.add_done_callback(lambda _: self._watchers.pop(action, None))
        return task

    async def _report(self, action: TrackedAction, describe: Describe) -> ActionOutcome:
        outcome = await action.wait()
        notice = Notice(severity=outcome.severity, message=describe(outcome), target_id=outcome.target_id)
        log = self.logger.info if outcome.succeeded else self.logger.warning
        log("%s", notice.message)
        if self.message_bus is not None:
            self.message_bus.notify(notice)
        if self.audit_logger is not None:
            try:
                await self.audit_logger.log(
                    event=f"{outcome.kind.value}_outcome",
                    target_id=outcome.target_id,
                    payload=outcome.to_payload(),
                )
            except Exception:
                self.logger.debug("Failed to persist audit log", exc_info=True)
        return outcome

    async def aclose(self, timeout: float = 1.0) -> None:
        """Let finished actions report, then drop watchers still waiting."""
        tasks = list(self._watchers.values())
        if not tasks:
            return
        _, still_waiting = await asyncio.wait(tasks, timeout=timeout)
        for task in still_waiting:
            task.cancel()
        await asyncio.gather(*still_waiting, return_exceptions=True)
        self._watchers.clear()
