"""Service list, reachability and process state, plus launch/stop commands."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional

import httpx

from homedash.controllers.base import BaseController, OutcomeReporter
from homedash.core.errors import IssueFailed, ProbeExhausted, ProbeTransientError
from homedash.core.models import ActionKind, Service
from homedash.core.settings import RefreshSettings, TrackerPolicy
from homedash.core.store import Slice, StateStore
from homedash.core.tracker import ActionOutcome, ActionTracker, OutcomeKind, StoreSlot, TrackedAction
from homedash.services.backend import DashboardClient


REFRESH_WRITER = "refresh:services"
LATENCY_KEY = "backend"


class ServiceController(BaseController):
    """Keeps the service cards fresh and runs launch/stop through the tracker.

    Reachability and process refreshes only run while the home view is shown.
    Process refreshes never touch a service whose process slot is claimed by a
    running launch/stop tracker.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        client: DashboardClient,
        tracker: ActionTracker,
        reporter: OutcomeReporter,
        policy: Optional[TrackerPolicy] = None,
        refresh: Optional[RefreshSettings] = None,
    ) -> None:
        super().__init__(name="ServiceController")
        self.store = store
        self.client = client
        self.tracker = tracker
        self.reporter = reporter
        self.policy = policy or TrackerPolicy()
        self.refresh = refresh or RefreshSettings()
        self.home_active = True

    # Refreshes -------------------------------------------------------------------

    async def refresh_services(self) -> List[Service]:
        services = await self.client.list_services()
        self.store.replace(Slice.SERVICES, {service.id: service for service in services}, writer=REFRESH_WRITER)
        self.logger.info("Loaded %d services", len(services))
        return services

    async def refresh_reachability(self) -> None:
        results = await self.client.ping_all()
        for result in results:
            self.store.set(Slice.REACHABILITY, result.id, result, writer=REFRESH_WRITER)

    async def refresh_processes(self) -> None:
        services = [
            service
            for service in self.store.items(Slice.SERVICES).values()
            if service.has_launch_config
        ]
        await asyncio.gather(*(self._refresh_process(service.id) for service in services))

    async def _refresh_process(self, service_id: str) -> None:
        if self._claimed(service_id):
            return
        try:
            status = await self.client.probe_process_status(service_id)
        except ProbeTransientError as exc:
            self.logger.debug("Process check for %s failed: %s", service_id, exc)
            return
        # A launch/stop may have started while the probe was in flight.
        if self._claimed(service_id):
            return
        self.store.set(Slice.PROCESS, service_id, status, writer=REFRESH_WRITER)

    def _claimed(self, service_id: str) -> bool:
        owner = self.store.owner(Slice.PROCESS, service_id)
        return owner is not None and owner != REFRESH_WRITER

    async def measure_latency(self) -> Optional[int]:
        try:
            latency: Optional[int] = await self.client.measure_latency()
        except httpx.HTTPError as exc:
            self.logger.debug("Latency check failed: %s", exc)
            latency = None
        self.store.set(Slice.LATENCY, LATENCY_KEY, latency, writer=REFRESH_WRITER)
        return latency

    # Commands --------------------------------------------------------------------

    def launch(self, service_id: str) -> TrackedAction:
        return self._track(service_id, ActionKind.LAUNCH)

    def stop_service(self, service_id: str) -> TrackedAction:
        return self._track(service_id, ActionKind.STOP)

    def _track(self, service_id: str, kind: ActionKind) -> TrackedAction:
        service: Optional[Service] = self.store.get(Slice.SERVICES, service_id)
        if service is None:
            raise IssueFailed(f"Unknown service: {service_id}")
        if not service.has_launch_config:
            raise IssueFailed(f"{service.name} has no launch configuration")

        launching = kind is ActionKind.LAUNCH
        issue = self.client.issue_launch if launching else self.client.issue_stop

        action = self.tracker.track(
            service_id,
            kind,
            issue=lambda: issue(service_id),
            probe=lambda _ack: self.client.probe_process_status(service_id),
            is_done=lambda status: status.running is launching,
            budget=self.policy.budget,
            interval=self.policy.interval_seconds,
            error_interval=self.policy.error_interval_seconds,
            slot=StoreSlot(Slice.PROCESS, service_id),
        )
        self.reporter.watch(action, lambda outcome: self.describe(outcome, service.name))
        return action

    def describe(self, outcome: ActionOutcome, name: str) -> str:
        verb = "Launch" if outcome.kind is ActionKind.LAUNCH else "Stop"
        window = round(self.policy.budget * self.policy.interval_seconds)
        if outcome.outcome is OutcomeKind.SUCCEEDED:
            return f"{name} started" if outcome.kind is ActionKind.LAUNCH else f"{name} stopped"
        if outcome.outcome is OutcomeKind.CANCELLED:
            return f"{verb} of {name} cancelled"
        if outcome.outcome is OutcomeKind.TIMED_OUT:
            if isinstance(outcome.error, ProbeExhausted):
                return f"{verb} of {name}: process status unavailable after {outcome.attempts_used} checks"
            if outcome.kind is ActionKind.LAUNCH:
                return f"Launch timed out: no process detected within {window}s"
            return f"Stop timed out: process still running after {window}s"
        return f"{verb} failed: {outcome.reason or 'unknown error'}"

    # Background loop -------------------------------------------------------------

    async def setup(self) -> None:
        await self._guarded("service list", self.refresh_services)

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        next_reachability = started + self.refresh.first_reachability_delay_seconds
        next_process = started + self.refresh.first_process_delay_seconds
        next_latency = started

        while not self.should_stop():
            now = loop.time()
            if now >= next_latency:
                await self.measure_latency()
                next_latency = now + self.refresh.latency_seconds
            if now >= next_reachability:
                if self.home_active:
                    await self._guarded("reachability", self.refresh_reachability)
                next_reachability = now + self.refresh.reachability_seconds
            if now >= next_process:
                if self.home_active:
                    await self._guarded("process status", self.refresh_processes)
                next_process = now + self.refresh.process_seconds

            due = min(next_latency, next_reachability, next_process)
            if await self.wait(due - loop.time()):
                break

    async def _guarded(self, what: str, refresh: Callable[[], Awaitable[object]]) -> None:
        try:
            await refresh()
        except httpx.HTTPError as exc:
            self.logger.warning("Refreshing %s failed: %s", what, exc)
        except Exception as exc:
            self.logger.exception("Refreshing %s crashed: %s", what, exc)
