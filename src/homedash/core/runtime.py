"""Runtime orchestration for the dashboard controllers."""

from __future__ import annotations

import asyncio
from collections import deque
from enum import Enum
from typing import Deque, List, Optional, Union

from homedash.controllers.base import OutcomeReporter
from homedash.controllers.jobs import JobController
from homedash.controllers.services import ServiceController
from homedash.controllers.telemetry import TelemetryFeed
from homedash.controllers.terminal import TerminalConsole
from homedash.core.message_bus import MessageBus
from homedash.core.models import ConnectionState, EventEnvelope, EventType, Notice
from homedash.core.reconciler import DashboardView, ViewProjector
from homedash.core.settings import RuntimeSettings
from homedash.core.store import Slice, StateStore, StoreChange
from homedash.core.stream import Connector
from homedash.core.tracker import ActionTracker
from homedash.services.audit_logger import AuditLogger
from homedash.services.backend import DashboardClient
from homedash.services.http_client import HttpClient
from homedash.utils.logging import get_logger


class View(str, Enum):
    HOME = "home"
    MONITOR = "monitor"
    TERMINAL = "terminal"
    JOBS = "jobs"


class DashboardRuntime:
    """Wires the store, bus, tracker and controllers behind one start/stop lifecycle."""

    def __init__(
        self,
        settings: RuntimeSettings,
        *,
        store: Optional[StateStore] = None,
        message_bus: Optional[MessageBus] = None,
        http_client: Optional[HttpClient] = None,
        audit_logger: Optional[AuditLogger] = None,
        connector: Optional[Connector] = None,
        notice_limit: int = 50,
    ) -> None:
        self.settings = settings
        self.logger = get_logger("DashboardRuntime")
        self.store = store or StateStore()
        self.message_bus = message_bus or MessageBus()
        self.http_client = http_client or HttpClient(settings.api_base, timeout=settings.http_timeout_seconds)
        if audit_logger is None and settings.audit_log_path is not None:
            audit_logger = AuditLogger(settings.audit_log_path)
        self.audit_logger = audit_logger
        self.client = DashboardClient(self.http_client)
        self.tracker = ActionTracker(self.store, message_bus=self.message_bus)
        self.reporter = OutcomeReporter(message_bus=self.message_bus, audit_logger=audit_logger)

        streams = settings.streams
        self.services = ServiceController(
            store=self.store,
            client=self.client,
            tracker=self.tracker,
            reporter=self.reporter,
            policy=settings.launch,
            refresh=settings.refresh,
        )
        self.jobs = JobController(
            client=self.client,
            tracker=self.tracker,
            reporter=self.reporter,
            policy=settings.job,
        )
        self.telemetry = TelemetryFeed(
            self.store,
            settings.websocket_url(streams.monitor_path),
            reconnect_delay=streams.telemetry_reconnect_seconds,
            connector=connector,
        )
        self.terminal = TerminalConsole(
            self.store,
            settings.websocket_url(streams.terminal_path),
            prompt=streams.terminal_prompt,
            scrollback=streams.terminal_scrollback,
            connector=connector,
        )
        self.projector = ViewProjector(self.store, server_ip=settings.server_ip)

        self.active_view = View.HOME
        self._notices: Deque[Notice] = deque(maxlen=notice_limit)
        self._notice_task: Optional["asyncio.Task[None]"] = None
        self._unsubscribe_store = self.store.subscribe(self._on_store_change)
        self._started = False
        self._lock = asyncio.Lock()

    @property
    def started(self) -> bool:
        return self._started

    @property
    def dashboard(self) -> DashboardView:
        return self.projector.view

    @property
    def notices(self) -> List[Notice]:
        return list(self._notices)

    async def start(self) -> None:
        async with self._lock:
            if self._started:
                return
            self.logger.info("Starting dashboard runtime against %s", self.settings.api_base)
            self._notice_task = asyncio.create_task(self._collect_notices(), name="notice-collector")
            # Let the collector subscribe before anything can publish.
            await asyncio.sleep(0)
            await self.services.start()
            await self._enter(self.active_view)
            self._started = True

    async def switch_view(self, view: Union[View, str]) -> View:
        """Show another page: gate refreshes and stream reconnects on what is visible."""
        target = View(view)
        async with self._lock:
            self.active_view = target
            if self._started:
                await self._enter(target)
        self.logger.info("Switched to %s view", target.value)
        return target

    async def _enter(self, view: View) -> None:
        self.services.home_active = view is View.HOME
        if view is View.MONITOR:
            self.telemetry.activate()
        else:
            self.telemetry.deactivate()
        # The telemetry feed also drives the top bar, so it stays connected on every page.
        await self.telemetry.connect()
        if view is View.TERMINAL:
            await self.terminal.connect()

    async def stop(self) -> None:
        async with self._lock:
            if not self._started:
                return
            self.logger.info("Stopping dashboard runtime")
            self.tracker.cancel_all()
            await self.services.stop()
            await self.reporter.aclose()
            await asyncio.gather(
                self.telemetry.dispose(),
                self.terminal.dispose(),
                return_exceptions=True,
            )
            self.projector.close()
            self._unsubscribe_store()
            await self.message_bus.close()
            if self._notice_task is not None:
                try:
                    await asyncio.wait_for(self._notice_task, timeout=1.0)
                except asyncio.TimeoutError:
                    self.logger.debug("Notice collector did not drain in time")
                self._notice_task = None
            await self.http_client.close()
            self._started = False

    async def run_forever(self) -> None:
        """Convenience helper for long-running processes."""
        await self.start()
        self.logger.info("Runtime is now running. Press Ctrl+C to exit.")
        try:
            while True:
                await asyncio.sleep(3600)
        except asyncio.CancelledError:
            raise
        except KeyboardInterrupt:
            self.logger.info("Received shutdown signal")
        finally:
            await self.stop()

    async def _collect_notices(self) -> None:
        async for envelope in self.message_bus.subscribe(EventType.NOTICE):
            self._notices.append(Notice.model_validate(envelope.payload))

    def _on_store_change(self, change: StoreChange) -> None:
        if change.slice is not Slice.CONNECTION or change.key is None or self.message_bus.closed:
            return
        state: Optional[ConnectionState] = self.store.get(Slice.CONNECTION, change.key)
        if state is None:
            return
        self.message_bus.publish_nowait(
            EventEnvelope(
                type=EventType.STREAM_STATUS,
                target_id=change.key,
                payload=state.model_dump(mode="json"),
            )
        )
