"""Live host telemetry fed from the monitor stream."""

from __future__ import annotations

from typing import Optional, Union

from pydantic import ValidationError

from homedash.core.models import StreamStatus, TelemetrySnapshot
from homedash.core.reconciler import TELEMETRY_CHANNEL
from homedash.core.store import Slice, StateStore
from homedash.core.stream import Connector, StreamHandlers, StreamSession
from homedash.utils.logging import get_logger


TELEMETRY_KEY = "host"


class TelemetryFeed:
    """Owns the telemetry session and replaces the telemetry slice per frame.

    The session reconnects after ``reconnect_delay`` seconds, but only while
    the monitor view is active.
    """

    def __init__(
        self,
        store: StateStore,
        url: str,
        *,
        reconnect_delay: float = 3.0,
        connector: Optional[Connector] = None,
    ) -> None:
        self.store = store
        self.logger = get_logger("TelemetryFeed")
        self.session = StreamSession(
            TELEMETRY_CHANNEL,
            url,
            handlers=StreamHandlers(on_message=self._on_message),
            reconnect_delay=reconnect_delay,
            connector=connector,
            store=store,
        )
        self._writer = f"stream:{TELEMETRY_CHANNEL}"
        if not store.claim(Slice.TELEMETRY, TELEMETRY_KEY, self._writer):
            raise ValueError(f"Telemetry slot already belongs to {store.owner(Slice.TELEMETRY, TELEMETRY_KEY)}")
        self.frames = 0

    @property
    def status(self) -> StreamStatus:
        return self.session.status

    @property
    def latest(self) -> Optional[TelemetrySnapshot]:
        return self.store.get(Slice.TELEMETRY, TELEMETRY_KEY)

    async def connect(self) -> None:
        await self.session.open()

    def activate(self) -> None:
        self.session.activate()

    def deactivate(self) -> None:
        self.session.deactivate()

    async def close(self) -> None:
        await self.session.close()

    async def dispose(self) -> None:
        await self.session.dispose()
        self.store.release(Slice.TELEMETRY, TELEMETRY_KEY, self._writer)

    def _on_message(self, raw: Union[str, bytes]) -> None:
        try:
            snapshot = TelemetrySnapshot.model_validate_json(raw)
        except ValidationError as exc:
            self.logger.warning("Dropping malformed telemetry frame: %s", exc)
            return
        self.store.replace(Slice.TELEMETRY, {TELEMETRY_KEY: snapshot}, writer=self._writer)
        self.frames += 1
