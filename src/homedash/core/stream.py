"""Managed persistent connections with a declared reconnect policy."""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol, Union

import websockets

from homedash.core.errors import StreamClosed, StreamError
from homedash.core.models import ConnectionState, StreamStatus
from homedash.core.store import Slice, StateStore
from homedash.utils.logging import get_logger


class Connection(Protocol):
    """The subset of a websocket client connection a session relies on."""

    def __aiter__(self) -> AsyncIterator[Union[str, bytes]]: ...

    async def send(self, message: Union[str, bytes]) -> None: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Connection]]
Handler = Callable[..., Any]


async def websocket_connector(url: str) -> Connection:
    return await websockets.connect(url, ping_interval=20, ping_timeout=20, max_size=None)


@dataclass(slots=True)
class StreamHandlers:
    on_open: Optional[Handler] = None
    on_message: Optional[Handler] = None
    on_close: Optional[Handler] = None
    on_error: Optional[Handler] = None


class StreamSession:
    """One logical channel (telemetry feed, terminal) over a persistent connection.

    ``reconnect_delay`` declares the policy: a number of seconds schedules one
    reconnect per close event while the owning view is active; ``None`` never
    reconnects on its own. An explicit :meth:`close` always wins over a pending
    or racing reconnect.
    """

    def __init__(
        self,
        name: str,
        url: str,
        *,
        handlers: Optional[StreamHandlers] = None,
        reconnect_delay: Optional[float] = None,
        connector: Optional[Connector] = None,
        store: Optional[StateStore] = None,
    ) -> None:
        self.name = name
        self.url = url
        self.handlers = handlers or StreamHandlers()
        self.reconnect_delay = reconnect_delay
        self.logger = get_logger(f"StreamSession.{name}")
        self._connect = connector or websocket_connector
        self._store = store
        self._writer = f"stream:{name}"
        self._status = StreamStatus.IDLE
        self._errored = False
        self._active = False
        self._explicitly_closed = False
        self._disposed = False
        self._conn: Optional[Connection] = None
        self._task: Optional["asyncio.Task[None]"] = None
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        if store is not None:
            if not store.claim(Slice.CONNECTION, name, self._writer):
                raise ValueError(f"Connection slot {name!r} already belongs to {store.owner(Slice.CONNECTION, name)}")
            self._publish()

    @property
    def status(self) -> StreamStatus:
        return self._status

    @property
    def errored(self) -> bool:
        return self._errored

    @property
    def is_open(self) -> bool:
        return self._status is StreamStatus.OPEN and self._conn is not None

    @property
    def active(self) -> bool:
        return self._active

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    # View lifecycle ------------------------------------------------------------------

    def activate(self) -> None:
        self._active = True

    def deactivate(self) -> None:
        """The owning view went away: drop any pending reconnect."""
        self._active = False
        if self._cancel_reconnect() or self._status is StreamStatus.CLOSED:
            self._set_status(StreamStatus.IDLE)

    # Connection lifecycle ------------------------------------------------------------

    async def open(self) -> None:
        """Start connecting unless already connecting or open."""
        if self._disposed:
            raise StreamClosed(f"{self.name} session has been disposed")
        self._explicitly_closed = False
        self._start()

    async def send(self, payload: Union[str, bytes]) -> bool:
        """Fire-and-forget send. False when the session is not open."""
        conn = self._conn
        if not self.is_open or conn is None:
            self.logger.debug("Dropping send on %s session in state %s", self.name, self._status.value)
            return False
        try:
            await conn.send(payload)
        except Exception as exc:
            self.logger.warning("Send on %s failed: %s", self.name, exc)
            await self._mark_error(StreamError(str(exc)))
            return False
        return True

    async def close(self) -> None:
        """Explicit teardown. Never followed by an automatic reconnect."""
        self._explicitly_closed = True
        self._cancel_reconnect()
        conn, self._conn = self._conn, None
        if conn is not None:
            try:
                await conn.close()
            except Exception as exc:
                self.logger.debug("Closing %s connection raised: %s", self.name, exc)
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._status is not StreamStatus.IDLE:
            self._set_status(StreamStatus.CLOSED)

    async def dispose(self) -> None:
        """Permanent teardown: release the handle, clear the timer, drop store ownership."""
        self._active = False
        await self.close()
        self._set_status(StreamStatus.IDLE)
        self._disposed = True
        if self._store is not None:
            self._store.release(Slice.CONNECTION, self.name, self._writer)

    # Internals -----------------------------------------------------------------------

    def _start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._cancel_reconnect()
        self._errored = False
        self._set_status(StreamStatus.CONNECTING)
        self._task = asyncio.create_task(self._run(), name=f"stream-{self.name}")

    async def _run(self) -> None:
        try:
            conn = await self._connect(self.url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.warning("Connecting %s to %s failed: %s", self.name, self.url, exc)
            await self._mark_error(StreamError(str(exc)))
            await self._closed()
            return

        if self._explicitly_closed:
            await conn.close()
            return

        self._conn = conn
        self._errored = False
        self._set_status(StreamStatus.OPEN)
        self.logger.info("%s stream connected", self.name)
        await self._dispatch(self.handlers.on_open)

        try:
            async for raw in conn:
                if self._explicitly_closed:
                    break
                await self._dispatch(self.handlers.on_message, raw)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self._explicitly_closed:
                self.logger.warning("%s stream failed: %s", self.name, exc)
                await self._mark_error(StreamError(str(exc)))
        finally:
            if self._conn is conn:
                self._conn = None

        if not self._explicitly_closed:
            await self._closed()

    async def _closed(self) -> None:
        self._set_status(StreamStatus.CLOSED)
        await self._dispatch(self.handlers.on_close, StreamClosed(f"{self.name} closed"))
        if self._explicitly_closed or self.reconnect_delay is None:
            return
        if not self._active:
            self._set_status(StreamStatus.IDLE)
            return
        self.logger.info("%s stream closed; reconnecting in %.1fs", self.name, self.reconnect_delay)
        loop = asyncio.get_running_loop()
        self._reconnect_timer = loop.call_later(self.reconnect_delay, self._fire_reconnect)
        self._publish()

    def _fire_reconnect(self) -> None:
        self._reconnect_timer = None
        if self._explicitly_closed or self._disposed:
            return
        if not self._active:
            self._set_status(StreamStatus.IDLE)
            return
        self._start()

    def _cancel_reconnect(self) -> bool:
        if self._reconnect_timer is None:
            return False
        self._reconnect_timer.cancel()
        self._reconnect_timer = None
        self._publish()
        return True

    async def _mark_error(self, error: StreamError) -> None:
        self._errored = True
        self._publish()
        await self._dispatch(self.handlers.on_error, error)

    def _set_status(self, status: StreamStatus) -> None:
        self._status = status
        self._publish()

    def _publish(self) -> None:
        if self._store is None or self._disposed:
            return
        self._store.set(
            Slice.CONNECTION,
            self.name,
            ConnectionState(
                status=self._status,
                errored=self._errored,
                reconnect_pending=self._reconnect_timer is not None,
            ),
            writer=self._writer,
        )

    async def _dispatch(self, handler: Optional[Handler], *args: Any) -> None:
        if handler is None:
            return
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            self.logger.exception("%s handler %s failed", self.name, getattr(handler, "__name__", handler))
