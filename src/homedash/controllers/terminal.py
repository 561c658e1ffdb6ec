"""Interactive remote shell: transcript, input history and the terminal stream."""

from __future__ import annotations

from collections import deque
from itertools import islice
from typing import Deque, List, Optional, Tuple, Union

from homedash.core.errors import StreamClosed, StreamError
from homedash.core.models import LineKind, StreamStatus, TranscriptLine
from homedash.core.reconciler import TERMINAL_CHANNEL
from homedash.core.store import Slice, StateStore
from homedash.core.stream import Connector, StreamHandlers, StreamSession
from homedash.utils.logging import get_logger


INTERRUPT = "\x03"
NOT_CONNECTED = "Not connected to terminal"


class CommandHistory:
    """Previously submitted non-empty lines with a cursor bounded to ``[0, len]``."""

    def __init__(self) -> None:
        self._entries: List[str] = []
        self._cursor = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> Tuple[str, ...]:
        return tuple(self._entries)

    @property
    def cursor(self) -> int:
        return self._cursor

    def push(self, line: str) -> None:
        if line.strip():
            self._entries.append(line)
            self._cursor = len(self._entries)

    def previous(self) -> Optional[str]:
        """Step back one entry. None when already at the oldest one."""
        if self._cursor == 0:
            return None
        self._cursor -= 1
        return self._entries[self._cursor]

    def next(self) -> str:
        """Step forward one entry; past the newest one yields an empty input."""
        if self._cursor < len(self._entries) - 1:
            self._cursor += 1
            return self._entries[self._cursor]
        self._cursor = len(self._entries)
        return ""


class TerminalConsole:
    """Owns the terminal session. It never reconnects on its own.

    Inbound fragments and local echoes go into an append-only transcript that
    is published to the store as the tuple of visible lines. ``clear`` only
    moves the visible start forward.
    """

    def __init__(
        self,
        store: StateStore,
        url: str,
        *,
        prompt: str = "$",
        scrollback: int = 5000,
        connector: Optional[Connector] = None,
    ) -> None:
        self.store = store
        self.prompt = prompt
        self.history = CommandHistory()
        self.pending_input = ""
        self.logger = get_logger("TerminalConsole")
        self.session = StreamSession(
            TERMINAL_CHANNEL,
            url,
            handlers=StreamHandlers(
                on_message=self._on_message,
                on_close=self._on_close,
                on_error=self._on_error,
            ),
            reconnect_delay=None,
            connector=connector,
            store=store,
        )
        self._writer = f"stream:{TERMINAL_CHANNEL}"
        if not store.claim(Slice.TRANSCRIPT, TERMINAL_CHANNEL, self._writer):
            raise ValueError(f"Transcript slot already belongs to {store.owner(Slice.TRANSCRIPT, TERMINAL_CHANNEL)}")
        self._lines: Deque[TranscriptLine] = deque(maxlen=scrollback)
        self._appended = 0
        self._visible_from = 0
        self._publish()

    @property
    def status(self) -> StreamStatus:
        return self.session.status

    @property
    def lines(self) -> Tuple[TranscriptLine, ...]:
        visible = min(len(self._lines), self._appended - self._visible_from)
        if visible <= 0:
            return ()
        return tuple(islice(self._lines, len(self._lines) - visible, None))

    # Connection ------------------------------------------------------------------

    async def connect(self) -> None:
        await self.session.open()

    async def reconnect(self) -> None:
        """User-initiated reopen: drop the old connection and start from a clean screen."""
        await self.session.close()
        self.clear()
        await self.session.open()

    async def close(self) -> None:
        await self.session.close()

    async def dispose(self) -> None:
        await self.session.dispose()
        self.store.release(Slice.TRANSCRIPT, TERMINAL_CHANNEL, self._writer)

    # Input -----------------------------------------------------------------------

    async def submit(self, line: Optional[str] = None) -> bool:
        """Echo and send one input line. Returns False when nothing was sent."""
        command = self.pending_input if line is None else line
        if not self.session.is_open:
            self._append(TranscriptLine(kind=LineKind.ERROR, text=NOT_CONNECTED))
            return False
        self._append(TranscriptLine(kind=LineKind.ECHO, text=command, prompt=self.prompt))
        self.history.push(command)
        self.pending_input = ""
        return await self.session.send(command)

    async def interrupt(self) -> bool:
        if not self.session.is_open:
            return False
        return await self.session.send(INTERRUPT)

    def clear(self) -> None:
        self._visible_from = self._appended
        self._publish()

    def history_previous(self) -> str:
        entry = self.history.previous()
        if entry is not None:
            self.pending_input = entry
        return self.pending_input

    def history_next(self) -> str:
        self.pending_input = self.history.next()
        return self.pending_input

    # Stream handlers -------------------------------------------------------------

    def _on_message(self, raw: Union[str, bytes]) -> None:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        self._append(TranscriptLine(kind=LineKind.OUTPUT, text=text))

    def _on_close(self, exc: StreamClosed) -> None:
        self._append(TranscriptLine(kind=LineKind.STATUS, text="Connection closed"))

    def _on_error(self, exc: StreamError) -> None:
        self.logger.warning("Terminal stream error: %s", exc)
        self._append(TranscriptLine(kind=LineKind.ERROR, text=f"Connection error: {exc}"))

    def _append(self, line: TranscriptLine) -> None:
        self._lines.append(line)
        self._appended += 1
        self._publish()

    def _publish(self) -> None:
        self.store.set(Slice.TRANSCRIPT, TERMINAL_CHANNEL, self.lines, writer=self._writer)
