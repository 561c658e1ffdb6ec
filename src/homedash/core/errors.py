"""Exception taxonomy for the coordination core."""

from __future__ import annotations

from typing import Optional


class DashboardError(Exception):
    """Base class for every error raised by homedash."""


class IssueFailed(DashboardError):
    """The initiating remote command was rejected. Terminal, never retried."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ProbeTransientError(DashboardError):
    """A single status probe could not reach the backend."""


class Timeout(DashboardError):
    """Attempt budget exhausted before the remote side confirmed the action."""

    def __init__(self, attempts_used: int) -> None:
        super().__init__(f"No confirmation after {attempts_used} attempts")
        self.attempts_used = attempts_used


class ProbeExhausted(Timeout):
    """Attempt budget exhausted without a single successful probe."""

    def __init__(self, attempts_used: int) -> None:
        super().__init__(attempts_used)
        self.args = (f"Status unavailable after {attempts_used} attempts",)


class RemoteFailed(DashboardError):
    """The probed status reported that the remote operation failed."""

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__(reason or "unknown error")
        self.reason = reason or "unknown error"


class StreamClosed(DashboardError):
    """A stream connection was closed by either side."""


class StreamError(DashboardError):
    """A stream connection failed at the transport level."""


class WriterConflict(DashboardError):
    """A store key was written by someone other than its current owner."""

    def __init__(self, slice_name: str, key: str, owner: str, writer: str) -> None:
        super().__init__(f"{slice_name}[{key}] is owned by {owner}; rejected write from {writer}")
        self.slice_name = slice_name
        self.key = key
        self.owner = owner
        self.writer = writer
