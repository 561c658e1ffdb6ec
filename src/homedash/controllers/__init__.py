"""Feature controllers driving the dashboard state."""

from .base import BaseController, OutcomeReporter
from .jobs import JobController
from .services import ServiceController
from .telemetry import TelemetryFeed
from .terminal import CommandHistory, TerminalConsole

__all__ = [
    "BaseController",
    "OutcomeReporter",
    "JobController",
    "ServiceController",
    "TelemetryFeed",
    "CommandHistory",
    "TerminalConsole",
]
