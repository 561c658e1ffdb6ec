"""Coordination primitives: state store, action tracker, stream sessions and the reconciler.

The runtime lives in :mod:`homedash.core.runtime`; it is not re-exported here
because it depends on the controllers, which depend on this package.
"""

from .message_bus import MessageBus
from .models import ActionKind, EventEnvelope, EventType, Notice, Severity, StreamStatus
from .reconciler import DashboardView, ViewProjector, reconcile
from .store import Slice, StateStore, StoreSnapshot
from .stream import StreamHandlers, StreamSession
from .tracker import ActionOutcome, ActionTracker, OutcomeKind, StoreSlot, TrackedAction

__all__ = [
    "MessageBus",
    "ActionKind",
    "EventEnvelope",
    "EventType",
    "Notice",
    "Severity",
    "StreamStatus",
    "DashboardView",
    "ViewProjector",
    "reconcile",
    "Slice",
    "StateStore",
    "StoreSnapshot",
    "StreamHandlers",
    "StreamSession",
    "ActionOutcome",
    "ActionTracker",
    "OutcomeKind",
    "StoreSlot",
    "TrackedAction",
]
