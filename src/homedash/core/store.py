"""Keyed in-memory state store with single-writer-per-key claims."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from homedash.core.errors import WriterConflict
from homedash.utils.logging import get_logger


class Slice(str, Enum):
    SERVICES = "services"
    REACHABILITY = "reachability"
    PROCESS = "process"
    PENDING = "pending"
    CONNECTION = "connection"
    TELEMETRY = "telemetry"
    JOBS = "jobs"
    LATENCY = "latency"
    TRANSCRIPT = "transcript"


@dataclass(frozen=True, slots=True)
class StoreChange:
    slice: Slice
    key: Optional[str]
    revision: int


@dataclass(frozen=True, slots=True)
class StoreSnapshot:
    revision: int
    slices: Mapping[Slice, Mapping[str, Any]]

    def get(self, slice_: Slice, key: str, default: Any = None) -> Any:
        return self.slices[slice_].get(key, default)

    def items(self, slice_: Slice) -> Mapping[str, Any]:
        return self.slices[slice_]


Listener = Callable[[StoreChange], None]


class StateStore:
    """Single source of truth for everything the dashboard renders.

    The store does no I/O and takes no locks: every write happens on the event
    loop thread, so writes never interleave. Ownership is tracked per
    ``(slice, key)``: once a writer claims a key, writes from anybody else raise
    :class:`WriterConflict` until the claim is released.
    """

    def __init__(self) -> None:
        self._data: Dict[Slice, Dict[str, Any]] = {slice_: {} for slice_ in Slice}
        self._owners: Dict[Tuple[Slice, str], str] = {}
        self._listeners: List[Listener] = []
        self._revision = 0
        self.logger = get_logger("StateStore")

    @property
    def revision(self) -> int:
        return self._revision

    def get(self, slice_: Slice, key: str, default: Any = None) -> Any:
        return self._data[slice_].get(key, default)

    def items(self, slice_: Slice) -> Dict[str, Any]:
        return dict(self._data[slice_])

    # Ownership -------------------------------------------------------------------

    def claim(self, slice_: Slice, key: str, writer: str) -> bool:
        """Make ``writer`` the exclusive writer of a key. False if someone else holds it."""
        owner = self._owners.get((slice_, key))
        if owner is not None and owner != writer:
            return False
        self._owners[(slice_, key)] = writer
        return True

    def release(self, slice_: Slice, key: str, writer: str) -> None:
        if self._owners.get((slice_, key)) == writer:
            del self._owners[(slice_, key)]

    def owner(self, slice_: Slice, key: str) -> Optional[str]:
        return self._owners.get((slice_, key))

    def _check_writer(self, slice_: Slice, key: str, writer: str) -> None:
        owner = self._owners.get((slice_, key))
        if owner is not None and owner != writer:
            raise WriterConflict(slice_.value, key, owner, writer)

    # Writes ----------------------------------------------------------------------

    def set(self, slice_: Slice, key: str, value: Any, *, writer: str) -> None:
        self._check_writer(slice_, key, writer)
        self._data[slice_][key] = value
        self._notify(slice_, key)

    def delete(self, slice_: Slice, key: str, *, writer: str) -> None:
        self._check_writer(slice_, key, writer)
        if key in self._data[slice_]:
            del self._data[slice_][key]
            self._notify(slice_, key)

    def replace(self, slice_: Slice, values: Mapping[str, Any], *, writer: str) -> None:
        """Swap the whole slice. Every affected key must be writable by ``writer``."""
        for key in set(self._data[slice_]) | set(values):
            self._check_writer(slice_, key, writer)
        self._data[slice_] = dict(values)
        self._notify(slice_, None)

    # Notification ----------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, slice_: Slice, key: Optional[str]) -> None:
        self._revision += 1
        change = StoreChange(slice=slice_, key=key, revision=self._revision)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                self.logger.exception("Store listener failed on %s[%s]", slice_.value, key)

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            revision=self._revision,
            slices=MappingProxyType(
                {slice_: MappingProxyType(dict(values)) for slice_, values in self._data.items()}
            ),
        )
