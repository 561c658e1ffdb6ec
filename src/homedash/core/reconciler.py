"""Pure projection of the state store into a renderable dashboard view."""

from __future__ import annotations

import asyncio
from functools import lru_cache
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from rich.text import Text

from homedash.core.models import (
    ActionKind,
    ConnectionState,
    JobStatus,
    LineKind,
    ProcessStatus,
    ReachabilityResult,
    ReachabilityStatus,
    Service,
    StreamStatus,
    TelemetrySnapshot,
    TranscriptLine,
)
from homedash.core.store import Slice, StateStore, StoreChange, StoreSnapshot
from homedash.core.tracker import PendingAction, pending_key


TELEMETRY_CHANNEL = "telemetry"
TERMINAL_CHANNEL = "terminal"
TERMINAL_LINE_CACHE = 8192

_BYTE_UNITS = ["B", "KB", "MB", "GB", "TB"]
_SPEED_UNITS = ["B/s", "KB/s", "MB/s", "GB/s"]
_REACHABILITY_SYMBOLS = {
    ReachabilityStatus.OK: "✓",
    ReachabilityStatus.SLOW: "⚠",
    ReachabilityStatus.ERROR: "✗",
    ReachabilityStatus.UNKNOWN: "?",
}
_LINE_STYLES = {
    LineKind.ERROR: "red",
    LineKind.STATUS: "yellow",
}


class ReachabilityIndicator(BaseModel):
    status: ReachabilityStatus
    symbol: str
    latency_text: str = ""


class ActionButton(BaseModel):
    action: ActionKind
    label: str
    enabled: bool


class ServiceCard(BaseModel):
    id: str
    name: str
    description: str = ""
    icon: str = ""
    url: Optional[str] = None
    link_text: str
    auto_start: bool = False
    reachability: Optional[ReachabilityIndicator] = None
    button: Optional[ActionButton] = None


class ConnectionIndicator(BaseModel):
    status: StreamStatus
    connected: bool
    text: str


class TemperatureBadge(BaseModel):
    value: int
    level: Optional[str] = None


class DiskRow(BaseModel):
    mount_point: str
    usage_text: str
    percent: float
    level: Optional[str] = None


class TopBar(BaseModel):
    cpu: str
    memory: str
    gpu: str
    net_up: str
    net_down: str


class TelemetryPanel(BaseModel):
    top_bar: TopBar
    cpu_percent: int
    cpu_model: str
    cpu_cores_text: str
    cpu_temperature: Optional[TemperatureBadge] = None
    memory_percent: int
    memory_used_text: str
    memory_available_text: str
    gpu_available: bool
    gpu_percent: Optional[int] = None
    gpu_name: Optional[str] = None
    gpu_memory_text: Optional[str] = None
    gpu_temperature: Optional[TemperatureBadge] = None
    net_speed_up: str
    net_speed_down: str
    net_total_up: str
    net_total_down: str
    disks: List[DiskRow] = Field(default_factory=list)


class JobProgress(BaseModel):
    target_id: str
    job_id: Optional[str] = None
    running: bool
    percent: int
    text: str
    completed: bool = False
    failed: bool = False
    output_urls: List[str] = Field(default_factory=list)


class TerminalSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    style: Optional[str] = None


class TerminalLineView(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: LineKind
    segments: List[TerminalSegment]


class TerminalPanel(BaseModel):
    status: StreamStatus
    status_text: str
    lines: List[TerminalLineView] = Field(default_factory=list)


class DashboardView(BaseModel):
    revision: int
    empty: bool
    services: List[ServiceCard]
    connection: ConnectionIndicator
    backend_latency: str
    telemetry: Optional[TelemetryPanel] = None
    jobs: List[JobProgress] = Field(default_factory=list)
    terminal: TerminalPanel


# Formatting helpers ---------------------------------------------------------------


def _trim(value: float) -> str:
    return f"{value:.1f}".rstrip("0").rstrip(".")


def _scaled(amount: float, units: List[str]) -> str:
    index = 0
    while amount >= 1024 and index < len(units) - 1:
        amount /= 1024
        index += 1
    return f"{_trim(amount)} {units[index]}"


def format_bytes(amount: float) -> str:
    if amount <= 0:
        return "0 B"
    return _scaled(amount, _BYTE_UNITS)


def format_speed(bytes_per_sec: float) -> str:
    if bytes_per_sec <= 0:
        return "0 B/s"
    return _scaled(bytes_per_sec, _SPEED_UNITS)


def format_speed_short(bytes_per_sec: float) -> str:
    if bytes_per_sec <= 0:
        return "0"
    k = 1024
    if bytes_per_sec < k:
        return f"{int(bytes_per_sec)}B"
    if bytes_per_sec < k * k:
        return f"{round(bytes_per_sec / k)}K"
    if bytes_per_sec < k * k * k:
        return f"{bytes_per_sec / k / k:.1f}M"
    return f"{bytes_per_sec / k / k / k:.1f}G"


def temperature_level(celsius: float) -> Optional[str]:
    if celsius >= 80:
        return "danger"
    if celsius >= 60:
        return "warning"
    return None


def disk_level(used_percent: float) -> Optional[str]:
    if used_percent >= 90:
        return "danger"
    if used_percent >= 75:
        return "warning"
    return None


def ansi_segments(raw: str) -> List[TerminalSegment]:
    """Split text carrying ANSI colour sequences into styled segments."""
    text = Text.from_ansi(raw)
    plain = text.plain
    if not plain:
        return []
    edges = {0, len(plain)}
    for span in text.spans:
        edges.update((span.start, span.end))
    ordered = sorted(edge for edge in edges if 0 <= edge <= len(plain))

    segments: List[TerminalSegment] = []
    for start, end in zip(ordered, ordered[1:]):
        if start == end:
            continue
        styles = [str(span.style) for span in text.spans if span.start <= start and span.end >= end]
        style = " ".join(s for s in styles if s) or None
        chunk = plain[start:end]
        if segments and segments[-1].style == style:
            segments[-1] = TerminalSegment(text=segments[-1].text + chunk, style=style)
        else:
            segments.append(TerminalSegment(text=chunk, style=style))
    return segments


# Projection -----------------------------------------------------------------------


def _service_card(snapshot: StoreSnapshot, service: Service, server_ip: str) -> ServiceCard:
    url = service.url(server_ip)
    reachability: Optional[ReachabilityIndicator] = None
    if service.enabled and service.has_endpoint:
        result: Optional[ReachabilityResult] = snapshot.get(Slice.REACHABILITY, service.id)
        status = result.status if result else ReachabilityStatus.UNKNOWN
        latency = result.latency_ms if result else 0
        reachability = ReachabilityIndicator(
            status=status,
            symbol=_REACHABILITY_SYMBOLS[status],
            latency_text=f"{latency}ms" if latency > 0 and status is not ReachabilityStatus.UNKNOWN else "",
        )

    button: Optional[ActionButton] = None
    if service.has_launch_config:
        pending: Optional[PendingAction] = snapshot.get(Slice.PENDING, pending_key(service.id, ActionKind.LAUNCH))
        process: ProcessStatus = snapshot.get(Slice.PROCESS, service.id) or ProcessStatus()
        if pending is not None:
            label = "Starting" if pending.kind is ActionKind.LAUNCH else "Stopping"
            button = ActionButton(action=pending.kind, label=label, enabled=False)
        elif process.running:
            button = ActionButton(action=ActionKind.STOP, label="Stop", enabled=True)
        else:
            button = ActionButton(action=ActionKind.LAUNCH, label="Launch", enabled=True)

    return ServiceCard(
        id=service.id,
        name=service.name,
        description=service.description,
        icon=service.icon,
        url=url if service.enabled else None,
        link_text=url or "Local app",
        auto_start=service.auto_start,
        reachability=reachability,
        button=button,
    )


def _connection(state: Optional[ConnectionState]) -> ConnectionIndicator:
    state = state or ConnectionState()
    if state.status is StreamStatus.OPEN:
        return ConnectionIndicator(status=state.status, connected=True, text="Connected · live updates")
    if state.status is StreamStatus.CONNECTING or state.reconnect_pending:
        return ConnectionIndicator(status=state.status, connected=False, text="Disconnected · reconnecting...")
    return ConnectionIndicator(status=state.status, connected=False, text="Disconnected")


def _temperature(value: Optional[float]) -> Optional[TemperatureBadge]:
    if not value or value <= 0:
        return None
    return TemperatureBadge(value=round(value), level=temperature_level(value))


def _telemetry(stats: TelemetrySnapshot) -> TelemetryPanel:
    gpu = stats.gpu
    gpu_usage = gpu.usage or 0.0
    return TelemetryPanel(
        top_bar=TopBar(
            cpu=f"{round(stats.cpu.usage)}%",
            memory=f"{round(stats.memory.used_percent)}%",
            gpu=f"{round(gpu_usage)}%" if gpu.available else "N/A",
            net_up=format_speed_short(stats.network.speed_sent),
            net_down=format_speed_short(stats.network.speed_recv),
        ),
        cpu_percent=round(stats.cpu.usage),
        cpu_model=stats.cpu.model_name or "-",
        cpu_cores_text=f"{stats.cpu.cores} cores",
        cpu_temperature=_temperature(stats.cpu.temperature),
        memory_percent=round(stats.memory.used_percent),
        memory_used_text=f"{format_bytes(stats.memory.used)} / {format_bytes(stats.memory.total)}",
        memory_available_text=f"Available: {format_bytes(stats.memory.available)}",
        gpu_available=gpu.available,
        gpu_percent=round(gpu_usage) if gpu.available else None,
        gpu_name=(gpu.name or "-") if gpu.available else None,
        gpu_memory_text=f"VRAM: {gpu.memory_used or 0} / {gpu.memory_total or 0} MB" if gpu.available else None,
        gpu_temperature=_temperature(gpu.temperature) if gpu.available else None,
        net_speed_up=format_speed(stats.network.speed_sent),
        net_speed_down=format_speed(stats.network.speed_recv),
        net_total_up=format_bytes(stats.network.bytes_sent),
        net_total_down=format_bytes(stats.network.bytes_recv),
        disks=[
            DiskRow(
                mount_point=disk.mount_point,
                usage_text=f"{format_bytes(disk.used)} / {format_bytes(disk.total)}",
                percent=disk.used_percent,
                level=disk_level(disk.used_percent),
            )
            for disk in stats.disks
        ],
    )


def _jobs(snapshot: StoreSnapshot) -> List[JobProgress]:
    targets = set(snapshot.items(Slice.JOBS))
    targets.update(
        action.target_id
        for action in snapshot.items(Slice.PENDING).values()
        if action.kind is ActionKind.JOB_EXECUTE
    )
    rows: List[JobProgress] = []
    for target_id in sorted(targets):
        status: Optional[JobStatus] = snapshot.get(Slice.JOBS, target_id)
        running = snapshot.get(Slice.PENDING, pending_key(target_id, ActionKind.JOB_EXECUTE)) is not None
        if status is None:
            rows.append(JobProgress(target_id=target_id, running=running, percent=0, text="Submitting job..."))
            continue
        rows.append(
            JobProgress(
                target_id=target_id,
                job_id=status.job_id,
                running=running,
                percent=status.progress,
                text=status.message or f"Running... ({status.progress}%)",
                completed=status.completed,
                failed=status.failed,
                output_urls=[output.url for output in status.outputs],
            )
        )
    return rows


@lru_cache(maxsize=TERMINAL_LINE_CACHE)
def _terminal_line(line: TranscriptLine) -> TerminalLineView:
    """Render one transcript line. Lines are immutable, so each distinct one is parsed once."""
    if line.kind is LineKind.ECHO:
        segments = [TerminalSegment(text=line.prompt or "$", style="green")]
        if line.text:
            segments.append(TerminalSegment(text=f" {line.text}"))
        return TerminalLineView(kind=line.kind, segments=segments)
    style = _LINE_STYLES.get(line.kind)
    if style is not None:
        return TerminalLineView(kind=line.kind, segments=[TerminalSegment(text=line.text, style=style)])
    return TerminalLineView(kind=line.kind, segments=ansi_segments(line.text))


def _terminal(snapshot: StoreSnapshot) -> TerminalPanel:
    state: ConnectionState = snapshot.get(Slice.CONNECTION, TERMINAL_CHANNEL) or ConnectionState()
    if state.status is StreamStatus.OPEN:
        text = "Connected"
    elif state.status is StreamStatus.CONNECTING:
        text = "Connecting..."
    elif state.errored or state.status is StreamStatus.ERROR:
        text = "Connection error"
    elif state.status is StreamStatus.CLOSED:
        text = "Disconnected"
    else:
        text = "Not connected"
    lines = snapshot.get(Slice.TRANSCRIPT, TERMINAL_CHANNEL) or ()
    return TerminalPanel(status=state.status, status_text=text, lines=[_terminal_line(line) for line in lines])


def reconcile(snapshot: StoreSnapshot, *, server_ip: str = "localhost") -> DashboardView:
    """Derive the full dashboard view from one store snapshot. No side effects."""
    services: List[Service] = list(snapshot.items(Slice.SERVICES).values())
    telemetry: Optional[TelemetrySnapshot] = snapshot.get(Slice.TELEMETRY, "host")
    latency = snapshot.get(Slice.LATENCY, "backend")
    return DashboardView(
        revision=snapshot.revision,
        empty=not services,
        services=[_service_card(snapshot, service, server_ip) for service in services],
        connection=_connection(snapshot.get(Slice.CONNECTION, TELEMETRY_CHANNEL)),
        backend_latency=f"{latency}ms" if latency is not None else "--",
        telemetry=_telemetry(telemetry) if telemetry is not None else None,
        jobs=_jobs(snapshot),
        terminal=_terminal(snapshot),
    )


ViewListener = Callable[[DashboardView], None]


class ViewProjector:
    """Keeps a reconciled view of the store.

    Inside a running event loop a burst of writes is coalesced into one
    :func:`reconcile` per loop iteration; reading :attr:`view` never returns a
    stale projection.
    """

    def __init__(self, store: StateStore, *, server_ip: str = "localhost") -> None:
        self._store = store
        self.server_ip = server_ip
        self._listeners: List[ViewListener] = []
        self._view = reconcile(store.snapshot(), server_ip=server_ip)
        self._dirty = False
        self._scheduled: Optional[asyncio.Handle] = None
        self._unsubscribe = store.subscribe(self._on_change)

    @property
    def view(self) -> DashboardView:
        if self._dirty:
            self.refresh()
        return self._view

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def refresh(self) -> DashboardView:
        self._dirty = False
        self._view = reconcile(self._store.snapshot(), server_ip=self.server_ip)
        for listener in list(self._listeners):
            listener(self._view)
        return self._view

    def _on_change(self, change: StoreChange) -> None:
        self._dirty = True
        if self._scheduled is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.refresh()
            return
        self._scheduled = loop.call_soon(self._flush)

    def _flush(self) -> None:
        self._scheduled = None
        if self._dirty:
            self.refresh()

    def close(self) -> None:
        if self._scheduled is not None:
            self._scheduled.cancel()
            self._scheduled = None
        self._unsubscribe()
        self._listeners.clear()

