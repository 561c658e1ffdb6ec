"""Rich rendering of a :class:`DashboardView` for the terminal runner."""

from __future__ import annotations

from typing import List, Optional

from rich.console import Group, RenderableType
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from homedash.core.models import ReachabilityStatus
from homedash.core.reconciler import DashboardView, TelemetryPanel, TemperatureBadge, TerminalPanel


_REACHABILITY_STYLES = {
    ReachabilityStatus.OK: "green",
    ReachabilityStatus.SLOW: "yellow",
    ReachabilityStatus.ERROR: "red",
    ReachabilityStatus.UNKNOWN: "dim",
}
_LEVEL_STYLES = {"warning": "yellow", "danger": "bold red"}


def _services(view: DashboardView) -> RenderableType:
    if view.empty:
        return Panel(Text("No services registered", style="dim"), title="Services")
    table = Table(expand=True)
    table.add_column("Service")
    table.add_column("Link")
    table.add_column("Status")
    table.add_column("Action")
    for card in view.services:
        status = Text("-", style="dim")
        if card.reachability is not None:
            status = Text(
                f"{card.reachability.symbol} {card.reachability.latency_text}".strip(),
                style=_REACHABILITY_STYLES[card.reachability.status],
            )
        action = Text("")
        if card.button is not None:
            action = Text(card.button.label, style="bold" if card.button.enabled else "dim italic")
        table.add_row(card.name, card.link_text, status, action)
    return Panel(table, title="Services")


def _badge(badge: Optional[TemperatureBadge]) -> Text:
    if badge is None:
        return Text("")
    return Text(f" {badge.value}°C", style=_LEVEL_STYLES.get(badge.level or "", ""))


def _telemetry(panel: Optional[TelemetryPanel]) -> RenderableType:
    if panel is None:
        return Panel(Text("Waiting for telemetry...", style="dim"), title="Monitor")
    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold")
    table.add_column()
    table.add_row("CPU", Text(f"{panel.cpu_percent}% {panel.cpu_model} ({panel.cpu_cores_text})") + _badge(panel.cpu_temperature))
    table.add_row("Memory", f"{panel.memory_percent}% {panel.memory_used_text}  {panel.memory_available_text}")
    if panel.gpu_available:
        table.add_row("GPU", Text(f"{panel.gpu_percent}% {panel.gpu_name}  {panel.gpu_memory_text}") + _badge(panel.gpu_temperature))
    else:
        table.add_row("GPU", "N/A")
    table.add_row("Network", f"↑ {panel.net_speed_up} ↓ {panel.net_speed_down}  (total ↑ {panel.net_total_up} ↓ {panel.net_total_down})")
    for disk in panel.disks:
        table.add_row(disk.mount_point, Text(disk.usage_text, style=_LEVEL_STYLES.get(disk.level or "", "")))
    return Panel(table, title="Monitor")


def _jobs(view: DashboardView) -> Optional[RenderableType]:
    if not view.jobs:
        return None
    rows: List[RenderableType] = []
    for job in view.jobs:
        style = "red" if job.failed else "green" if job.completed else ""
        rows.append(Text(f"{job.target_id}: {job.percent:3d}% {job.text}", style=style))
        rows.extend(Text(f"    {url}", style="cyan") for url in job.output_urls)
    return Panel(Group(*rows), title="Jobs")


def _terminal(panel: TerminalPanel, tail: int) -> RenderableType:
    lines: List[RenderableType] = []
    for line in panel.lines[-tail:]:
        text = Text()
        for segment in line.segments:
            text.append(segment.text, style=segment.style or "")
        lines.append(text)
    return Panel(Group(*lines), title=f"Terminal · {panel.status_text}")


def render_view(view: DashboardView, *, terminal_lines: int = 20) -> RenderableType:
    """Top bar, service cards, monitor, jobs and terminal tail as one renderable."""
    connection_style = "green" if view.connection.connected else "red"
    header = Text.assemble(
        ("● ", connection_style),
        view.connection.text,
        f"   backend {view.backend_latency}",
    )
    if view.telemetry is not None:
        bar = view.telemetry.top_bar
        header.append(f"   CPU {bar.cpu}  MEM {bar.memory}  GPU {bar.gpu}  ↑{bar.net_up} ↓{bar.net_down}")

    parts: List[RenderableType] = [header, _services(view), _telemetry(view.telemetry)]
    jobs = _jobs(view)
    if jobs is not None:
        parts.append(jobs)
    if view.terminal.lines:
        parts.append(_terminal(view.terminal, terminal_lines))
    return Group(*parts)
