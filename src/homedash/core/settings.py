"""Runtime settings loader."""

from __future__ import annotations

from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import yaml
from pydantic import BaseModel, Field, HttpUrl, ValidationError


class TrackerPolicy(BaseModel):
    """Attempt budget and pacing for one kind of tracked action."""

    budget: int = Field(default=180, ge=1)
    interval_seconds: float = Field(default=1.0, gt=0)
    error_interval_seconds: Optional[float] = Field(default=None, gt=0)


class StreamSettings(BaseModel):
    monitor_path: str = "/ws/monitor"
    terminal_path: str = "/ws/terminal"
    telemetry_reconnect_seconds: float = Field(default=3.0, gt=0)
    terminal_prompt: str = "$"
    terminal_scrollback: int = Field(default=5000, ge=1)


class RefreshSettings(BaseModel):
    reachability_seconds: float = Field(default=30.0, gt=0)
    process_seconds: float = Field(default=5.0, gt=0)
    latency_seconds: float = Field(default=5.0, gt=0)
    first_reachability_delay_seconds: float = Field(default=1.0, ge=0)
    first_process_delay_seconds: float = Field(default=1.5, ge=0)


class RuntimeSettings(BaseModel):
    base_url: HttpUrl
    server_ip: str = "localhost"
    http_timeout_seconds: float = Field(default=10.0, gt=0)
    launch: TrackerPolicy = Field(default_factory=TrackerPolicy)
    job: TrackerPolicy = Field(
        default_factory=lambda: TrackerPolicy(budget=120, interval_seconds=1.0, error_interval_seconds=2.0)
    )
    streams: StreamSettings = Field(default_factory=StreamSettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)
    audit_log_path: Optional[Path] = None

    @classmethod
    def from_file(cls, path: Path) -> "RuntimeSettings":
        data = yaml.safe_load(path.read_text()) or {}
        try:
            settings = cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Invalid runtime settings: {exc}") from exc
        if settings.audit_log_path and not settings.audit_log_path.is_absolute():
            settings.audit_log_path = (path.parent / settings.audit_log_path).resolve()
        return settings

    @property
    def api_base(self) -> str:
        return str(self.base_url).rstrip("/")

    def websocket_url(self, path: str) -> str:
        """Map the HTTP base URL onto the matching ws:// or wss:// endpoint."""
        parts = urlsplit(self.api_base)
        scheme = "wss" if parts.scheme == "https" else "ws"
        prefix = parts.path.rstrip("/")
        return urlunsplit((scheme, parts.netloc, f"{prefix}{path}", "", ""))
