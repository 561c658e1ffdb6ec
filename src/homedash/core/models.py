"""Data models shared across the homedash runtime."""

from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class WireModel(BaseModel):
    """Base for payloads exchanged with the dashboard backend (camelCase JSON)."""

    model_config = ConfigDict(populate_by_name=True)


class Service(WireModel):
    """A registered service card."""

    id: str
    name: str
    description: str = ""
    port: int = Field(default=0, ge=0)
    icon: str = ""
    enabled: bool = True
    launch_command: str = Field(default="", alias="launchCommand")
    launch_path: str = Field(default="", alias="launchPath")
    process_name: str = Field(default="", alias="processName")
    auto_start: bool = Field(default=False, alias="autoStart")

    @property
    def has_endpoint(self) -> bool:
        return self.port > 0

    @property
    def has_launch_config(self) -> bool:
        return bool(self.launch_command or self.launch_path)

    def url(self, server_ip: str) -> Optional[str]:
        if not self.has_endpoint:
            return None
        return f"http://{server_ip or 'localhost'}:{self.port}"


class ReachabilityStatus(str, Enum):
    OK = "ok"
    SLOW = "slow"
    ERROR = "error"
    UNKNOWN = "unknown"


class ReachabilityResult(WireModel):
    """Latest connectivity check for one service."""

    id: str
    status: ReachabilityStatus = ReachabilityStatus.UNKNOWN
    latency_ms: int = Field(default=0, ge=0, alias="latency")
    message: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        # The backend also reports "disabled" for services without a port.
        try:
            return ReachabilityStatus(value)
        except ValueError:
            return ReachabilityStatus.UNKNOWN


class ProcessStatus(WireModel):
    """Whether the launch target of a service is currently running."""

    running: bool = False
    pid: Optional[int] = None

    @model_validator(mode="after")
    def _pid_only_when_running(self) -> "ProcessStatus":
        if not self.running or not self.pid:
            self.pid = None
        return self


class CpuStats(WireModel):
    usage: float = 0.0
    cores: int = 0
    model_name: str = Field(default="", alias="modelName")
    temperature: Optional[float] = None
    core_usage: List[float] = Field(default_factory=list, alias="coreUsage")


class MemoryStats(WireModel):
    used: int = 0
    total: int = 0
    available: int = 0
    used_percent: float = Field(default=0.0, alias="usedPercent")


class GpuStats(WireModel):
    available: bool = False
    usage: Optional[float] = None
    name: Optional[str] = None
    temperature: Optional[float] = None
    memory_used: Optional[int] = Field(default=None, alias="memoryUsed")
    memory_total: Optional[int] = Field(default=None, alias="memoryTotal")


class NetworkStats(WireModel):
    speed_sent: int = Field(default=0, alias="speedSent")
    speed_recv: int = Field(default=0, alias="speedRecv")
    bytes_sent: int = Field(default=0, alias="bytesSent")
    bytes_recv: int = Field(default=0, alias="bytesRecv")


class DiskStats(WireModel):
    mount_point: str = Field(alias="mountPoint")
    used: int = 0
    total: int = 0
    used_percent: float = Field(default=0.0, alias="usedPercent")
    device: Optional[str] = None
    fs_type: Optional[str] = Field(default=None, alias="fsType")


class TelemetrySnapshot(WireModel):
    """One self-consistent host status frame pushed by the monitor stream."""

    cpu: CpuStats = Field(default_factory=CpuStats)
    memory: MemoryStats = Field(default_factory=MemoryStats)
    gpu: GpuStats = Field(default_factory=GpuStats)
    network: NetworkStats = Field(default_factory=NetworkStats)
    disks: List[DiskStats] = Field(default_factory=list)
    time: Optional[int] = None


class JobAck(WireModel):
    job_id: str = Field(alias="promptId")


class JobOutput(WireModel):
    url: str
    filename: str = ""
    node_id: Optional[str] = Field(default=None, alias="nodeId")


class JobStatus(WireModel):
    """Progress report of a remote job."""

    job_id: Optional[str] = None
    progress: int = Field(default=0, ge=0, le=100)
    completed: bool = False
    failed: bool = False
    error: Optional[str] = None
    message: Optional[str] = None
    outputs: List[JobOutput] = Field(default_factory=list, alias="images")

    @field_validator("progress", mode="before")
    @classmethod
    def _clamp_progress(cls, value: Any) -> int:
        if value is None:
            return 0
        return max(0, min(100, int(value)))


class ActionKind(str, Enum):
    LAUNCH = "launch"
    STOP = "stop"
    JOB_EXECUTE = "job_execute"

    @property
    def kind_class(self) -> str:
        """Kinds sharing a class write the same store slot for a target."""
        if self is ActionKind.JOB_EXECUTE:
            return "job"
        return "process"


class StreamStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERROR = "error"


class ConnectionState(BaseModel):
    """Connection status flags of one stream channel."""

    status: StreamStatus = StreamStatus.IDLE
    errored: bool = False
    reconnect_pending: bool = False


class Severity(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    INFO = "info"


class EventType(str, Enum):
    """Message types flowing through the bus."""

    ACTION_OUTCOME = "action.outcome"
    NOTICE = "dashboard.notice"
    STREAM_STATUS = "stream.status"


class Notice(BaseModel):
    """User-visible message, one per terminal outcome."""

    severity: Severity
    message: str
    target_id: Optional[str] = None
    created_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))


class EventEnvelope(BaseModel):
    """Wrapper to transport events safely through the message bus."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))
    type: EventType
    target_id: str
    payload: Dict[str, Any]


class LineKind(str, Enum):
    OUTPUT = "output"
    ECHO = "echo"
    ERROR = "error"
    STATUS = "status"


class TranscriptLine(BaseModel):
    """One terminal transcript entry. ``text`` keeps any control sequences raw."""

    model_config = ConfigDict(frozen=True)

    kind: LineKind
    text: str
    prompt: Optional[str] = None
