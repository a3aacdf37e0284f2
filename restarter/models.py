from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .selectors import parse_selector


class Phase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, raw: str | None) -> "Phase":
        try:
            return cls(raw)
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class UnitKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ContainerStatus:
    name: str
    ready: bool
    waiting: bool = False
    waiting_reason: str | None = None


@dataclass(frozen=True)
class ManagedUnit:
    """Read-only snapshot of one replica, taken once per reconcile."""

    namespace: str
    name: str
    phase: Phase
    ready: bool
    uid: str | None = None
    labels: dict[str, str] = field(default_factory=dict)
    containers: tuple[str, ...] = ()
    address: str | None = None
    container_statuses: tuple[ContainerStatus, ...] = ()

    @property
    def key(self) -> UnitKey:
        return UnitKey(self.namespace, self.name)


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int | None  # None: still running when the timeout hit


class Outcome(str, Enum):
    NO_ACTION = "no_action"
    RECYCLED = "recycled"
    ERROR = "error"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: Outcome
    requeue_after: float | None = None
    reason: str = ""


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL); the host is always the replica itself.
    if not path.startswith("/"):
        raise ValueError("HTTP health check path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("HTTP health check path must be a simple absolute path (no scheme, no '..').")


class HealthCheckConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    http_path: str = Field("", description="HTTP health endpoint path, e.g. /health (empty disables)")
    tcp_port: int = Field(0, ge=0, le=65535, description="TCP port to connect to (0 disables)")
    exec_command: str = Field("", description="Shell command run inside the container (empty disables)")
    exec_container: str = Field("", description="Target container (empty = first declared container)")
    exec_expected: str = Field("", description="Expected stdout (empty = exit code only)")
    timeout_s: float = Field(5.0, gt=0, description="Timeout applied to every network-bound check")

    @field_validator("http_path")
    @classmethod
    def _check_http_path(cls, v: str) -> str:
        v = v.strip()
        if v:
            validate_health_path(v)
        return v

    @model_validator(mode="after")
    def _exec_needs_command(self) -> "HealthCheckConfig":
        if not self.exec_command.strip() and (self.exec_container or self.exec_expected):
            raise ValueError("exec check container/expected output were given without an exec check command.")
        return self

    @property
    def http_enabled(self) -> bool:
        return bool(self.http_path)

    @property
    def tcp_enabled(self) -> bool:
        return self.tcp_port > 0

    @property
    def exec_enabled(self) -> bool:
        return bool(self.exec_command.strip())


class FilterConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    namespace: str = Field(..., min_length=1, description="Namespace the replicas live in")
    group_name: str = Field("", description="StatefulSet whose selector defines membership")
    label_selector: str = Field("", description="Label selector text, e.g. app=router,component=druid")

    @field_validator("group_name", "label_selector")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()

    @field_validator("label_selector")
    @classmethod
    def _check_selector(cls, v: str) -> str:
        parse_selector(v)
        return v

    @model_validator(mode="after")
    def _needs_criterion(self) -> "FilterConfig":
        if not self.group_name and not self.label_selector:
            raise ValueError("Either a StatefulSet name or a pod label selector (or both) must be provided.")
        return self
