"""Domain models for backend dispatch, availability and run records."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class BackendKind(str, Enum):
    """How a backend executes prompts."""

    PROCESS = "process"
    HTTP_STREAM = "http-stream"


class ErrorCategory(str, Enum):
    """Normalized failure categories produced by the error classifier."""

    RATE_LIMIT = "rate-limit"
    USAGE_LIMIT = "usage-limit"
    AUTH_ERROR = "auth-error"
    MODEL_NOT_FOUND = "model-not-found"
    NETWORK_ERROR = "network-error"
    TIMEOUT = "timeout"
    QUOTA_EXCEEDED = "quota-exceeded"
    UNKNOWN = "unknown"


class StatusReason(str, Enum):
    """Reason codes stored in backend status records."""

    OK = "ok"
    USAGE_LIMIT = "usage-limit"
    RATE_LIMIT = "rate-limit"


class RunState(str, Enum):
    """Per-run lifecycle states."""

    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    STOPPED = "stopped"


class StopReason(str, Enum):
    """Why a run was forcibly terminated."""

    USER = "user"
    TIMEOUT = "timeout"


class FallbackSource(str, Enum):
    """Tier that supplied a fallback backend."""

    TASK = "task"
    PROVIDER = "provider"
    SYSTEM = "system"


_KIND_ALIASES = {
    "cli": BackendKind.PROCESS,
    "process": BackendKind.PROCESS,
    "api": BackendKind.HTTP_STREAM,
    "http-stream": BackendKind.HTTP_STREAM,
}

DEFAULT_BACKEND_TIMEOUT_MS = 300_000


@dataclass(slots=True)
class BackendDescriptor:
    """Read-only backend configuration supplied by the registry."""

    id: str
    name: str
    kind: BackendKind
    command: str | None = None
    args: list[str] = field(default_factory=list)
    env_vars: dict[str, str] = field(default_factory=dict)
    endpoint: str | None = None
    api_key: str = ""
    default_model: str | None = None
    models: list[str] = field(default_factory=list)
    timeout_ms: int = DEFAULT_BACKEND_TIMEOUT_MS
    enabled: bool = True
    fallback_backend: str | None = None

    @classmethod
    def from_dict(
        cls,
        backend_id: str,
        raw: dict[str, Any],
        *,
        default_timeout_ms: int = DEFAULT_BACKEND_TIMEOUT_MS,
    ) -> BackendDescriptor:
        """Build descriptor from a stored registry entry."""

        kind_raw = str(raw.get("type") or raw.get("kind") or "cli").strip().lower()
        kind = _KIND_ALIASES.get(kind_raw)
        if kind is None:
            raise ValueError(f"Unsupported backend type for {backend_id!r}: {kind_raw!r}")
        args = raw.get("args") or []
        if not isinstance(args, list):
            raise ValueError(f"backend {backend_id!r}: args must be a list")
        env_vars = raw.get("envVars") or raw.get("env_vars") or {}
        if not isinstance(env_vars, dict):
            raise ValueError(f"backend {backend_id!r}: env vars must be an object")
        timeout_raw = raw.get("timeout") or raw.get("timeout_ms") or default_timeout_ms
        return cls(
            id=backend_id,
            name=str(raw.get("name") or backend_id),
            kind=kind,
            command=raw.get("command") or None,
            args=[str(arg) for arg in args],
            env_vars={str(key): str(value) for key, value in env_vars.items()},
            endpoint=raw.get("endpoint") or None,
            api_key=str(raw.get("apiKey") or raw.get("api_key") or ""),
            default_model=raw.get("defaultModel") or raw.get("default_model") or None,
            models=[str(model) for model in raw.get("models") or []],
            timeout_ms=int(timeout_raw),
            enabled=raw.get("enabled", True) is not False,
            fallback_backend=(
                raw.get("fallbackProvider") or raw.get("fallback_backend") or None
            ),
        )


@dataclass(slots=True, frozen=True)
class ErrorClassification:
    """Structured result of analysing failure output."""

    has_error: bool
    category: ErrorCategory | None = None
    message: str | None = None
    wait_time: str | None = None
    requires_fallback: bool = False
    actionable: bool = False
    suggested_fix: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "has_error": self.has_error,
            "category": self.category.value if self.category is not None else None,
            "message": self.message,
            "wait_time": self.wait_time,
            "requires_fallback": self.requires_fallback,
            "actionable": self.actionable,
            "suggested_fix": self.suggested_fix,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ErrorClassification:
        category = raw.get("category")
        return cls(
            has_error=bool(raw.get("has_error")),
            category=ErrorCategory(category) if category else None,
            message=raw.get("message"),
            wait_time=raw.get("wait_time"),
            requires_fallback=bool(raw.get("requires_fallback")),
            actionable=bool(raw.get("actionable")),
            suggested_fix=raw.get("suggested_fix"),
        )


NO_ERROR = ErrorClassification(has_error=False)


@dataclass(slots=True)
class BackendStatus:
    """Availability record for one backend id."""

    available: bool
    reason: StatusReason
    message: str
    last_checked: str
    wait_time: str | None = None
    unavailable_since: str | None = None
    estimated_recovery: str | None = None
    failure_count: int = 0

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["reason"] = self.reason.value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> BackendStatus:
        return cls(
            available=bool(raw.get("available", True)),
            reason=StatusReason(raw.get("reason") or StatusReason.OK.value),
            message=str(raw.get("message") or ""),
            last_checked=str(raw.get("last_checked") or ""),
            wait_time=raw.get("wait_time"),
            unavailable_since=raw.get("unavailable_since"),
            estimated_recovery=raw.get("estimated_recovery"),
            failure_count=int(raw.get("failure_count") or 0),
        )


@dataclass(slots=True)
class StatusChange:
    """Event payload published on every availability transition."""

    backend_id: str
    status: BackendStatus
    type: str


@dataclass(slots=True)
class FallbackChoice:
    """Resolved fallback backend and the tier that supplied it."""

    backend: BackendDescriptor
    source: FallbackSource


@dataclass(slots=True)
class RunRecord:
    """Persisted metadata for one dispatched run."""

    id: str
    backend_id: str
    backend_name: str
    model: str | None
    prompt: str
    start_time: str
    requested_backend_id: str | None = None
    used_fallback: bool = False
    fallback_source: str | None = None
    workspace_path: str | None = None
    workspace_name: str = "default"
    source: str = "cli"
    state: RunState = RunState.CREATED
    end_time: str | None = None
    duration_ms: int | None = None
    exit_code: int | None = None
    success: bool | None = None
    stop_reason: StopReason | None = None
    error: str | None = None
    error_category: ErrorCategory | None = None
    error_analysis: ErrorClassification | None = None
    output_size: int = 0
    had_reasoning: bool = False
    used_reasoning_as_fallback: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in (RunState.SUCCEEDED, RunState.FAILED, RunState.STOPPED)

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["state"] = self.state.value
        payload["stop_reason"] = self.stop_reason.value if self.stop_reason else None
        payload["error_category"] = self.error_category.value if self.error_category else None
        payload["error_analysis"] = (
            self.error_analysis.to_dict() if self.error_analysis is not None else None
        )
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RunRecord:
        analysis = raw.get("error_analysis")
        stop_reason = raw.get("stop_reason")
        category = raw.get("error_category")
        return cls(
            id=str(raw["id"]),
            backend_id=str(raw["backend_id"]),
            backend_name=str(raw.get("backend_name") or raw["backend_id"]),
            model=raw.get("model"),
            prompt=str(raw.get("prompt") or ""),
            start_time=str(raw["start_time"]),
            requested_backend_id=raw.get("requested_backend_id"),
            used_fallback=bool(raw.get("used_fallback")),
            fallback_source=raw.get("fallback_source"),
            workspace_path=raw.get("workspace_path"),
            workspace_name=str(raw.get("workspace_name") or "default"),
            source=str(raw.get("source") or "cli"),
            state=RunState(raw.get("state") or RunState.CREATED.value),
            end_time=raw.get("end_time"),
            duration_ms=raw.get("duration_ms"),
            exit_code=raw.get("exit_code"),
            success=raw.get("success"),
            stop_reason=StopReason(stop_reason) if stop_reason else None,
            error=raw.get("error"),
            error_category=ErrorCategory(category) if category else None,
            error_analysis=(
                ErrorClassification.from_dict(analysis) if isinstance(analysis, dict) else None
            ),
            output_size=int(raw.get("output_size") or 0),
            had_reasoning=bool(raw.get("had_reasoning")),
            used_reasoning_as_fallback=bool(raw.get("used_reasoning_as_fallback")),
        )
