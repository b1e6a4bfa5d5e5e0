"""Backend interface for run execution strategies."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from prompt_relay.dispatch.models import BackendDescriptor, StopReason


@dataclass(slots=True)
class OutputChunk:
    """One incremental piece of captured output."""

    text: str
    is_reasoning: bool = False


OutputCallback = Callable[[OutputChunk], None]


class BackendRunError(RuntimeError):
    """Backend could not be launched at all."""

    def __init__(self, message: str, *, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@dataclass(slots=True)
class ProcessRunRequest:
    """Inputs required to execute one subprocess run."""

    backend: BackendDescriptor
    prompt: str
    timeout_seconds: float
    stop_requested: asyncio.Event
    workspace_path: Path | None = None
    on_output: OutputCallback | None = None


@dataclass(slots=True)
class ProcessRunResult:
    """Execution outcome of a subprocess run."""

    exit_code: int | None
    output: str
    stop_reason: StopReason | None = None


@dataclass(slots=True)
class ApiRunRequest:
    """Inputs required to execute one streaming chat-completion run."""

    backend: BackendDescriptor
    model: str | None
    prompt: str
    timeout_seconds: float
    stop_requested: asyncio.Event
    images: list[str] = field(default_factory=list)
    on_output: OutputCallback | None = None


@dataclass(slots=True)
class ApiRunResult:
    """Execution outcome of a streaming chat-completion run."""

    status_code: int | None = None
    status_text: str = ""
    error_body: str = ""
    output: str = ""
    reasoning: str = ""
    used_reasoning_as_fallback: bool = False
    transport_error: str | None = None
    stop_reason: StopReason | None = None

    @property
    def is_http_failure(self) -> bool:
        return self.status_code is not None and not 200 <= self.status_code < 300
