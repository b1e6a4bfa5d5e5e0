"""Run executor: dispatch, supervise and finalize prompt runs against backends."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from prompt_relay.dispatch.availability import AvailabilityTracker
from prompt_relay.dispatch.backend.api_backend import ChatCompletionBackend
from prompt_relay.dispatch.backend.base import (
    ApiRunRequest,
    ApiRunResult,
    BackendRunError,
    OutputCallback,
    OutputChunk,
    ProcessRunRequest,
    ProcessRunResult,
)
from prompt_relay.dispatch.backend.process_backend import ProcessBackend
from prompt_relay.dispatch.common import utc_now
from prompt_relay.dispatch.error_classifier import (
    classify_error,
    classify_http_error,
    extract_error_message,
)
from prompt_relay.dispatch.models import (
    BackendDescriptor,
    BackendKind,
    ErrorCategory,
    ErrorClassification,
    RunRecord,
    RunState,
    StopReason,
)
from prompt_relay.dispatch.registry import BackendLookup
from prompt_relay.dispatch.repository import RunPage, RunRepository

logger = logging.getLogger(__name__)

PROMPT_PREVIEW_CHARS = 500
STOPPED_BY_USER_MESSAGE = "Run stopped by user"

CompletionCallback = Callable[[RunRecord], None]


class DispatchError(RuntimeError):
    """Base error for runs rejected before execution starts."""


class RunConfigurationError(DispatchError):
    """Backend is missing, disabled or not runnable."""


class BackendUnavailableError(DispatchError):
    """Requested backend is down and no fallback qualifies."""

    def __init__(self, backend_id: str, reason: str, time_until_recovery: str | None) -> None:
        super().__init__(
            f"Backend {backend_id} is unavailable ({reason}) and no fallback is available. "
            f"Recovery in: {time_until_recovery or 'unknown'}",
        )
        self.backend_id = backend_id
        self.reason = reason
        self.time_until_recovery = time_until_recovery


@dataclass(slots=True)
class RunRequest:
    """Caller input for dispatching one prompt."""

    backend_id: str
    prompt: str
    model: str | None = None
    timeout_ms: int | None = None
    workspace_path: Path | None = None
    workspace_name: str = "default"
    source: str = "cli"
    fallback_backend_id: str | None = None


@dataclass(slots=True)
class RunHandle:
    """Accepted run ready to be executed."""

    run_id: str
    run_dir: Path
    backend: BackendDescriptor
    record: RunRecord
    timeout_ms: int
    stop_requested: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass(slots=True)
class RunHooks:
    """Optional host callbacks for run lifecycle and backend failures."""

    on_run_created: Callable[[RunRecord], None] | None = None
    on_run_started: Callable[[RunRecord], None] | None = None
    on_run_completed: Callable[[RunRecord, str], None] | None = None
    on_run_failed: Callable[[RunRecord, str, str], None] | None = None
    on_backend_error: Callable[[str, ErrorClassification, str], None] | None = None


@dataclass(slots=True)
class _Outcome:
    output: str
    exit_code: int | None
    stop_reason: StopReason | None
    classification: ErrorClassification | None
    hook_output: str = ""
    had_reasoning: bool = False
    used_reasoning_as_fallback: bool = False


class RunExecutor:
    """Owns the active-run registry and drives runs to exactly one terminal write."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: BackendLookup,
        repository: RunRepository,
        tracker: AvailabilityTracker | None = None,
        hooks: RunHooks | None = None,
        max_concurrent_runs: int = 5,
        process_backend: ProcessBackend | None = None,
        api_backend: ChatCompletionBackend | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.repository = repository
        self.tracker = tracker
        self.hooks = hooks or RunHooks()
        self.max_concurrent_runs = max_concurrent_runs
        self.process_backend = process_backend or ProcessBackend()
        self.api_backend = api_backend or ChatCompletionBackend()
        self._clock = clock
        self._active: dict[str, RunHandle] = {}
        self._tasks: set[asyncio.Task[RunRecord]] = set()

    def create_run(self, request: RunRequest) -> RunHandle:
        """Validate, resolve fallback and persist the initial run shell."""

        try:
            requested = self.registry.get_backend(request.backend_id)
        except (TypeError, ValueError) as error:
            raise RunConfigurationError(f"Backend {request.backend_id}: {error}") from error
        if requested is None:
            raise RunConfigurationError(f"Backend not found: {request.backend_id}")

        backend = requested
        fallback_source: str | None = None
        if self.tracker is not None and not self.tracker.is_available(request.backend_id):
            choice = self.tracker.get_fallback_backend(
                request.backend_id,
                {item.id: item for item in self.registry.list_backends()},
                request.fallback_backend_id,
            )
            if choice is None:
                raise BackendUnavailableError(
                    request.backend_id,
                    self.tracker.get_status(request.backend_id).reason.value,
                    self.tracker.get_time_until_recovery(request.backend_id),
                )
            backend = choice.backend
            fallback_source = choice.source.value
            logger.info(
                "Using fallback backend %s for %s (source: %s)",
                backend.id,
                request.backend_id,
                fallback_source,
            )

        _validate_runnable(backend)
        if len(self._active) >= self.max_concurrent_runs:
            logger.warning(
                "%d runs already active (soft cap %d); accepting run anyway",
                len(self._active),
                self.max_concurrent_runs,
            )

        used_fallback = fallback_source is not None
        model = backend.default_model if used_fallback else request.model or backend.default_model
        record = RunRecord(
            id=uuid.uuid4().hex,
            backend_id=backend.id,
            backend_name=backend.name,
            requested_backend_id=request.backend_id if used_fallback else None,
            used_fallback=used_fallback,
            fallback_source=fallback_source,
            model=model,
            prompt=request.prompt[:PROMPT_PREVIEW_CHARS],
            start_time=self._clock().isoformat(),
            workspace_path=str(request.workspace_path) if request.workspace_path else None,
            workspace_name=request.workspace_name,
            source=request.source,
        )
        run_dir = self.repository.create(record, request.prompt)
        self._fire(self.hooks.on_run_created, record)
        logger.info(
            "Run %s created [%s]: %s/%s",
            record.id,
            record.source,
            backend.name,
            record.model,
        )
        return RunHandle(
            run_id=record.id,
            run_dir=run_dir,
            backend=backend,
            record=record,
            timeout_ms=request.timeout_ms or backend.timeout_ms,
        )

    def start_run(  # noqa: PLR0913
        self,
        handle: RunHandle,
        *,
        prompt: str,
        workspace_path: Path | None = None,
        images: Sequence[str] = (),
        on_output: OutputCallback | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> asyncio.Task[RunRecord]:
        """Schedule the run in a tracked background task and return it."""

        self._register(handle)
        if handle.backend.kind is BackendKind.HTTP_STREAM:
            coroutine = self.execute_api_run(
                handle,
                prompt=prompt,
                images=images,
                on_output=on_output,
                on_complete=on_complete,
            )
        else:
            coroutine = self.execute_cli_run(
                handle,
                prompt=prompt,
                workspace_path=workspace_path,
                on_output=on_output,
                on_complete=on_complete,
            )
        task = asyncio.create_task(coroutine, name=f"run-{handle.run_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def execute_cli_run(
        self,
        handle: RunHandle,
        *,
        prompt: str,
        workspace_path: Path | None = None,
        on_output: OutputCallback | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> RunRecord:
        """Run a process backend to completion and write its terminal record."""

        self._register(handle)
        started = time.monotonic()
        self._mark_running(handle)
        logger.info("Executing CLI backend %s for run %s", handle.backend.id, handle.run_id)
        captured: list[str] = []
        try:
            result = await self.process_backend.run(
                ProcessRunRequest(
                    backend=handle.backend,
                    prompt=prompt,
                    timeout_seconds=handle.timeout_ms / 1000,
                    stop_requested=handle.stop_requested,
                    workspace_path=workspace_path,
                    on_output=self._forward_output(captured, on_output),
                ),
            )
        except asyncio.CancelledError:
            self._finalize_cancelled(handle, started, captured, on_complete)
            raise
        except BackendRunError as error:
            result = ProcessRunResult(exit_code=error.exit_code, output=str(error))
        except Exception as error:  # noqa: BLE001
            logger.exception("CLI run %s crashed", handle.run_id)
            result = ProcessRunResult(exit_code=None, output=str(error) or type(error).__name__)
        finally:
            self._active.pop(handle.run_id, None)

        return self._finalize(
            handle,
            started=started,
            outcome=self._process_outcome(handle, result),
            on_complete=on_complete,
        )

    async def execute_api_run(  # noqa: PLR0913
        self,
        handle: RunHandle,
        *,
        prompt: str,
        model: str | None = None,
        images: Sequence[str] = (),
        on_output: OutputCallback | None = None,
        on_complete: CompletionCallback | None = None,
    ) -> RunRecord:
        """Stream a chat completion to completion and write its terminal record."""

        self._register(handle)
        started = time.monotonic()
        self._mark_running(handle)
        captured: list[str] = []
        try:
            result = await self.api_backend.run(
                ApiRunRequest(
                    backend=handle.backend,
                    model=model or handle.record.model,
                    prompt=prompt,
                    timeout_seconds=handle.timeout_ms / 1000,
                    stop_requested=handle.stop_requested,
                    images=list(images),
                    on_output=self._forward_output(captured, on_output),
                ),
            )
        except asyncio.CancelledError:
            self._finalize_cancelled(handle, started, captured, on_complete)
            raise
        except BackendRunError as error:
            result = ApiRunResult(transport_error=str(error))
        except Exception as error:  # noqa: BLE001
            logger.exception("API run %s crashed", handle.run_id)
            result = ApiRunResult(transport_error=str(error) or type(error).__name__)
        finally:
            self._active.pop(handle.run_id, None)

        return self._finalize(
            handle,
            started=started,
            outcome=self._api_outcome(handle, result),
            on_complete=on_complete,
        )

    def stop_run(self, run_id: str) -> bool:
        """Request termination of an in-flight run; False when none is active."""

        active = self._active.pop(run_id, None)
        if active is None:
            return False
        active.stop_requested.set()
        logger.info("Stop requested for run %s", run_id)
        return True

    def is_run_active(self, run_id: str) -> bool:
        return run_id in self._active

    def active_run_ids(self) -> list[str]:
        return list(self._active)

    def get_run(self, run_id: str) -> RunRecord | None:
        return self.repository.get_run(run_id)

    def get_run_output(self, run_id: str) -> str | None:
        return self.repository.get_run_output(run_id)

    def get_run_prompt(self, run_id: str) -> str | None:
        return self.repository.get_run_prompt(run_id)

    def list_runs(self, *, limit: int = 50, offset: int = 0, source: str = "all") -> RunPage:
        return self.repository.list_runs(limit=limit, offset=offset, source=source)

    def delete_run(self, run_id: str) -> bool:
        if self.is_run_active(run_id):
            raise DispatchError(f"Run {run_id} is still active")
        return self.repository.delete_run(run_id)

    def delete_failed_runs(self) -> int:
        return self.repository.delete_failed_runs()

    def _register(self, handle: RunHandle) -> None:
        if not handle.stop_requested.is_set():
            self._active.setdefault(handle.run_id, handle)

    def _mark_running(self, handle: RunHandle) -> None:
        handle.record.state = RunState.RUNNING
        self.repository.save_metadata(handle.record)
        self._fire(self.hooks.on_run_started, handle.record)

    def _forward_output(
        self,
        captured: list[str],
        on_output: OutputCallback | None,
    ) -> OutputCallback:
        """Keep a copy of streamed text and shield the backend from a failing callback."""

        def _forward(chunk: OutputChunk) -> None:
            if not chunk.is_reasoning:
                captured.append(chunk.text)
            self._fire(on_output, chunk)

        return _forward

    def _finalize_cancelled(
        self,
        handle: RunHandle,
        started: float,
        captured: list[str],
        on_complete: CompletionCallback | None,
    ) -> None:
        self._active.pop(handle.run_id, None)
        logger.warning("Run %s cancelled; recording it as stopped", handle.run_id)
        self._finalize(
            handle,
            started=started,
            outcome=_Outcome("".join(captured), None, StopReason.USER, None),
            on_complete=on_complete,
        )

    def _process_outcome(self, handle: RunHandle, result: ProcessRunResult) -> _Outcome:
        if result.stop_reason is StopReason.USER:
            return _Outcome(result.output, result.exit_code, StopReason.USER, None)
        if result.stop_reason is None and result.exit_code == 0:
            return _Outcome(result.output, 0, None, None)

        text = result.output
        if result.stop_reason is StopReason.TIMEOUT:
            text = f"{text}\nProcess timed out after {handle.timeout_ms}ms"
        return _Outcome(
            output=result.output,
            exit_code=result.exit_code,
            stop_reason=result.stop_reason,
            classification=_classify_failure(text, result.exit_code),
            hook_output=result.output,
        )

    def _api_outcome(self, handle: RunHandle, result: ApiRunResult) -> _Outcome:
        reasoning = {
            "had_reasoning": bool(result.reasoning),
            "used_reasoning_as_fallback": result.used_reasoning_as_fallback,
        }
        if result.stop_reason is StopReason.USER:
            return _Outcome(result.output, None, StopReason.USER, None, **reasoning)
        if result.is_http_failure:
            status = result.status_code or 0
            classification = classify_http_error(status, result.status_text, result.error_body)
            return _Outcome(
                output=result.output,
                exit_code=None,
                stop_reason=None,
                classification=_ensure_error(classification, f"API error: {status}"),
                hook_output=result.error_body,
            )
        if result.transport_error is not None or result.stop_reason is StopReason.TIMEOUT:
            message = result.transport_error or f"Stream timed out after {handle.timeout_ms}ms"
            return _Outcome(
                output=result.output,
                exit_code=None,
                stop_reason=result.stop_reason,
                classification=_classify_failure(message, None),
                hook_output=result.output,
                **reasoning,
            )
        return _Outcome(result.output, 0, None, None, **reasoning)

    def _finalize(
        self,
        handle: RunHandle,
        *,
        started: float,
        outcome: _Outcome,
        on_complete: CompletionCallback | None,
    ) -> RunRecord:
        record = handle.record
        record.end_time = self._clock().isoformat()
        record.duration_ms = int((time.monotonic() - started) * 1000)
        record.exit_code = outcome.exit_code
        record.output_size = len(outcome.output.encode("utf-8"))
        record.had_reasoning = outcome.had_reasoning
        record.used_reasoning_as_fallback = outcome.used_reasoning_as_fallback
        record.stop_reason = outcome.stop_reason
        record.success = outcome.stop_reason is None and outcome.classification is None

        if outcome.stop_reason is StopReason.USER:
            record.state = RunState.STOPPED
            record.error = STOPPED_BY_USER_MESSAGE
        elif outcome.classification is not None:
            record.state = RunState.STOPPED if outcome.stop_reason else RunState.FAILED
            record.error = outcome.classification.message
            record.error_category = outcome.classification.category
            record.error_analysis = outcome.classification
            self._handle_backend_error(
                handle.backend.id,
                outcome.classification,
                outcome.hook_output,
            )
        else:
            record.state = RunState.SUCCEEDED

        self.repository.save_output(record.id, outcome.output)
        self.repository.save_metadata(record)
        logger.info(
            "Run %s finished: state=%s exit_code=%s duration_ms=%s",
            record.id,
            record.state.value,
            record.exit_code,
            record.duration_ms,
        )

        if record.success:
            self._fire(self.hooks.on_run_completed, record, outcome.output)
        else:
            self._fire(self.hooks.on_run_failed, record, record.error or "", outcome.output)
        self._fire(on_complete, record)
        return record

    def _handle_backend_error(
        self,
        backend_id: str,
        classification: ErrorClassification,
        output: str,
    ) -> None:
        if classification.category not in (ErrorCategory.RATE_LIMIT, ErrorCategory.USAGE_LIMIT):
            return
        self._fire(self.hooks.on_backend_error, backend_id, classification, output)
        if self.tracker is None:
            return
        try:
            if (
                classification.category is ErrorCategory.USAGE_LIMIT
                and classification.requires_fallback
            ):
                self.tracker.mark_usage_limit(
                    backend_id,
                    message=classification.message,
                    wait_time=classification.wait_time,
                )
            elif classification.category is ErrorCategory.RATE_LIMIT:
                self.tracker.mark_rate_limited(backend_id)
        except OSError:
            logger.exception("Failed to persist availability change for backend %s", backend_id)

    @staticmethod
    def _fire(callback: Callable[..., None] | None, *args: object) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:  # noqa: BLE001
            logger.exception("Run lifecycle callback %r failed", callback)


def _validate_runnable(backend: BackendDescriptor) -> None:
    if not backend.enabled:
        raise RunConfigurationError(f"Backend is disabled: {backend.id}")
    if backend.kind is BackendKind.PROCESS and not (backend.command or "").strip():
        raise RunConfigurationError(f"Backend {backend.id} has no command configured")
    if backend.kind is BackendKind.HTTP_STREAM and not (backend.endpoint or "").strip():
        raise RunConfigurationError(f"Backend {backend.id} has no endpoint configured")


def _classify_failure(text: str, exit_code: int | None) -> ErrorClassification:
    fallback_message = (
        f"Process exited with code {exit_code}" if exit_code is not None else "Run failed"
    )
    return _ensure_error(classify_error(text, exit_code), fallback_message, text)


def _ensure_error(
    classification: ErrorClassification,
    fallback_message: str,
    text: str = "",
) -> ErrorClassification:
    """Failed runs always carry an error classification, ``unknown`` at worst."""

    if classification.has_error:
        return classification
    return ErrorClassification(
        has_error=True,
        category=ErrorCategory.UNKNOWN,
        message=extract_error_message(text) or fallback_message,
    )
