"""Controllers for dispatch CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from prompt_relay.config import Settings, validate_timeout_ms
from prompt_relay.dispatch.availability import AvailabilityTracker
from prompt_relay.dispatch.backend import ChatCompletionBackend, OutputChunk
from prompt_relay.dispatch.executor import RunExecutor, RunRequest
from prompt_relay.dispatch.models import BackendStatus, RunRecord
from prompt_relay.dispatch.registry import BackendRegistry
from prompt_relay.dispatch.repository import RunRepository


@dataclass(slots=True)
class RunPromptCommand:
    """CLI input for dispatching one prompt."""

    data_dir: Path | None
    backend_id: str
    prompt: str
    model: str | None
    timeout_ms: int | None
    workspace_path: Path | None
    fallback_backend_id: str | None
    images: tuple[str, ...]
    source: str = "cli"


@dataclass(slots=True)
class RunPromptResult:
    """Run report to render in CLI."""

    lines: list[str]
    success: bool


@dataclass(slots=True)
class StatusCommand:
    """CLI input for single-backend status operations."""

    data_dir: Path | None
    backend_id: str


@dataclass(slots=True)
class UsageLimitCommand:
    """CLI input for manually marking a usage limit."""

    data_dir: Path | None
    backend_id: str
    message: str | None
    wait_time: str | None


@dataclass(slots=True)
class ListRunsCommand:
    """CLI input for run listing."""

    data_dir: Path | None
    limit: int
    offset: int
    source: str


@dataclass(slots=True)
class RunIdCommand:
    """CLI input for run inspection and deletion."""

    data_dir: Path | None
    run_id: str


class DispatchCliController:
    """Wires settings into tracker, registry and executor for CLI operations."""

    def run_prompt(
        self,
        command: RunPromptCommand,
        on_output: Callable[[str], None],
    ) -> RunPromptResult:
        settings = Settings.from_env(data_dir=command.data_dir)
        timeout_ms = (
            validate_timeout_ms(command.timeout_ms, name="--timeout-ms")
            if command.timeout_ms is not None
            else None
        )
        executor = _executor(settings, _tracker(settings))
        handle = executor.create_run(
            RunRequest(
                backend_id=command.backend_id,
                prompt=command.prompt,
                model=command.model,
                timeout_ms=timeout_ms,
                workspace_path=command.workspace_path,
                source=command.source,
                fallback_backend_id=command.fallback_backend_id,
            ),
        )

        def _forward(chunk: OutputChunk) -> None:
            on_output(chunk.text)

        async def _dispatch() -> RunRecord:
            return await executor.start_run(
                handle,
                prompt=command.prompt,
                workspace_path=command.workspace_path,
                images=command.images,
                on_output=_forward,
            )

        record = asyncio.run(_dispatch())
        lines = []
        if record.used_fallback:
            lines.append(
                f"Fallback used: {record.requested_backend_id} -> {record.backend_id} "
                f"(source={record.fallback_source})",
            )
        lines.extend(_render_run(record))
        return RunPromptResult(lines=lines, success=bool(record.success))

    def list_statuses(self, data_dir: Path | None) -> list[str]:
        settings = Settings.from_env(data_dir=data_dir)
        tracker = _tracker(settings)
        registry = _registry(settings)
        backend_ids = [backend.id for backend in registry.list_backends()]
        known = tracker.get_all_statuses()["providers"]
        if isinstance(known, dict):
            backend_ids.extend(key for key in known if key not in backend_ids)
        if not backend_ids:
            return ["No backends configured."]
        return [
            _render_status(backend_id, tracker.get_status(backend_id), tracker)
            for backend_id in backend_ids
        ]

    def show_status(self, command: StatusCommand) -> list[str]:
        tracker = _tracker(Settings.from_env(data_dir=command.data_dir))
        status = tracker.get_status(command.backend_id)
        payload = dict(status.to_dict())
        payload["time_until_recovery"] = tracker.get_time_until_recovery(command.backend_id)
        return json.dumps(payload, indent=2).splitlines()

    def recover(self, command: StatusCommand) -> list[str]:
        tracker = _tracker(Settings.from_env(data_dir=command.data_dir))
        status = tracker.mark_available(command.backend_id)
        return [_render_status(command.backend_id, status, tracker)]

    def mark_usage_limit(self, command: UsageLimitCommand) -> list[str]:
        tracker = _tracker(Settings.from_env(data_dir=command.data_dir))
        status = tracker.mark_usage_limit(
            command.backend_id,
            message=command.message,
            wait_time=command.wait_time,
        )
        return [_render_status(command.backend_id, status, tracker)]

    def mark_rate_limited(self, command: StatusCommand) -> list[str]:
        tracker = _tracker(Settings.from_env(data_dir=command.data_dir))
        status = tracker.mark_rate_limited(command.backend_id)
        return [_render_status(command.backend_id, status, tracker)]

    def list_runs(self, command: ListRunsCommand) -> list[str]:
        repository = RunRepository(Settings.from_env(data_dir=command.data_dir).runs_path)
        page = repository.list_runs(
            limit=command.limit,
            offset=command.offset,
            source=command.source,
        )
        lines = [f"Runs: total={page.total} shown={len(page.runs)}"]
        lines.extend(
            f"- {record.id} {record.state.value} backend={record.backend_id} "
            f"model={record.model or '-'} started={record.start_time}"
            for record in page.runs
        )
        return lines

    def show_run(self, command: RunIdCommand) -> list[str]:
        record = self._require_run(command)
        return json.dumps(record.to_dict(), indent=2).splitlines()

    def run_output(self, command: RunIdCommand) -> list[str]:
        self._require_run(command)
        repository = RunRepository(Settings.from_env(data_dir=command.data_dir).runs_path)
        return (repository.get_run_output(command.run_id) or "").splitlines()

    def delete_run(self, command: RunIdCommand) -> list[str]:
        repository = RunRepository(Settings.from_env(data_dir=command.data_dir).runs_path)
        if not repository.delete_run(command.run_id):
            raise ValueError(f"Run not found: {command.run_id}")
        return [f"Run deleted: {command.run_id}"]

    def prune_failed(self, data_dir: Path | None) -> list[str]:
        repository = RunRepository(Settings.from_env(data_dir=data_dir).runs_path)
        return [f"Failed runs deleted: {repository.delete_failed_runs()}"]

    def list_backends(self, data_dir: Path | None) -> list[str]:
        registry = _registry(Settings.from_env(data_dir=data_dir))
        backends = registry.list_backends()
        if not backends:
            return ["No backends configured."]
        active = registry.get_active_backend()
        return [
            f"{'*' if active is not None and active.id == backend.id else '-'} {backend.id} "
            f"kind={backend.kind.value} model={backend.default_model or '-'} "
            f"enabled={backend.enabled} fallback={backend.fallback_backend or '-'}"
            for backend in backends
        ]

    @staticmethod
    def _require_run(command: RunIdCommand) -> RunRecord:
        repository = RunRepository(Settings.from_env(data_dir=command.data_dir).runs_path)
        record = repository.get_run(command.run_id)
        if record is None:
            raise ValueError(f"Run not found: {command.run_id}")
        return record


def _tracker(settings: Settings) -> AvailabilityTracker:
    tracker = AvailabilityTracker(
        settings.status_path,
        fallback_priority=settings.availability.fallback_priority,
        usage_limit_wait_ms=settings.availability.usage_limit_wait_seconds * 1000,
        rate_limit_wait_ms=settings.availability.rate_limit_wait_seconds * 1000,
    )
    tracker.init()
    return tracker


def _registry(settings: Settings) -> BackendRegistry:
    return BackendRegistry(
        settings.providers_path,
        default_timeout_ms=settings.runs.default_timeout_ms,
    )


def _executor(settings: Settings, tracker: AvailabilityTracker) -> RunExecutor:
    return RunExecutor(
        registry=_registry(settings),
        repository=RunRepository(settings.runs_path),
        tracker=tracker,
        max_concurrent_runs=settings.runs.max_concurrent_runs,
        api_backend=ChatCompletionBackend(image_root=settings.screenshots_path),
    )


def _render_status(backend_id: str, status: BackendStatus, tracker: AvailabilityTracker) -> str:
    if status.available:
        return f"{backend_id}: available"
    recovery = tracker.get_time_until_recovery(backend_id) or "unknown"
    return (
        f"{backend_id}: unavailable reason={status.reason.value} "
        f"failures={status.failure_count} recovery_in={recovery} message={status.message}"
    )


def _render_run(record: RunRecord) -> list[str]:
    lines = [
        f"Run {record.id}: state={record.state.value} backend={record.backend_id} "
        f"exit_code={record.exit_code} duration_ms={record.duration_ms} "
        f"output_bytes={record.output_size}",
    ]
    if record.error_analysis is not None:
        analysis = record.error_analysis
        category = analysis.category.value if analysis.category else "-"
        lines.append(f"Error: category={category} message={analysis.message}")
        if analysis.wait_time:
            lines.append(f"Wait time: {analysis.wait_time}")
        if analysis.suggested_fix:
            lines.append(f"Suggested fix: {analysis.suggested_fix}")
    elif record.error:
        lines.append(f"Error: {record.error}")
    return lines
