from __future__ import annotations

import asyncio
import os
from pathlib import Path

import allure
import pytest
from conftest import FakeClock, python_backend, write_providers

from prompt_relay.dispatch.availability import AvailabilityTracker
from prompt_relay.dispatch.backend import OutputChunk
from prompt_relay.dispatch.executor import (
    BackendUnavailableError,
    DispatchError,
    RunConfigurationError,
    RunExecutor,
    RunHooks,
    RunRequest,
)
from prompt_relay.dispatch.models import ErrorCategory, RunRecord, RunState, StopReason
from prompt_relay.dispatch.registry import BackendRegistry
from prompt_relay.dispatch.repository import RunRepository

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Run Executor"),
]

ECHO_SCRIPT = "import sys; print('echo:' + sys.argv[1])"
RATE_LIMIT_SCRIPT = "import sys; print('API Error: 429 rate limit exceeded'); sys.exit(1)"
USAGE_LIMIT_SCRIPT = (
    "import sys; print(\"You've hit your usage limit. Try again in 2 hours.\"); sys.exit(1)"
)
SLEEP_SCRIPT = "import sys, time; print('started', flush=True); time.sleep(30)"
PID_SLEEP_SCRIPT = "import os, time; print(os.getpid(), flush=True); time.sleep(30)"


def _executor(
    data_dir: Path,
    clock: FakeClock,
    providers: dict[str, dict[str, object]],
    *,
    hooks: RunHooks | None = None,
    fallback_priority: tuple[str, ...] = (),
) -> tuple[RunExecutor, AvailabilityTracker]:
    write_providers(data_dir, providers)
    tracker = AvailabilityTracker(
        data_dir / "provider-status.json",
        fallback_priority=fallback_priority,
        clock=clock,
    )
    tracker.init()
    executor = RunExecutor(
        registry=BackendRegistry(data_dir / "providers.json"),
        repository=RunRepository(data_dir / "runs"),
        tracker=tracker,
        hooks=hooks,
        clock=clock,
    )
    return executor, tracker


@pytest.mark.asyncio
async def test_successful_cli_run_streams_and_persists(
    data_dir: Path,
    fake_clock: FakeClock,
) -> None:
    events: list[str] = []
    chunks: list[OutputChunk] = []
    hooks = RunHooks(
        on_run_created=lambda record: events.append(f"created:{record.state.value}"),
        on_run_started=lambda record: events.append(f"started:{record.state.value}"),
        on_run_completed=lambda record, output: events.append(f"completed:{output.strip()}"),
    )
    executor, _ = _executor(
        data_dir,
        fake_clock,
        {"echo": python_backend(ECHO_SCRIPT)},
        hooks=hooks,
    )

    handle = executor.create_run(RunRequest(backend_id="echo", prompt="hello"))
    assert (handle.run_dir / "prompt.txt").read_text("utf-8") == "hello"

    record = await executor.start_run(
        handle,
        prompt="hello",
        on_output=chunks.append,
        on_complete=lambda done: events.append(f"complete:{done.state.value}"),
    )

    assert record.state == RunState.SUCCEEDED
    assert record.success is True
    assert record.exit_code == 0
    assert record.error_analysis is None
    assert "".join(chunk.text for chunk in chunks).strip() == "echo:hello"
    assert executor.get_run_output(record.id).strip() == "echo:hello"
    assert executor.get_run(record.id).state == RunState.SUCCEEDED
    assert events == [
        "created:created",
        "started:running",
        "completed:echo:hello",
        "complete:succeeded",
    ]
    assert executor.is_run_active(record.id) is False


@pytest.mark.asyncio
async def test_rate_limited_cli_run_marks_tracker(data_dir: Path, fake_clock: FakeClock) -> None:
    backend_errors: list[tuple[str, ErrorCategory | None]] = []
    hooks = RunHooks(
        on_backend_error=lambda backend_id, classification, _output: backend_errors.append(
            (backend_id, classification.category),
        ),
    )
    executor, tracker = _executor(
        data_dir,
        fake_clock,
        {"codex": python_backend(RATE_LIMIT_SCRIPT)},
        hooks=hooks,
    )

    handle = executor.create_run(RunRequest(backend_id="codex", prompt="hi"))
    record = await executor.start_run(handle, prompt="hi")

    assert record.state == RunState.FAILED
    assert record.success is False
    assert record.exit_code == 1
    assert record.error_category == ErrorCategory.RATE_LIMIT
    assert record.error_analysis is not None
    assert record.error_analysis.requires_fallback is False
    assert backend_errors == [("codex", ErrorCategory.RATE_LIMIT)]
    assert tracker.get_status("codex").reason.value == "rate-limit"
    assert tracker.is_available("codex") is False


@pytest.mark.asyncio
async def test_usage_limit_failure_reroutes_next_run(data_dir: Path, fake_clock: FakeClock) -> None:
    executor, tracker = _executor(
        data_dir,
        fake_clock,
        {
            "claude-code": python_backend(USAGE_LIMIT_SCRIPT, fallbackProvider="codex"),
            "codex": python_backend(ECHO_SCRIPT, defaultModel="gpt-5"),
        },
    )

    first = await executor.start_run(
        executor.create_run(RunRequest(backend_id="claude-code", prompt="x", model="opus")),
        prompt="x",
    )
    assert first.error_category == ErrorCategory.USAGE_LIMIT
    assert first.error_analysis.wait_time == "2 hours"
    assert tracker.get_time_until_recovery("claude-code") == "2h"

    handle = executor.create_run(RunRequest(backend_id="claude-code", prompt="y", model="opus"))
    assert handle.record.used_fallback is True
    assert handle.record.requested_backend_id == "claude-code"
    assert handle.record.backend_id == "codex"
    assert handle.record.fallback_source == "provider"
    assert handle.record.model == "gpt-5"

    second = await executor.start_run(handle, prompt="y")
    assert second.success is True
    assert executor.get_run_output(second.id).strip() == "echo:y"


def test_unavailable_backend_without_fallback_raises(data_dir: Path, fake_clock: FakeClock) -> None:
    executor, tracker = _executor(data_dir, fake_clock, {"codex": python_backend(ECHO_SCRIPT)})
    tracker.mark_usage_limit("codex", wait_time="3 hours")

    with pytest.raises(BackendUnavailableError) as error:
        executor.create_run(RunRequest(backend_id="codex", prompt="x"))

    assert error.value.reason == "usage-limit"
    assert error.value.time_until_recovery == "3h"
    assert "Recovery in: 3h" in str(error.value)
    assert executor.list_runs().total == 0


def test_create_run_rejects_unknown_and_disabled_backends(
    data_dir: Path,
    fake_clock: FakeClock,
) -> None:
    executor, _ = _executor(
        data_dir,
        fake_clock,
        {
            "off": python_backend(ECHO_SCRIPT, enabled=False),
            "empty": {"type": "cli", "command": ""},
            "api": {"type": "api"},
        },
    )

    with pytest.raises(RunConfigurationError, match="not found"):
        executor.create_run(RunRequest(backend_id="missing", prompt="x"))
    with pytest.raises(RunConfigurationError, match="disabled"):
        executor.create_run(RunRequest(backend_id="off", prompt="x"))
    with pytest.raises(RunConfigurationError, match="no command"):
        executor.create_run(RunRequest(backend_id="empty", prompt="x"))
    with pytest.raises(RunConfigurationError, match="no endpoint"):
        executor.create_run(RunRequest(backend_id="api", prompt="x"))


@pytest.mark.asyncio
async def test_timeout_stops_run_with_timeout_reason(data_dir: Path, fake_clock: FakeClock) -> None:
    executor, tracker = _executor(data_dir, fake_clock, {"slow": python_backend(SLEEP_SCRIPT)})

    handle = executor.create_run(RunRequest(backend_id="slow", prompt="x", timeout_ms=500))
    record = await executor.start_run(handle, prompt="x")

    assert record.state == RunState.STOPPED
    assert record.stop_reason == StopReason.TIMEOUT
    assert record.success is False
    assert record.error_category == ErrorCategory.TIMEOUT
    assert tracker.is_available("slow") is True


@pytest.mark.asyncio
async def test_stop_run_terminates_and_is_idempotent(data_dir: Path, fake_clock: FakeClock) -> None:
    completed: list[RunRecord] = []
    executor, _ = _executor(data_dir, fake_clock, {"slow": python_backend(SLEEP_SCRIPT)})

    handle = executor.create_run(RunRequest(backend_id="slow", prompt="x"))
    started = asyncio.Event()
    task = executor.start_run(
        handle,
        prompt="x",
        on_output=lambda _chunk: started.set(),
        on_complete=completed.append,
    )
    await asyncio.wait_for(started.wait(), timeout=10)

    assert executor.active_run_ids() == [handle.run_id]
    assert executor.stop_run(handle.run_id) is True
    assert executor.stop_run(handle.run_id) is False

    record = await asyncio.wait_for(task, timeout=10)
    assert record.state == RunState.STOPPED
    assert record.stop_reason == StopReason.USER
    assert record.error_analysis is None
    assert "started" in executor.get_run_output(record.id)
    assert completed == [record]


@pytest.mark.asyncio
async def test_missing_executable_fails_with_exit_127(
    data_dir: Path,
    fake_clock: FakeClock,
) -> None:
    executor, _ = _executor(
        data_dir,
        fake_clock,
        {"ghost": {"type": "cli", "command": "definitely-not-a-real-binary-xyz"}},
    )

    record = await executor.start_run(
        executor.create_run(RunRequest(backend_id="ghost", prompt="x")),
        prompt="x",
    )

    assert record.state == RunState.FAILED
    assert record.exit_code == 127
    assert record.error_category == ErrorCategory.UNKNOWN
    assert "not found" in record.error


@pytest.mark.asyncio
async def test_delete_run_refuses_active_runs(data_dir: Path, fake_clock: FakeClock) -> None:
    executor, _ = _executor(data_dir, fake_clock, {"echo": python_backend(ECHO_SCRIPT)})
    handle = executor.create_run(RunRequest(backend_id="echo", prompt="x"))
    task = executor.start_run(handle, prompt="x")

    with pytest.raises(DispatchError, match="still active"):
        executor.delete_run(handle.run_id)

    await task
    assert executor.delete_run(handle.run_id) is True
    assert executor.get_run(handle.run_id) is None


@pytest.mark.asyncio
async def test_cancelled_run_task_terminates_process_and_records_stop(
    data_dir: Path,
    fake_clock: FakeClock,
) -> None:
    completed: list[RunRecord] = []
    chunks: list[str] = []
    executor, _ = _executor(data_dir, fake_clock, {"slow": python_backend(PID_SLEEP_SCRIPT)})

    handle = executor.create_run(RunRequest(backend_id="slow", prompt="x"))
    started = asyncio.Event()

    def _on_output(chunk: OutputChunk) -> None:
        chunks.append(chunk.text)
        started.set()

    task = executor.start_run(
        handle,
        prompt="x",
        on_output=_on_output,
        on_complete=completed.append,
    )
    await asyncio.wait_for(started.wait(), timeout=10)
    pid = int("".join(chunks).split()[0])

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
    stored = executor.get_run(handle.run_id)
    assert stored.state == RunState.STOPPED
    assert stored.stop_reason == StopReason.USER
    assert stored.error_analysis is None
    assert executor.get_run_output(handle.run_id).strip() == str(pid)
    assert executor.is_run_active(handle.run_id) is False
    assert [record.state for record in completed] == [RunState.STOPPED]


@pytest.mark.asyncio
async def test_failing_output_callback_does_not_break_run(
    data_dir: Path,
    fake_clock: FakeClock,
) -> None:
    calls: list[str] = []

    def _explode(chunk: OutputChunk) -> None:
        calls.append(chunk.text)
        raise RuntimeError("display went away")

    executor, _ = _executor(data_dir, fake_clock, {"echo": python_backend(ECHO_SCRIPT)})

    record = await executor.start_run(
        executor.create_run(RunRequest(backend_id="echo", prompt="hello")),
        prompt="hello",
        on_output=_explode,
    )

    assert calls
    assert record.state == RunState.SUCCEEDED
    assert record.success is True
    assert executor.get_run_output(record.id).strip() == "echo:hello"


def test_malformed_backend_entry_does_not_block_fallback(
    data_dir: Path,
    fake_clock: FakeClock,
) -> None:
    executor, tracker = _executor(
        data_dir,
        fake_clock,
        {
            "claude-code": python_backend(ECHO_SCRIPT),
            "broken": {"type": "grpc"},
            "codex": python_backend(ECHO_SCRIPT),
        },
        fallback_priority=("broken", "codex"),
    )
    tracker.mark_rate_limited("claude-code")

    handle = executor.create_run(RunRequest(backend_id="claude-code", prompt="x"))

    assert handle.record.backend_id == "codex"
    assert handle.record.fallback_source == "system"
    with pytest.raises(RunConfigurationError, match="Unsupported backend type"):
        executor.create_run(RunRequest(backend_id="broken", prompt="x"))
