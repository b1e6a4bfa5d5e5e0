from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from conftest import FakeClock

from prompt_relay.dispatch.availability import (
    DEFAULT_USAGE_LIMIT_WAIT_MS,
    AvailabilityTracker,
    format_time_remaining,
    parse_wait_time,
)
from prompt_relay.dispatch.common import from_iso
from prompt_relay.dispatch.models import BackendDescriptor, BackendKind, FallbackSource

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Availability and Fallback"),
]


def _backend(backend_id: str, **kwargs) -> BackendDescriptor:
    return BackendDescriptor(id=backend_id, name=backend_id, kind=BackendKind.PROCESS, **kwargs)


def _tracker(tmp_path: Path, clock: FakeClock, **kwargs) -> AvailabilityTracker:
    tracker = AvailabilityTracker(tmp_path / "provider-status.json", clock=clock, **kwargs)
    tracker.init()
    return tracker


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("1 day 2 hours 30 minutes", 95_400_000),
        ("try again in 45 seconds", 45_000),
        ("2 hours", 7_200_000),
        ("5pm Europe/Berlin", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_wait_time(text: str | None, expected: int | None) -> None:
    assert parse_wait_time(text) == expected


@pytest.mark.parametrize(
    ("ms", "expected"),
    [
        (95_400_000, "1d 2h 30m"),
        (7_200_000, "2h"),
        (59_000, "< 1m"),
        (0, "any moment"),
        (-5, "any moment"),
    ],
)
def test_format_time_remaining(ms: int, expected: str) -> None:
    assert format_time_remaining(ms) == expected


def test_unknown_backend_is_available(tmp_path: Path, fake_clock: FakeClock) -> None:
    tracker = _tracker(tmp_path, fake_clock)
    status = tracker.get_status("never-seen")
    assert status.available is True
    assert status.message == "Provider available"
    assert tracker.get_time_until_recovery("never-seen") is None


def test_usage_limit_uses_parsed_wait_and_persists(tmp_path: Path, fake_clock: FakeClock) -> None:
    tracker = _tracker(tmp_path, fake_clock)
    status = tracker.mark_usage_limit("claude-code", message="limit hit", wait_time="2 hours")

    assert status.available is False
    assert status.reason.value == "usage-limit"
    assert status.failure_count == 1
    assert from_iso(status.estimated_recovery) - fake_clock() == timedelta(hours=2)
    assert tracker.get_time_until_recovery("claude-code") == "2h"

    persisted = json.loads((tmp_path / "provider-status.json").read_text("utf-8"))
    assert persisted["providers"]["claude-code"]["available"] is False
    assert persisted["providers"]["claude-code"]["wait_time"] == "2 hours"
    assert persisted["last_updated"] == fake_clock().isoformat()


def test_usage_limit_default_wait_is_one_day(tmp_path: Path, fake_clock: FakeClock) -> None:
    tracker = _tracker(tmp_path, fake_clock)
    status = tracker.mark_usage_limit("codex", wait_time="whenever")

    elapsed = from_iso(status.estimated_recovery) - fake_clock()
    assert elapsed.total_seconds() * 1000 == DEFAULT_USAGE_LIMIT_WAIT_MS
    assert status.message == "Usage limit exceeded"
    assert tracker.get_time_until_recovery("codex") == "1d"


def test_rate_limit_increments_failure_count(tmp_path: Path, fake_clock: FakeClock) -> None:
    tracker = _tracker(tmp_path, fake_clock, rate_limit_wait_ms=120_000)
    tracker.mark_rate_limited("ollama")
    status = tracker.mark_rate_limited("ollama")

    assert status.failure_count == 2
    assert status.message == "Rate limit exceeded - temporary"
    assert tracker.get_time_until_recovery("ollama") == "2m"

    recovered = tracker.mark_available("ollama")
    assert recovered.available is True
    assert recovered.failure_count == 0


def test_listeners_receive_transitions(tmp_path: Path, fake_clock: FakeClock) -> None:
    tracker = _tracker(tmp_path, fake_clock)
    events: list[tuple[str, str]] = []
    unsubscribe = tracker.subscribe(lambda event: events.append((event.backend_id, event.type)))

    def _broken(_event) -> None:
        raise RuntimeError("listener bug")

    tracker.subscribe(_broken)
    tracker.mark_rate_limited("codex")
    tracker.mark_available("codex")
    unsubscribe()
    tracker.mark_usage_limit("codex")

    assert events == [("codex", "rate-limit"), ("codex", "recovered")]


def test_failing_listener_does_not_block_later_listeners_or_persistence(
    tmp_path: Path,
    fake_clock: FakeClock,
) -> None:
    tracker = _tracker(tmp_path, fake_clock)
    events: list[str] = []

    def _broken(_event) -> None:
        raise RuntimeError("listener bug")

    tracker.subscribe(_broken)
    tracker.subscribe(lambda event: events.append(event.type))
    tracker.mark_usage_limit("codex", wait_time="1 hour")

    assert events == ["usage-limit"]
    assert _tracker(tmp_path, fake_clock).is_available("codex") is False


def test_init_recovers_only_expired_entries(tmp_path: Path, fake_clock: FakeClock) -> None:
    tracker = _tracker(tmp_path, fake_clock)
    tracker.mark_usage_limit("short", wait_time="1 hour")
    tracker.mark_usage_limit("long", wait_time="3 hours")

    fake_clock.advance(hours=2)
    reloaded = _tracker(tmp_path, fake_clock)

    assert reloaded.is_available("short") is True
    assert reloaded.is_available("long") is False
    assert reloaded.get_time_until_recovery("long") == "1h"
    persisted = json.loads((tmp_path / "provider-status.json").read_text("utf-8"))
    assert persisted["providers"]["short"]["available"] is True


def test_init_tolerates_corrupt_status_file(tmp_path: Path, fake_clock: FakeClock) -> None:
    (tmp_path / "provider-status.json").write_text("{not json", "utf-8")
    tracker = _tracker(tmp_path, fake_clock)
    assert tracker.get_all_statuses() == {"providers": {}, "last_updated": None}


def test_fallback_precedence(tmp_path: Path, fake_clock: FakeClock) -> None:
    tracker = _tracker(tmp_path, fake_clock, fallback_priority=("codex", "ollama"))
    backends = {
        "claude-code": _backend("claude-code", fallback_backend="ollama"),
        "codex": _backend("codex"),
        "ollama": _backend("ollama"),
        "gemini-cli": _backend("gemini-cli"),
    }

    task = tracker.get_fallback_backend("claude-code", backends, "gemini-cli")
    assert task is not None
    assert (task.backend.id, task.source) == ("gemini-cli", FallbackSource.TASK)

    provider = tracker.get_fallback_backend("claude-code", backends)
    assert provider is not None
    assert (provider.backend.id, provider.source) == ("ollama", FallbackSource.PROVIDER)

    tracker.mark_usage_limit("ollama")
    system = tracker.get_fallback_backend("claude-code", backends)
    assert system is not None
    assert (system.backend.id, system.source) == ("codex", FallbackSource.SYSTEM)

    again = tracker.get_fallback_backend("claude-code", backends)
    assert again is not None
    assert again.backend.id == "codex"


def test_fallback_skips_disabled_unavailable_and_primary(
    tmp_path: Path,
    fake_clock: FakeClock,
) -> None:
    tracker = _tracker(tmp_path, fake_clock, fallback_priority=("codex", "ollama", "lmstudio"))
    backends = {
        "codex": _backend("codex"),
        "ollama": _backend("ollama", enabled=False),
        "lmstudio": _backend("lmstudio"),
    }
    tracker.mark_rate_limited("lmstudio")

    assert tracker.get_fallback_backend("codex", backends, "codex") is None
    assert tracker.get_fallback_backend("codex", backends, "missing") is None
