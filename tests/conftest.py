"""Shared test fixtures."""

from __future__ import annotations

import json
import shlex
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

PYTHON_COMMAND = shlex.quote(sys.executable)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


def python_backend(script: str, **extra: object) -> dict[str, object]:
    """Process backend entry running ``script``; the prompt arrives as ``sys.argv[1]``."""

    entry: dict[str, object] = {"type": "cli", "command": PYTHON_COMMAND, "args": ["-c", script]}
    entry.update(extra)
    return entry


def write_providers(
    data_dir: Path,
    providers: dict[str, dict[str, object]],
    *,
    active: str | None = None,
) -> Path:
    path = data_dir / "providers.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    payload: dict[str, object] = {"providers": providers}
    if active is not None:
        payload["activeProvider"] = active
    path.write_text(json.dumps(payload), "utf-8")
    return path


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture()
def data_dir(tmp_path: Path, monkeypatch) -> Path:
    """Isolated data directory with relay env variables cleared."""

    for name in (
        "PROMPT_RELAY_DATA_DIR",
        "PROMPT_RELAY_PROVIDERS_FILE",
        "PROMPT_RELAY_STATUS_FILE",
        "PROMPT_RELAY_RUNS_DIR",
        "PROMPT_RELAY_SCREENSHOTS_DIR",
        "PROMPT_RELAY_FALLBACK_PRIORITY",
        "PROMPT_RELAY_USAGE_LIMIT_WAIT_SECONDS",
        "PROMPT_RELAY_RATE_LIMIT_WAIT_SECONDS",
        "PROMPT_RELAY_MAX_CONCURRENT_RUNS",
        "PROMPT_RELAY_DEFAULT_TIMEOUT_MS",
        "PROMPT_RELAY_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "data"
    path.mkdir()
    return path
