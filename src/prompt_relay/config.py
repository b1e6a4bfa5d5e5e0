"""Runtime configuration for backend dispatch."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from prompt_relay.dispatch.availability import DEFAULT_FALLBACK_PRIORITY

MIN_TIMEOUT_MS = 1_000
MAX_TIMEOUT_MS = 600_000


@dataclass(slots=True)
class AvailabilitySettings:
    """Backend availability and fallback settings."""

    fallback_priority: tuple[str, ...] = DEFAULT_FALLBACK_PRIORITY
    usage_limit_wait_seconds: int = 86_400
    rate_limit_wait_seconds: int = 300


@dataclass(slots=True)
class RunSettings:
    """Run execution settings."""

    max_concurrent_runs: int = 5
    default_timeout_ms: int = 300_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    data_dir: Path = Path("./data")
    providers_file: str = "providers.json"
    status_file: str = "provider-status.json"
    runs_dir: str = "runs"
    screenshots_dir: Path | None = None
    log_level: str = "WARNING"
    availability: AvailabilitySettings = field(default_factory=AvailabilitySettings)
    runs: RunSettings = field(default_factory=RunSettings)

    @property
    def providers_path(self) -> Path:
        return self.data_dir / self.providers_file

    @property
    def status_path(self) -> Path:
        return self.data_dir / self.status_file

    @property
    def runs_path(self) -> Path:
        return self.data_dir / self.runs_dir

    @property
    def screenshots_path(self) -> Path:
        return self.screenshots_dir or self.data_dir / "screenshots"

    @classmethod
    def from_env(cls, data_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        screenshots_raw = os.getenv("PROMPT_RELAY_SCREENSHOTS_DIR", "").strip()
        settings = cls(
            data_dir=data_dir or Path(os.getenv("PROMPT_RELAY_DATA_DIR", "./data")),
            providers_file=os.getenv("PROMPT_RELAY_PROVIDERS_FILE", "providers.json"),
            status_file=os.getenv("PROMPT_RELAY_STATUS_FILE", "provider-status.json"),
            runs_dir=os.getenv("PROMPT_RELAY_RUNS_DIR", "runs"),
            screenshots_dir=Path(screenshots_raw) if screenshots_raw else None,
            log_level=os.getenv("PROMPT_RELAY_LOG_LEVEL", "WARNING").strip().upper(),
            availability=AvailabilitySettings(
                fallback_priority=_collect_fallback_priority(),
                usage_limit_wait_seconds=int(
                    os.getenv("PROMPT_RELAY_USAGE_LIMIT_WAIT_SECONDS", "86400"),
                ),
                rate_limit_wait_seconds=int(
                    os.getenv("PROMPT_RELAY_RATE_LIMIT_WAIT_SECONDS", "300"),
                ),
            ),
            runs=RunSettings(
                max_concurrent_runs=int(os.getenv("PROMPT_RELAY_MAX_CONCURRENT_RUNS", "5")),
                default_timeout_ms=int(os.getenv("PROMPT_RELAY_DEFAULT_TIMEOUT_MS", "300000")),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.availability.usage_limit_wait_seconds <= 0:
            raise ValueError("PROMPT_RELAY_USAGE_LIMIT_WAIT_SECONDS must be > 0.")
        if self.availability.rate_limit_wait_seconds <= 0:
            raise ValueError("PROMPT_RELAY_RATE_LIMIT_WAIT_SECONDS must be > 0.")
        if self.runs.max_concurrent_runs <= 0:
            raise ValueError("PROMPT_RELAY_MAX_CONCURRENT_RUNS must be a positive integer.")
        validate_timeout_ms(self.runs.default_timeout_ms, name="PROMPT_RELAY_DEFAULT_TIMEOUT_MS")


def validate_timeout_ms(value: int, *, name: str = "timeout") -> int:
    if not MIN_TIMEOUT_MS <= value <= MAX_TIMEOUT_MS:
        raise ValueError(
            f"{name} must be between {MIN_TIMEOUT_MS} and {MAX_TIMEOUT_MS} ms, got {value}.",
        )
    return value


def _collect_fallback_priority() -> tuple[str, ...]:
    raw = os.getenv("PROMPT_RELAY_FALLBACK_PRIORITY")
    if raw is None:
        return DEFAULT_FALLBACK_PRIORITY
    deduped: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        backend_id = part.strip()
        if not backend_id or backend_id in seen:
            continue
        seen.add(backend_id)
        deduped.append(backend_id)
    return tuple(deduped)
