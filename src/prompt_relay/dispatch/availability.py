"""Per-backend availability tracking and fallback resolution."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta
from pathlib import Path

from prompt_relay.dispatch.common import from_iso, load_json_or_empty, utc_now, write_json
from prompt_relay.dispatch.models import (
    BackendDescriptor,
    BackendStatus,
    FallbackChoice,
    FallbackSource,
    StatusChange,
    StatusReason,
)

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_PRIORITY: tuple[str, ...] = (
    "claude-code",
    "codex",
    "lmstudio",
    "local-lm-studio",
    "ollama",
    "gemini-cli",
)
DEFAULT_USAGE_LIMIT_WAIT_MS = 24 * 60 * 60 * 1000
DEFAULT_RATE_LIMIT_WAIT_MS = 5 * 60 * 1000

AVAILABLE_MESSAGE = "Provider available"
RATE_LIMIT_MESSAGE = "Rate limit exceeded - temporary"
USAGE_LIMIT_MESSAGE = "Usage limit exceeded"

_MS_PER_SECOND = 1000
_MS_PER_MINUTE = 60 * _MS_PER_SECOND
_MS_PER_HOUR = 60 * _MS_PER_MINUTE
_MS_PER_DAY = 24 * _MS_PER_HOUR

_WAIT_COMPONENTS: tuple[tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"(\d+)\s*day", re.IGNORECASE), _MS_PER_DAY),
    (re.compile(r"(\d+)\s*hour", re.IGNORECASE), _MS_PER_HOUR),
    (re.compile(r"(\d+)\s*min", re.IGNORECASE), _MS_PER_MINUTE),
    (re.compile(r"(\d+)\s*sec", re.IGNORECASE), _MS_PER_SECOND),
)

StatusListener = Callable[[StatusChange], None]


def parse_wait_time(text: str | None) -> int | None:
    """Sum day/hour/minute/second components found in ``text`` to milliseconds.

    Unmatched text is ignored; ``None`` when no component matched or the
    sum is zero.
    """

    if not text:
        return None
    total_ms = 0
    for pattern, unit_ms in _WAIT_COMPONENTS:
        match = pattern.search(text)
        if match is not None:
            total_ms += int(match.group(1)) * unit_ms
    return total_ms or None


def format_time_remaining(ms: float) -> str:
    """Render a remaining duration as ``"1d 2h 30m"``, ``"< 1m"`` or ``"any moment"``."""

    if ms <= 0:
        return "any moment"
    remaining = int(ms)
    days = remaining // _MS_PER_DAY
    hours = (remaining % _MS_PER_DAY) // _MS_PER_HOUR
    minutes = (remaining % _MS_PER_HOUR) // _MS_PER_MINUTE

    parts: list[str] = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    return " ".join(parts) or "< 1m"


class AvailabilityTracker:
    """Owns the backend status map and its JSON file.

    One instance per process, shared with the run executor. Mutations
    update memory first, then write the whole map to disk; write errors
    propagate to the caller.
    """

    def __init__(  # noqa: PLR0913
        self,
        status_path: Path,
        *,
        fallback_priority: Sequence[str] = DEFAULT_FALLBACK_PRIORITY,
        usage_limit_wait_ms: int = DEFAULT_USAGE_LIMIT_WAIT_MS,
        rate_limit_wait_ms: int = DEFAULT_RATE_LIMIT_WAIT_MS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.status_path = status_path
        self.fallback_priority = tuple(fallback_priority)
        self.usage_limit_wait_ms = usage_limit_wait_ms
        self.rate_limit_wait_ms = rate_limit_wait_ms
        self._clock = clock
        self._statuses: dict[str, BackendStatus] = {}
        self._last_updated: str | None = None
        self._listeners: list[StatusListener] = []

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status-change listener; returns an unsubscribe callable."""

        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def init(self) -> dict[str, BackendStatus]:
        """Load persisted statuses and recover entries whose wait has elapsed."""

        self._load()
        now = self._clock()
        changed = False
        for backend_id, status in list(self._statuses.items()):
            if not status.estimated_recovery:
                continue
            if now > from_iso(status.estimated_recovery):
                logger.info("Backend %s passed its recovery time; marking available", backend_id)
                self._statuses[backend_id] = self._available_status(now)
                changed = True
        if changed:
            self._save()
        return dict(self._statuses)

    def get_status(self, backend_id: str) -> BackendStatus:
        status = self._statuses.get(backend_id)
        if status is not None:
            return status
        return self._available_status(self._clock())

    def get_all_statuses(self) -> dict[str, object]:
        return {
            "providers": {key: value.to_dict() for key, value in self._statuses.items()},
            "last_updated": self._last_updated,
        }

    def is_available(self, backend_id: str) -> bool:
        return self.get_status(backend_id).available

    def mark_usage_limit(
        self,
        backend_id: str,
        *,
        message: str | None = None,
        wait_time: str | None = None,
    ) -> BackendStatus:
        """Mark backend unavailable until the parsed or default wait elapses."""

        wait_ms = parse_wait_time(wait_time) or self.usage_limit_wait_ms
        return self._mark_unavailable(
            backend_id,
            reason=StatusReason.USAGE_LIMIT,
            message=message or USAGE_LIMIT_MESSAGE,
            wait_time=wait_time or None,
            wait_ms=wait_ms,
        )

    def mark_rate_limited(self, backend_id: str) -> BackendStatus:
        """Mark backend unavailable for the fixed rate-limit wait."""

        return self._mark_unavailable(
            backend_id,
            reason=StatusReason.RATE_LIMIT,
            message=RATE_LIMIT_MESSAGE,
            wait_time=None,
            wait_ms=self.rate_limit_wait_ms,
        )

    def mark_available(self, backend_id: str) -> BackendStatus:
        status = self._available_status(self._clock())
        self._statuses[backend_id] = status
        self._save()
        self._emit(backend_id, status, "recovered")
        return status

    def get_fallback_backend(
        self,
        primary_id: str,
        backends: Mapping[str, BackendDescriptor],
        task_fallback_id: str | None = None,
    ) -> FallbackChoice | None:
        """Resolve a usable substitute for ``primary_id``.

        Candidates are tried task override first, then the primary's own
        configured fallback, then the system priority list. Each must be
        enabled and currently available.
        """

        if task_fallback_id and task_fallback_id != primary_id:
            candidate = backends.get(task_fallback_id)
            if self._is_usable(candidate):
                return FallbackChoice(backend=candidate, source=FallbackSource.TASK)

        primary = backends.get(primary_id)
        if primary is not None and primary.fallback_backend:
            candidate = backends.get(primary.fallback_backend)
            if self._is_usable(candidate):
                return FallbackChoice(backend=candidate, source=FallbackSource.PROVIDER)

        for backend_id in self.fallback_priority:
            if backend_id == primary_id:
                continue
            candidate = backends.get(backend_id)
            if self._is_usable(candidate):
                return FallbackChoice(backend=candidate, source=FallbackSource.SYSTEM)

        return None

    def get_time_until_recovery(self, backend_id: str) -> str | None:
        status = self.get_status(backend_id)
        if status.available or not status.estimated_recovery:
            return None
        remaining = from_iso(status.estimated_recovery) - self._clock()
        return format_time_remaining(remaining.total_seconds() * 1000)

    def _is_usable(self, backend: BackendDescriptor | None) -> bool:
        return backend is not None and backend.enabled and self.is_available(backend.id)

    def _mark_unavailable(  # noqa: PLR0913
        self,
        backend_id: str,
        *,
        reason: StatusReason,
        message: str,
        wait_time: str | None,
        wait_ms: int,
    ) -> BackendStatus:
        now = self._clock()
        previous = self._statuses.get(backend_id)
        failure_count = (previous.failure_count if previous is not None else 0) + 1
        status = BackendStatus(
            available=False,
            reason=reason,
            message=message,
            last_checked=now.isoformat(),
            wait_time=wait_time,
            unavailable_since=now.isoformat(),
            estimated_recovery=(now + timedelta(milliseconds=wait_ms)).isoformat(),
            failure_count=failure_count,
        )
        self._statuses[backend_id] = status
        logger.warning(
            "Backend %s marked unavailable (%s), recovery at %s",
            backend_id,
            reason.value,
            status.estimated_recovery,
        )
        self._save()
        self._emit(backend_id, status, reason.value)
        return status

    @staticmethod
    def _available_status(now: datetime) -> BackendStatus:
        return BackendStatus(
            available=True,
            reason=StatusReason.OK,
            message=AVAILABLE_MESSAGE,
            last_checked=now.isoformat(),
            failure_count=0,
        )

    def _emit(self, backend_id: str, status: BackendStatus, change_type: str) -> None:
        event = StatusChange(backend_id=backend_id, status=status, type=change_type)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Status listener failed for backend %s", backend_id)

    def _load(self) -> None:
        payload = load_json_or_empty(self.status_path)
        raw_statuses = payload.get("providers")
        statuses: dict[str, BackendStatus] = {}
        if isinstance(raw_statuses, dict):
            for backend_id, raw in raw_statuses.items():
                if not isinstance(raw, dict):
                    continue
                try:
                    statuses[str(backend_id)] = BackendStatus.from_dict(raw)
                except ValueError:
                    logger.warning("Skipping invalid status entry for backend %s", backend_id)
        self._statuses = statuses
        last_updated = payload.get("last_updated")
        self._last_updated = last_updated if isinstance(last_updated, str) else None

    def _save(self) -> None:
        self._last_updated = self._clock().isoformat()
        write_json(self.status_path, self.get_all_statuses())
