"""Read-only backend lookup over the keyed ``providers.json`` record store."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from prompt_relay.dispatch.common import load_json_or_empty
from prompt_relay.dispatch.models import DEFAULT_BACKEND_TIMEOUT_MS, BackendDescriptor

logger = logging.getLogger(__name__)


class BackendLookup(Protocol):
    """Protocol implemented by backend configuration stores."""

    def get_backend(self, backend_id: str) -> BackendDescriptor | None:
        """Return descriptor for ``backend_id`` or None; malformed entries raise ValueError."""

    def list_backends(self) -> list[BackendDescriptor]:
        """Return all well-formed descriptors in store order."""


class BackendRegistry:
    """Reads backend descriptors from a JSON file on every lookup."""

    def __init__(
        self,
        providers_path: Path,
        *,
        default_timeout_ms: int = DEFAULT_BACKEND_TIMEOUT_MS,
    ) -> None:
        self.providers_path = providers_path
        self.default_timeout_ms = default_timeout_ms

    def get_backend(self, backend_id: str) -> BackendDescriptor | None:
        raw = self._load_records().get(backend_id)
        if not isinstance(raw, dict):
            return None
        return BackendDescriptor.from_dict(
            backend_id,
            raw,
            default_timeout_ms=self.default_timeout_ms,
        )

    def list_backends(self) -> list[BackendDescriptor]:
        backends: list[BackendDescriptor] = []
        for backend_id, raw in self._load_records().items():
            if not isinstance(raw, dict):
                continue
            try:
                backends.append(
                    BackendDescriptor.from_dict(
                        str(backend_id),
                        raw,
                        default_timeout_ms=self.default_timeout_ms,
                    ),
                )
            except (TypeError, ValueError) as error:
                logger.warning("Skipping malformed backend %s: %s", backend_id, error)
        return backends

    def get_active_backend(self) -> BackendDescriptor | None:
        """Return the store's active backend, if one is set and well-formed."""

        active_id = load_json_or_empty(self.providers_path).get("activeProvider")
        if not isinstance(active_id, str) or not active_id:
            return None
        try:
            return self.get_backend(active_id)
        except (TypeError, ValueError) as error:
            logger.warning("Active backend %s is malformed: %s", active_id, error)
            return None

    def _load_records(self) -> dict[str, object]:
        records = load_json_or_empty(self.providers_path).get("providers")
        if not isinstance(records, dict):
            return {}
        return records
