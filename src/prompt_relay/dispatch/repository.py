"""Directory-per-run persistence of run metadata, prompt and captured output."""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from prompt_relay.dispatch.common import from_iso, load_json_or_empty, write_json
from prompt_relay.dispatch.models import RunRecord

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
PROMPT_FILE = "prompt.txt"
OUTPUT_FILE = "output.txt"

_RUN_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]*")


@dataclass(slots=True)
class RunPage:
    """One page of run records, newest first."""

    total: int
    runs: list[RunRecord]


class RunRepository:
    """Creates and reads the deterministic per-run directory layout.

    Run ids are single path components; anything else is treated as an unknown run
    so lookups and deletes never leave ``root_dir``.
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def run_dir(self, run_id: str) -> Path:
        if not is_valid_run_id(run_id):
            raise ValueError(f"Invalid run id: {run_id!r}")
        return self.root_dir / run_id

    def create(self, record: RunRecord, prompt: str) -> Path:
        """Materialize the run shell: metadata, full prompt and empty output."""

        base_dir = self.run_dir(record.id)
        base_dir.mkdir(parents=True, exist_ok=False)
        write_json(base_dir / METADATA_FILE, record.to_dict())
        (base_dir / PROMPT_FILE).write_text(prompt, "utf-8")
        (base_dir / OUTPUT_FILE).write_text("", "utf-8")
        return base_dir

    def save_metadata(self, record: RunRecord) -> None:
        write_json(self.run_dir(record.id) / METADATA_FILE, record.to_dict())

    def save_output(self, run_id: str, output: str) -> None:
        (self.run_dir(run_id) / OUTPUT_FILE).write_text(output, "utf-8")

    def get_run(self, run_id: str) -> RunRecord | None:
        if not is_valid_run_id(run_id):
            return None
        raw = load_json_or_empty(self.run_dir(run_id) / METADATA_FILE)
        if not raw.get("id"):
            return None
        try:
            record = RunRecord.from_dict(raw)
            from_iso(record.start_time)
        except (KeyError, TypeError, ValueError) as error:
            logger.warning("Skipping run %s with malformed metadata: %s", run_id, error)
            return None
        if record.id != run_id:
            logger.warning("Skipping run %s whose metadata names run %s", run_id, record.id)
            return None
        return record

    def get_run_output(self, run_id: str) -> str | None:
        return self._read_text(run_id, OUTPUT_FILE)

    def get_run_prompt(self, run_id: str) -> str | None:
        return self._read_text(run_id, PROMPT_FILE)

    def list_runs(self, *, limit: int = 50, offset: int = 0, source: str = "all") -> RunPage:
        runs = [
            record
            for record in self._iter_records()
            if source == "all" or record.source == source
        ]
        runs.sort(key=lambda record: from_iso(record.start_time), reverse=True)
        return RunPage(total=len(runs), runs=runs[offset : offset + limit])

    def delete_run(self, run_id: str) -> bool:
        if not is_valid_run_id(run_id):
            return False
        base_dir = self.run_dir(run_id)
        if not base_dir.is_dir():
            return False
        shutil.rmtree(base_dir)
        return True

    def delete_failed_runs(self) -> int:
        deleted = 0
        for record in self._iter_records():
            if record.success is False:
                shutil.rmtree(self.run_dir(record.id))
                deleted += 1
        return deleted

    def _iter_records(self) -> list[RunRecord]:
        if not self.root_dir.is_dir():
            return []
        records: list[RunRecord] = []
        for entry in sorted(self.root_dir.iterdir()):
            if not entry.is_dir():
                continue
            record = self.get_run(entry.name)
            if record is not None:
                records.append(record)
        return records

    def _read_text(self, run_id: str, file_name: str) -> str | None:
        if not is_valid_run_id(run_id):
            return None
        path = self.run_dir(run_id) / file_name
        if not path.exists():
            return None
        return path.read_text("utf-8")


def is_valid_run_id(run_id: str) -> bool:
    return bool(_RUN_ID_PATTERN.fullmatch(run_id or ""))
