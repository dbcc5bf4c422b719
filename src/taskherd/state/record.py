from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path

from taskherd.state.tasks import TaskStoreError


@dataclass(slots=True, frozen=True)
class RecordEntry:
    sha: str
    task_name: str


class RecordLedger:
    """Append-only list of (commit sha, phase-qualified task label) pairs."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def entries(self) -> list[RecordEntry]:
        if not self.path.exists():
            return []
        raw = self.path.read_text(encoding="utf-8").strip()
        if not raw:
            return []
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise TaskStoreError(f"record ledger is not valid JSON: {self.path}") from exc
        if not isinstance(payload, list):
            raise TaskStoreError(f"record ledger must hold a JSON list: {self.path}")
        return [
            RecordEntry(sha=str(item.get("sha", "")), task_name=str(item.get("task_name", "")))
            for item in payload
            if isinstance(item, dict)
        ]

    def add(self, sha: str, task_name: str) -> RecordEntry:
        entry = RecordEntry(sha=sha, task_name=task_name)
        entries = self.entries()
        entries.append(entry)
        self._write([asdict(item) for item in entries])
        return entry

    def latest(self, task_name: str) -> RecordEntry | None:
        for entry in reversed(self.entries()):
            if entry.task_name == task_name:
                return entry
        return None

    def _write(self, payload: list[dict[str, str]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".record-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, ensure_ascii=False)
                handle.write("\n")
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
