from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class ActivityEntry:
    task_id: str
    attempt_number: int
    outcome: str
    error_summary: str
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "attempt_number": self.attempt_number,
            "timestamp": self.timestamp or _utcnow_iso(),
            "outcome": self.outcome,
            "error_summary": self.error_summary,
        }


class ActivityLog:
    """Append-only JSON-lines log with one entry per correction attempt."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def append(self, entry: ActivityEntry) -> dict[str, Any]:
        payload = entry.to_dict()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        return payload

    def entries(self, task_id: str | None = None) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        entries: list[dict[str, Any]] = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                # A torn final line from a crash mid-append.
                continue
            if not isinstance(payload, dict):
                continue
            if task_id is not None and payload.get("task_id") != task_id:
                continue
            entries.append(payload)
        return entries
