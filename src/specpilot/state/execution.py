from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from specpilot.state.spec_store import atomic_write_text

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class ExecutionState:
    version: int = 0
    spec_dir: str | None = None
    current_task_id: str | None = None
    completed_task_ids: list[str] = field(default_factory=list)
    updated_at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "spec_dir": self.spec_dir,
            "current_task_id": self.current_task_id,
            "completed_task_ids": list(self.completed_task_ids),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ExecutionState:
        completed = payload.get("completed_task_ids", [])
        current = payload.get("current_task_id")
        spec_dir = payload.get("spec_dir")
        return cls(
            version=int(payload.get("version") or 0),
            spec_dir=str(spec_dir) if spec_dir else None,
            current_task_id=str(current) if current else None,
            completed_task_ids=[str(item) for item in completed]
            if isinstance(completed, list)
            else [],
            updated_at=str(payload.get("updated_at") or _utcnow_iso()),
        )


@dataclass(slots=True)
class PersistedRun:
    execution: ExecutionState
    tasks: list[dict[str, Any]] = field(default_factory=list)
    history: dict[str, list[dict[str, Any]]] = field(default_factory=dict)


class ExecutionStateStore:
    """Crash-safe persistence of the execution state and task graph snapshot.

    The file holds a versioned envelope ``{schema_version, revision, updated_at,
    data}``; every save goes through a temp file and an atomic rename.
    """

    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.state_file = state_dir / "state.json"

    def exists(self) -> bool:
        return self.state_file.exists()

    def _read_envelope(self) -> dict[str, Any] | None:
        if not self.state_file.exists():
            return None
        try:
            raw = json.loads(self.state_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("ignoring unreadable state file %s", self.state_file)
            return None
        if not isinstance(raw, dict):
            return None
        if "schema_version" in raw and "data" in raw:
            return raw
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": _utcnow_iso(),
            "data": raw,
        }

    def load(self) -> PersistedRun | None:
        envelope = self._read_envelope()
        if envelope is None:
            return None
        data = envelope.get("data")
        if not isinstance(data, dict):
            return None
        execution_payload = data.get("execution")
        execution = ExecutionState.from_dict(
            execution_payload if isinstance(execution_payload, dict) else {}
        )
        tasks = data.get("tasks", [])
        history = data.get("history", {})
        return PersistedRun(
            execution=execution,
            tasks=[item for item in tasks if isinstance(item, dict)]
            if isinstance(tasks, list)
            else [],
            history={
                str(key): [item for item in value if isinstance(item, dict)]
                for key, value in history.items()
                if isinstance(value, list)
            }
            if isinstance(history, dict)
            else {},
        )

    def save(self, run: PersistedRun) -> ExecutionState:
        previous = self._read_envelope()
        revision = int(previous.get("revision", 0)) + 1 if previous else 1
        previous_version = 0
        if previous and isinstance(previous.get("data"), dict):
            execution_payload = previous["data"].get("execution")
            if isinstance(execution_payload, dict):
                previous_version = int(execution_payload.get("version") or 0)

        run.execution.version = max(run.execution.version, previous_version) + 1
        run.execution.updated_at = _utcnow_iso()
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": run.execution.updated_at,
            "data": {
                "execution": run.execution.to_dict(),
                "tasks": run.tasks,
                "history": run.history,
            },
        }
        atomic_write_text(self.state_file, json.dumps(envelope, ensure_ascii=False, indent=2))
        return run.execution

    def clear(self) -> None:
        try:
            self.state_file.unlink()
        except FileNotFoundError:
            pass
