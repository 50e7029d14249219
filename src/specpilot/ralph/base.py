from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from specpilot.runner import CommandResult
from specpilot.state.spec_store import SpecFile

ErrorType = Literal[
    "syntax",
    "type",
    "missing_dependency",
    "assertion_failure",
    "timeout",
    "unknown",
]
PlanSource = Literal["rule", "backend", "generic"]
AttemptOutcome = Literal["success", "failure", "patch_mismatch", "no_action"]


@dataclass(slots=True)
class ErrorAnalysis:
    type: ErrorType
    message: str
    file: str | None = None
    line: int | None = None
    column: int | None = None
    search_query: str = ""

    @property
    def actionable(self) -> bool:
        return not (self.type == "unknown" and self.file is None)

    def summary(self) -> str:
        location = ""
        if self.file:
            location = f" ({self.file}"
            if self.line is not None:
                location += f":{self.line}"
                if self.column is not None:
                    location += f":{self.column}"
            location += ")"
        return f"{self.type}: {self.message}{location}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "search_query": self.search_query,
        }


@dataclass(slots=True)
class CorrectionPlan:
    target_file: str
    search: str
    replace: str
    rationale: str
    source: PlanSource = "rule"

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_file": self.target_file,
            "search": self.search,
            "replace": self.replace,
            "rationale": self.rationale,
            "source": self.source,
        }


@dataclass(slots=True)
class ApplyResult:
    backup_id: str | None
    spec_file: SpecFile
    diff: str


@dataclass(slots=True)
class CorrectionAttempt:
    task_id: str
    attempt_number: int
    analysis_summary: str
    proposed_diff: str = ""
    applied: bool = False
    outcome: AttemptOutcome = "failure"
    backup_id: str | None = None
    error: str | None = None
    started_at: str = ""
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "attempt_number": self.attempt_number,
            "analysis_summary": self.analysis_summary,
            "proposed_diff": self.proposed_diff,
            "applied": self.applied,
            "outcome": self.outcome,
            "backup_id": self.backup_id,
            "error": self.error,
            "started_at": self.started_at,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CorrectionAttempt:
        return cls(
            task_id=str(payload.get("task_id", "")),
            attempt_number=int(payload.get("attempt_number") or 0),
            analysis_summary=str(payload.get("analysis_summary") or ""),
            proposed_diff=str(payload.get("proposed_diff") or ""),
            applied=bool(payload.get("applied", False)),
            outcome=payload.get("outcome", "failure"),
            backup_id=payload.get("backup_id"),
            error=payload.get("error"),
            started_at=str(payload.get("started_at") or ""),
            duration_ms=int(payload.get("duration_ms") or 0),
        )


@dataclass(slots=True)
class LoopOutcome:
    task_id: str
    success: bool
    exhausted: bool
    history: list[CorrectionAttempt] = field(default_factory=list)
    last_result: CommandResult | None = None


class Analyzer(ABC):
    @abstractmethod
    def analyze(self, raw_output: str, command: str, *, timed_out: bool = False) -> ErrorAnalysis:
        """Classify failure output and locate the offending file and line."""


class Generator(ABC):
    @abstractmethod
    async def generate(
        self, analysis: ErrorAnalysis, context: dict[str, Any] | None = None
    ) -> CorrectionPlan | None:
        """Propose a search/replace correction, or ``None`` if nothing is actionable."""


class Applier(ABC):
    @abstractmethod
    def apply(self, plan: CorrectionPlan) -> ApplyResult:
        """Apply ``plan`` to its target file, backing the file up first."""

    @abstractmethod
    def rollback(self, backup_id: str) -> SpecFile:
        """Restore the file a backup was taken from."""
