from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from specpilot.errors import ExecutionFailure, PatchMismatchError, ProtectedPathError, SpecStoreError
from specpilot.ralph.base import (
    Analyzer,
    Applier,
    CorrectionAttempt,
    Generator,
    LoopOutcome,
)
from specpilot.runner import CommandResult, TestRunner
from specpilot.state.activity import ActivityEntry, ActivityLog
from specpilot.tasks import BLOCKED, COMPLETED, IN_PROGRESS, QUEUED, Task, TaskManager

logger = logging.getLogger(__name__)

HistoryHook = Callable[[str, list[CorrectionAttempt]], None]
LoopEventHook = Callable[[dict[str, Any]], None]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class RalphLoop:
    """Bounded self-correction cycle for one failing task.

    Each cycle analyzes the last failure, generates and applies a correction,
    then re-runs the task command. Every cycle consumes one attempt; the task
    ends either completed or, once its attempt budget is spent, blocked.
    """

    def __init__(
        self,
        task_manager: TaskManager,
        test_runner: TestRunner,
        *,
        analyzer: Analyzer,
        generator: Generator,
        applier: Applier,
        default_command: str,
        activity_log: ActivityLog | None = None,
        history_hook: HistoryHook | None = None,
        event_hook: LoopEventHook | None = None,
    ) -> None:
        self.task_manager = task_manager
        self.test_runner = test_runner
        self.analyzer = analyzer
        self.generator = generator
        self.applier = applier
        self.default_command = default_command
        self.activity_log = activity_log
        self.history_hook = history_hook
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def _record(self, attempt: CorrectionAttempt, history: list[CorrectionAttempt]) -> None:
        history.append(attempt)
        if self.activity_log is not None:
            self.activity_log.append(
                ActivityEntry(
                    task_id=attempt.task_id,
                    attempt_number=attempt.attempt_number,
                    outcome=attempt.outcome,
                    error_summary=attempt.error or attempt.analysis_summary,
                    timestamp=attempt.started_at,
                )
            )
        self._emit(
            {
                "event": "correction_attempt",
                "task_id": attempt.task_id,
                "attempt": attempt.attempt_number,
                "outcome": attempt.outcome,
            }
        )
        logger.info(
            "task %s attempt %d: %s", attempt.task_id, attempt.attempt_number, attempt.outcome
        )

    async def _attempt(
        self, task: Task, command: str, last_result: CommandResult
    ) -> tuple[CorrectionAttempt, CommandResult]:
        started_at = _utcnow_iso()
        started = time.monotonic()
        analysis = self.analyzer.analyze(
            last_result.output, last_result.command, timed_out=last_result.timed_out
        )
        attempt = CorrectionAttempt(
            task_id=task.id,
            attempt_number=task.attempts + 1,
            analysis_summary=analysis.summary(),
            started_at=started_at,
        )

        def finish(outcome: str, error: str | None) -> tuple[CorrectionAttempt, CommandResult]:
            attempt.outcome = outcome  # type: ignore[assignment]
            attempt.error = error
            attempt.duration_ms = int((time.monotonic() - started) * 1000)
            return attempt, last_result

        if not analysis.actionable:
            return finish("no_action", f"no file to correct: {analysis.message}")

        plan = await self.generator.generate(
            analysis,
            {"task_id": task.id, "description": task.description, "attempt": attempt.attempt_number},
        )
        if plan is None:
            return finish("no_action", f"no correction available: {analysis.message}")

        try:
            applied = self.applier.apply(plan)
        except PatchMismatchError as exc:
            return finish("patch_mismatch", str(exc))
        except (ProtectedPathError, SpecStoreError) as exc:
            return finish("no_action", str(exc))

        attempt.applied = True
        attempt.proposed_diff = applied.diff
        attempt.backup_id = applied.backup_id

        outcome = await self.test_runner.run(command)
        last_result = outcome.result
        if outcome.passed:
            return finish("success", None)
        return finish("failure", "; ".join(outcome.failures[:3]) or "command failed")

    async def run(self, task: Task, failure: ExecutionFailure) -> LoopOutcome:
        if task.status != IN_PROGRESS:
            raise ValueError(f"Task {task.id} must be in progress to enter the correction loop")
        command = task.command or self.default_command
        history: list[CorrectionAttempt] = []
        last_result = failure.result

        while task.status == IN_PROGRESS:
            attempt, last_result = await self._attempt(task, command, last_result)
            self._record(attempt, history)
            if attempt.outcome == "success":
                self.task_manager.complete_task(task.id)
                break
            self.task_manager.fail_task(task.id, attempt.error or attempt.analysis_summary)
            if task.status == QUEUED:
                self.task_manager.begin_task(task.id)

        if self.history_hook is not None:
            self.history_hook(task.id, history)

        exhausted = task.status == BLOCKED
        if exhausted:
            self._emit({"event": "task_exhausted", "task_id": task.id, "attempts": task.attempts})
        return LoopOutcome(
            task_id=task.id,
            success=task.status == COMPLETED,
            exhausted=exhausted,
            history=history,
            last_result=last_result,
        )
