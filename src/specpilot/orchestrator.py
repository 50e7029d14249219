from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from specpilot.backends import build_backend
from specpilot.config import SpecPilotConfig
from specpilot.errors import ExecutionFailure, ExhaustionError
from specpilot.parser import MarkdownTaskParser, SpecParser
from specpilot.ralph import (
    Analyzer,
    Applier,
    CorrectionApplier,
    CorrectionAttempt,
    CorrectionGenerator,
    ErrorAnalyzer,
    Generator,
    RalphLoop,
)
from specpilot.runner import CommandRunner, DirectCommandRunner, TestRunner
from specpilot.state import (
    ActivityLog,
    ExecutionState,
    ExecutionStateStore,
    PersistedRun,
    SpecStore,
)
from specpilot.tasks import BLOCKED, NOT_STARTED, StatusTransition, TaskManager

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RunResult:
    completed_tasks: list[str] = field(default_factory=list)
    failed_task: str | None = None
    blocked_tasks: list[str] = field(default_factory=list)
    pending_tasks: list[str] = field(default_factory=list)
    history: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    duration_ms: int = 0
    success: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed_tasks": list(self.completed_tasks),
            "failed_task": self.failed_task,
            "blocked_tasks": list(self.blocked_tasks),
            "pending_tasks": list(self.pending_tasks),
            "history": self.history,
            "duration_ms": self.duration_ms,
            "success": self.success,
        }


CompletionCallback = Callable[[RunResult], None]


class Orchestrator:
    """Drives a spec directory's task graph to completion.

    Tasks run one at a time in dependency order. A failing task enters the
    correction loop; state is checkpointed after every status transition so an
    interrupted run resumes where it stopped.
    """

    def __init__(
        self,
        repo_root: Path,
        config: SpecPilotConfig | None = None,
        *,
        parser: SpecParser | None = None,
        command_runner: CommandRunner | None = None,
        analyzer: Analyzer | None = None,
        generator: Generator | None = None,
        applier: Applier | None = None,
        spec_store: SpecStore | None = None,
        on_complete: CompletionCallback | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config or SpecPilotConfig.default()
        self.state_dir = self.config.state_dir(self.repo_root)
        self.state_store = ExecutionStateStore(self.state_dir)
        self.activity_log = ActivityLog(self.state_dir / "activity.jsonl")
        self.spec_store = spec_store or SpecStore(
            self.repo_root,
            max_backups=self.config.state.max_backups,
            protected_paths=self.config.state.protected_paths,
            manifest_path=self.state_dir / "backups.json",
        )
        self.parser = parser or MarkdownTaskParser(self.config.project.tasks_file)
        self.command_runner = command_runner or DirectCommandRunner(self.repo_root)
        self.test_runner = TestRunner(
            self.command_runner,
            timeout_seconds=self.config.loop.command_timeout_seconds,
            working_directory=self.repo_root,
        )
        self.analyzer = analyzer or ErrorAnalyzer(self.repo_root)
        self.generator = generator or CorrectionGenerator(
            self.spec_store,
            build_backend(self.config.generator, self.repo_root, event_hook),
            model=self.config.generator.model,
            event_hook=event_hook,
        )
        self.applier = applier or CorrectionApplier(self.spec_store)
        self.on_complete = on_complete
        self.event_hook = event_hook

        self.task_manager = TaskManager(
            max_attempts=self.config.loop.max_attempts,
            include_optional=self.config.loop.include_optional,
        )
        self._execution = ExecutionState()
        self._history: dict[str, list[dict[str, Any]]] = {}
        self._blocked_order: list[str] = []

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def _persist(self) -> None:
        manager = self.task_manager
        current = manager.current_task()
        self._execution.current_task_id = current.id if current else None
        self._execution.completed_task_ids = manager.completed_ids()
        self.state_store.save(
            PersistedRun(
                execution=self._execution,
                tasks=manager.snapshot(),
                history=self._history,
            )
        )

    def _on_transition(self, event: StatusTransition) -> None:
        if event.status == BLOCKED and event.task_id not in self._blocked_order:
            self._blocked_order.append(event.task_id)
        self._persist()
        self._emit(
            {
                "event": "task_transition",
                "task_id": event.task_id,
                "from": event.previous,
                "to": event.status,
                "reason": event.reason,
            }
        )

    def _archive_history(self, task_id: str, attempts: list[CorrectionAttempt]) -> None:
        self._history.setdefault(task_id, []).extend(attempt.to_dict() for attempt in attempts)
        self._persist()

    def _resume(self, spec_dir: Path, fresh: bool) -> None:
        self._execution = ExecutionState(spec_dir=str(spec_dir))
        self._history = {}
        if fresh:
            self.state_store.clear()
            return
        persisted = self.state_store.load()
        if persisted is None:
            return
        if persisted.execution.spec_dir != str(spec_dir):
            logger.warning(
                "persisted state belongs to %s, starting fresh", persisted.execution.spec_dir
            )
            return
        restored = self.task_manager.restore(
            persisted.tasks, persisted.execution.completed_task_ids
        )
        known = {task.id for task in self.task_manager.tasks()}
        self._history = {
            task_id: attempts for task_id, attempts in persisted.history.items() if task_id in known
        }
        self._execution.version = persisted.execution.version
        logger.info("resumed %d task(s) from %s", restored, self.state_store.state_file)

    async def run(self, spec_dir: Path, *, fresh: bool = False) -> RunResult:
        started = time.monotonic()
        spec_dir = spec_dir.resolve()
        descriptors = self.parser.parse(spec_dir)

        self.task_manager = TaskManager(
            max_attempts=self.config.loop.max_attempts,
            include_optional=self.config.loop.include_optional,
        )
        manager = self.task_manager
        manager.load_graph(descriptors)
        self._blocked_order = []
        self._resume(spec_dir, fresh)
        manager.add_listener(self._on_transition)

        recovered = manager.recover_interrupted(
            "interrupted: run stopped while the task was in progress"
        )
        for task_id in recovered:
            logger.warning("task %s was interrupted and has been re-queued", task_id)
        self._persist()

        loop = RalphLoop(
            manager,
            self.test_runner,
            analyzer=self.analyzer,
            generator=self.generator,
            applier=self.applier,
            default_command=self.config.project.test_command,
            activity_log=self.activity_log,
            history_hook=self._archive_history,
            event_hook=self.event_hook,
        )

        while (task := manager.select_next()) is not None:
            if task.status == NOT_STARTED:
                manager.queue_task(task.id)
            manager.begin_task(task.id)
            command = task.command or self.config.project.test_command
            logger.info("task %s: %s", task.id, task.description)
            outcome = await self.test_runner.run(command)
            if outcome.passed:
                manager.complete_task(task.id)
                continue
            failure = ExecutionFailure(task.id, outcome.result)
            logger.info("%s", failure)
            await loop.run(task, failure)

        result = self._result(started)
        if self.on_complete is not None:
            self.on_complete(result)
        if result.failed_task is not None:
            blocked = manager.get(result.failed_task)
            raise ExhaustionError(
                blocked.id,
                blocked.attempts,
                history=result.history.get(blocked.id, []),
                result=result,
            )
        return result

    def _result(self, started: float) -> RunResult:
        manager = self.task_manager
        blocked = manager.blocked_ids()
        failed_task = next((task_id for task_id in self._blocked_order if task_id in blocked), None)
        if failed_task is None and blocked:
            failed_task = blocked[0]
        completed = manager.completed_ids()
        pending = [
            task.id for task in manager.tasks() if task.id not in completed and task.id not in blocked
        ]
        return RunResult(
            completed_tasks=completed,
            failed_task=failed_task,
            blocked_tasks=blocked,
            pending_tasks=pending,
            history={task_id: list(attempts) for task_id, attempts in self._history.items()},
            duration_ms=int((time.monotonic() - started) * 1000),
            success=manager.is_finished(),
        )

    def status(self) -> dict[str, Any]:
        persisted = self.state_store.load()
        if persisted is None:
            return {"execution": None, "progress": {"total": 0}, "tasks": []}
        progress: dict[str, int] = {"total": len(persisted.tasks)}
        for item in persisted.tasks:
            status = str(item.get("status", NOT_STARTED))
            progress[status] = progress.get(status, 0) + 1
        return {
            "execution": persisted.execution.to_dict(),
            "progress": progress,
            "tasks": [
                {
                    "id": item.get("id"),
                    "description": item.get("description"),
                    "status": item.get("status"),
                    "attempts": item.get("attempts", 0),
                    "last_error": item.get("last_error"),
                }
                for item in persisted.tasks
            ],
        }

    def history(self, task_id: str | None = None) -> dict[str, list[dict[str, Any]]]:
        persisted = self.state_store.load()
        history = persisted.history if persisted is not None else {}
        if task_id is None:
            return history
        return {task_id: history.get(task_id, [])}
