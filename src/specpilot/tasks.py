from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from specpilot.errors import CyclicDependencyError, InvalidTransitionError, MalformedTaskError

logger = logging.getLogger(__name__)

TaskStatus = Literal["not_started", "queued", "in_progress", "completed", "blocked"]

NOT_STARTED: TaskStatus = "not_started"
QUEUED: TaskStatus = "queued"
IN_PROGRESS: TaskStatus = "in_progress"
COMPLETED: TaskStatus = "completed"
BLOCKED: TaskStatus = "blocked"

STATUSES: tuple[TaskStatus, ...] = (NOT_STARTED, QUEUED, IN_PROGRESS, COMPLETED, BLOCKED)
SELECTABLE: frozenset[str] = frozenset({NOT_STARTED, QUEUED})

# in_progress -> queued/blocked is the "failed" edge; fail_task picks the target.
TRANSITIONS: dict[str, frozenset[str]] = {
    NOT_STARTED: frozenset({QUEUED}),
    QUEUED: frozenset({IN_PROGRESS}),
    IN_PROGRESS: frozenset({COMPLETED, QUEUED, BLOCKED}),
    COMPLETED: frozenset(),
    BLOCKED: frozenset(),
}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class TaskDescriptor:
    id: str
    description: str
    dependencies: list[str] = field(default_factory=list)
    required: bool = True
    command: str | None = None


@dataclass(slots=True)
class Task:
    id: str
    description: str
    dependencies: list[str] = field(default_factory=list)
    required: bool = True
    command: str | None = None
    status: TaskStatus = NOT_STARTED
    attempts: int = 0
    last_error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "dependencies": list(self.dependencies),
            "required": self.required,
            "command": self.command,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


@dataclass(slots=True)
class StatusTransition:
    task_id: str
    previous: TaskStatus
    status: TaskStatus
    at: str
    reason: str | None = None


TransitionListener = Callable[[StatusTransition], None]


class TaskManager:
    """Owns the task graph and every status change made to it.

    Only one task may be ``in_progress`` at a time. Selection is deterministic:
    the first eligible task in declaration order wins.
    """

    def __init__(self, *, max_attempts: int = 3, include_optional: bool = True) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.include_optional = include_optional
        self._tasks: dict[str, Task] = {}
        self._dependents: dict[str, list[str]] = {}
        self._completion_order: list[str] = []
        self._listeners: list[TransitionListener] = []

    def load_graph(self, descriptors: Iterable[TaskDescriptor]) -> list[Task]:
        items = list(descriptors)
        seen: set[str] = set()
        for item in items:
            task_id = (item.id or "").strip()
            if not task_id:
                raise MalformedTaskError("Task descriptor has an empty id.")
            if task_id in seen:
                raise MalformedTaskError(f"Duplicate task id: {task_id}", task_id=task_id)
            seen.add(task_id)

        dropped = set()
        if not self.include_optional:
            dropped = {item.id.strip() for item in items if not item.required}

        tasks: dict[str, Task] = {}
        for item in items:
            task_id = item.id.strip()
            if task_id in dropped:
                continue
            dependencies: list[str] = []
            for raw_dep in item.dependencies:
                dep = str(raw_dep).strip()
                if not dep or dep in dependencies or dep in dropped:
                    continue
                if dep == task_id:
                    raise MalformedTaskError(f"Task {task_id} depends on itself.", task_id=task_id)
                if dep not in seen:
                    raise MalformedTaskError(
                        f"Task {task_id} depends on unknown task {dep}.", task_id=task_id
                    )
                dependencies.append(dep)
            tasks[task_id] = Task(
                id=task_id,
                description=item.description.strip(),
                dependencies=dependencies,
                required=item.required,
                command=item.command,
            )

        self._detect_cycle(tasks)

        dependents: dict[str, list[str]] = {task_id: [] for task_id in tasks}
        for task in tasks.values():
            for dep in task.dependencies:
                dependents[dep].append(task.id)

        self._tasks = tasks
        self._dependents = dependents
        self._completion_order = []
        logger.info("loaded task graph with %d task(s)", len(tasks))
        return list(tasks.values())

    @staticmethod
    def _detect_cycle(tasks: dict[str, Task]) -> None:
        white, gray, black = 0, 1, 2
        color = {task_id: white for task_id in tasks}
        for root in tasks:
            if color[root] != white:
                continue
            color[root] = gray
            path = [root]
            stack = [(root, iter(tasks[root].dependencies))]
            while stack:
                node, pending = stack[-1]
                descended = False
                for dep in pending:
                    if color[dep] == gray:
                        cycle = path[path.index(dep) :] + [dep]
                        raise CyclicDependencyError(cycle)
                    if color[dep] == white:
                        color[dep] = gray
                        path.append(dep)
                        stack.append((dep, iter(tasks[dep].dependencies)))
                        descended = True
                        break
                if not descended:
                    color[node] = black
                    path.pop()
                    stack.pop()

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError as exc:
            raise KeyError(f"Unknown task: {task_id}") from exc

    def dependents_of(self, task_id: str) -> list[str]:
        return list(self._dependents.get(task_id, []))

    def current_task(self) -> Task | None:
        for task in self._tasks.values():
            if task.status == IN_PROGRESS:
                return task
        return None

    def completed_ids(self) -> list[str]:
        return list(self._completion_order)

    def blocked_ids(self) -> list[str]:
        return [task.id for task in self._tasks.values() if task.status == BLOCKED]

    def attempts_remaining(self, task_id: str) -> int:
        return max(0, self.max_attempts - self.get(task_id).attempts)

    def dependencies_met(self, task: Task) -> bool:
        return all(self._tasks[dep].status == COMPLETED for dep in task.dependencies)

    def select_next(self) -> Task | None:
        if self.current_task() is not None:
            return None
        for task in self._tasks.values():
            if task.status in SELECTABLE and self.dependencies_met(task):
                return task
        return None

    def is_finished(self) -> bool:
        return all(task.status == COMPLETED for task in self._tasks.values())

    def progress(self) -> dict[str, int]:
        counts = {status: 0 for status in STATUSES}
        for task in self._tasks.values():
            counts[task.status] += 1
        counts["total"] = len(self._tasks)
        return counts

    def _transition(self, task: Task, status: TaskStatus, reason: str | None = None) -> None:
        if status not in TRANSITIONS[task.status]:
            raise InvalidTransitionError(task.id, task.status, status)
        previous = task.status
        task.status = status
        event = StatusTransition(
            task_id=task.id, previous=previous, status=status, at=_utcnow_iso(), reason=reason
        )
        logger.debug("task %s: %s -> %s", task.id, previous, status)
        for listener in self._listeners:
            listener(event)

    def queue_task(self, task_id: str) -> Task:
        task = self.get(task_id)
        self._transition(task, QUEUED)
        return task

    def begin_task(self, task_id: str) -> Task:
        task = self.get(task_id)
        current = self.current_task()
        if current is not None and current.id != task.id:
            raise InvalidTransitionError(
                task.id, task.status, IN_PROGRESS, f"task {current.id} is already in progress"
            )
        if not self.dependencies_met(task):
            raise InvalidTransitionError(
                task.id, task.status, IN_PROGRESS, "dependencies are not completed"
            )
        task.started_at = _utcnow_iso()
        self._transition(task, IN_PROGRESS)
        return task

    def complete_task(self, task_id: str) -> Task:
        task = self.get(task_id)
        task.completed_at = _utcnow_iso()
        self._transition(task, COMPLETED)
        if task.id not in self._completion_order:
            self._completion_order.append(task.id)
        return task

    def fail_task(self, task_id: str, error: str) -> Task:
        """Record a failed attempt; the task is requeued or, once its budget is spent, blocked."""
        task = self.get(task_id)
        if task.status != IN_PROGRESS:
            raise InvalidTransitionError(task.id, task.status, QUEUED, "only running tasks can fail")
        task.attempts = min(task.attempts + 1, self.max_attempts)
        task.last_error = error
        if task.attempts >= self.max_attempts:
            self._transition(task, BLOCKED, reason=error)
            logger.warning("task %s blocked after %d attempt(s)", task.id, task.attempts)
        else:
            self._transition(task, QUEUED, reason=error)
        return task

    def recover_interrupted(self, reason: str = "interrupted: execution stopped mid-task") -> list[str]:
        recovered: list[str] = []
        for task in self._tasks.values():
            if task.status == IN_PROGRESS:
                self.fail_task(task.id, reason)
                recovered.append(task.id)
        return recovered

    def snapshot(self) -> list[dict[str, Any]]:
        return [task.to_dict() for task in self._tasks.values()]

    def restore(
        self,
        payload: Iterable[dict[str, Any]],
        completed_order: Iterable[str] = (),
    ) -> int:
        """Apply persisted status/attempts onto the loaded graph. Unknown ids are ignored."""
        restored = 0
        for item in payload:
            task = self._tasks.get(str(item.get("id", "")))
            if task is None:
                continue
            status = item.get("status")
            if status not in STATUSES:
                continue
            task.status = status
            task.attempts = max(0, min(int(item.get("attempts") or 0), self.max_attempts))
            last_error = item.get("last_error")
            task.last_error = str(last_error) if last_error else None
            task.started_at = item.get("started_at")
            task.completed_at = item.get("completed_at")
            restored += 1

        order = [
            task_id
            for task_id in completed_order
            if task_id in self._tasks and self._tasks[task_id].status == COMPLETED
        ]
        for task in self._tasks.values():
            if task.status == COMPLETED and task.id not in order:
                order.append(task.id)
        self._completion_order = order
        return restored
