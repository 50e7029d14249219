from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from specpilot.orchestrator import RunResult
    from specpilot.runner import CommandResult


class SpecPilotError(RuntimeError):
    """Base class for every error raised by specpilot."""


class StructuralError(SpecPilotError):
    """The task graph cannot be executed at all. Raised before any task runs."""


class SpecParseError(StructuralError):
    def __init__(self, message: str, *, path: str | None = None, line: int | None = None) -> None:
        location = ""
        if path:
            location = f"{path}:{line}: " if line else f"{path}: "
        super().__init__(f"{location}{message}")
        self.path = path
        self.line = line


class MalformedTaskError(StructuralError):
    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class CyclicDependencyError(StructuralError):
    def __init__(self, cycle: list[str]) -> None:
        super().__init__("Cyclic task dependency: " + " -> ".join(cycle))
        self.cycle = cycle


class InvalidTransitionError(SpecPilotError):
    def __init__(self, task_id: str, current: str, requested: str, reason: str = "") -> None:
        message = f"Task {task_id}: cannot move from {current} to {requested}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.task_id = task_id
        self.current = current
        self.requested = requested


class ExecutionFailure(SpecPilotError):
    """A task command failed. Recoverable: feeds the correction loop."""

    def __init__(self, task_id: str, result: CommandResult) -> None:
        kind = "timed out" if result.timed_out else f"exited with {result.exit_code}"
        super().__init__(f"Task {task_id}: command {kind}: {result.command}")
        self.task_id = task_id
        self.result = result


class PatchMismatchError(SpecPilotError):
    """The search text of a correction plan is not present in the target file."""

    def __init__(self, target_file: str, search: str) -> None:
        preview = search.strip().splitlines()[0][:80] if search.strip() else "<empty>"
        super().__init__(f"Search text not found in {target_file}: {preview!r}")
        self.target_file = target_file
        self.search = search


class ProtectedPathError(SpecPilotError):
    def __init__(self, target_file: str, pattern: str) -> None:
        super().__init__(f"Refusing to modify {target_file} (matched protected path '{pattern}')")
        self.target_file = target_file
        self.pattern = pattern


class ExhaustionError(SpecPilotError):
    """A task used up its correction attempts and is now blocked."""

    def __init__(
        self,
        task_id: str,
        attempts: int,
        *,
        history: list[dict[str, Any]] | None = None,
        result: RunResult | None = None,
    ) -> None:
        super().__init__(f"Task {task_id} blocked after {attempts} correction attempt(s)")
        self.task_id = task_id
        self.attempts = attempts
        self.history = history or []
        self.result = result


class GatewayUnavailableError(SpecPilotError):
    """The gateway could not serve a request. Callers fall back to direct execution."""


class SpecStoreError(SpecPilotError):
    """Raised when backup, restore or atomic write operations fail."""
