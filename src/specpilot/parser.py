from __future__ import annotations

import re
from abc import ABC, abstractmethod
from pathlib import Path

from specpilot.errors import SpecParseError
from specpilot.tasks import TaskDescriptor

TASK_PATTERN = re.compile(r"^(\s*)[-*] \[([^\]]*)\](\*)?\s+(.+?)\s*$")
TASK_ID_PATTERN = re.compile(r"^(\d+(?:\.\d+)*)\.?\s+(.+)$")
METADATA_PATTERN = re.compile(
    r"_(Depends|Dependencies|Command)\s*:\s*(.*?)_(?=\s|$)", re.IGNORECASE
)
DEPENDENCY_SPLIT = re.compile(r"[,\s]+")


class SpecParser(ABC):
    @abstractmethod
    def parse(self, spec_dir: Path) -> list[TaskDescriptor]:
        """Return task descriptors in declaration order."""


class MarkdownTaskParser(SpecParser):
    """Reads the ``tasks.md`` checklist of a spec directory.

    Each task is a checklist line ``- [ ] 1.2 Description``; a ``*`` right after
    the checkbox marks it optional. Metadata lines beneath a task (or inline in
    its description) declare ``_Depends: 1.1, 2_`` and ``_Command: <shell>_``.
    A task with nested sub-tasks depends on all of them. Checkbox markers are
    not read back: execution status lives in the state directory.
    """

    def __init__(self, tasks_file: str = "tasks.md") -> None:
        self.tasks_file = tasks_file

    def parse(self, spec_dir: Path) -> list[TaskDescriptor]:
        path = spec_dir / self.tasks_file
        if not path.is_file():
            raise SpecParseError("tasks file not found", path=str(path))
        return self.parse_text(path.read_text(encoding="utf-8"), source=str(path))

    def parse_text(self, content: str, *, source: str = "tasks.md") -> list[TaskDescriptor]:
        descriptors: list[TaskDescriptor] = []
        stack: list[tuple[int, TaskDescriptor]] = []
        current: TaskDescriptor | None = None

        for line_number, raw_line in enumerate(content.splitlines(), start=1):
            line = raw_line.rstrip()
            if not line.strip() or line.lstrip().startswith("#"):
                continue

            match = TASK_PATTERN.match(line)
            if match is None:
                if current is not None:
                    self._apply_metadata(current, line)
                continue

            indent = len(match.group(1).expandtabs(4))
            optional = match.group(3) == "*"
            id_match = TASK_ID_PATTERN.match(match.group(4))
            if id_match is None:
                raise SpecParseError(
                    'task line must start with a numeric id (e.g. "1.2 Task description")',
                    path=source,
                    line=line_number,
                )

            descriptor = TaskDescriptor(
                id=id_match.group(1),
                description="",
                required=not optional,
            )
            description = self._apply_metadata(descriptor, id_match.group(2))
            descriptor.description = description.strip()

            while stack and stack[-1][0] >= indent:
                stack.pop()
            if stack:
                parent = stack[-1][1]
                if descriptor.id not in parent.dependencies:
                    parent.dependencies.append(descriptor.id)
            stack.append((indent, descriptor))

            descriptors.append(descriptor)
            current = descriptor

        return descriptors

    @staticmethod
    def _apply_metadata(descriptor: TaskDescriptor, text: str) -> str:
        for key, value in METADATA_PATTERN.findall(text):
            value = value.strip()
            if key.lower() == "command":
                descriptor.command = value.strip("`").strip() or None
                continue
            for dep in DEPENDENCY_SPLIT.split(value):
                dep = dep.strip().rstrip(".")
                if dep and dep.lower() not in {"none", "-"} and dep not in descriptor.dependencies:
                    descriptor.dependencies.append(dep)
        return METADATA_PATTERN.sub("", text)
