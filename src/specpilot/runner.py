from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
MAX_OUTPUT_CHARS = 200_000
FAILURE_LINE_PATTERN = re.compile(
    r"^(?:FAILED|ERROR)\b.*$|^\s*(?:E\s+)?\w*(?:Error|Exception)\b:?.*$|^.*\bfailed\b.*$",
    re.MULTILINE,
)


@dataclass(slots=True)
class CommandResult:
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    timed_out: bool = False
    duration_ms: int = 0
    via: Literal["direct", "gateway"] = "direct"

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "duration_ms": self.duration_ms,
            "via": self.via,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, via: Literal["direct", "gateway"]) -> CommandResult:
        return cls(
            command=str(payload.get("command", "")),
            stdout=str(payload.get("stdout") or ""),
            stderr=str(payload.get("stderr") or ""),
            exit_code=int(payload.get("exit_code", 1)),
            timed_out=bool(payload.get("timed_out", False)),
            duration_ms=int(payload.get("duration_ms") or 0),
            via=via,
        )


def _decode(raw: bytes | None) -> str:
    if not raw:
        return ""
    text = raw.decode("utf-8", errors="replace")
    return text[-MAX_OUTPUT_CHARS:]


def _kill_process_tree(process: asyncio.subprocess.Process) -> None:
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass


async def execute_command(
    command: str,
    *,
    timeout_seconds: float,
    cwd: Path | str | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run ``command`` through the shell, killing the whole process group on timeout.

    Both the direct runner and the gateway worker go through this function, so
    timeout and kill behaviour is identical on either path.
    """
    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        return CommandResult(
            command=command,
            stderr=f"Failed to start command: {exc}",
            exit_code=127,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    timed_out = False
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        timed_out = True
        _kill_process_tree(process)
        stdout, stderr = await process.communicate()
        logger.warning("command timed out after %.1fs: %s", timeout_seconds, command)

    stderr_text = _decode(stderr)
    exit_code = process.returncode if process.returncode is not None else 1
    if timed_out:
        exit_code = TIMEOUT_EXIT_CODE
        stderr_text = f"{stderr_text}\nCommand timed out after {timeout_seconds:.1f}s".lstrip()
    return CommandResult(
        command=command,
        stdout=_decode(stdout),
        stderr=stderr_text,
        exit_code=exit_code,
        timed_out=timed_out,
        duration_ms=int((time.monotonic() - started) * 1000),
    )


class CommandRunner(ABC):
    @abstractmethod
    async def run(
        self,
        command: str,
        *,
        timeout_seconds: float,
        cwd: Path | None = None,
    ) -> CommandResult:
        """Execute a shell command and return its captured result."""


class DirectCommandRunner(CommandRunner):
    def __init__(self, working_directory: Path | None = None) -> None:
        self.working_directory = working_directory

    async def run(
        self,
        command: str,
        *,
        timeout_seconds: float,
        cwd: Path | None = None,
    ) -> CommandResult:
        return await execute_command(
            command,
            timeout_seconds=timeout_seconds,
            cwd=cwd or self.working_directory,
        )


@dataclass(slots=True)
class TestOutcome:
    passed: bool
    result: CommandResult
    failures: list[str] = field(default_factory=list)


class TestRunner:
    """Turns a validation command into a pass/fail verdict with failure lines."""

    __test__ = False

    def __init__(
        self,
        command_runner: CommandRunner,
        *,
        timeout_seconds: float = 120.0,
        working_directory: Path | None = None,
    ) -> None:
        self.command_runner = command_runner
        self.timeout_seconds = timeout_seconds
        self.working_directory = working_directory

    async def run(self, command: str) -> TestOutcome:
        result = await self.command_runner.run(
            command,
            timeout_seconds=self.timeout_seconds,
            cwd=self.working_directory,
        )
        if result.ok:
            return TestOutcome(passed=True, result=result)
        return TestOutcome(passed=False, failures=self.extract_failures(result), result=result)

    @staticmethod
    def extract_failures(result: CommandResult, limit: int = 20) -> list[str]:
        if result.timed_out:
            return [f"timeout: command exceeded its time limit ({result.command})"]
        failures = [
            match.group(0).strip()
            for match in FAILURE_LINE_PATTERN.finditer(result.output)
            if match.group(0).strip()
        ]
        if not failures:
            tail = [line.strip() for line in result.output.splitlines() if line.strip()]
            failures = tail[-3:] or [f"command exited with {result.exit_code}"]
        return failures[:limit]
