import asyncio
import time
from pathlib import Path

from specpilot.runner import (
    TIMEOUT_EXIT_CODE,
    CommandResult,
    DirectCommandRunner,
    TestRunner,
    execute_command,
)


def test_execute_command_captures_output_and_exit_code(tmp_path: Path) -> None:
    result = asyncio.run(
        execute_command("echo out; echo err 1>&2; exit 3", timeout_seconds=10, cwd=tmp_path)
    )

    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"
    assert result.exit_code == 3
    assert result.timed_out is False
    assert result.ok is False
    assert result.via == "direct"


def test_execute_command_runs_in_working_directory(tmp_path: Path) -> None:
    (tmp_path / "marker.txt").write_text("here\n", encoding="utf-8")

    result = asyncio.run(DirectCommandRunner(tmp_path).run("cat marker.txt", timeout_seconds=10))

    assert result.ok is True
    assert result.stdout == "here\n"


def test_execute_command_kills_on_timeout(tmp_path: Path) -> None:
    started = time.monotonic()
    result = asyncio.run(execute_command("sleep 5", timeout_seconds=0.3, cwd=tmp_path))

    assert time.monotonic() - started < 4
    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert "timed out" in result.stderr


def test_test_runner_extracts_failure_lines(tmp_path: Path) -> None:
    script = "echo 'collected 2 items'; echo 'FAILED tests/test_a.py::test_x - assert 1 == 2'; exit 1"

    outcome = asyncio.run(
        TestRunner(DirectCommandRunner(tmp_path), timeout_seconds=10).run(script)
    )

    assert outcome.passed is False
    assert outcome.failures[0].startswith("FAILED tests/test_a.py::test_x")
    assert outcome.result.exit_code == 1


def test_test_runner_passes_on_zero_exit(tmp_path: Path) -> None:
    outcome = asyncio.run(TestRunner(DirectCommandRunner(tmp_path)).run("true"))

    assert outcome.passed is True
    assert outcome.failures == []


def test_extract_failures_falls_back_to_output_tail() -> None:
    result = CommandResult(command="make", stdout="step one\nstep two\n", exit_code=2)

    assert TestRunner.extract_failures(result) == ["step one", "step two"]

    timed_out = CommandResult(command="make", exit_code=124, timed_out=True)
    assert TestRunner.extract_failures(timed_out)[0].startswith("timeout")
