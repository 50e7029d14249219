import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from specpilot.backends import RetryPolicy, build_backend
from specpilot.backends.base import BackendExecutionError, SuggestionBackend
from specpilot.backends.claude import ClaudeCodeBackend
from specpilot.backends.codex import CodexBackend
from specpilot.backends.resilient import ResilientBackend
from specpilot.config import GeneratorConfig


class AlwaysFailBackend(SuggestionBackend):
    def __init__(self, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SuccessBackend(SuggestionBackend):
    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        yield '{"search": "a", '
        yield '"replace": "b"}'


class SlowBackend(SuggestionBackend):
    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        await asyncio.sleep(5)
        yield "late"


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="repair calc.py",
        context={"task_id": "1", "model": "gpt-5-codex"},
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "-m" in command
    assert "gpt-5-codex" in command
    assert 'instructions="system"' in command
    assert "repair calc.py" in command[-1]
    assert "Context JSON:" in command[-1]


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "repair calc.py", {})

    assert command[0:3] == ["claude", "-p", "repair calc.py"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert command[command.index("--append-system-prompt") + 1] == "system"
    assert "--model" not in command


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()
    backend = ResilientBackend(
        primary_name="codex",
        primary_backend=primary,
        fallback_name="claude",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    output = asyncio.run(backend.complete("system", "user"))

    assert output == '{"search": "a", "replace": "b"}'
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert event_names.count("backend_attempt_failed") == 2
    assert "backend_retry" in event_names
    assert event_names[-1] == "backend_fallback_success"


def test_non_retriable_failure_skips_remaining_retries() -> None:
    primary = AlwaysFailBackend(retriable=False)
    fallback = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="codex",
        primary_backend=primary,
        fallback_name="claude",
        fallback_backend=fallback,
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(backend.complete("system", "user"))

    assert excinfo.value.retriable is False
    assert "All backend attempts failed" in str(excinfo.value)
    assert (primary.calls, fallback.calls) == (1, 1)


def test_resilient_backend_times_out_slow_backend() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        primary_name="claude",
        primary_backend=SlowBackend(),
        fallback_name="claude",
        fallback_backend=SlowBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.1),
        event_hook=events.append,
    )

    with pytest.raises(BackendExecutionError):
        asyncio.run(backend.complete("system", "user"))

    assert [event["event"] for event in events] == ["backend_attempt_failed"]
    assert "timed out" in events[0]["error"]


def test_build_backend_is_disabled_by_default() -> None:
    assert build_backend(GeneratorConfig()) is None

    backend = build_backend(GeneratorConfig(primary="claude", fallback="none", max_retries=2))
    assert isinstance(backend, ResilientBackend)
    assert backend.fallback_name == "claude"
    assert isinstance(backend.primary_backend, ClaudeCodeBackend)
    assert backend.retry_policy.max_retries == 2


def test_codex_backend_parses_json_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []

    class FakeStdout:
        def __init__(self, lines: list[bytes]) -> None:
            self._lines = lines
            self._index = 0

        def __aiter__(self) -> "FakeStdout":
            return self

        async def __anext__(self) -> bytes:
            if self._index >= len(self._lines):
                raise StopAsyncIteration
            line = self._lines[self._index]
            self._index += 1
            return line

    class FakeStderr:
        async def read(self) -> bytes:
            return b""

    class FakeProcess:
        def __init__(self) -> None:
            self.stdout = FakeStdout(
                [
                    b"{\"type\":\"message\",\"content\":\"hello \"}\n",
                    b"{\"type\":\"message\",\n",
                    b"\"content\":\"world\"}\n",
                    b"noise-before-json\n",
                    b"{\"type\":\"turn.completed\"}\n",
                ]
            )
            self.stderr = FakeStderr()

        async def wait(self) -> int:
            return 0

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    backend = CodexBackend(event_hook=events.append)
    chunks = asyncio.run(_collect(backend))

    assert chunks == ["hello ", "world", "noise-before-json"]
    event_names = [event["event"] for event in events]
    assert event_names == ["backend_process_start", "backend_process_exit"]


def test_subprocess_backend_raises_on_non_zero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    class FakeStdout:
        def __aiter__(self) -> "FakeStdout":
            return self

        async def __anext__(self) -> bytes:
            raise StopAsyncIteration

    class FakeStderr:
        async def read(self) -> bytes:
            return b"not logged in"

    class FakeProcess:
        stdout = FakeStdout()
        stderr = FakeStderr()

        async def wait(self) -> int:
            return 2

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(_collect(ClaudeCodeBackend()))

    assert excinfo.value.exit_code == 2
    assert excinfo.value.backend == "claude"
    assert "not logged in" in str(excinfo.value)


async def _collect(backend: SuggestionBackend) -> list[str]:
    return [chunk async for chunk in backend.stream("system", "user", {})]
