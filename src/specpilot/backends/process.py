from __future__ import annotations

import asyncio
import json
from abc import abstractmethod
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

from specpilot.backends.base import BackendExecutionError, BackendProcessError, SuggestionBackend

BackendEventHook = Callable[[dict[str, Any]], None]


def render_prompt(user_prompt: str, context: dict[str, Any]) -> str:
    if not context:
        return user_prompt
    return f"{user_prompt}\n\nContext JSON:\n{json.dumps(context, ensure_ascii=False, indent=2)}"


def extract_content(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict) and isinstance(item.get("text"), str)
        )
    for key in ("delta", "result"):
        value = event.get(key)
        if isinstance(value, str):
            return value
    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    return ""


class SubprocessBackend(SuggestionBackend):
    """Runs a JSON-lines emitting CLI and yields the text content of its events.

    Objects split across several stdout lines are buffered until the braces
    balance; lines that are not JSON at all are passed through verbatim.
    """

    name = "subprocess"

    def __init__(
        self,
        binary: str,
        working_directory: Path | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @abstractmethod
    def build_command(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        """Return the argv used to invoke the backend CLI."""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        command = self.build_command(system_prompt, user_prompt, context)
        self._emit({"event": "backend_process_start", "backend": self.name, "command": command[:2]})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )

        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                yield line
                continue

            content = extract_content(event) if isinstance(event, dict) else ""
            if content:
                yield content

        if parse_buffer:
            yield parse_buffer

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit({"event": "backend_process_exit", "backend": self.name, "exit_code": return_code})
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output[:400]}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
