from __future__ import annotations

from typing import Any

from specpilot.backends.process import SubprocessBackend, render_prompt


class ClaudeCodeBackend(SubprocessBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", **kwargs: Any) -> None:
        super().__init__(binary, **kwargs)

    def build_command(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        command = [
            self.binary,
            "-p",
            render_prompt(user_prompt, context),
            "--output-format",
            "stream-json",
            "--verbose",
            "--append-system-prompt",
            system_prompt,
        ]
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["--model", model.strip()])
        return command
