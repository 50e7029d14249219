from __future__ import annotations

import json
from typing import Any

from specpilot.backends.process import SubprocessBackend, render_prompt


class CodexBackend(SubprocessBackend):
    name = "codex"

    def __init__(self, binary: str = "codex", **kwargs: Any) -> None:
        super().__init__(binary, **kwargs)

    def build_command(
        self, system_prompt: str, user_prompt: str, context: dict[str, Any]
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["-m", model.strip()])
        command.append(render_prompt(user_prompt, context))
        return command
