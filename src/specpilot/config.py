from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

GeneratorBackendName = Literal["none", "claude", "codex"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    tasks_file: str = "tasks.md"
    test_command: str = "python -m pytest -q"


@dataclass(slots=True)
class LoopConfig:
    max_attempts: int = 3
    command_timeout_seconds: float = 120.0
    include_optional: bool = True


@dataclass(slots=True)
class GatewayConfig:
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 3000
    health_timeout_seconds: float = 2.0
    startup_timeout_seconds: float = 10.0


@dataclass(slots=True)
class GeneratorConfig:
    primary: GeneratorBackendName = "none"
    fallback: GeneratorBackendName = "none"
    model: str = ""
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class StateConfig:
    directory: str = ".specpilot"
    max_backups: int = 10
    protected_paths: list[str] = field(
        default_factory=lambda: [".git/*", ".specpilot/*", "specpilot.toml"]
    )


@dataclass(slots=True)
class SpecPilotConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> SpecPilotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> SpecPilotConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            loop=LoopConfig(**data.get("loop", {})),
            gateway=GatewayConfig(**data.get("gateway", {})),
            generator=GeneratorConfig(**data.get("generator", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "tasks_file": self.project.tasks_file,
                "test_command": self.project.test_command,
            },
            "loop": {
                "max_attempts": self.loop.max_attempts,
                "command_timeout_seconds": self.loop.command_timeout_seconds,
                "include_optional": self.loop.include_optional,
            },
            "gateway": {
                "enabled": self.gateway.enabled,
                "host": self.gateway.host,
                "port": self.gateway.port,
                "health_timeout_seconds": self.gateway.health_timeout_seconds,
                "startup_timeout_seconds": self.gateway.startup_timeout_seconds,
            },
            "generator": {
                "primary": self.generator.primary,
                "fallback": self.generator.fallback,
                "model": self.generator.model,
                "max_retries": self.generator.max_retries,
                "retry_backoff_seconds": self.generator.retry_backoff_seconds,
                "timeout_seconds": self.generator.timeout_seconds,
            },
            "state": {
                "directory": self.state.directory,
                "max_backups": self.state.max_backups,
                "protected_paths": list(self.state.protected_paths),
            },
        }

    def state_dir(self, repo_root: Path) -> Path:
        state_dir = Path(self.state.directory)
        if not state_dir.is_absolute():
            state_dir = repo_root / state_dir
        return state_dir


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: SpecPilotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "loop", "gateway", "generator", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> SpecPilotConfig:
    if not path.exists():
        return SpecPilotConfig.default()
    return SpecPilotConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: SpecPilotConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
