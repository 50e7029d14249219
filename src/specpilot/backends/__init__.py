from __future__ import annotations

from pathlib import Path

from specpilot.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    SuggestionBackend,
)
from specpilot.backends.claude import ClaudeCodeBackend
from specpilot.backends.codex import CodexBackend
from specpilot.backends.process import BackendEventHook, SubprocessBackend
from specpilot.backends.resilient import ResilientBackend, RetryPolicy
from specpilot.config import GeneratorBackendName, GeneratorConfig


def build_single_backend(
    name: GeneratorBackendName,
    working_directory: Path | None = None,
    event_hook: BackendEventHook | None = None,
) -> SubprocessBackend:
    if name == "codex":
        return CodexBackend(working_directory=working_directory, event_hook=event_hook)
    if name == "claude":
        return ClaudeCodeBackend(working_directory=working_directory, event_hook=event_hook)
    raise ValueError(f"Unknown generator backend: {name}")


def build_backend(
    config: GeneratorConfig,
    working_directory: Path | None = None,
    event_hook: BackendEventHook | None = None,
) -> ResilientBackend | None:
    """Build the retrying suggestion backend, or ``None`` when suggestions are disabled."""
    if config.primary == "none":
        return None
    fallback_name = config.fallback if config.fallback != "none" else config.primary
    policy = RetryPolicy(
        max_retries=max(0, int(config.max_retries)),
        backoff_seconds=max(0.0, float(config.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.primary,
        primary_backend=build_single_backend(config.primary, working_directory, event_hook),
        fallback_name=fallback_name,
        fallback_backend=build_single_backend(fallback_name, working_directory, event_hook),
        retry_policy=policy,
        event_hook=event_hook,
    )


__all__ = [
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
    "SubprocessBackend",
    "SuggestionBackend",
    "build_backend",
    "build_single_backend",
]
