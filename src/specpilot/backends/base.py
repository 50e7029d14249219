from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when a suggestion backend fails to produce output."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a backend call exceeds its configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when the backend process cannot be started or read."""


class SuggestionBackend(ABC):
    """Untrusted text generator consulted for correction suggestions."""

    @abstractmethod
    def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Stream textual chunks of the generated answer."""

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any] | None = None,
    ) -> str:
        chunks: list[str] = []
        async for chunk in self.stream(system_prompt, user_prompt, context or {}):
            chunks.append(chunk)
        return "".join(chunks).strip()
