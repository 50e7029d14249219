from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from specpilot.backends.base import BackendExecutionError, BackendTimeoutError, SuggestionBackend
from specpilot.backends.process import BackendEventHook


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0

    def delays(self) -> list[float]:
        """Pause before each try of one backend; the first try starts at once."""
        return [0.0] + [self.backoff_seconds * 2**index for index in range(self.max_retries)]


class ResilientBackend(SuggestionBackend):
    """Asks the primary backend, then the fallback, retrying each with backoff.

    Every try is bounded by the policy timeout. A failure marked non-retriable
    moves straight on to the next backend in the route.
    """

    def __init__(
        self,
        primary_name: str,
        primary_backend: SuggestionBackend,
        fallback_name: str,
        fallback_backend: SuggestionBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _route(self) -> list[tuple[str, SuggestionBackend]]:
        route = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            route.append((self.fallback_name, self.fallback_backend))
        return route

    async def _ask(
        self,
        backend: SuggestionBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> str:
        async def consume() -> str:
            parts = [part async for part in backend.stream(system_prompt, user_prompt, context)]
            return "".join(parts)

        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(consume(), timeout=timeout)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Suggestion request timed out after {timeout:.1f}s", retriable=True
            ) from exc

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        failures: list[str] = []
        for name, backend in self._route():
            for attempt, delay in enumerate(self.retry_policy.delays()):
                if attempt:
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    text = await self._ask(backend, system_prompt, user_prompt, context)
                except Exception as exc:
                    retriable = exc.retriable if isinstance(exc, BackendExecutionError) else True
                    failures.append(f"{name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": retriable,
                        }
                    )
                    if not retriable:
                        break
                    continue

                if name != self.primary_name:
                    self._emit(
                        {"event": "backend_fallback_success", "backend": name, "attempt": attempt}
                    )
                yield text
                return

        raise BackendExecutionError(
            f"All backend attempts failed. {'; '.join(failures[-6:])}", retriable=False
        )
