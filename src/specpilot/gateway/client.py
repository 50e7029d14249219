from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

from specpilot.errors import GatewayUnavailableError
from specpilot.runner import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

# Slack on top of the command timeout for the HTTP round trip.
REQUEST_GRACE_SECONDS = 5.0


class GatewayClient:
    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 3000,
        *,
        health_timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.health_timeout = health_timeout
        self.transport = transport

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self.transport)

    async def health_info(self) -> dict[str, Any] | None:
        try:
            async with self._client(self.health_timeout) as client:
                response = await client.get("/health")
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError):
            return None
        if not isinstance(payload, dict) or payload.get("status") != "active":
            return None
        return payload

    async def health(self) -> bool:
        return await self.health_info() is not None

    async def run(self, command: str, *, timeout_ms: int, cwd: str | None = None) -> CommandResult:
        body: dict[str, Any] = {"command": command, "timeout_ms": timeout_ms}
        if cwd:
            body["cwd"] = cwd
        try:
            async with self._client(timeout_ms / 1000 + REQUEST_GRACE_SECONDS) as client:
                response = await client.post("/run", json=body)
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as exc:
            raise GatewayUnavailableError(f"Gateway request timed out: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            raise GatewayUnavailableError(
                f"Gateway returned HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise GatewayUnavailableError(f"Gateway request failed: {exc}") from exc
        if not isinstance(payload, dict):
            raise GatewayUnavailableError("Gateway returned a malformed response")
        return CommandResult.from_dict(payload, via="gateway")

    async def shutdown(self) -> bool:
        try:
            async with self._client(self.health_timeout) as client:
                response = await client.post("/shutdown")
                response.raise_for_status()
        except httpx.HTTPError:
            return False
        return True


class GatewayCommandRunner(CommandRunner):
    """Routes commands through the gateway, falling back to ``fallback`` when it is down."""

    def __init__(
        self,
        client: GatewayClient,
        fallback: CommandRunner,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.client = client
        self.fallback = fallback
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    async def run(
        self,
        command: str,
        *,
        timeout_seconds: float,
        cwd: Path | None = None,
    ) -> CommandResult:
        if await self.client.health():
            try:
                return await self.client.run(
                    command,
                    timeout_ms=max(1, int(timeout_seconds * 1000)),
                    cwd=str(cwd) if cwd else None,
                )
            except GatewayUnavailableError as exc:
                reason = str(exc)
        else:
            reason = "health check failed"

        logger.info("gateway unavailable (%s), running directly", reason)
        self._emit({"event": "gateway_fallback", "reason": reason, "command": command})
        return await self.fallback.run(command, timeout_seconds=timeout_seconds, cwd=cwd)
