from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from specpilot import __version__
from specpilot.config import GatewayConfig
from specpilot.errors import GatewayUnavailableError
from specpilot.gateway.client import GatewayClient
from specpilot.runner import execute_command
from specpilot.state.spec_store import atomic_write_text

logger = logging.getLogger(__name__)

INFO_FILE = "gateway.json"


class RunRequest(BaseModel):
    command: str = Field(min_length=1)
    timeout_ms: int = Field(default=120_000, gt=0)
    cwd: str | None = None


class RunResponse(BaseModel):
    command: str
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool
    duration_ms: int


class HealthResponse(BaseModel):
    status: str
    uptime_s: float
    port: int
    version: str
    pid: int
    in_flight: int
    served: int


class GatewayState:
    """Runtime bookkeeping shared by the request handlers of one gateway."""

    def __init__(self, port: int, working_directory: Path | None = None) -> None:
        self.port = port
        self.working_directory = working_directory
        self.started = time.monotonic()
        self.lock = asyncio.Lock()
        self.in_flight = 0
        self.served = 0
        self.draining = False

    async def drain(self, poll_seconds: float = 0.05) -> None:
        self.draining = True
        while self.in_flight:
            await asyncio.sleep(poll_seconds)
        async with self.lock:
            pass


def create_app(
    *,
    port: int,
    working_directory: Path | None = None,
    request_shutdown: Callable[[], None] | None = None,
) -> FastAPI:
    state = GatewayState(port, working_directory)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("gateway listening on port %d (pid %d)", port, os.getpid())
        yield
        await state.drain()
        logger.info("gateway drained after serving %d command(s)", state.served)

    app = FastAPI(title="specpilot gateway", version=__version__, lifespan=lifespan)
    app.state.gateway = state

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(
            status="draining" if state.draining else "active",
            uptime_s=round(time.monotonic() - state.started, 3),
            port=state.port,
            version=__version__,
            pid=os.getpid(),
            in_flight=state.in_flight,
            served=state.served,
        )

    @app.post("/run", response_model=RunResponse)
    async def run(request: RunRequest) -> RunResponse:
        if state.draining:
            raise HTTPException(status_code=503, detail="gateway is shutting down")
        state.in_flight += 1
        try:
            async with state.lock:
                result = await execute_command(
                    request.command,
                    timeout_seconds=request.timeout_ms / 1000,
                    cwd=request.cwd or state.working_directory,
                )
        finally:
            state.in_flight -= 1
        state.served += 1
        return RunResponse(
            command=result.command,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            duration_ms=result.duration_ms,
        )

    @app.post("/shutdown")
    async def shutdown() -> dict[str, Any]:
        state.draining = True
        if request_shutdown is not None:
            request_shutdown()
        return {"status": "shutting_down", "in_flight": state.in_flight}

    return app


def port_available(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        try:
            probe.bind((host, port))
        except OSError:
            return False
    return True


def candidate_ports(config: GatewayConfig) -> list[int]:
    return [config.port, config.port + 1]


def read_info(state_dir: Path) -> dict[str, Any] | None:
    path = state_dir / INFO_FILE
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


class GatewayServer:
    """Serves the gateway app with uvicorn and records it in ``gateway.json``."""

    def __init__(
        self,
        config: GatewayConfig,
        state_dir: Path,
        working_directory: Path | None = None,
    ) -> None:
        self.config = config
        self.state_dir = state_dir
        self.working_directory = working_directory
        self.info_path = state_dir / INFO_FILE
        self.port: int | None = None
        self._server: uvicorn.Server | None = None

    def request_shutdown(self) -> None:
        if self._server is not None:
            self._server.should_exit = True

    async def find_running(self) -> dict[str, Any] | None:
        for port in candidate_ports(self.config):
            client = GatewayClient(
                self.config.host, port, health_timeout=self.config.health_timeout_seconds
            )
            payload = await client.health_info()
            if payload is not None:
                return payload
        return None

    def _write_info(self, port: int) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "pid": os.getpid(),
            "host": self.config.host,
            "port": port,
            "version": __version__,
            "started_at": datetime.now(UTC).replace(microsecond=0).isoformat(),
        }
        atomic_write_text(self.info_path, json.dumps(payload, indent=2))

    def _remove_info(self) -> None:
        info = read_info(self.state_dir)
        if info is not None and info.get("pid") != os.getpid():
            return
        try:
            self.info_path.unlink()
        except FileNotFoundError:
            pass

    async def serve(self) -> bool:
        """Run until shutdown. Returns ``False`` if a healthy gateway was already running."""
        running = await self.find_running()
        if running is not None:
            logger.info("gateway already active on port %s", running.get("port"))
            return False

        port = next(
            (port for port in candidate_ports(self.config) if port_available(self.config.host, port)),
            None,
        )
        if port is None:
            raise GatewayUnavailableError(
                f"Ports {candidate_ports(self.config)} are busy on {self.config.host}"
            )
        if port != self.config.port:
            logger.warning("port %d is busy, using fallback port %d", self.config.port, port)

        self.port = port
        app = create_app(
            port=port,
            working_directory=self.working_directory,
            request_shutdown=self.request_shutdown,
        )
        self._server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=self.config.host,
                port=port,
                log_level="warning",
                timeout_graceful_shutdown=30,
            )
        )
        self._write_info(port)
        try:
            await self._server.serve()
        finally:
            self._remove_info()
        return True
