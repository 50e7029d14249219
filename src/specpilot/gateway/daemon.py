from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Any

from specpilot.config import GatewayConfig
from specpilot.errors import GatewayUnavailableError
from specpilot.gateway.client import GatewayClient
from specpilot.gateway.server import INFO_FILE, candidate_ports, read_info

logger = logging.getLogger(__name__)

LOG_FILE = "gateway.log"


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def daemon_command(config: GatewayConfig, state_dir: Path, working_directory: Path) -> list[str]:
    return [
        sys.executable,
        "-m",
        "specpilot.gateway",
        "--host",
        config.host,
        "--port",
        str(config.port),
        "--health-timeout",
        str(config.health_timeout_seconds),
        "--startup-timeout",
        str(config.startup_timeout_seconds),
        "--state-dir",
        str(state_dir),
        "--cwd",
        str(working_directory),
    ]


async def probe(config: GatewayConfig) -> dict[str, Any] | None:
    for port in candidate_ports(config):
        payload = await GatewayClient(
            config.host, port, health_timeout=config.health_timeout_seconds
        ).health_info()
        if payload is not None:
            return payload
    return None


async def start_daemon(
    config: GatewayConfig, state_dir: Path, working_directory: Path
) -> dict[str, Any]:
    """Spawn a detached gateway process and wait until it answers health checks."""
    running = await probe(config)
    if running is not None:
        return {**running, "started": False}

    state_dir.mkdir(parents=True, exist_ok=True)
    with (state_dir / LOG_FILE).open("ab") as log_handle:
        process = subprocess.Popen(
            daemon_command(config, state_dir, working_directory),
            cwd=str(working_directory),
            stdin=subprocess.DEVNULL,
            stdout=log_handle,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )

    deadline = time.monotonic() + config.startup_timeout_seconds
    while time.monotonic() < deadline:
        if process.poll() is not None:
            raise GatewayUnavailableError(
                f"Gateway exited during startup with code {process.returncode}; "
                f"see {state_dir / LOG_FILE}"
            )
        payload = await probe(config)
        if payload is not None:
            return {**payload, "started": True}
        await asyncio.sleep(0.2)

    process.terminate()
    raise GatewayUnavailableError(
        f"Gateway did not become healthy within {config.startup_timeout_seconds:.1f}s"
    )


async def stop_daemon(
    config: GatewayConfig, state_dir: Path, *, wait_seconds: float = 5.0
) -> bool:
    """Ask the gateway to shut down, escalating to SIGTERM on the recorded pid.

    The pid from ``gateway.json`` is only signalled after the gateway's own
    health report has confirmed it.
    """
    info = read_info(state_dir) or {}
    pid = info.get("pid")
    ports = [int(info["port"])] if info.get("port") else candidate_ports(config)
    requested = False
    confirmed = False
    for port in ports:
        client = GatewayClient(config.host, port, health_timeout=config.health_timeout_seconds)
        health = await client.health_info()
        if health is None:
            continue
        confirmed = isinstance(pid, int) and health.get("pid") == pid
        requested = await client.shutdown()
        break

    if confirmed and isinstance(pid, int):
        deadline = time.monotonic() + wait_seconds
        while _pid_alive(pid) and time.monotonic() < deadline:
            await asyncio.sleep(0.1)
        if _pid_alive(pid):
            logger.warning("gateway pid %d still running, sending SIGTERM", pid)
            os.kill(pid, signal.SIGTERM)
            requested = True
    elif isinstance(pid, int):
        logger.warning("gateway did not confirm pid %d, leaving it alone", pid)

    try:
        (state_dir / INFO_FILE).unlink()
    except FileNotFoundError:
        pass
    return requested


async def gateway_status(config: GatewayConfig, state_dir: Path) -> dict[str, Any]:
    health = await probe(config)
    return {
        "active": health is not None,
        "health": health,
        "info": read_info(state_dir),
    }
