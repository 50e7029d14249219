import asyncio
import json
import socket
import subprocess
import time
from pathlib import Path
from typing import Any

import httpx
from fastapi.testclient import TestClient

from specpilot.config import GatewayConfig
from specpilot.gateway import (
    GatewayClient,
    GatewayCommandRunner,
    create_app,
    gateway_status,
    read_info,
    stop_daemon,
)
from specpilot.gateway.__main__ import main as gateway_main
from specpilot.gateway.daemon import daemon_command
from specpilot.gateway.server import candidate_ports
from specpilot.runner import DirectCommandRunner


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.bind(("127.0.0.1", 0))
        return int(probe.getsockname()[1])


def _asgi_client(tmp_path: Path) -> GatewayClient:
    app = create_app(port=3000, working_directory=tmp_path)
    return GatewayClient(transport=httpx.ASGITransport(app=app))


def test_health_reports_active_gateway(tmp_path: Path) -> None:
    with TestClient(create_app(port=3000, working_directory=tmp_path)) as client:
        response = client.get("/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "active"
    assert payload["port"] == 3000
    assert payload["in_flight"] == 0
    assert payload["uptime_s"] >= 0


def test_run_executes_command_in_working_directory(tmp_path: Path) -> None:
    (tmp_path / "marker.txt").write_text("from gateway\n", encoding="utf-8")

    with TestClient(create_app(port=3000, working_directory=tmp_path)) as client:
        response = client.post("/run", json={"command": "cat marker.txt; exit 4"})
        served = client.get("/health").json()["served"]

    assert response.status_code == 200
    payload = response.json()
    assert payload["stdout"] == "from gateway\n"
    assert payload["exit_code"] == 4
    assert payload["timed_out"] is False
    assert served == 1


def test_run_rejects_invalid_requests(tmp_path: Path) -> None:
    with TestClient(create_app(port=3000, working_directory=tmp_path)) as client:
        assert client.post("/run", json={"command": ""}).status_code == 422
        assert client.post("/run", json={"command": "true", "timeout_ms": 0}).status_code == 422


def test_shutdown_drains_and_refuses_new_commands(tmp_path: Path) -> None:
    calls: list[str] = []
    app = create_app(
        port=3000, working_directory=tmp_path, request_shutdown=lambda: calls.append("stop")
    )

    with TestClient(app) as client:
        assert client.post("/shutdown").json()["status"] == "shutting_down"
        assert client.get("/health").json()["status"] == "draining"
        assert client.post("/run", json={"command": "true"}).status_code == 503

    assert calls == ["stop"]


def test_gateway_result_matches_direct_execution(tmp_path: Path) -> None:
    command = "echo same; echo warn 1>&2; exit 2"

    via_gateway = asyncio.run(_asgi_client(tmp_path).run(command, timeout_ms=10_000))
    direct = asyncio.run(DirectCommandRunner(tmp_path).run(command, timeout_seconds=10))

    assert via_gateway.via == "gateway"
    assert direct.via == "direct"
    assert (via_gateway.stdout, via_gateway.stderr, via_gateway.exit_code) == (
        direct.stdout,
        direct.stderr,
        direct.exit_code,
    )


def test_gateway_timeout_matches_direct_timeout(tmp_path: Path) -> None:
    result = asyncio.run(_asgi_client(tmp_path).run("sleep 5", timeout_ms=300))

    assert result.timed_out is True
    assert result.exit_code == 124


def test_commands_are_serialized(tmp_path: Path) -> None:
    client = _asgi_client(tmp_path)

    async def run_both() -> float:
        started = time.monotonic()
        await asyncio.gather(
            client.run("sleep 0.3", timeout_ms=5_000),
            client.run("sleep 0.3", timeout_ms=5_000),
        )
        return time.monotonic() - started

    assert asyncio.run(run_both()) >= 0.55


def test_command_runner_uses_gateway_when_healthy(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    runner = GatewayCommandRunner(
        _asgi_client(tmp_path), DirectCommandRunner(tmp_path), event_hook=events.append
    )

    result = asyncio.run(runner.run("echo routed", timeout_seconds=10, cwd=tmp_path))

    assert result.via == "gateway"
    assert result.stdout == "routed\n"
    assert events == []


def test_command_runner_falls_back_when_gateway_is_down(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    client = GatewayClient("127.0.0.1", _free_port(), health_timeout=0.5)
    runner = GatewayCommandRunner(client, DirectCommandRunner(tmp_path), event_hook=events.append)

    result = asyncio.run(runner.run("echo direct", timeout_seconds=10))

    assert result.via == "direct"
    assert result.stdout == "direct\n"
    assert events[0]["event"] == "gateway_fallback"
    assert events[0]["reason"] == "health check failed"


def test_status_reports_inactive_gateway(tmp_path: Path) -> None:
    config = GatewayConfig(port=_free_port(), health_timeout_seconds=0.5)
    info = {"pid": 1, "port": config.port}
    (tmp_path / "gateway.json").write_text(json.dumps(info), encoding="utf-8")

    payload = asyncio.run(gateway_status(config, tmp_path))

    assert payload["active"] is False
    assert payload["health"] is None
    assert payload["info"] == {"pid": 1, "port": config.port}
    assert candidate_ports(config) == [config.port, config.port + 1]


def test_read_info_ignores_missing_or_corrupt_file(tmp_path: Path) -> None:
    assert read_info(tmp_path) is None
    (tmp_path / "gateway.json").write_text("{not json", encoding="utf-8")
    assert read_info(tmp_path) is None


def test_stop_leaves_unconfirmed_pid_alone(tmp_path: Path) -> None:
    config = GatewayConfig(port=_free_port(), health_timeout_seconds=0.5)
    bystander = subprocess.Popen(["sleep", "30"])
    try:
        info = {"pid": bystander.pid, "port": config.port}
        (tmp_path / "gateway.json").write_text(json.dumps(info), encoding="utf-8")

        stopped = asyncio.run(stop_daemon(config, tmp_path, wait_seconds=0.1))

        assert stopped is False
        assert bystander.poll() is None
        assert read_info(tmp_path) is None
    finally:
        bystander.kill()
        bystander.wait()


def test_spawned_gateway_receives_every_config_field(tmp_path: Path) -> None:
    config = GatewayConfig(
        host="127.0.0.2", port=4100, health_timeout_seconds=0.75, startup_timeout_seconds=3.0
    )

    argv = daemon_command(config, tmp_path / "state", tmp_path)
    context = gateway_main.make_context("gateway", argv[3:])

    assert context.params["host"] == "127.0.0.2"
    assert context.params["port"] == 4100
    assert context.params["health_timeout"] == 0.75
    assert context.params["startup_timeout"] == 3.0
    assert context.params["working_directory"] == str(tmp_path)
