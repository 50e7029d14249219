from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click

from specpilot.config import GatewayConfig
from specpilot.gateway.server import GatewayServer

DEFAULTS = GatewayConfig()


@click.command()
@click.option("--host", default=DEFAULTS.host, show_default=True)
@click.option("--port", default=DEFAULTS.port, show_default=True, type=int)
@click.option(
    "--health-timeout",
    "health_timeout",
    default=DEFAULTS.health_timeout_seconds,
    show_default=True,
    type=float,
)
@click.option(
    "--startup-timeout",
    "startup_timeout",
    default=DEFAULTS.startup_timeout_seconds,
    show_default=True,
    type=float,
)
@click.option("--state-dir", "state_dir", default=".specpilot", show_default=True)
@click.option("--cwd", "working_directory", default=".", show_default=True)
def main(
    host: str,
    port: int,
    health_timeout: float,
    startup_timeout: float,
    state_dir: str,
    working_directory: str,
) -> None:
    """Run the specpilot gateway in the foreground."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    config = GatewayConfig(
        host=host,
        port=port,
        health_timeout_seconds=health_timeout,
        startup_timeout_seconds=startup_timeout,
    )
    server = GatewayServer(config, Path(state_dir).resolve(), Path(working_directory).resolve())
    if not asyncio.run(server.serve()):
        click.echo("Gateway already running.")


if __name__ == "__main__":
    main()
