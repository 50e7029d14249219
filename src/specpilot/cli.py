from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click

from specpilot import __version__
from specpilot.config import SpecPilotConfig, load_config, save_config
from specpilot.errors import (
    ExhaustionError,
    GatewayUnavailableError,
    SpecStoreError,
    StructuralError,
)
from specpilot.gateway import (
    GatewayClient,
    GatewayCommandRunner,
    GatewayServer,
    gateway_status,
    read_info,
    start_daemon,
    stop_daemon,
)
from specpilot.orchestrator import Orchestrator, RunResult
from specpilot.runner import CommandRunner, DirectCommandRunner
from specpilot.state import ActivityLog, SpecStore

logger = logging.getLogger("specpilot")

config_option = click.option(
    "--config", "config_value", default="specpilot.toml", show_default=True
)


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load(config_value: str) -> tuple[Path, SpecPilotConfig]:
    repo_root = Path.cwd().resolve()
    return repo_root, load_config(_resolve_config_path(repo_root, config_value))


def _log_event(event: dict[str, Any]) -> None:
    logger.debug("event %s", json.dumps(event, ensure_ascii=False, default=str))


def _build_command_runner(repo_root: Path, config: SpecPilotConfig) -> CommandRunner:
    direct = DirectCommandRunner(repo_root)
    if not config.gateway.enabled:
        return direct
    info = read_info(config.state_dir(repo_root)) or {}
    port = int(info.get("port") or config.gateway.port)
    client = GatewayClient(
        config.gateway.host, port, health_timeout=config.gateway.health_timeout_seconds
    )
    return GatewayCommandRunner(client, direct, event_hook=_log_event)


def _build_store(repo_root: Path, config: SpecPilotConfig) -> SpecStore:
    return SpecStore(
        repo_root,
        max_backups=config.state.max_backups,
        protected_paths=config.state.protected_paths,
        manifest_path=config.state_dir(repo_root) / "backups.json",
    )


def _echo_result(result: RunResult) -> None:
    total = len(result.completed_tasks) + len(result.blocked_tasks) + len(result.pending_tasks)
    click.echo(f"Completed: {len(result.completed_tasks)}/{total} task(s)")
    if result.completed_tasks:
        click.echo(f"Order: {', '.join(result.completed_tasks)}")
    if result.blocked_tasks:
        click.echo(f"Blocked: {', '.join(result.blocked_tasks)}")
    if result.pending_tasks:
        click.echo(f"Pending: {', '.join(result.pending_tasks)}")
    click.echo(f"Duration: {result.duration_ms / 1000:.1f}s")


@click.group()
@click.version_option(__version__, prog_name="specpilot")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """specpilot: run spec task graphs with self-correction."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


@cli.command("init")
@click.option("--test-command", default=None, help="Default validation command for tasks.")
@click.option("--no-gateway", is_flag=True, default=False)
@config_option
def init_command(test_command: str | None, no_gateway: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    is_new = not config_path.exists()
    config = load_config(config_path)
    if is_new:
        config.project.name = repo_root.name
    if test_command:
        config.project.test_command = test_command
    if no_gateway:
        config.gateway.enabled = False
    save_config(config_path, config)

    state_dir = config.state_dir(repo_root)
    state_dir.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized specpilot in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State directory: {state_dir}")
    click.echo(f"Test command: {config.project.test_command}")


@cli.command("run")
@click.argument("spec_dir", type=click.Path(file_okay=False, path_type=Path))
@click.option("--fresh", is_flag=True, default=False, help="Discard persisted progress first.")
@config_option
def run_command(spec_dir: Path, fresh: bool, config_value: str) -> None:
    repo_root, config = _load(config_value)
    orchestrator = Orchestrator(
        repo_root,
        config,
        command_runner=_build_command_runner(repo_root, config),
        on_complete=_echo_result,
        event_hook=_log_event,
    )
    try:
        asyncio.run(orchestrator.run(spec_dir, fresh=fresh))
    except StructuralError as exc:
        raise click.ClickException(str(exc)) from exc
    except ExhaustionError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("status")
@config_option
def status_command(config_value: str) -> None:
    repo_root, config = _load(config_value)
    payload = Orchestrator(repo_root, config).status()
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("history")
@click.argument("task_id", required=False)
@click.option("--activity", is_flag=True, default=False, help="Show the activity log instead.")
@config_option
def history_command(task_id: str | None, activity: bool, config_value: str) -> None:
    repo_root, config = _load(config_value)
    if activity:
        entries = ActivityLog(config.state_dir(repo_root) / "activity.jsonl").entries(task_id)
        if not entries:
            click.echo("No activity recorded.")
            return
        for entry in entries:
            click.echo(
                f"{entry.get('timestamp')} {entry.get('task_id')}"
                f"#{entry.get('attempt_number')} {entry.get('outcome'):<14} "
                f"{entry.get('error_summary') or ''}"
            )
        return
    payload = Orchestrator(repo_root, config).history(task_id)
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("restore")
@click.argument("path")
@click.option("--backup", "backup_id", default=None, help="Backup to restore (default: newest).")
@click.option("--list", "list_only", is_flag=True, default=False)
@config_option
def restore_command(path: str, backup_id: str | None, list_only: bool, config_value: str) -> None:
    repo_root, config = _load(config_value)
    store = _build_store(repo_root, config)
    try:
        backups = store.list_backups(path)
    except SpecStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    if list_only:
        if not backups:
            click.echo("No backups found.")
        for item in backups:
            click.echo(item)
        return
    if backup_id is None:
        if not backups:
            raise click.ClickException(f"No backups found for {path}")
        backup_id = backups[0]
    try:
        spec_file = store.restore(backup_id, path)
    except SpecStoreError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Restored {spec_file.path} from {backup_id}")
    if spec_file.backup_path:
        click.echo(f"Previous content saved to {spec_file.backup_path}")


@cli.command("gateway:start")
@click.option("--foreground", is_flag=True, default=False)
@config_option
def gateway_start_command(foreground: bool, config_value: str) -> None:
    repo_root, config = _load(config_value)
    state_dir = config.state_dir(repo_root)
    if foreground:
        server = GatewayServer(config.gateway, state_dir, repo_root)
        try:
            served = asyncio.run(server.serve())
        except GatewayUnavailableError as exc:
            raise click.ClickException(str(exc)) from exc
        if not served:
            click.echo("Gateway already running.")
        return
    try:
        payload = asyncio.run(start_daemon(config.gateway, state_dir, repo_root))
    except GatewayUnavailableError as exc:
        raise click.ClickException(str(exc)) from exc
    verb = "Started" if payload.get("started") else "Already running:"
    click.echo(f"{verb} gateway on port {payload.get('port')} (pid {payload.get('pid')})")


@cli.command("gateway:stop")
@config_option
def gateway_stop_command(config_value: str) -> None:
    repo_root, config = _load(config_value)
    stopped = asyncio.run(stop_daemon(config.gateway, config.state_dir(repo_root)))
    click.echo("Gateway stopped." if stopped else "Gateway is not running.")


@cli.command("gateway:status")
@config_option
def gateway_status_command(config_value: str) -> None:
    repo_root, config = _load(config_value)
    payload = asyncio.run(gateway_status(config.gateway, config.state_dir(repo_root)))
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
