"""CLI interface for relaybot."""

import asyncio
import json
import time
from pathlib import Path
from typing import Optional

import click

from . import __version__
from . import logs as relay_logs
from .config import Config, load_config, validate_config
from .exceptions import ConfigurationError
from .state import heartbeat_age, is_alive, read_json


@click.group()
@click.version_option(__version__, prog_name="relaybot")
@click.option(
    "--config", "-c", "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="YAML config file (default: ~/.relaybot/config.yaml if present)"
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    help="Debug logging"
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], verbose: bool):
    """Relaybot - chat-to-AI task relay with crash-recovery supervision."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _load(ctx: click.Context, validate: bool = True) -> Config:
    """Load (and optionally validate) config, exiting 1 on configuration errors."""
    try:
        config = load_config(ctx.obj["config_path"])
        if validate:
            for warning in validate_config(config):
                click.echo(f"Warning: {warning}", err=True)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)
    relay_logs.EVENTS_DIR = config.paths.events_dir
    return config


@cli.command()
@click.pass_context
def run(ctx: click.Context):
    """Run the relay (poll loop + dispatcher) in the foreground.

    Example:
        relaybot run
        relaybot -c config.yaml -v run
    """
    config = _load(ctx)
    relay_logs.setup_logging(config.paths.log_file, verbose=ctx.obj["verbose"])

    from .poller import run_relay

    raise SystemExit(asyncio.run(run_relay(config)))


@cli.command()
@click.pass_context
def supervise(ctx: click.Context):
    """Run the relay under the crash-recovery supervisor.

    Exits 0 on shutdown or a clean relay exit, 1 on a restart loop.
    """
    config = _load(ctx)
    relay_logs.setup_logging(
        config.paths.supervisor_log_file, verbose=ctx.obj["verbose"], tag="supervisor"
    )

    from .supervisor import Supervisor, child_command

    supervisor = Supervisor(
        config.supervisor,
        child_command(ctx.obj["config_path"], ctx.obj["verbose"]),
        config.paths.supervisor_health_file,
    )
    supervisor.install_signal_handlers()
    raise SystemExit(supervisor.run())


def _describe(name: str, data: Optional[dict], threshold: float, now: float) -> str:
    if not data:
        return f"{name}: no health file"
    age = heartbeat_age(data, now)
    alive = "alive" if is_alive(data, threshold, now) else "NOT RUNNING"
    age_text = f"{age:.0f}s ago" if age is not None else "never"
    return f"{name}: {alive} (status={data.get('status', '?')}, heartbeat {age_text})"


@cli.command()
@click.option(
    "--json", "as_json",
    is_flag=True,
    help="Print raw health snapshots"
)
@click.pass_context
def status(ctx: click.Context, as_json: bool):
    """Show relay and supervisor health."""
    config = _load(ctx, validate=False)
    now = time.time()
    relay = read_json(config.paths.health_file)
    supervisor = read_json(config.paths.supervisor_health_file)

    if as_json:
        click.echo(json.dumps({"relay": relay, "supervisor": supervisor}, indent=2))
        return

    click.echo(_describe("Relay", relay, config.liveness_threshold, now))
    if relay:
        click.echo(f"  Messages: {relay.get('messages_processed', 0)}  "
                   f"Errors: {relay.get('errors', 0)}  "
                   f"Queue: {relay.get('queue_length', 0)}  "
                   f"Cost: {relay.get('cost_formatted', '$0.0000')}")
    # The supervisor only beats every heartbeat_interval seconds
    supervisor_threshold = config.supervisor.heartbeat_interval * 2
    click.echo(_describe("Supervisor", supervisor, supervisor_threshold, now))
    if supervisor and supervisor.get("reason"):
        click.echo(f"  Reason: {supervisor['reason']}  Restarts: {supervisor.get('restart_count', 0)}")


@cli.command()
@click.option(
    "--port", "-p",
    type=int,
    default=None,
    help="Override panel port"
)
@click.pass_context
def panel(ctx: click.Context, port: Optional[int]):
    """Serve the operator panel API (state views plus stop/restart)."""
    config = _load(ctx, validate=False)
    relay_logs.setup_logging(None, verbose=ctx.obj["verbose"], tag="panel")

    from .panel import build_panel_server

    try:
        server = build_panel_server(config, port)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)

    host, bound_port = server.server_address[:2]
    click.echo(f"Panel serving at http://{host}:{bound_port}/api/health")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
