"""
kegworks — CLI entrypoint.

Usage:
    kegworks --help
    kegworks install <name>
    kegworks service status <name>
    python -m kegworks.main --version
"""

from __future__ import annotations

import functools
import json
import os
import signal
import sys
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from kegworks import __version__
from kegworks.core.errors import KegError
from kegworks.core.observability.logging_config import setup_logging

_STATE_COLORS = {"running": "green", "stopped": "white", "crashed": "red", "unregistered": "white"}


def _keg(ctx: click.Context):
    """Build the Keg facade once per invocation."""
    from kegworks.core.config.loader import load_settings
    from kegworks.core.use_cases.operations import Keg

    root = ctx.find_root()
    if "keg" not in root.obj:
        settings = load_settings(root.obj["config_path"], overrides=root.obj["overrides"])
        root.obj["keg"] = Keg.from_settings(settings)
    return root.obj["keg"]


def _handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Report KegError on stderr and exit with its code."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except KegError as e:
            click.secho(f"❌ {e}", fg="red", err=True)
            sys.exit(e.exit_code)

    return wrapper


@click.group()
@click.version_option(version=__version__, prog_name="kegworks")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to kegworks.yml (default: KEG_CONFIG or ~/.config/kegworks).",
)
@click.option("--prefix", type=click.Path(), default=None, help="Install prefix.")
@click.option("--arch", "architecture", default=None, help="Target architecture (intel, arm).")
@click.option("--strict", "strict", is_flag=True, default=None,
              help="Refuse artifacts that have no checksum.")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
    prefix: str | None,
    architecture: str | None,
    strict: bool | None,
) -> None:
    """kegworks — install prebuilt binaries and keep their services running."""
    ctx.ensure_object(dict)
    ctx.obj["quiet"] = quiet
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["overrides"] = {
        "prefix": prefix,
        "architecture": architecture,
        "strict_checksums": strict or None,
    }

    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = os.environ.get("KEG_LOG_LEVEL", "WARNING")

    _configure_logging(level)


@_handle_errors
def _configure_logging(level: str) -> None:
    setup_logging(
        level=level,
        log_file=os.environ.get("KEG_LOG_FILE"),
        log_file_level=os.environ.get("KEG_LOG_FILE_LEVEL"),
    )


# ── Install / upgrade / uninstall ────────────────────────────────


@cli.command()
@click.argument("name")
@click.pass_context
@_handle_errors
def install(ctx: click.Context, name: str) -> None:
    """Download, verify and install a formula; start its service."""
    record = _keg(ctx).install(name)
    _report_record(ctx, "Installed", record)


@cli.command()
@click.argument("name")
@click.pass_context
@_handle_errors
def upgrade(ctx: click.Context, name: str) -> None:
    """Upgrade a formula, keeping its service running if it was."""
    record = _keg(ctx).upgrade(name)
    _report_record(ctx, "Upgraded", record)


@cli.command()
@click.argument("name")
@click.option("--ignore-dependencies", is_flag=True,
              help="Uninstall even if installed formulas depend on it.")
@click.pass_context
@_handle_errors
def uninstall(ctx: click.Context, name: str, ignore_dependencies: bool) -> None:
    """Stop the service and remove a formula's files."""
    record = _keg(ctx).uninstall(name, ignore_dependencies=ignore_dependencies)
    if not ctx.obj.get("quiet"):
        click.secho(f"🗑  Uninstalled {record.name} {record.version}", fg="cyan")


def _report_record(ctx: click.Context, verb: str, record) -> None:
    if ctx.obj.get("quiet"):
        return
    click.secho(f"✅ {verb} {record.name} {record.version}", fg="green")
    for path in record.binary_paths:
        click.echo(f"   → {path}")
    if not record.verified:
        click.secho("   ⚠ artifact had no checksum — installed UNVERIFIED", fg="yellow", err=True)
    if record.service is not None:
        click.echo(f"   service: {record.service.state.value}")


# ── Services ─────────────────────────────────────────────────────


@cli.group()
def service() -> None:
    """Manage formula background services."""


@service.command("start")
@click.argument("name")
@click.pass_context
@_handle_errors
def service_start(ctx: click.Context, name: str) -> None:
    """Start a service (no-op if already running)."""
    keg = _keg(ctx)
    state = keg.service_start(name)
    click.echo(f"{name}: {state.value} (pid {keg.supervisor.pid(name)})")


@service.command("stop")
@click.argument("name")
@click.pass_context
@_handle_errors
def service_stop(ctx: click.Context, name: str) -> None:
    """Stop a service."""
    was_running = _keg(ctx).service_stop(name)
    click.echo(f"{name}: stopped" + ("" if was_running else " (was not running)"))


@service.command("restart")
@click.argument("name")
@click.pass_context
@_handle_errors
def service_restart(ctx: click.Context, name: str) -> None:
    """Stop and start a service."""
    keg = _keg(ctx)
    state = keg.service_restart(name)
    click.echo(f"{name}: {state.value} (pid {keg.supervisor.pid(name)})")


@service.command("status")
@click.argument("name")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@_handle_errors
def service_status(ctx: click.Context, name: str, as_json: bool) -> None:
    """Show the state of a service."""
    keg = _keg(ctx)
    state = keg.service_status(name)
    if as_json:
        click.echo(json.dumps(keg.supervisor.describe(name), indent=2))
        return
    click.echo(f"{name}: ", nl=False)
    click.secho(state.value, fg=_STATE_COLORS.get(state.value, "white"))


@cli.command()
@click.pass_context
@_handle_errors
def supervise(ctx: click.Context) -> None:
    """Run in the foreground and keep services alive until interrupted."""
    keg = _keg(ctx)
    stop = threading.Event()

    def _on_signal(_signum: int, _frame: Any) -> None:
        stop.set()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)
    click.echo(f"Supervising {len(keg.supervisor.names())} services (Ctrl-C to exit)")
    keg.supervise(stop)


# ── Read-only ────────────────────────────────────────────────────


@cli.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@_handle_errors
def list_cmd(ctx: click.Context, as_json: bool) -> None:
    """List known and installed formulas."""
    rows = _keg(ctx).list_formulas()
    if as_json:
        click.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        click.echo("No formulas.")
        return
    for row in rows:
        installed = row["installed"] or "-"
        marker = " ⚠ unverified" if row["verified"] is False else ""
        click.echo(f"  • {row['name']:<28} {row['version'] or '?':<10} installed: {installed:<10} "
                   f"service: {row['service']}{marker}")


@cli.command()
@click.argument("name")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@_handle_errors
def info(ctx: click.Context, name: str, as_json: bool) -> None:
    """Show formula metadata and install state."""
    data = _keg(ctx).info(name)
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return
    click.secho(f"\n📦 {data['name']} {data.get('version') or ''}", fg="cyan", bold=True)
    if data.get("desc"):
        click.echo(f"   {data['desc']}")
    if data.get("homepage"):
        click.echo(f"   {data['homepage']}")
    if data.get("runtime_dependency"):
        click.echo(f"   depends on: {data['runtime_dependency']}")
    installed = data.get("installed")
    click.echo(f"   installed: {installed['version'] if installed else 'no'}")
    if data.get("service"):
        svc = data["service"]
        click.echo(f"   service: {svc['state']} (pid {svc['pid']}, restarts {svc['restarts']})")
    click.echo()


@cli.command("test")
@click.argument("name")
@click.pass_context
@_handle_errors
def test_cmd(ctx: click.Context, name: str) -> None:
    """Run a formula's smoke test against the installed binary."""
    output = _keg(ctx).test(name)
    click.secho(f"✅ {name}: test passed", fg="green")
    if output and not ctx.obj.get("quiet"):
        click.echo(f"   {output.splitlines()[0]}")


@cli.command()
@click.argument("name", required=False)
@click.option("-n", "count", default=20, show_default=True, help="Number of entries.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
@_handle_errors
def history(ctx: click.Context, name: str | None, count: int, as_json: bool) -> None:
    """Show recent operations from the audit ledger."""
    entries = _keg(ctx).history(count, name)
    if as_json:
        click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))
        return
    for e in entries:
        color = {"ok": "green", "failed": "red"}.get(e.status, "white")
        click.echo(f"  {e.timestamp}  {e.operation:<16} {e.formula} {e.version}  ", nl=False)
        click.secho(e.status, fg=color, nl=False)
        click.echo(f"  {e.error}" if e.error else "")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
