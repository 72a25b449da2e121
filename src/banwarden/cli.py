from __future__ import annotations

import time
from datetime import date, datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from banwarden import __version__, log
from banwarden.config import ConfigError, WardenConfig, load_config, parse_duration, split_mode
from banwarden.engine import Warden
from banwarden.firewall import MemoryBackend, NftBackend
from banwarden.records import Status

app = typer.Typer(
    add_completion=False,
    invoke_without_command=True,
    context_settings={"help_option_names": ["-h", "--help"]},
    epilog=(
        "All time values accept seconds or BIND style strings, "
        "ex: 1w2d3h5m30s is 1 week, 2 days, 3 hours, 5 minutes, 30 seconds."
    ),
)

_EXIT_BAD_CONFIG = 254


def _fail(msg: str) -> None:
    typer.echo(f"[banwarden] Error: {msg}", err=True)
    raise typer.Exit(code=_EXIT_BAD_CONFIG)


def _version_cb(value: bool) -> None:
    if value:
        typer.echo(f"banwarden {__version__}")
        raise typer.Exit()


def _build_warden(ctx: typer.Context) -> Warden:
    cfg: WardenConfig = ctx.obj["cfg"]
    if ctx.obj["dry_run"]:
        log.log_line(1, "Dry run: firewall changes are kept in memory only")
        backend = MemoryBackend(chains=[c for c, _ in cfg.fw_hooks])
    else:
        if not NftBackend.available():
            log.log_line(0, "Error: nft not found in PATH, bans will fail until it is installed")
        backend = NftBackend(cfg.fw_table)
    return Warden(cfg, backend)


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(None, "--config", help="YAML config file (default /etc/banwarden/config.yaml)."),
    attempt_count: Optional[int] = typer.Option(None, "-a", "--attempt-count", help="Attempts before banning."),
    ban_length: Optional[str] = typer.Option(None, "-b", "--ban-length", help="Ban length once attempts hit threshold."),
    chain: Optional[str] = typer.Option(None, "-c", "--chain", help="Firewall chain that holds the bans."),
    hooks: Optional[str] = typer.Option(None, "-C", "--hooks", help='Chains/positions to hook into, ex: "input_wan_rule:1 forwarding_wan_rule:1".'),
    facility: Optional[str] = typer.Option(None, "-f", "--facility", help="Log facility (syslog facility.priority or stdout/stderr)."),
    action: Optional[str] = typer.Option(None, "-j", "--action", help="Firewall action for banned addresses."),
    log_level: Optional[int] = typer.Option(None, "-l", "--log-level", help="0=off, 1=standard, 2=verbose, 3=debug."),
    attempt_period: Optional[str] = typer.Option(None, "-p", "--attempt-period", help="Window the attempts must happen in."),
    durable_period: Optional[str] = typer.Option(None, "-P", "--persist-period", help="Persistent state write period (-1 = never, 0 = only on flush)."),
    durable_prefix: Optional[str] = typer.Option(None, "-s", "--state-prefix", help="Persistent state file prefix."),
    volatile_prefix: Optional[str] = typer.Option(None, "-t", "--temp-prefix", help="Temporary state file prefix."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Do not touch the firewall (in-memory rules)."),
    version: bool = typer.Option(False, "--version", callback=_version_cb, is_eager=True, help="Show version and exit"),
):
    """
    Ban addresses that keep failing to log in (dropbear / sshd).

    Without a command, runs the config default_mode (entire unless set).
    """
    try:
        cfg = load_config(config_path).with_overrides(
            attempt_count=attempt_count,
            ban_length=ban_length,
            fw_chain=chain,
            fw_hooks=hooks,
            log_facility=facility,
            fw_action=action,
            log_level=log_level,
            attempt_period=attempt_period,
            durable_write_period=durable_period,
            durable_prefix=durable_prefix,
            volatile_prefix=volatile_prefix,
        )
    except ConfigError as e:
        _fail(str(e))

    log.configure(cfg.log_level, cfg.log_facility)
    ctx.obj = {"cfg": cfg, "dry_run": dry_run}

    if ctx.invoked_subcommand is None:
        _run_default_mode(ctx)


@app.command()
def follow(ctx: typer.Context):
    """Follow the log and ban as attempts happen (used by the init script)."""
    from banwarden.modes import run_follow

    raise typer.Exit(code=run_follow(_build_warden(ctx)))


@app.command()
def entire(ctx: typer.Context):
    """Process the entire log contents once."""
    from banwarden.modes import run_batch

    log.log_line(1, "Running in entire mode")
    run_batch(_build_warden(ctx))


@app.command()
def today(ctx: typer.Context):
    """Process log entries from today only."""
    from banwarden.modes import run_batch

    log.log_line(1, "Running in today mode")
    run_batch(_build_warden(ctx), day=date.today())


@app.command()
def interval(
    ctx: typer.Context,
    duration: str = typer.Argument("24h", help="How far back to look, ex: 30m, 6h, 1d12h"),
):
    """Process log entries newer than DURATION (cron friendly)."""
    try:
        seconds = parse_duration(duration)
    except ConfigError as e:
        _fail(str(e))
    _run_interval(ctx, seconds)


def _run_interval(ctx: typer.Context, seconds: int) -> None:
    from banwarden.modes import run_batch

    log.log_line(1, f"Running in interval mode (reviewing {seconds} seconds of log entries)")
    run_batch(_build_warden(ctx), since=int(time.time()) - seconds)


@app.command()
def wipe(ctx: typer.Context):
    """Unhook and remove the firewall chain, delete state files."""
    from banwarden.modes import run_wipe

    run_wipe(_build_warden(ctx))
    typer.echo("WIPED")


@app.command()
def status(ctx: typer.Context):
    """Show records from the state files (firewall untouched)."""
    warden = _build_warden(ctx)
    warden.persistence.load()

    records = sorted(warden.store.all(), key=lambda r: (-int(r.status), r.address))
    if not records:
        typer.echo("No records.")
        raise typer.Exit()

    cfg: WardenConfig = ctx.obj["cfg"]
    now = int(time.time())
    table = Table(title=f"banwarden: {len(records)} records")
    table.add_column("Address")
    table.add_column("Status")
    table.add_column("Times")
    table.add_column("Expires")

    for r in records:
        times = ", ".join(datetime.fromtimestamp(t).strftime("%Y-%m-%d %H:%M:%S") for t in r.timestamps[-3:])
        if len(r.timestamps) > 3:
            times = f"(+{len(r.timestamps) - 3}) " + times
        expires = ""
        if r.status == Status.BANNED:
            left = r.ban_start + cfg.ban_length - now
            expires = "due" if left <= 0 else f"{left}s"
        table.add_row(r.address, r.status.name, times, expires)

    Console().print(table)


def _run_default_mode(ctx: typer.Context) -> None:
    mode, seconds = split_mode(ctx.obj["cfg"].default_mode)
    if mode == "interval":
        _run_interval(ctx, seconds)
        return
    {"follow": follow, "entire": entire, "today": today, "wipe": wipe}[mode](ctx)


def run_cli() -> None:
    app()


if __name__ == "__main__":
    run_cli()
