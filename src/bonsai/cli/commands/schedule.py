"""Print the platform scheduler entry that triggers the heartbeat."""

from __future__ import annotations

import plistlib
import shlex
import shutil
import sys
from pathlib import Path

import click

from bonsai.core.config import CURRENT_OS
from bonsai.core.paths import get_logs_dir

from .heartbeat import load_config_or_exit

LAUNCHD_LABEL = "dev.bonsai.heartbeat"


def heartbeat_argv() -> list[str]:
    """Command line that runs one cycle with the current installation."""
    executable = shutil.which("bonsai")
    if executable:
        return [executable, "heartbeat"]
    return [sys.executable, "-m", "bonsai", "heartbeat"]


def crontab_line(interval_seconds: int, argv: list[str], log_path: Path) -> str:
    """Cron fires at most once a minute, so intervals round up to whole minutes."""
    minutes = max(1, -(-interval_seconds // 60))
    schedule = "* * * * *" if minutes == 1 else f"*/{minutes} * * * *"
    command = shlex.join(argv)
    return f"{schedule} {command} >> {shlex.quote(str(log_path))} 2>&1"


def launchd_plist(interval_seconds: int, argv: list[str], log_path: Path) -> str:
    payload = {
        "Label": LAUNCHD_LABEL,
        "ProgramArguments": argv,
        "StartInterval": interval_seconds,
        "RunAtLoad": True,
        "StandardOutPath": str(log_path),
        "StandardErrorPath": str(log_path),
    }
    return plistlib.dumps(payload).decode("utf-8")


@click.command()
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["auto", "cron", "launchd"]),
    default="auto",
    show_default=True,
    help="Scheduler entry to print",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Path to config.toml",
)
def schedule(output_format: str, config_path: Path | None) -> None:
    """Print the crontab line (Linux) or launchd plist (macOS) for the heartbeat."""
    config = load_config_or_exit(config_path)
    interval = config.heartbeat.interval_seconds
    argv = heartbeat_argv()
    if config_path is not None:
        argv += ["--config", str(config_path)]
    log_path = get_logs_dir() / "scheduler.log"

    if output_format == "auto":
        output_format = "launchd" if CURRENT_OS == "macos" else "cron"
    if output_format == "launchd":
        click.echo(launchd_plist(interval, argv, log_path), nl=False)
        click.echo(f"<!-- save as ~/Library/LaunchAgents/{LAUNCHD_LABEL}.plist -->", err=True)
        return
    click.echo(crontab_line(interval, argv, log_path))
