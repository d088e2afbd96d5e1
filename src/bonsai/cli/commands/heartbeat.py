"""Run one dispatch cycle."""

from __future__ import annotations

import asyncio
import logging
import sys
import tomllib
from pathlib import Path
from typing import TYPE_CHECKING

import click
from pydantic import ValidationError

from bonsai.core.config import BonsaiConfig
from bonsai.core.errors import BonsaiError, StoreUnavailableError
from bonsai.core.logs import setup_logging

if TYPE_CHECKING:
    from bonsai.core.services.dispatcher import CycleReport

logger = logging.getLogger(__name__)


def load_config_or_exit(config_path: Path | None) -> BonsaiConfig:
    try:
        return BonsaiConfig.load(config_path)
    except (ValidationError, tomllib.TOMLDecodeError, OSError) as exc:
        click.secho(f"Invalid configuration: {exc}", fg="red", err=True)
        sys.exit(1)


async def _run_once(config: BonsaiConfig) -> CycleReport:
    from bonsai.core.bootstrap import bootstrap_heartbeat

    async with bootstrap_heartbeat(config) as ctx:
        return await ctx.dispatcher.run_cycle()


def _print_report(report: CycleReport) -> None:
    if report.contended:
        click.echo("Another heartbeat is running; nothing to do.")
        return
    reconcile = report.reconcile
    if reconcile.reclaimed_leases:
        click.echo(f"Reclaimed {len(reconcile.reclaimed_leases)} abandoned lease(s)")
    if reconcile.integrated:
        click.echo(f"Integrated: {', '.join(reconcile.integrated)}")
    if reconcile.conflicts:
        click.secho(f"Integration conflicts: {', '.join(reconcile.conflicts)}", fg="yellow")
    if not report.outcomes:
        click.echo("No actionable items.")
    for outcome in report.outcomes:
        status = outcome.status.value if outcome.status is not None else "skipped"
        color = "green" if outcome.completed else "yellow"
        line = f"  {outcome.item_id}: {status}"
        if outcome.detail and not outcome.completed:
            line = f"{line} ({outcome.detail})"
        click.secho(line, fg=color)
    if report.timed_out:
        click.secho("Cycle hit its wall-clock cap.", fg="yellow")


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Path to config.toml",
)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr")
def heartbeat(config_path: Path | None, verbose: bool) -> None:
    """Run one dispatch cycle now.

    Exits 0 when the cycle ran (even if nothing was actionable or another
    cycle already holds the lease) and 1 when it could not run at all.
    """
    setup_logging(verbose=verbose)
    config = load_config_or_exit(config_path)
    try:
        report = asyncio.run(_run_once(config))
    except StoreUnavailableError as exc:
        logger.error("Store unavailable: %s", exc)
        click.secho(f"Store unavailable: {exc}", fg="red", err=True)
        sys.exit(1)
    except BonsaiError as exc:
        logger.error("Cycle failed [%s]: %s", exc.code, exc)
        click.secho(f"Cycle failed: {exc}", fg="red", err=True)
        sys.exit(1)
    _print_report(report)
