"""Show the picker's current ordering without dispatching anything."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click

from bonsai.core.errors import StoreUnavailableError

from .heartbeat import load_config_or_exit

if TYPE_CHECKING:
    from bonsai.core.config import BonsaiConfig
    from bonsai.core.services.picker import PickedItem


async def _rank(config: BonsaiConfig) -> list[PickedItem]:
    from bonsai.core.bootstrap import bootstrap_heartbeat

    async with bootstrap_heartbeat(config) as ctx:
        return await ctx.dispatcher.rank()


def _format_row(position: int, picked: PickedItem) -> str:
    score = picked.score
    parts = [f"base {score.base}"]
    for label, value in (
        ("unread", score.unread),
        ("rework", score.rework),
        ("wait", round(score.human_wait, 1)),
        ("boost", score.boost),
        ("starved", score.starvation),
    ):
        if value:
            parts.append(f"{label} {value:+}")
    snapshot = picked.snapshot
    identity = f" @{snapshot.worker_identity}" if snapshot.worker_identity else ""
    return (
        f"{position:>3}. {snapshot.item_id}  {snapshot.phase:<13} "
        f"{score.total:>7.1f}  ({', '.join(parts)}){identity}"
    )


@click.command()
@click.option("--limit", "-n", type=click.IntRange(min=1), default=None, help="Rows to show")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Path to config.toml",
)
def queue(limit: int | None, config_path: Path | None) -> None:
    """Show actionable items in pick order with their score breakdown."""
    config = load_config_or_exit(config_path)
    try:
        ranked = asyncio.run(_rank(config))
    except StoreUnavailableError as exc:
        click.secho(f"Store unavailable: {exc}", fg="red", err=True)
        sys.exit(1)

    if not ranked:
        click.echo("No actionable items.")
        return
    rows = ranked[:limit] if limit is not None else ranked
    for position, picked in enumerate(rows, start=1):
        click.echo(_format_row(position, picked))
    if len(rows) < len(ranked):
        click.echo(f"... and {len(ranked) - len(rows)} more")
