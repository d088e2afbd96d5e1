"""Root CLI command registration."""

from __future__ import annotations

import click

from bonsai import __version__

from .heartbeat import heartbeat
from .queue import queue
from .schedule import schedule


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Heartbeat dispatcher for human-gated work items."""
    if version:
        click.echo(f"bonsai {__version__}")
        ctx.exit(0)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


cli.add_command(heartbeat)
cli.add_command(queue)
cli.add_command(schedule)
