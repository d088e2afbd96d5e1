"""CLI entry point for Bonsai."""

from __future__ import annotations

# Python version check - must be before any imports that use 3.12+ syntax.
import sys

if sys.version_info < (3, 12):  # noqa: UP036
    print("Error: Bonsai requires Python 3.12 or higher.")
    sys.exit(1)

from bonsai.cli.commands.root import cli  # noqa: E402


def main() -> None:
    """Entry point for the bonsai CLI."""
    cli()


if __name__ == "__main__":
    main()
