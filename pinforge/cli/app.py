"""Main Typer application: imports and registers all CLI commands.

Entry point: ``pinforge`` (configured via pyproject.toml scripts).

Commands: build, prefetch, verify-ledger.
"""

from __future__ import annotations

import logging
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from pinforge.cli.commands.build import build_cmd
from pinforge.cli.commands.prefetch import prefetch_cmd
from pinforge.cli.commands.verify_ledger import verify_ledger_cmd
from pinforge.config import settings

app = typer.Typer(
    name="pinforge",
    help="pinforge: deterministic, network-isolated build orchestrator.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="build", help="Fetch, vendor, neutralize, build and assemble a project.")(build_cmd)
app.command(name="prefetch", help="Print the content hash of a URL for pinning.")(prefetch_cmd)
app.command(name="verify-ledger", help="Verify the audit ledger hash chain.")(verify_ledger_cmd)


def configure_logging(level: str) -> None:
    """Route stdlib logging through Rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def _root(
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        help="Logging level (default from PINFORGE_LOG_LEVEL).",
    ),
) -> None:
    configure_logging(log_level or settings.log_level)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
