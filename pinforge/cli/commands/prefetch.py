"""``pinforge prefetch URL``: print the pin for a new artifact."""

from __future__ import annotations

import typer
from rich.console import Console

from pinforge.config import settings
from pinforge.core.errors import ForgeError
from pinforge.core.hasher import to_sri
from pinforge.core.orchestrator import prefetch_pin

console = Console()


def prefetch_cmd(
    url: str = typer.Argument(..., help="URL, file:// URL or local path to hash."),
    sri: bool = typer.Option(False, "--sri", help="Print the SRI form (sha256-<base64>)."),
) -> None:
    """Download URL once and print its content hash for the project file."""
    try:
        digest = prefetch_pin(url, settings)
    except ForgeError as exc:
        console.print(f"[bold red]{exc.kind}:[/bold red] {exc}")
        raise typer.Exit(code=exc.exit_code) from None
    console.print(to_sri(digest) if sri else digest, highlight=False, soft_wrap=True)
