"""``pinforge verify-ledger [RUN_ID]``: check audit ledger hash chains."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from pinforge.config import settings
from pinforge.core.run_ledger import BuildLedger, LedgerIntegrityError

console = Console()


def verify_ledger_cmd(
    run_id: Optional[str] = typer.Argument(
        None,
        help="Run to verify. All runs in the ledger if omitted.",
    ),
    ledger_db: Optional[Path] = typer.Option(
        None,
        "--ledger",
        "-l",
        help="Path to the ledger SQLite database (default from PINFORGE_LEDGER_PATH).",
    ),
) -> None:
    """Recompute every entry hash and check the chain links of each run."""
    db_path = ledger_db or settings.ledger_path
    if not Path(db_path).exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {db_path}")
        raise typer.Exit(code=1)

    ledger = BuildLedger(db_path)
    run_ids = [run_id] if run_id else ledger.get_all_run_ids()
    if not run_ids:
        console.print("[dim]No runs recorded.[/dim]")
        return

    table = Table(title="Ledger chains")
    table.add_column("Run", style="cyan")
    table.add_column("Entries", justify="right")
    table.add_column("Chain", justify="center")

    broken = False
    for rid in run_ids:
        entries = ledger.get_run_entries(rid)
        if not entries:
            table.add_row(rid, "0", "[yellow]unknown run[/yellow]")
            broken = True
            continue
        try:
            ledger.verify_chain(rid)
            status = "[green]valid[/green]"
        except LedgerIntegrityError as exc:
            status = f"[bold red]BROKEN[/bold red] {exc}"
            broken = True
        table.add_row(rid, str(len(entries)), status)

    console.print(table)
    if broken:
        raise typer.Exit(code=1)
