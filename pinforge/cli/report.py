"""Rich terminal renderer for the end-of-run BuildReport.

Color scheme
------------
- green     : DONE, built components
- red       : FAILED, the fatal error
- yellow    : warnings, skipped extension modules
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from pinforge.models.reports import BuildReport
from pinforge.models.stages import PipelineState

_STATE_STYLES: dict[PipelineState, str] = {
    PipelineState.DONE: "bold green",
    PipelineState.FAILED: "bold red",
}


class ReportRenderer:
    """Renders a ``BuildReport`` as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def render(self, report: BuildReport) -> Panel:
        """Summary panel: pins table, warnings and the outcome line."""
        parts: list = [self._pins_table(report)]
        if report.warnings:
            parts.extend([Text(""), self._warnings_table(report)])

        summary = [
            f"[bold]Run:[/bold] {report.run_id}",
            f"[bold]Built:[/bold] {len(report.built)}",
        ]
        if report.skipped:
            summary.append(f"[yellow][bold]Skipped:[/bold] {', '.join(report.skipped)}[/yellow]")
        if report.output:
            summary.append(f"[bold]Output:[/bold] {report.output}")
        if report.archive:
            summary.append(f"[bold]Archive:[/bold] {report.archive}")
        parts.extend([Text(""), Text.from_markup("  |  ".join(summary))])

        if report.error:
            parts.extend(
                [
                    Text(""),
                    Text.from_markup(
                        f"[bold red]{report.error.kind}[/bold red] "
                        f"([bold]{report.error.subject or '-'}[/bold]): "
                    )
                    + Text(report.error.message),
                ]
            )

        style = _STATE_STYLES.get(report.state, "bold yellow")
        return Panel(
            Group(*parts),
            title=f"[bold]{report.project}[/bold]  [{style}]{report.state.value.upper()}[/{style}]",
            border_style=style.split()[-1],
            padding=(1, 2),
        )

    def print_report(self, report: BuildReport) -> None:
        self.console.print()
        self.console.print(self.render(report))
        self.console.print()

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    @staticmethod
    def _pins_table(report: BuildReport) -> Table:
        table = Table(title="Pinned inputs", show_lines=False, expand=True)
        table.add_column("Input", style="cyan", no_wrap=True)
        table.add_column("Content hash", style="dim")
        for name, digest in report.pins.items():
            table.add_row(name, digest)
        for component, bundle_hash in report.vendor_bundles.items():
            table.add_row(f"{component} (vendor bundle)", bundle_hash)
        if not report.pins and not report.vendor_bundles:
            table.add_row("[dim]none[/dim]", "")
        return table

    @staticmethod
    def _warnings_table(report: BuildReport) -> Table:
        table = Table(title="Warnings", expand=True)
        table.add_column("Kind", style="yellow", no_wrap=True)
        table.add_column("Subject", style="cyan")
        table.add_column("Message")
        for warning in report.warnings:
            table.add_row(warning.kind, warning.subject, warning.message)
        return table
