"""pinforge CLI: Typer-based command-line interface.

Provides the ``pinforge`` command with subcommands for building a project,
computing pins for new artifacts, and verifying the audit ledger.

All output uses Rich for formatted terminal display.
"""
