"""``pinforge build``: run the full pipeline for a project file.

Optionally refreshes pinned hashes first (``--refresh-hash NAME`` prefetches
the artifact and writes the new pin back into the project file, keeping a
``.backup`` copy) or overrides them for this run only (``--pin NAME=HASH``).
Exits with the failing error's exit code.
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from pinforge.config import settings
from pinforge.core.errors import ConfigError, ForgeError
from pinforge.core.orchestrator import Orchestrator, prefetch_pin
from pinforge.cli.report import ReportRenderer
from pinforge.models.config import ProjectConfig

console = Console()

_HEADER_RE = re.compile(r"^\s*\[\[?\s*([\w.\"' -]+?)\s*\]\]?\s*(#.*)?$")
_HASH_RE = re.compile(r"^(\s*)hash\s*=")


def update_project_pin(path: Path, name: str, digest: str) -> Path:
    """Rewrite the ``hash`` of artifact ``name`` in a project file in place.

    The previous file is kept as ``<file>.backup``; returns the backup path.
    """
    lines = Path(path).read_text(encoding="utf-8").splitlines(keepends=True)
    name_re = re.compile(rf"^\s*name\s*=\s*[\"']{re.escape(name)}[\"']\s*(#.*)?$")

    blocks: list[tuple[int, int]] = []
    start: int | None = None
    for i, line in enumerate(lines):
        header = _HEADER_RE.match(line)
        if header is None:
            continue
        if start is not None:
            blocks.append((start, i))
            start = None
        if line.strip().startswith("[[") and header.group(1) == "artifacts":
            start = i
    if start is not None:
        blocks.append((start, len(lines)))

    for begin, end in blocks:
        if not any(name_re.match(line) for line in lines[begin + 1:end]):
            continue
        for j in range(begin + 1, end):
            existing = _HASH_RE.match(lines[j])
            if existing:
                lines[j] = f'{existing.group(1)}hash = "{digest}"\n'
                break
        else:
            lines.insert(begin + 1, f'hash = "{digest}"\n')
        backup = path.with_name(path.name + ".backup")
        shutil.copy2(path, backup)
        path.write_text("".join(lines), encoding="utf-8")
        return backup

    raise ConfigError(f"No [[artifacts]] entry named {name!r} in {path}", subject=name)


def _parse_pins(values: list[str]) -> dict[str, str]:
    pins: dict[str, str] = {}
    for value in values:
        name, sep, digest = value.partition("=")
        if not sep or not name or not digest:
            raise ConfigError(f"--pin expects NAME=HASH, got {value!r}")
        pins[name.strip()] = digest.strip()
    return pins


def build_cmd(
    config_path: Path = typer.Argument(
        Path("pinforge.toml"),
        help="Project file describing artifacts, components and assembly.",
    ),
    output: Path = typer.Option(
        Path("result"),
        "--output",
        "-o",
        help="Directory the assembled tree is published to.",
    ),
    archive: Optional[bool] = typer.Option(
        None,
        "--archive/--no-archive",
        help="Also write <output>.tar.gz (default from the project file).",
    ),
    jobs: Optional[int] = typer.Option(
        None,
        "--jobs",
        "-j",
        help="Maximum concurrent tasks (default from PINFORGE_MAX_WORKERS).",
    ),
    pin: Optional[list[str]] = typer.Option(
        None,
        "--pin",
        help="Override an artifact hash for this run: NAME=HASH. Repeatable.",
    ),
    refresh_hash: Optional[list[str]] = typer.Option(
        None,
        "--refresh-hash",
        help="Prefetch artifact NAME and write its hash into the project file. Repeatable.",
    ),
    keep_work: bool = typer.Option(
        False,
        "--keep-work",
        help="Keep per-run working trees and build logs.",
    ),
) -> None:
    """Fetch, vendor, neutralize, build and assemble a project.

    Every fetched input must match its pinned hash. The final report lists
    each hash used and every non-fatal warning.
    """
    try:
        config = ProjectConfig.from_toml(config_path)
        for name in refresh_hash or []:
            try:
                ref = config.artifact(name)
            except KeyError:
                raise ConfigError(f"Unknown artifact {name!r}", subject=name) from None
            digest = prefetch_pin(ref.url, settings)
            backup = update_project_pin(config_path, name, digest)
            console.print(
                f"[bold green]Pinned[/bold green] {name} = {digest} "
                f"[dim](previous file kept as {backup.name})[/dim]"
            )
        if refresh_hash:
            config = ProjectConfig.from_toml(config_path)
        if pin:
            config = config.with_pins(_parse_pins(pin))
    except ForgeError as exc:
        console.print(f"[bold red]{exc.kind}:[/bold red] {exc}")
        raise typer.Exit(code=exc.exit_code) from None

    overrides: dict = {}
    if jobs is not None:
        overrides["max_workers"] = jobs
    if keep_work:
        overrides["keep_work"] = True
    run_settings = settings.model_copy(update=overrides) if overrides else settings

    report = Orchestrator(config, run_settings).run(output, archive=archive)
    ReportRenderer(console).print_report(report)
    if not report.succeeded:
        raise typer.Exit(code=report.exit_code)
