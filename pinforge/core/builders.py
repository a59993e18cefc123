"""Component builder interface: run opaque build commands, check outputs.

The orchestrator does not interpret a component's build system. It hands
the builder a neutralized working copy, the component's vendor bundle and
an immutable BuildEnvironment, runs the declared commands inside the
network sandbox, and insists that every declared output exists afterwards.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import shlex
import shutil
import signal
import subprocess
import threading
from collections import deque
from pathlib import Path
from typing import TextIO

from pinforge.core.errors import (
    ComponentBuildFailed,
    ConfigError,
    MissingExpectedArtifact,
    PipelineCancelled,
    PrerequisiteMissing,
)
from pinforge.core.sandbox import BuildEnvironment, NetworkSandbox
from pinforge.core.vendoring import verify_bundle
from pinforge.models.artifacts import LocalBlob
from pinforge.models.components import (
    BuildResult,
    BuildStatus,
    ComponentKind,
    ComponentSpec,
    ExtensionSetSpec,
    OutputSpec,
    ReferenceDataSpec,
)
from pinforge.models.vendoring import VendorBundle

logger = logging.getLogger(__name__)


def require_tools(tools: list[str], *, subject: str = "") -> None:
    """Raise PrerequisiteMissing naming every tool absent from PATH."""
    missing = sorted({t for t in tools if shutil.which(t) is None})
    if missing:
        raise PrerequisiteMissing(
            f"Required host tools not found: {', '.join(missing)}",
            subject=subject or missing[0],
        )


# ---------------------------------------------------------------------------
# Working trees
# ---------------------------------------------------------------------------


def working_copy(snapshot: Path, spec: ComponentSpec, dest: Path) -> Path:
    """Copy only the component's own subdirectory out of the snapshot."""
    source = snapshot / spec.subdir if spec.subdir else snapshot
    if not source.is_dir():
        raise ConfigError(
            f"{spec.name}: subdirectory {spec.subdir!r} not found in source {spec.source!r}",
            subject=spec.name,
        )
    if dest.exists():
        shutil.rmtree(dest)
    shutil.copytree(source, dest, symlinks=True)
    return dest


def expand_extension_set(
    ext: ExtensionSetSpec, snapshot: Path, extensions_dir: str
) -> list[ComponentSpec]:
    """One optional component per module directory holding a marker file."""
    base = snapshot / ext.subdir if ext.subdir else snapshot
    if not base.is_dir():
        raise ConfigError(
            f"extension set {ext.name}: {ext.subdir!r} not found in source {ext.source!r}",
            subject=ext.name,
        )
    specs: list[ComponentSpec] = []
    for module in sorted(p for p in base.iterdir() if p.is_dir()):
        if not any((module / marker).is_file() for marker in ext.marker_files):
            continue
        if ext.include and not any(fnmatch.fnmatch(module.name, p) for p in ext.include):
            continue
        specs.append(
            ComponentSpec(
                name=f"{ext.name}.{module.name}",
                kind=ComponentKind.EXTENSION,
                source=ext.source,
                subdir=module.relative_to(snapshot).as_posix(),
                commands=ext.commands,
                fallback_commands=ext.fallback_commands,
                outputs=[
                    OutputSpec(path="", dest=f"share/{extensions_dir}/{module.name}")
                ],
                dependencies=ext.dependencies.get(module.name, []),
                requires_tools=ext.requires_tools,
                exclude=ext.exclude,
            )
        )
    logger.info("Extension set %s: %d module(s)", ext.name, len(specs))
    return specs


def place_reference_data(tree: Path, blob: LocalBlob, spec: ReferenceDataSpec) -> list[Path]:
    """Drop ``blob`` into every directory of ``tree`` matching the pattern.

    The pattern is matched against both the directory name and its path
    relative to the tree. Returns the files written.
    """
    placed: list[Path] = []
    for dirpath, dirnames, _filenames in os.walk(tree):
        dirnames.sort()
        here = Path(dirpath)
        rel = here.relative_to(tree).as_posix()
        if here == tree:
            continue
        if fnmatch.fnmatch(here.name, spec.dir_pattern) or fnmatch.fnmatch(rel, spec.dir_pattern):
            target = here / spec.filename
            shutil.copyfile(blob.path, target)
            placed.append(target)
    return placed


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class ComponentBuilder:
    """Runs one component's build commands and collects its outputs.

    Parameters
    ----------
    sandbox:
        Wraps each command so the build has no network.
    poll_interval:
        How often a running command checks the cancel event, in seconds.
    tail_lines:
        Lines of build log quoted in ComponentBuildFailed.
    """

    def __init__(
        self,
        sandbox: NetworkSandbox,
        *,
        poll_interval: float = 0.2,
        tail_lines: int = 40,
    ) -> None:
        self._sandbox = sandbox
        self._poll_interval = poll_interval
        self._tail_lines = tail_lines

    def build(
        self,
        spec: ComponentSpec,
        tree: Path,
        bundle: VendorBundle | None,
        env: BuildEnvironment,
        cancel_event: threading.Event | None = None,
    ) -> BuildResult:
        """Build ``spec`` in ``tree``.

        Raises VendorIntegrityError if the bundle changed since vendoring,
        ComponentBuildFailed if the commands (and their fallbacks) fail,
        MissingExpectedArtifact if a declared output is absent afterwards.
        """
        cancel_event = cancel_event or threading.Event()
        tree = Path(tree)
        if bundle is not None:
            verify_bundle(bundle, spec.vendor_hash)
            vendor_dest = tree / spec.vendor_path
            if vendor_dest.exists():
                shutil.rmtree(vendor_dest)
            shutil.copytree(bundle.path, vendor_dest, symlinks=True)

        env = env.for_component(spec.name)
        env.prepare()
        build_dir = tree / spec.build_dir if spec.build_dir else tree
        log_path = tree.parent / f"{tree.name}.build.log"

        used_fallback = False
        with open(log_path, "w", encoding="utf-8") as log:
            ok = self._run_all(spec.commands, build_dir, env, log, cancel_event)
            if not ok and spec.fallback_commands:
                logger.warning("%s: build failed, retrying with fallback commands", spec.name)
                log.write("\n# retrying with fallback commands\n")
                log.flush()
                used_fallback = True
                ok = self._run_all(spec.fallback_commands, build_dir, env, log, cancel_event)

        if not ok:
            raise ComponentBuildFailed(
                f"{spec.name}: build failed; last lines of {log_path}:\n{self._tail(log_path)}",
                subject=spec.name,
            )

        artifacts: dict[str, Path] = {}
        for output in spec.outputs:
            produced = build_dir / output.path if output.path else build_dir
            if not produced.exists():
                raise MissingExpectedArtifact(
                    f"{spec.name}: build succeeded but {output.path!r} was not produced",
                    subject=spec.name,
                )
            artifacts[output.path] = produced

        logger.info("Built %s%s", spec.name, " (fallback)" if used_fallback else "")
        return BuildResult(
            component=spec.name,
            kind=spec.kind,
            status=BuildStatus.PASSED,
            tree=tree,
            outputs=spec.outputs,
            artifacts=artifacts,
            exclude=spec.exclude,
            log_path=log_path,
            used_fallback=used_fallback,
        )

    # ------------------------------------------------------------------
    # Process handling
    # ------------------------------------------------------------------

    def _run_all(
        self,
        commands: list[str],
        cwd: Path,
        env: BuildEnvironment,
        log: TextIO,
        cancel_event: threading.Event,
    ) -> bool:
        for command in commands:
            if self._run(command, cwd, env, log, cancel_event) != 0:
                return False
        return True

    def _run(
        self,
        command: str,
        cwd: Path,
        env: BuildEnvironment,
        log: TextIO,
        cancel_event: threading.Event,
    ) -> int:
        if cancel_event.is_set():
            raise PipelineCancelled("build cancelled before start")
        argv = self._sandbox.wrap(shlex.split(command))
        log.write(f"$ {command}\n")
        log.flush()
        try:
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                env=env.as_env(),
                stdout=log,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            log.write(f"cannot execute: {exc}\n")
            return 127

        while True:
            try:
                return proc.wait(timeout=self._poll_interval)
            except subprocess.TimeoutExpired:
                if cancel_event.is_set():
                    self._kill(proc)
                    log.write("# cancelled\n")
                    raise PipelineCancelled(f"build cancelled: {command}") from None

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGTERM)
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            os.killpg(proc.pid, signal.SIGKILL)
            proc.wait()
        except ProcessLookupError:
            pass

    def _tail(self, log_path: Path) -> str:
        with open(log_path, encoding="utf-8", errors="replace") as f:
            return "".join(deque(f, maxlen=self._tail_lines))
