"""Pipeline orchestrator: the central coordinator for pinforge runs.

The Orchestrator wires the BuildLedger, PipelineStateMachine, TaskScheduler,
Fetcher, Vendorer, Neutralizer, ComponentBuilder and Assembler into one run:

1. host prerequisites (PENDING)
2. pin pre-check, then every artifact fetched concurrently (FETCHING)
3. extension sets expanded from their fetched snapshot
4. one task graph for vendor / neutralize / build / assemble
5. DONE with a BuildReport, or FAILED naming the error

Primary components are fail-closed. Extension modules are optional: a build
failure in one of them prunes its own chain and becomes a warning.
"""

from __future__ import annotations

import logging
import shutil
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx

from pinforge.config import ForgeSettings
from pinforge.core.assembly import Assembler, check_relocatable
from pinforge.core.builders import (
    ComponentBuilder,
    expand_extension_set,
    place_reference_data,
    require_tools,
    working_copy,
)
from pinforge.core.content_cache import ContentCache
from pinforge.core.credentials import CredentialGenerator
from pinforge.core.errors import ForgeError
from pinforge.core.fetcher import Fetcher
from pinforge.core.hasher import parse_pin
from pinforge.core.neutralizer import Neutralizer
from pinforge.core.run_ledger import BuildLedger
from pinforge.core.sandbox import BuildEnvironment, NetworkSandbox
from pinforge.core.stage_machine import PipelineStateMachine
from pinforge.core.task_graph import TaskGraph, TaskScheduler
from pinforge.core.vendoring import (
    DependencyRegistry,
    IndexRegistry,
    PinnedRegistry,
    Vendorer,
)
from pinforge.models.artifacts import LocalBlob
from pinforge.models.assembly import OutputTree
from pinforge.models.components import BuildResult, ComponentSpec
from pinforge.models.config import ProjectConfig
from pinforge.models.neutralization import NeutralizationResult
from pinforge.models.reports import BuildReport, BuildWarning, FailureDetail
from pinforge.models.stages import PipelineState, TaskNode, TaskState
from pinforge.models.vendoring import VendorBundle

logger = logging.getLogger(__name__)


def prefetch_pin(url: str, settings: ForgeSettings) -> str:
    """Download ``url`` once and return the ``sha256:`` pin of its content."""
    cache = ContentCache(Path(settings.cache_dir) / "blobs")
    with Fetcher(
        cache,
        sources_dir=Path(settings.work_dir) / "sources",
        timeout=settings.fetch_timeout_seconds,
        ca_bundle=settings.ca_bundle,
    ) as fetcher:
        digest, _path = fetcher.prefetch(url)
    return digest


class _RunContext:
    """Mutable per-run state shared by task handlers."""

    def __init__(self, run_id: str, work: Path) -> None:
        self.run_id = run_id
        self.work = work
        self.blobs: dict[str, LocalBlob] = {}
        self.trees: dict[str, Path] = {}
        self.warnings: list[BuildWarning] = []
        self.bundles: dict[str, VendorBundle] = {}
        self.results: list[BuildResult] = []
        self.components: list[ComponentSpec] = []
        self.output: OutputTree | None = None
        self.placed: dict[str, int] = {}
        self.lock = threading.Lock()


class Orchestrator:
    """Runs one project end to end.

    Parameters
    ----------
    config:
        The static project description.
    settings:
        Host settings; the module-level singleton if not provided.
    credential_generator:
        Backend for per-build TLS credentials (openssl by default).
    sandbox:
        Network sandbox for component builds; built from ``settings.sandbox``
        if not provided.
    ledger:
        Audit ledger; opened at ``settings.ledger_path`` if not provided.
    registry:
        Dependency registry; an IndexRegistry when the project names one,
        else inline pins only.
    http_client:
        Shared ``httpx.Client`` for fetches (tests inject a transport).
    """

    def __init__(
        self,
        config: ProjectConfig,
        settings: ForgeSettings | None = None,
        *,
        credential_generator: CredentialGenerator | None = None,
        sandbox: NetworkSandbox | None = None,
        ledger: BuildLedger | None = None,
        registry: DependencyRegistry | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        if settings is None:
            from pinforge.config import settings as default_settings

            settings = default_settings
        self.config = config
        self.settings = settings
        self.ledger = ledger or BuildLedger(settings.ledger_path)
        self._sandbox = sandbox or NetworkSandbox(settings.sandbox)
        self._credentials = credential_generator
        self._http_client = http_client
        self._cache_dir = Path(settings.cache_dir).resolve()
        self._work_root = Path(settings.work_dir).resolve()
        self._registry = registry or self._default_registry()

        ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        self.run_id = f"pf-{ts}-{uuid.uuid4().hex[:6]}"
        self.machine = PipelineStateMachine(self.ledger, self.run_id)

    def _default_registry(self) -> DependencyRegistry:
        if self.config.registry_url:
            return IndexRegistry(
                self.config.registry_url,
                self._cache_dir / "resolutions",
                client=self._http_client,
                timeout=self.settings.fetch_timeout_seconds,
            )
        return PinnedRegistry()

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def run(self, output_dir: Path, *, archive: bool | None = None) -> BuildReport:
        """Execute the whole pipeline and return its report.

        Orchestrator errors end the run in FAILED and are reported, not
        raised. Anything else is recorded as a failure and re-raised.
        """
        ctx = _RunContext(self.run_id, self._work_root / self.run_id)
        cache = ContentCache(self._cache_dir / "blobs")
        logger.info("Run %s: %s %s", self.run_id, self.config.name, self.config.version)
        try:
            self._check_prerequisites(ctx)
            check_relocatable(
                self.config.assembly, self.config.assembly.archive if archive is None else archive
            )
            self.machine.transition(PipelineState.FETCHING)
            self._precheck_pins()
            with Fetcher(
                cache,
                sources_dir=self._work_root / "sources",
                mirror_dirs=list(self.settings.mirror_dirs),
                timeout=self.settings.fetch_timeout_seconds,
                ca_bundle=self.settings.ca_bundle,
                client=self._http_client,
            ) as fetcher:
                self._fetch_all(ctx, fetcher)
                ctx.components = self._components(ctx)
                self._build_all(ctx, fetcher, Path(output_dir), archive)
            self.machine.transition(PipelineState.DONE)
            return self._report(ctx)
        except ForgeError as exc:
            logger.error("Run %s failed: %s", self.run_id, exc)
            self.machine.fail(exc)
            return self._report(ctx, exc)
        except BaseException as exc:
            self.machine.fail(exc)
            raise
        finally:
            self._cleanup(ctx, cache)

    def _check_prerequisites(self, ctx: _RunContext) -> None:
        tools: list[str] = []
        for comp in self.config.components:
            tools.extend(comp.requires_tools)
        for ext in self.config.extension_sets:
            tools.extend(ext.requires_tools)
        if self.config.assembly.credentials.enabled and self._credentials is None:
            tools.append("openssl")
        require_tools(tools)

        if not self._sandbox.isolated:
            ctx.warnings.append(
                BuildWarning(
                    kind="sandbox_unavailable",
                    subject="sandbox",
                    message="component builds rely on environment-level network denial only",
                )
            )

    def _precheck_pins(self) -> None:
        for ref in self.config.artifacts:
            parse_pin(ref.hash, subject=ref.name)

    def _scheduler(self) -> TaskScheduler:
        def _on_task(task_id: str, old: TaskState, new: TaskState, detail: dict[str, Any]) -> None:
            self.machine.record_task(task_id, f"{old.value}->{new.value}", detail)

        return TaskScheduler(
            self.settings.max_workers,
            on_progress=self.machine.advance_to,
            on_task=_on_task,
        )

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def _fetch_all(self, ctx: _RunContext, fetcher: Fetcher) -> None:
        needs_tree = {c.source for c in self.config.components}
        needs_tree |= {e.source for e in self.config.extension_sets}
        if self.config.toolchain:
            needs_tree.add(self.config.toolchain.artifact)

        handlers = {}
        nodes = []
        for ref in self.config.artifacts:
            task_id = f"fetch:{ref.name}"
            nodes.append(TaskNode(task_id=task_id, phase=PipelineState.FETCHING))

            def _fetch(ref=ref) -> tuple[LocalBlob, Path | None]:
                blob = fetcher.fetch(ref)
                tree = None
                if ref.unpack or ref.name in needs_tree:
                    tree = fetcher.snapshot(ref, blob)
                return blob, tree

            handlers[task_id] = _fetch

        result = self._scheduler().run(TaskGraph(nodes), handlers)
        for ref in self.config.artifacts:
            blob, tree = result.results[f"fetch:{ref.name}"]
            ctx.blobs[ref.name] = blob
            if tree is not None:
                ctx.trees[ref.name] = tree

    def _components(self, ctx: _RunContext) -> list[ComponentSpec]:
        components = list(self.config.components)
        for ext in self.config.extension_sets:
            components.extend(
                expand_extension_set(
                    ext, ctx.trees[ext.source], self.config.assembly.extensions_dir
                )
            )
        return components

    # ------------------------------------------------------------------
    # Vendor / neutralize / build / assemble
    # ------------------------------------------------------------------

    def _build_all(
        self,
        ctx: _RunContext,
        fetcher: Fetcher,
        output_dir: Path,
        archive: bool | None,
    ) -> None:
        vendorer = Vendorer(fetcher, self._registry, self._cache_dir / "vendor")
        neutralizer = Neutralizer.from_config(self.config.neutralization)
        builder = ComponentBuilder(self._sandbox)
        toolchain_root = None
        if self.config.toolchain:
            toolchain_root = ctx.trees[self.config.toolchain.artifact]
        env = BuildEnvironment.create(
            ctx.work / "scratch",
            toolchain_root=toolchain_root,
            toolchain=self.config.toolchain,
            ca_bundle=self.settings.ca_bundle,
        )
        scheduler = self._scheduler()
        # Finished results by task id. A task only runs after every task it
        # requires has stored its result here.
        scheduler_results: dict[str, Any] = {}

        nodes: list[TaskNode] = []
        handlers: dict[str, Any] = {}
        for comp in ctx.components:
            build_requires = [f"neutralize:{comp.name}"]
            if comp.dependencies:
                nodes.append(
                    TaskNode(
                        task_id=f"vendor:{comp.name}",
                        phase=PipelineState.VENDORING,
                        optional=comp.optional,
                    )
                )
                handlers[f"vendor:{comp.name}"] = (
                    lambda comp=comp: vendorer.vendor(comp.name, comp.dependencies)
                )
                build_requires.append(f"vendor:{comp.name}")
            nodes.append(
                TaskNode(
                    task_id=f"neutralize:{comp.name}",
                    phase=PipelineState.NEUTRALIZING,
                    optional=comp.optional,
                )
            )
            handlers[f"neutralize:{comp.name}"] = (
                lambda comp=comp: self._prepare_tree(ctx, comp, neutralizer)
            )
            nodes.append(
                TaskNode(
                    task_id=f"build:{comp.name}",
                    phase=PipelineState.BUILDING,
                    requires=build_requires,
                    optional=comp.optional,
                )
            )

            def _build(comp=comp) -> BuildResult:
                tree, _neutralized = scheduler_results[f"neutralize:{comp.name}"]
                bundle = scheduler_results.get(f"vendor:{comp.name}")
                return builder.build(comp, tree, bundle, env, scheduler.cancel_event)

            handlers[f"build:{comp.name}"] = _build

        nodes.append(
            TaskNode(
                task_id="assemble",
                phase=PipelineState.ASSEMBLING,
                requires=[f"build:{c.name}" for c in ctx.components if not c.optional],
                after=[f"build:{c.name}" for c in ctx.components if c.optional],
            )
        )

        def _assemble() -> OutputTree:
            results = [
                scheduler_results[f"build:{c.name}"]
                for c in ctx.components
                if f"build:{c.name}" in scheduler_results
            ]
            assembler = Assembler(self.config.assembly, self._credentials)
            return assembler.assemble(
                results,
                output_dir,
                archive=archive,
                build_roots=[self._work_root, self._cache_dir],
            )

        handlers["assemble"] = _assemble

        def _recording(task_id: str, fn):
            def _run() -> Any:
                value = fn()
                with ctx.lock:
                    scheduler_results[task_id] = value
                return value

            return _run

        wrapped = {tid: _recording(tid, fn) for tid, fn in handlers.items()}
        outcome = scheduler.run(TaskGraph(nodes), wrapped)
        self._collect(ctx, outcome.results, outcome.failures)

    def _prepare_tree(
        self, ctx: _RunContext, comp: ComponentSpec, neutralizer: Neutralizer
    ) -> tuple[Path, NeutralizationResult | None]:
        """Working copy of the component's subtree, neutralized, with reference data."""
        tree = working_copy(ctx.trees[comp.source], comp, ctx.work / "trees" / comp.name)
        neutralized = None
        if self.config.neutralization.enabled:
            neutralized = neutralizer.neutralize(tree)
        for spec in self.config.reference_data:
            placed = place_reference_data(tree, ctx.blobs[spec.artifact], spec)
            with ctx.lock:
                ctx.placed[spec.artifact] = ctx.placed.get(spec.artifact, 0) + len(placed)
        return tree, neutralized

    def _collect(
        self,
        ctx: _RunContext,
        results: dict[str, Any],
        failures: dict[str, BaseException],
    ) -> None:
        for comp in ctx.components:
            prepared = results.get(f"neutralize:{comp.name}")
            if prepared is not None and prepared[1] is not None:
                for warning in prepared[1].warnings:
                    ctx.warnings.append(
                        warning.model_copy(update={"subject": f"{comp.name}:{warning.subject}"})
                    )

            bundle = results.get(f"vendor:{comp.name}")
            if bundle is not None:
                ctx.bundles[comp.name] = bundle
                if not comp.vendor_hash:
                    ctx.warnings.append(
                        BuildWarning(
                            kind="vendor_hash_unpinned",
                            subject=comp.name,
                            message=f"vendor_hash is not pinned; computed {bundle.bundle_hash}",
                        )
                    )

            built = results.get(f"build:{comp.name}")
            if built is not None:
                ctx.results.append(built)
                continue
            reason = "skipped"
            for stage in ("vendor", "neutralize", "build"):
                exc = failures.get(f"{stage}:{comp.name}")
                if exc is not None:
                    reason = f"{stage} failed: {exc}"
                    break
            ctx.warnings.append(
                BuildWarning(kind="component_skipped", subject=comp.name, message=reason)
            )

        for spec in self.config.reference_data:
            if not ctx.placed.get(spec.artifact):
                ctx.warnings.append(
                    BuildWarning(
                        kind="reference_data_unplaced",
                        subject=spec.artifact,
                        message=f"no directory matching {spec.dir_pattern!r} in any component tree",
                    )
                )
        ctx.output = results.get("assemble")

    # ------------------------------------------------------------------
    # Report and teardown
    # ------------------------------------------------------------------

    def _report(self, ctx: _RunContext, error: ForgeError | None = None) -> BuildReport:
        pins = {name: blob.digest for name, blob in ctx.blobs.items()}
        for component, bundle in ctx.bundles.items():
            for dep, digest in bundle.dependencies.items():
                pins[f"{component}:{dep}"] = digest
        built = sorted(r.component for r in ctx.results)
        return BuildReport(
            run_id=self.run_id,
            project=self.config.name,
            state=self.machine.state,
            pins=dict(sorted(pins.items())),
            vendor_bundles={c: b.bundle_hash for c, b in sorted(ctx.bundles.items())},
            warnings=ctx.warnings,
            built=built,
            skipped=sorted(w.subject for w in ctx.warnings if w.kind == "component_skipped"),
            output=ctx.output.root if ctx.output else None,
            archive=ctx.output.archive if ctx.output else None,
            error=(
                FailureDetail(
                    kind=error.kind,
                    subject=error.subject,
                    message=str(error),
                    exit_code=error.exit_code,
                )
                if error
                else None
            ),
        )

    def _cleanup(self, ctx: _RunContext, cache: ContentCache) -> None:
        if not self.settings.keep_work and ctx.work.exists():
            shutil.rmtree(ctx.work)
        if not self.settings.persist_cache:
            cache.clear()
