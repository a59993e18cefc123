"""Dependency vendoring: resolve, fetch and materialise per-component bundles.

Vendoring never compiles anything. For one component it turns declared
``name``/``version`` pairs into pinned locators, fetches each through the
content-addressed fetcher, lays the content out under
``<name>-<version>/`` and writes a canonical ``vendor.lock.json``. Bundles
are cached by the hash of their lock content, so a re-run against the same
registry state reuses the bundle instead of re-materialising it.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tarfile
import uuid
import zipfile
from pathlib import Path
from typing import Any, Protocol, runtime_checkable
from urllib.parse import unquote, urlparse

import httpx

from pinforge.core.errors import DependencyResolutionUnavailable, VendorIntegrityError
from pinforge.core.fetcher import Fetcher, unpack
from pinforge.core.hasher import canonical_json_bytes, parse_pin, sha256_hex, tree_digest
from pinforge.models.artifacts import ArtifactRef, LocalBlob
from pinforge.models.vendoring import DependencyDecl, LockEntry, VendorBundle

logger = logging.getLogger(__name__)

LOCK_FILENAME = "vendor.lock.json"


# ---------------------------------------------------------------------------
# Registries
# ---------------------------------------------------------------------------


@runtime_checkable
class DependencyRegistry(Protocol):
    """Maps a declared dependency to a pinned locator.

    Implementations must never substitute a different version than the one
    declared; when they cannot answer they raise
    DependencyResolutionUnavailable.
    """

    def resolve(self, decl: DependencyDecl) -> ArtifactRef:
        ...


def _inline_ref(decl: DependencyDecl) -> ArtifactRef | None:
    if decl.url and decl.hash:
        return ArtifactRef(name=f"{decl.name}@{decl.version}", url=decl.url, hash=decl.hash)
    return None


class PinnedRegistry:
    """Registry that only accepts dependencies carrying their own url and hash."""

    def resolve(self, decl: DependencyDecl) -> ArtifactRef:
        ref = _inline_ref(decl)
        if ref is None:
            raise DependencyResolutionUnavailable(
                f"{decl.name}@{decl.version}: no inline pin and no registry configured",
                subject=f"{decl.name}@{decl.version}",
            )
        return ref


class IndexRegistry:
    """Static JSON index: ``{base}/{name}/{version}.json`` -> ``{"url", "sha256"}``.

    Every successful answer is written to a local resolution cache. When the
    index cannot be reached the cached answer is used; when there is none,
    resolution fails rather than guessing.

    Parameters
    ----------
    base_url:
        ``file://`` URL, plain directory path, or HTTP(S) base of the index.
    cache_dir:
        Directory holding cached resolutions.
    client:
        Optional ``httpx.Client`` for HTTP indexes.
    """

    def __init__(
        self,
        base_url: str,
        cache_dir: Path,
        *,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._cache_dir = Path(cache_dir)
        self._client = client
        self._timeout = timeout

    def _cache_path(self, decl: DependencyDecl) -> Path:
        return self._cache_dir / decl.name / f"{decl.version}.json"

    def _read_index(self, decl: DependencyDecl) -> dict[str, Any]:
        url = f"{self._base_url}/{decl.name}/{decl.version}.json"
        parsed = urlparse(url)
        if parsed.scheme in ("", "file"):
            path = Path(unquote(parsed.path)) if parsed.scheme else Path(url)
            return json.loads(path.read_text(encoding="utf-8"))
        client = self._client or httpx.Client(follow_redirects=True, timeout=self._timeout)
        try:
            response = client.get(url)
            response.raise_for_status()
            return response.json()
        finally:
            if self._client is None:
                client.close()

    def resolve(self, decl: DependencyDecl) -> ArtifactRef:
        ref = _inline_ref(decl)
        if ref is not None:
            return ref

        subject = f"{decl.name}@{decl.version}"
        try:
            record = self._read_index(decl)
        except (OSError, ValueError, httpx.HTTPError) as exc:
            cached = self._cache_path(decl)
            if not cached.is_file():
                raise DependencyResolutionUnavailable(
                    f"{subject}: registry {self._base_url} unavailable ({exc}) "
                    "and no cached resolution",
                    subject=subject,
                ) from exc
            logger.warning("Registry unavailable for %s, using cached resolution", subject)
            record = json.loads(cached.read_text(encoding="utf-8"))
        else:
            self._store(decl, record)

        if record.get("version", decl.version) != decl.version:
            raise DependencyResolutionUnavailable(
                f"{subject}: registry answered version {record['version']!r}",
                subject=subject,
            )
        if not record.get("url") or not record.get("sha256"):
            raise DependencyResolutionUnavailable(
                f"{subject}: registry record lacks url or sha256", subject=subject
            )
        return ArtifactRef(name=subject, url=record["url"], hash=record["sha256"])

    def _store(self, decl: DependencyDecl, record: dict[str, Any]) -> None:
        path = self._cache_path(decl)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(canonical_json_bytes(record))


# ---------------------------------------------------------------------------
# Vendorer
# ---------------------------------------------------------------------------


def render_lock(component: str, entries: list[LockEntry]) -> bytes:
    """Canonical lock manifest: sorted, indented, no timestamps."""
    payload = {
        "component": component,
        "dependencies": [e.model_dump() for e in sorted(entries, key=lambda e: (e.name, e.version))],
    }
    return (json.dumps(payload, sort_keys=True, indent=2) + "\n").encode("utf-8")


class Vendorer:
    """Builds one VendorBundle per component.

    Parameters
    ----------
    fetcher:
        Shared content-addressed fetcher.
    registry:
        Resolves declarations without inline pins.
    bundles_dir:
        Cache directory for materialised bundles.
    """

    def __init__(
        self, fetcher: Fetcher, registry: DependencyRegistry, bundles_dir: Path
    ) -> None:
        self._fetcher = fetcher
        self._registry = registry
        self._bundles_dir = Path(bundles_dir)

    def resolve(self, declared: list[DependencyDecl]) -> list[tuple[LockEntry, ArtifactRef]]:
        resolved = []
        for decl in sorted(declared, key=lambda d: (d.name, d.version)):
            ref = self._registry.resolve(decl)
            entry = LockEntry(
                name=decl.name,
                version=decl.version,
                url=ref.url,
                sha256=parse_pin(ref.hash, subject=ref.name),
            )
            resolved.append((entry, ref))
        return resolved

    def vendor(self, component: str, declared: list[DependencyDecl]) -> VendorBundle:
        """Resolve, fetch and lay out ``declared`` for ``component``."""
        resolved = self.resolve(declared)
        entries = [entry for entry, _ref in resolved]
        lock_bytes = render_lock(component, entries)
        key = sha256_hex(lock_bytes)[:16]
        bundle_dir = self._bundles_dir / f"{component}-{key}"
        sidecar = self._bundles_dir / f"{component}-{key}.sha256"

        if bundle_dir.is_dir() and sidecar.is_file():
            logger.info("Reusing vendor bundle %s", bundle_dir.name)
            bundle_hash = sidecar.read_text(encoding="utf-8").strip()
        else:
            self._materialise(component, resolved, lock_bytes, bundle_dir)
            bundle_hash = tree_digest(bundle_dir)
            sidecar.write_text(bundle_hash + "\n", encoding="utf-8")
            logger.info(
                "Vendored %d dependencies for %s (%s)", len(entries), component, bundle_hash
            )

        return VendorBundle(
            component=component,
            path=bundle_dir,
            lock=entries,
            manifest_path=bundle_dir / LOCK_FILENAME,
            bundle_hash=bundle_hash,
        )

    def _materialise(
        self,
        component: str,
        resolved: list[tuple[LockEntry, ArtifactRef]],
        lock_bytes: bytes,
        bundle_dir: Path,
    ) -> None:
        self._bundles_dir.mkdir(parents=True, exist_ok=True)
        staging = self._bundles_dir / f".tmp-{component}-{uuid.uuid4().hex[:8]}"
        staging.mkdir()
        try:
            for entry, ref in resolved:
                blob = self._fetcher.fetch(ref)
                _lay_out(blob, staging / f"{entry.name}-{entry.version}")
            (staging / LOCK_FILENAME).write_bytes(lock_bytes)
            if bundle_dir.exists():
                shutil.rmtree(bundle_dir)
            os.replace(staging, bundle_dir)
        finally:
            if staging.exists():
                shutil.rmtree(staging)


def _lay_out(blob: LocalBlob, target: Path) -> None:
    if tarfile.is_tarfile(blob.path) or zipfile.is_zipfile(blob.path):
        unpack(blob, target, None)
    else:
        target.mkdir(parents=True)
        shutil.copyfile(blob.path, target / blob.path.name)


def verify_bundle(bundle: VendorBundle, pinned: str = "") -> str:
    """Recompute a bundle's tree digest at consumption time.

    Raises VendorIntegrityError when the contents no longer match the hash
    recorded at creation, or when ``pinned`` is given and differs from the
    computed hash. Returns the computed hash.
    """
    actual = tree_digest(bundle.path)
    if actual != bundle.bundle_hash:
        raise VendorIntegrityError(
            f"{bundle.component}: vendor bundle changed since creation "
            f"(recorded {bundle.bundle_hash}, found {actual})",
            subject=bundle.component,
            expected=bundle.bundle_hash,
            actual=actual,
        )
    if pinned:
        expected = parse_pin(pinned, subject=f"{bundle.component}.vendor_hash")
        if expected != actual:
            raise VendorIntegrityError(
                f"{bundle.component}: vendor_hash is pinned to {expected} but the "
                f"bundle hashes to {actual}",
                subject=bundle.component,
                expected=expected,
                actual=actual,
            )
    return actual
