"""Vendoring models: declared dependencies, lock entries, vendor bundles."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict


class DependencyDecl(BaseModel):
    """A third-party dependency declared by one subcomponent.

    ``url`` and ``hash`` may be given inline; otherwise the configured
    registry resolves ``name``/``version`` to a pinned locator.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    url: str | None = None
    hash: str | None = None

    @property
    def key(self) -> str:
        return f"{self.name}-{self.version}"


class LockEntry(BaseModel):
    """Exact identifier -> hash mapping recorded in a lock manifest."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    url: str
    sha256: str  # "sha256:<hex>"


class VendorBundle(BaseModel):
    """Self-contained vendored dependency set for exactly one subcomponent.

    ``bundle_hash`` is the tree digest of ``path`` at creation time; it is
    recomputed when the bundle is consumed.
    """

    model_config = ConfigDict(frozen=True)

    component: str
    path: Path
    lock: list[LockEntry]
    manifest_path: Path
    bundle_hash: str  # "sha256:<hex>"

    @property
    def dependencies(self) -> dict[str, str]:
        """Dependency identifier -> pinned content hash."""
        return {f"{e.name}@{e.version}": e.sha256 for e in self.lock}
