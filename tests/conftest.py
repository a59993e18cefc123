"""Shared test fixtures for pinforge."""

from __future__ import annotations

import io
import tarfile
from collections.abc import Callable
from pathlib import Path

import pytest

from pinforge.config import ForgeSettings
from pinforge.core.content_cache import ContentCache
from pinforge.core.fetcher import Fetcher
from pinforge.core.hasher import sha256_file
from pinforge.core.run_ledger import BuildLedger
from pinforge.core.stage_machine import PipelineStateMachine
from pinforge.models.artifacts import ArtifactRef
from pinforge.models.assembly import CredentialSpec


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def ledger(tmp_dir: Path) -> BuildLedger:
    """Provide a fresh BuildLedger backed by a temp SQLite database."""
    return BuildLedger(tmp_dir / "test_ledger.db")


@pytest.fixture
def run_id() -> str:
    """Provide a deterministic test run ID."""
    return "pf-test-run-001"


@pytest.fixture
def machine(ledger: BuildLedger, run_id: str) -> PipelineStateMachine:
    """Provide a PipelineStateMachine wired to the test ledger."""
    return PipelineStateMachine(ledger, run_id)


@pytest.fixture
def cache(tmp_dir: Path) -> ContentCache:
    return ContentCache(tmp_dir / "cache")


@pytest.fixture
def fetcher(cache: ContentCache, tmp_dir: Path) -> Fetcher:
    """Fetcher over the test cache; only file:// locators are used in tests."""
    with Fetcher(cache, sources_dir=tmp_dir / "sources") as f:
        yield f


@pytest.fixture
def forge_settings(tmp_dir: Path) -> ForgeSettings:
    """Host settings confined to the temp directory, no namespace sandbox."""
    return ForgeSettings(
        work_dir=tmp_dir / "work",
        cache_dir=tmp_dir / "cache",
        ledger_path=tmp_dir / "ledger.db",
        sandbox="none",
        max_workers=4,
    )


# ---------------------------------------------------------------------------
# Artifact factories
# ---------------------------------------------------------------------------


def make_tarball(
    path: Path,
    files: dict[str, str | bytes],
    top: str = "pkg-1.0",
    executables: tuple[str, ...] = (),
) -> Path:
    """Write a deterministic .tar.gz holding ``files`` under ``top/``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tar:
        for name in sorted(files):
            content = files[name]
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(f"{top}/{name}" if top else name)
            info.size = len(data)
            info.mode = 0o755 if name in executables else 0o644
            info.mtime = 0
            tar.addfile(info, io.BytesIO(data))
    return path


def pin_of(path: Path) -> str:
    return f"sha256:{sha256_file(path)}"


@pytest.fixture
def make_ref() -> Callable[..., ArtifactRef]:
    """Factory fixture: an ArtifactRef pinned to the current content of a file."""

    def _factory(name: str, path: Path, **overrides) -> ArtifactRef:
        fields = {"name": name, "url": path.as_uri(), "hash": pin_of(path)}
        fields.update(overrides)
        return ArtifactRef(**fields)

    return _factory


class FakeCredentials:
    """Credential backend for tests that must not depend on openssl."""

    def __init__(self) -> None:
        self.calls = 0

    def generate(self, spec: CredentialSpec, directory: Path) -> tuple[Path, Path]:
        self.calls += 1
        key = directory / spec.key_name
        cert = directory / spec.cert_name
        key.write_text(f"fake key {self.calls}\n")
        cert.write_text(f"fake cert {self.calls}\n")
        return key, cert


@pytest.fixture
def fake_credentials() -> FakeCredentials:
    return FakeCredentials()


@pytest.fixture(name="make_tarball")
def make_tarball_fixture() -> Callable[..., Path]:
    """Factory fixture: see ``make_tarball``."""
    return make_tarball
