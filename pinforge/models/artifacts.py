"""Content-addressed artifact models (immutable once created)."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict


class ArtifactRef(BaseModel):
    """A pinned reference to an external input.

    ``hash`` is the declared content hash. Accepted spellings are bare hex,
    ``sha256:<hex>``, SRI ``sha256-<base64>`` and Nix base32; all are
    normalised by ``pinforge.core.hasher.parse_pin`` before comparison.
    Re-fetching the same ref must yield byte-identical content.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    url: str
    hash: str = ""
    unpack: bool = False
    # None means "strip a single top-level directory if there is one"
    strip_components: int | None = None


class LocalBlob(BaseModel):
    """Handle to verified, immutable local content in the content cache."""

    model_config = ConfigDict(frozen=True)

    name: str
    digest: str  # "sha256:<hex>"
    path: Path
    size_bytes: int = 0
