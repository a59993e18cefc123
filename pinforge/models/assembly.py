"""Assembly models: rewrite rules, manifest, and the final output tree."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict


class RewriteRule(BaseModel):
    """Maps a build-time-relative token to a path under the install prefix.

    ``target`` is relative to the install prefix; a trailing ``/`` is kept
    so directory tokens such as ``extenders/`` stay directory-shaped.
    """

    model_config = ConfigDict(frozen=True)

    token: str
    target: str
    required: bool = True


class TemplateSpec(BaseModel):
    """A generated configuration file shipped in ``share/``."""

    model_config = ConfigDict(frozen=True)

    component: str
    path: str  # relative to the component tree
    dest: str = ""  # relative to share/, defaults to the file name


class AssetSpec(BaseModel):
    """Static files or directories (error pages, profiles) shipped in ``share/``."""

    model_config = ConfigDict(frozen=True)

    component: str
    path: str
    dest: str = ""


class CredentialSpec(BaseModel):
    """Per-build self-signed TLS key pair."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    key_name: str = "server.rsa.key"
    cert_name: str = "server.rsa.crt"
    days: int = 3650
    key_bits: int = 2048
    subject: str = "/CN=localhost"


class AssemblySpec(BaseModel):
    """Static assembly description from the project file."""

    model_config = ConfigDict(frozen=True)

    install_prefix: str = ""  # empty means the absolute output directory; required when archiving
    extensions_dir: str = "extenders"
    templates: list[TemplateSpec] = []
    assets: list[AssetSpec] = []
    rewrites: list[RewriteRule] = []
    credentials: CredentialSpec = CredentialSpec()
    archive: bool = False


class AssemblyManifest(BaseModel):
    """Path-rewrite rules bound to a concrete install prefix."""

    model_config = ConfigDict(frozen=True)

    install_prefix: str
    rules: list[RewriteRule]

    def resolve(self, rule: RewriteRule) -> str:
        """Return the install-time absolute path a token is rewritten to."""
        prefix = self.install_prefix.rstrip("/")
        return f"{prefix}/{rule.target.lstrip('/')}"


class OutputTree(BaseModel):
    """The published, read-only result of the assembly stage."""

    model_config = ConfigDict(frozen=True)

    root: Path
    install_prefix: str
    executables: list[Path] = []
    share_files: list[Path] = []
    config_files: list[Path] = []
    extensions: list[str] = []
    archive: Path | None = None
