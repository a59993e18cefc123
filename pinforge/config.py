"""Machine-local settings: env-driven, separate from the project file.

Centralized config using pydantic-settings. Reads from a .env file and
PINFORGE_* environment variables. The project description (what to fetch,
build and assemble) lives in ``pinforge.toml`` and is modelled by
``pinforge.models.config.ProjectConfig``; this module only covers where
and how the orchestrator runs on the current host.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class ForgeSettings(BaseSettings):
    """Host configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export PINFORGE_LOG_LEVEL=DEBUG
        export PINFORGE_MAX_WORKERS=8
        export PINFORGE_SANDBOX=unshare

    Or via .env file::

        PINFORGE_CACHE_DIR=/var/cache/pinforge
        PINFORGE_PERSIST_CACHE=false
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PINFORGE_",
        env_file_encoding="utf-8",
    )

    log_level: str = "INFO"

    # Storage paths
    work_dir: Path = Path(".pinforge/work")
    cache_dir: Path = Path(".pinforge/cache")
    ledger_path: Path = Path(".pinforge/ledger.db")

    # Keep the content cache after the run. Hash verification makes a stale
    # entry indistinguishable from a fresh fetch, so this is only a speedup.
    persist_cache: bool = True
    keep_work: bool = False

    # Concurrency bound for fetch / vendor / neutralize / build tasks
    max_workers: int = 4

    # Fetching (network is allowed here, denied for component builds)
    fetch_timeout_seconds: float = 60.0
    ca_bundle: Path | None = None
    mirror_dirs: list[Path] = []

    # Network egress denial for component builds
    sandbox: Literal["auto", "unshare", "none"] = "auto"


# Module-level singleton; import as `from pinforge.config import settings`
settings = ForgeSettings()
