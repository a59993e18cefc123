"""Build-step isolation: an immutable environment and a network-deny wrapper.

Two independent layers keep component builds offline:

1. ``BuildEnvironment``: the complete environment handed to each build
   subprocess. It starts empty, passes through a small whitelist, pins
   determinism variables and switches every known package manager to
   vendor-only mode. Nothing here reads or writes ``os.environ`` after
   construction; the object is threaded explicitly into each build.
2. ``NetworkSandbox``: wraps the build argv so the process runs in a
   fresh network namespace with no interfaces but loopback.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict

from pinforge.core.errors import PrerequisiteMissing
from pinforge.models.components import ToolchainSpec

logger = logging.getLogger(__name__)

# Vars passed through from the host environment when present.
_PASSTHROUGH = frozenset({"USER", "LOGNAME", "TMPDIR", "TERM"})

# Vars pinned to fixed values for determinism.
_DETERMINISM_PINS = {
    "LC_ALL": "C",
    "LANG": "C",
    "TZ": "UTC",
    "SOURCE_DATE_EPOCH": "315576000",
}

# Nothing listens on the discard port; any client honouring proxies fails fast.
BLACKHOLE_PROXY = "http://127.0.0.1:9"

OFFLINE_FLAGS = {
    "GOPROXY": "off",
    "GOSUMDB": "off",
    "GOFLAGS": "-mod=vendor",
    "GONOSUMDB": "*",
    "CARGO_NET_OFFLINE": "true",
    "PIP_NO_INDEX": "1",
    "PIP_DISABLE_PIP_VERSION_CHECK": "1",
    "NPM_CONFIG_OFFLINE": "true",
    "NO_NETWORK": "1",
    "OFFLINE_BUILD": "1",
    "http_proxy": BLACKHOLE_PROXY,
    "https_proxy": BLACKHOLE_PROXY,
    "HTTP_PROXY": BLACKHOLE_PROXY,
    "HTTPS_PROXY": BLACKHOLE_PROXY,
    "no_proxy": "",
}


class BuildEnvironment(BaseModel):
    """Immutable environment for component build subprocesses."""

    model_config = ConfigDict(frozen=True)

    variables: dict[str, str]
    scratch_dir: Path
    toolchain_root: Path | None = None

    @classmethod
    def create(
        cls,
        scratch_dir: Path,
        *,
        toolchain_root: Path | None = None,
        toolchain: ToolchainSpec | None = None,
        ca_bundle: Path | None = None,
        host_path: str | None = None,
    ) -> BuildEnvironment:
        """Assemble the environment once per run.

        Parameters
        ----------
        scratch_dir:
            Per-run scratch area; HOME and tool caches point inside it.
        toolchain_root:
            Unpacked toolchain snapshot, exposed via ``toolchain.root_env_var``
            and prepended to PATH.
        ca_bundle:
            Trust store exported for any TLS-verifying step.
        host_path:
            PATH suffix for host tools (make, cc); defaults to the current
            process PATH at construction time.
        """
        scratch_dir = Path(scratch_dir).resolve()
        env: dict[str, str] = {}
        for key in sorted(_PASSTHROUGH):
            val = os.environ.get(key)
            if val is not None:
                env[key] = val
        env.update(_DETERMINISM_PINS)
        env.update(OFFLINE_FLAGS)
        env["HOME"] = str(scratch_dir / "home")
        env["XDG_CACHE_HOME"] = str(scratch_dir / "cache")

        path_parts: list[str] = []
        if toolchain_root is not None:
            toolchain_root = Path(toolchain_root).resolve()
            spec = toolchain or ToolchainSpec(artifact="")
            if spec.root_env_var:
                env[spec.root_env_var] = str(toolchain_root)
            path_parts.append(str(toolchain_root / spec.bin_subdir))
        host = os.environ.get("PATH", os.defpath) if host_path is None else host_path
        if host:
            path_parts.append(host)
        env["PATH"] = os.pathsep.join(path_parts)

        if ca_bundle is not None:
            env["SSL_CERT_FILE"] = str(ca_bundle)
            env["REQUESTS_CA_BUNDLE"] = str(ca_bundle)

        return cls(variables=env, scratch_dir=scratch_dir, toolchain_root=toolchain_root)

    def for_component(self, component: str) -> BuildEnvironment:
        """Derive a copy with per-component Go caches under scratch."""
        base = self.scratch_dir / "components" / component
        variables = dict(self.variables)
        variables["GOCACHE"] = str(base / "gocache")
        variables["GOPATH"] = str(base / "gopath")
        variables["GOMODCACHE"] = str(base / "gopath" / "pkg" / "mod")
        return self.model_copy(update={"variables": variables})

    def prepare(self) -> None:
        """Create the directories the environment points at."""
        for key in ("HOME", "XDG_CACHE_HOME", "GOCACHE", "GOPATH"):
            if key in self.variables:
                Path(self.variables[key]).mkdir(parents=True, exist_ok=True)

    def as_env(self) -> dict[str, str]:
        """A fresh dict suitable for ``subprocess.Popen(env=...)``."""
        return dict(self.variables)


class NetworkSandbox:
    """Runs build commands without network access where the host allows it.

    Parameters
    ----------
    mode:
        ``unshare`` requires an unprivileged network namespace and fails
        if there is none; ``auto`` uses one when available and otherwise
        relies on the environment-level deny alone; ``none`` never wraps.
    """

    PREFIX = ["unshare", "--net", "--map-root-user", "--"]

    def __init__(self, mode: Literal["auto", "unshare", "none"] = "auto") -> None:
        self.mode = mode
        self._lock = threading.Lock()
        self._available: bool | None = None

    def _unshare_works(self) -> bool:
        if shutil.which("unshare") is None:
            return False
        try:
            proc = subprocess.run(
                [*self.PREFIX, "true"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=10,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return proc.returncode == 0

    @property
    def isolated(self) -> bool:
        """Whether wrapped commands really run without a network."""
        if self.mode == "none":
            return False
        with self._lock:
            if self._available is None:
                self._available = self._unshare_works()
                if not self._available:
                    logger.warning(
                        "Network namespaces unavailable; builds rely on "
                        "environment-level network denial only"
                    )
        if not self._available and self.mode == "unshare":
            raise PrerequisiteMissing(
                "sandbox=unshare requested but 'unshare --net' is not usable on this host",
                subject="unshare",
            )
        return self._available

    def wrap(self, argv: list[str]) -> list[str]:
        return [*self.PREFIX, *argv] if self.isolated else list(argv)
