"""Component models: what each subsystem builder consumes and produces."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from pinforge.models.vendoring import DependencyDecl


class ComponentKind(str, Enum):
    SERVICE = "service"
    CLIENT = "client"
    EXTENSION = "extension"


class OutputSpec(BaseModel):
    """One declared output artifact of a builder.

    ``path`` is relative to the component's build directory; ``dest`` is
    relative to the output tree root (``bin`` or somewhere under ``share``).
    """

    model_config = ConfigDict(frozen=True)

    path: str
    dest: str = "bin"
    executable: bool = False


class ComponentSpec(BaseModel):
    """Static description of one buildable subsystem.

    A component only ever sees its own ``subdir`` of ``source`` plus its
    vendor bundle and the shared toolchain.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    kind: ComponentKind
    source: str  # ArtifactRef name of the source snapshot
    subdir: str = ""
    commands: list[str] = []
    fallback_commands: list[str] = []
    build_dir: str = ""
    outputs: list[OutputSpec] = []
    dependencies: list[DependencyDecl] = []
    vendor_path: str = "vendor"
    vendor_hash: str = ""
    requires_tools: list[str] = []
    # Copy-ignore globs used when a whole directory is an output
    exclude: list[str] = ["*.orig"]

    @property
    def optional(self) -> bool:
        """Extension modules are best-effort; primaries are fail-closed."""
        return self.kind == ComponentKind.EXTENSION


class ExtensionSetSpec(BaseModel):
    """A directory of independently built add-on modules.

    Every direct subdirectory of ``subdir`` holding one of ``marker_files``
    becomes its own optional extension component, installed under
    ``share/<extensions_dir>/<module>/``.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    source: str
    subdir: str = ""
    marker_files: list[str] = ["Makefile", "makefile"]
    commands: list[str] = ["make"]
    fallback_commands: list[str] = ["make OFFLINE=1 NO_NETWORK=1"]
    include: list[str] = []
    exclude: list[str] = ["*.orig"]
    dependencies: dict[str, list[DependencyDecl]] = {}
    requires_tools: list[str] = ["make"]


class ReferenceDataSpec(BaseModel):
    """A verified data file dropped into component trees before building.

    The drop directory is located by name pattern, since its exact place in
    the source tree is not stable across upstream versions.
    """

    model_config = ConfigDict(frozen=True)

    artifact: str
    dir_pattern: str
    filename: str


class ToolchainSpec(BaseModel):
    """Compiler/runtime archive exposed to every builder."""

    model_config = ConfigDict(frozen=True)

    artifact: str
    root_env_var: str = ""
    bin_subdir: str = "bin"


class BuildStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class BuildResult(BaseModel):
    """Outcome of one builder invocation."""

    model_config = ConfigDict(frozen=True)

    component: str
    kind: ComponentKind
    status: BuildStatus
    tree: Path
    outputs: list[OutputSpec] = []
    # OutputSpec.path -> absolute produced path
    artifacts: dict[str, Path] = Field(default_factory=dict)
    exclude: list[str] = []
    log_path: Path | None = None
    used_fallback: bool = False
