"""Project configuration: the static, immutable build description.

Loaded from ``pinforge.toml``. Everything the orchestrator fetches, builds
and assembles is declared here; nothing is discovered from ambient state
except extension modules, which are expanded from a fetched snapshot.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from pinforge.core.errors import ConfigError
from pinforge.models.artifacts import ArtifactRef
from pinforge.models.assembly import AssemblySpec
from pinforge.models.components import (
    ComponentKind,
    ComponentSpec,
    ExtensionSetSpec,
    ReferenceDataSpec,
    ToolchainSpec,
)
from pinforge.models.neutralization import NeutralizationRule, ScriptReplacement


class NeutralizationConfig(BaseModel):
    """Which network-call signatures to neutralize, and how."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    use_default_rules: bool = True
    rules: list[NeutralizationRule] = []
    replacements: list[ScriptReplacement] = []


class ProjectConfig(BaseModel):
    """Project-level configuration for one orchestrated build."""

    model_config = ConfigDict(frozen=True)

    name: str = "pinforge-project"
    version: str = "0.0.0"
    artifacts: list[ArtifactRef] = []
    toolchain: ToolchainSpec | None = None
    registry_url: str = ""
    components: list[ComponentSpec] = []
    extension_sets: list[ExtensionSetSpec] = []
    reference_data: list[ReferenceDataSpec] = []
    neutralization: NeutralizationConfig = NeutralizationConfig()
    assembly: AssemblySpec = AssemblySpec()

    @model_validator(mode="after")
    def _check_references(self) -> ProjectConfig:
        names = [a.name for a in self.artifacts]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate artifact names: {duplicates}")

        known = set(names)
        missing: list[str] = []
        if self.toolchain and self.toolchain.artifact not in known:
            missing.append(f"toolchain -> {self.toolchain.artifact}")
        for comp in self.components:
            if comp.source not in known:
                missing.append(f"component {comp.name} -> {comp.source}")
            if comp.kind == ComponentKind.EXTENSION:
                raise ValueError(
                    f"component {comp.name}: extension modules are declared "
                    "through [[extension_sets]]"
                )
        for ext in self.extension_sets:
            if ext.source not in known:
                missing.append(f"extension set {ext.name} -> {ext.source}")
        for ref in self.reference_data:
            if ref.artifact not in known:
                missing.append(f"reference data -> {ref.artifact}")
        if missing:
            raise ValueError(f"unknown artifact references: {'; '.join(missing)}")

        comp_names = [c.name for c in self.components]
        if len(set(comp_names)) != len(comp_names):
            raise ValueError(f"duplicate component names: {comp_names}")
        for tpl in [*self.assembly.templates, *self.assembly.assets]:
            if tpl.component not in comp_names:
                raise ValueError(
                    f"assembly entry {tpl.path!r} refers to unknown component "
                    f"{tpl.component!r}"
                )
        return self

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def artifact(self, name: str) -> ArtifactRef:
        for ref in self.artifacts:
            if ref.name == name:
                return ref
        raise KeyError(f"Unknown artifact {name!r}")

    def with_pins(self, pins: dict[str, str]) -> ProjectConfig:
        """Return a copy with the given artifact hashes replaced."""
        unknown = sorted(set(pins) - {a.name for a in self.artifacts})
        if unknown:
            raise ConfigError(f"Cannot pin unknown artifacts: {unknown}")
        artifacts = [
            ref.model_copy(update={"hash": pins[ref.name]}) if ref.name in pins else ref
            for ref in self.artifacts
        ]
        return self.model_copy(update={"artifacts": artifacts})

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> ProjectConfig:
        project = data.get("project", {})
        payload = {k: v for k, v in data.items() if k != "project"}
        payload.update({k: project[k] for k in ("name", "version") if k in project})
        if "registry" in data:
            payload.pop("registry")
            payload["registry_url"] = data["registry"].get("index_url", "")
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise ConfigError(f"Invalid project configuration: {exc}") from exc

    @classmethod
    def from_toml(cls, path: Path) -> ProjectConfig:
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except FileNotFoundError:
            raise ConfigError(f"Project file not found: {path}", subject=str(path)) from None
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Cannot parse {path}: {exc}", subject=str(path)) from exc
        return cls.from_mapping(data)
