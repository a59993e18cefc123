"""Neutralization models: rules and reversible patch records."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from pinforge.models.reports import BuildWarning


class PatchPolicy(str, Enum):
    """How a matched file was neutralized."""

    STUB_CALLS = "stub_calls"
    REPLACE_SCRIPT = "replace_script"


class NeutralizationRule(BaseModel):
    """Signature of outbound-network code for one family of files.

    ``detect`` decides whether a file is a candidate at all; ``call`` finds
    the individual call sites that get stubbed. ``stub`` is the statement
    that replaces a bare call. ``assign_stub`` is a ``{name}`` template for
    the statement replacing an assignment, and ``inline_stub`` the
    expression substituted for a call nested in a larger expression;
    ``None`` disables either form.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    glob: str
    detect: str
    call: str
    stub: str
    assign_stub: str | None = None
    inline_stub: str | None = None
    comment: str = "#"


class ScriptReplacement(BaseModel):
    """A known single-purpose fetch script replaced wholesale.

    The replacement looks for a pre-staged copy of the resource under any of
    ``resource_names`` and otherwise writes an empty placeholder named
    ``placeholder_name`` with a visible warning.
    """

    model_config = ConfigDict(frozen=True)

    filename: str
    resource_names: list[str]
    placeholder_name: str = ""

    @property
    def placeholder(self) -> str:
        return self.placeholder_name or self.resource_names[0]


class NeutralizationPatch(BaseModel):
    """Record of one neutralized file.

    ``original`` is the pre-patch content snapshot; the same bytes are kept
    on disk at ``backup_path`` for audit and restore.
    """

    model_config = ConfigDict(frozen=True)

    path: Path
    backup_path: Path
    policy: PatchPolicy
    original: str
    replacement: str
    original_digest: str
    call_sites: int = 0


class NeutralizationResult(BaseModel):
    """Patches applied to one tree plus the files that could not be patched."""

    model_config = ConfigDict(frozen=True)

    tree: Path
    patches: list[NeutralizationPatch] = []
    warnings: list[BuildWarning] = []
