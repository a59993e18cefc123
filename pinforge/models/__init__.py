"""pinforge data models: all Pydantic v2, all frozen (immutable)."""

from pinforge.models.artifacts import ArtifactRef, LocalBlob
from pinforge.models.assembly import (
    AssemblyManifest,
    AssemblySpec,
    AssetSpec,
    CredentialSpec,
    OutputTree,
    RewriteRule,
    TemplateSpec,
)
from pinforge.models.components import (
    BuildResult,
    BuildStatus,
    ComponentKind,
    ComponentSpec,
    ExtensionSetSpec,
    OutputSpec,
    ReferenceDataSpec,
    ToolchainSpec,
)
from pinforge.models.config import NeutralizationConfig, ProjectConfig
from pinforge.models.ledger import LedgerEntry
from pinforge.models.neutralization import (
    NeutralizationPatch,
    NeutralizationResult,
    NeutralizationRule,
    PatchPolicy,
    ScriptReplacement,
)
from pinforge.models.reports import BuildReport, BuildWarning, FailureDetail
from pinforge.models.stages import (
    PHASE_ORDER,
    VALID_TRANSITIONS,
    PipelineState,
    TaskNode,
    TaskState,
)
from pinforge.models.vendoring import DependencyDecl, LockEntry, VendorBundle

__all__ = [
    # artifacts
    "ArtifactRef",
    "LocalBlob",
    # vendoring
    "DependencyDecl",
    "LockEntry",
    "VendorBundle",
    # neutralization
    "NeutralizationPatch",
    "NeutralizationResult",
    "NeutralizationRule",
    "PatchPolicy",
    "ScriptReplacement",
    # components
    "BuildResult",
    "BuildStatus",
    "ComponentKind",
    "ComponentSpec",
    "ExtensionSetSpec",
    "OutputSpec",
    "ReferenceDataSpec",
    "ToolchainSpec",
    # assembly
    "AssemblyManifest",
    "AssemblySpec",
    "AssetSpec",
    "CredentialSpec",
    "OutputTree",
    "RewriteRule",
    "TemplateSpec",
    # stages
    "PHASE_ORDER",
    "VALID_TRANSITIONS",
    "PipelineState",
    "TaskNode",
    "TaskState",
    # ledger
    "LedgerEntry",
    # reports
    "BuildReport",
    "BuildWarning",
    "FailureDetail",
    # config
    "NeutralizationConfig",
    "ProjectConfig",
]
