"""Tests for the Pydantic data models: validation, immutability, defaults."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from pinforge.models.artifacts import ArtifactRef
from pinforge.models.components import ComponentKind, ComponentSpec, ExtensionSetSpec, OutputSpec
from pinforge.models.ledger import LedgerEntry
from pinforge.models.neutralization import ScriptReplacement
from pinforge.models.reports import BuildReport, FailureDetail
from pinforge.models.stages import (
    PHASE_ORDER,
    VALID_TRANSITIONS,
    PipelineState,
    TaskNode,
)
from pinforge.models.vendoring import DependencyDecl, LockEntry, VendorBundle


class TestStageModels:
    def test_terminal_states(self):
        assert VALID_TRANSITIONS[PipelineState.DONE] == set()
        assert VALID_TRANSITIONS[PipelineState.FAILED] == set()

    def test_forward_only(self):
        for index, state in enumerate(PHASE_ORDER[:-1]):
            allowed = VALID_TRANSITIONS[state]
            assert PipelineState.FAILED in allowed
            assert not allowed & set(PHASE_ORDER[: index + 1])

    def test_phases_may_be_skipped(self):
        assert PipelineState.BUILDING in VALID_TRANSITIONS[PipelineState.FETCHING]

    def test_task_node_ordinal(self):
        node = TaskNode(task_id="build:server", phase=PipelineState.BUILDING)
        assert node.ordinal == PHASE_ORDER.index(PipelineState.BUILDING)
        assert node.requires == [] and node.optional is False


class TestComponentModels:
    def test_extension_is_optional(self):
        ext = ComponentSpec(name="x.y", kind=ComponentKind.EXTENSION, source="src")
        svc = ComponentSpec(name="server", kind="service", source="src")
        assert ext.optional is True
        assert svc.optional is False

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            ComponentSpec(name="x", kind="daemon", source="src")

    def test_output_defaults_to_bin(self):
        assert OutputSpec(path="out/tool").dest == "bin"

    def test_extension_set_defaults(self):
        spec = ExtensionSetSpec(name="extenders", source="src")
        assert spec.commands == ["make"]
        assert spec.exclude == ["*.orig"]

    def test_component_is_frozen(self):
        spec = ComponentSpec(name="server", kind="service", source="src")
        with pytest.raises(ValidationError):
            spec.name = "client"


class TestVendoringModels:
    def test_dependency_key(self):
        assert DependencyDecl(name="libfoo", version="1.2.0").key == "libfoo-1.2.0"

    def test_bundle_dependencies(self, tmp_dir):
        lock = [
            LockEntry(name="libfoo", version="1.2.0", url="file:///f", sha256="sha256:" + "ab" * 32),
            LockEntry(name="libbar", version="0.3", url="file:///b", sha256="sha256:" + "cd" * 32),
        ]
        bundle = VendorBundle(
            component="server",
            path=tmp_dir,
            lock=lock,
            manifest_path=tmp_dir / "vendor.lock.json",
            bundle_hash="sha256:" + "ef" * 32,
        )
        assert bundle.dependencies == {
            "libfoo@1.2.0": "sha256:" + "ab" * 32,
            "libbar@0.3": "sha256:" + "cd" * 32,
        }


class TestMiscModels:
    def test_artifact_ref_defaults(self):
        ref = ArtifactRef(name="src", url="file:///src.tar.gz")
        assert ref.hash == ""
        assert ref.unpack is False
        assert ref.strip_components is None

    def test_script_placeholder_falls_back_to_first_resource(self):
        replacement = ScriptReplacement(filename="fetch.sh", resource_names=["data.bin", "data.gz"])
        assert replacement.placeholder == "data.bin"
        named = replacement.model_copy(update={"placeholder_name": "empty.bin"})
        assert named.placeholder == "empty.bin"

    def test_ledger_entry_ids_unique(self):
        a = LedgerEntry(run_id="r", subject="pipeline", transition="pending->fetching")
        b = LedgerEntry(run_id="r", subject="pipeline", transition="pending->fetching")
        assert a.entry_id != b.entry_id
        assert a.timestamp_utc.tzinfo is not None


class TestBuildReport:
    def test_success(self):
        report = BuildReport(run_id="r", project="p", state=PipelineState.DONE, output=Path("/x"))
        assert report.succeeded is True
        assert report.exit_code == 0

    def test_failure_exit_code(self):
        error = FailureDetail(kind="IntegrityMismatch", subject="src", message="m", exit_code=3)
        report = BuildReport(run_id="r", project="p", state=PipelineState.FAILED, error=error)
        assert report.succeeded is False
        assert report.exit_code == 3

    def test_json_round_trip(self):
        report = BuildReport(
            run_id="r", project="p", state=PipelineState.DONE, pins={"src": "sha256:" + "ab" * 32}
        )
        restored = BuildReport.model_validate_json(report.model_dump_json())
        assert restored == report
