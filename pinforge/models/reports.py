"""Run report models: what the operator sees at the end of a build."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from pinforge.models.stages import PipelineState


class BuildWarning(BaseModel):
    """A non-fatal event collected during the run.

    ``kind`` is one of ``neutralization_skipped``, ``component_skipped``,
    ``reference_data_unplaced``, ``vendor_hash_unpinned``,
    ``sandbox_unavailable``.
    """

    model_config = ConfigDict(frozen=True)

    kind: str
    subject: str
    message: str


class FailureDetail(BaseModel):
    """The fatal error that ended a run."""

    model_config = ConfigDict(frozen=True)

    kind: str
    subject: str
    message: str
    exit_code: int


class BuildReport(BaseModel):
    """Final summary of one orchestration run.

    ``pins`` enumerates every content hash actually used: artifact refs by
    name and vendored dependencies as ``<component>:<name>@<version>``.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    project: str
    state: PipelineState
    pins: dict[str, str] = {}
    vendor_bundles: dict[str, str] = {}
    warnings: list[BuildWarning] = []
    built: list[str] = []
    skipped: list[str] = []
    output: Path | None = None
    archive: Path | None = None
    error: FailureDetail | None = None
    finished_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.DONE

    @property
    def exit_code(self) -> int:
        return self.error.exit_code if self.error else 0
