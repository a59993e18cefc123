"""Pipeline and task state models: forward-only pipeline transitions."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class PipelineState(str, Enum):
    """Coarse state of one orchestration run."""

    PENDING = "pending"
    FETCHING = "fetching"
    VENDORING = "vendoring"
    NEUTRALIZING = "neutralizing"
    BUILDING = "building"
    ASSEMBLING = "assembling"
    DONE = "done"
    FAILED = "failed"


# Ordered working states. A run may skip forward (e.g. no component declares
# dependencies, so VENDORING has nothing to do) but never moves backwards.
PHASE_ORDER: list[PipelineState] = [
    PipelineState.PENDING,
    PipelineState.FETCHING,
    PipelineState.VENDORING,
    PipelineState.NEUTRALIZING,
    PipelineState.BUILDING,
    PipelineState.ASSEMBLING,
    PipelineState.DONE,
]


def _forward_transitions() -> dict[PipelineState, set[PipelineState]]:
    table: dict[PipelineState, set[PipelineState]] = {}
    for index, state in enumerate(PHASE_ORDER):
        table[state] = set(PHASE_ORDER[index + 1:])
        if state != PipelineState.DONE:
            table[state].add(PipelineState.FAILED)
    table[PipelineState.FAILED] = set()  # terminal
    return table


# Valid state transitions, enforced structurally by PipelineStateMachine.
# Terminal states (DONE, FAILED) have no outgoing transitions.
VALID_TRANSITIONS: dict[PipelineState, set[PipelineState]] = _forward_transitions()


class TaskState(str, Enum):
    """State of a single node in the task graph."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"  # a hard prerequisite of an optional chain failed
    CANCELLED = "cancelled"  # a required sibling failed


class TaskNode(BaseModel):
    """One schedulable unit of work.

    ``requires`` are hard edges: the node runs only if all of them PASSED.
    ``after`` are soft edges: the node waits for them to finish but does
    not care whether they succeeded (assembly waits on optional extension
    builds this way).
    """

    model_config = ConfigDict(frozen=True)

    task_id: str
    phase: PipelineState
    requires: list[str] = []
    after: list[str] = []
    optional: bool = False

    @property
    def ordinal(self) -> int:
        return PHASE_ORDER.index(self.phase)
