"""Forward-only pipeline state machine.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Phases may be skipped but never revisited
- FAILED is terminal and reachable from every non-terminal state
- Every transition recorded in the build ledger
"""

from __future__ import annotations

import logging
from typing import Any

from pinforge.core.run_ledger import BuildLedger
from pinforge.models.ledger import LedgerEntry
from pinforge.models.stages import PHASE_ORDER, VALID_TRANSITIONS, PipelineState

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class PipelineStateMachine:
    """Tracks the coarse state of one run and records it in the ledger.

    Parameters
    ----------
    ledger:
        The build ledger to record transitions into.
    run_id:
        Identifier of the run whose state this machine owns.
    """

    def __init__(self, ledger: BuildLedger, run_id: str) -> None:
        self._ledger = ledger
        self._run_id = run_id
        self._state = PipelineState.PENDING
        self._history: list[PipelineState] = [PipelineState.PENDING]

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def history(self) -> list[PipelineState]:
        return list(self._history)

    @property
    def run_id(self) -> str:
        return self._run_id

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(
        self, target: PipelineState, detail: dict[str, Any] | None = None
    ) -> LedgerEntry:
        """Move to ``target``, recording the transition.

        Raises InvalidTransitionError for backward moves, self-loops and
        anything leaving a terminal state.
        """
        allowed = VALID_TRANSITIONS.get(self._state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition pipeline from {self._state.value} to "
                f"{target.value}. Allowed: {sorted(s.value for s in allowed)}"
            )
        entry = self._ledger.record(
            self._run_id,
            "pipeline",
            f"{self._state.value}->{target.value}",
            detail,
        )
        logger.info("Pipeline %s: %s -> %s", self._run_id, self._state.value, target.value)
        self._state = target
        self._history.append(target)
        return entry

    def advance_to(self, target: PipelineState) -> LedgerEntry | None:
        """Advance to ``target`` unless the run is already there.

        Used as the scheduler's progress callback, which reports the lowest
        unfinished phase and may repeat itself.
        """
        if target == self._state:
            return None
        if PHASE_ORDER.index(target) < PHASE_ORDER.index(self._state):
            raise InvalidTransitionError(
                f"Pipeline cannot move back from {self._state.value} to {target.value}"
            )
        return self.transition(target)

    def fail(self, error: BaseException) -> LedgerEntry | None:
        """Transition to FAILED, recording the error kind and message."""
        if self._state in (PipelineState.DONE, PipelineState.FAILED):
            return None
        detail = {
            "kind": getattr(error, "kind", type(error).__name__),
            "subject": getattr(error, "subject", ""),
            "message": str(error),
            "failed_in": self._state.value,
        }
        return self.transition(PipelineState.FAILED, detail)

    def record_task(
        self, task_id: str, transition: str, detail: dict[str, Any] | None = None
    ) -> LedgerEntry:
        """Record a task outcome (``"running->passed"`` etc.) for this run."""
        return self._ledger.record(self._run_id, task_id, transition, detail)
