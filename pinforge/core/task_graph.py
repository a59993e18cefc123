"""Explicit task DAG and a bounded thread-pool scheduler.

The graph enforces:
- No task runs unless every ``requires`` edge PASSED.
- ``after`` edges only order: the task waits for them to finish.
- When a task fails or is skipped, its hard dependents are SKIPPED.
- A required task never hard-depends on an optional one.

The scheduler dispatches ready tasks onto a ``ThreadPoolExecutor``. A
required failure sets the shared cancel event, cancels queued futures and
re-raises once running siblings have stopped; an optional failure whose
error tolerates it is recorded and only prunes its own chain.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ConfigDict, Field

from pinforge.core.errors import PipelineCancelled
from pinforge.models.stages import PipelineState, TaskNode, TaskState

logger = logging.getLogger(__name__)

_TERMINAL = frozenset(
    {TaskState.PASSED, TaskState.FAILED, TaskState.SKIPPED, TaskState.CANCELLED}
)


class CyclicDependencyError(ValueError):
    """Raised when the task graph contains a cycle."""


class TaskGraph:
    """Directed acyclic graph of pipeline tasks.

    Parameters
    ----------
    nodes:
        Every task of the graph. Edges must reference tasks in the list.
    """

    def __init__(self, nodes: list[TaskNode]) -> None:
        self._nodes: dict[str, TaskNode] = {}
        for node in nodes:
            if node.task_id in self._nodes:
                raise ValueError(f"Duplicate task id {node.task_id!r}")
            self._nodes[node.task_id] = node

        # Reverse edges, hard and soft
        self._dependents: dict[str, list[str]] = {tid: [] for tid in self._nodes}
        self._hard_dependents: dict[str, list[str]] = {tid: [] for tid in self._nodes}
        for node in nodes:
            for dep in [*node.requires, *node.after]:
                if dep not in self._nodes:
                    raise ValueError(f"Task {node.task_id!r} depends on unknown task {dep!r}")
                self._dependents[dep].append(node.task_id)
            for dep in node.requires:
                self._hard_dependents[dep].append(node.task_id)
                if self._nodes[dep].optional and not node.optional:
                    raise ValueError(
                        f"Required task {node.task_id!r} cannot require optional "
                        f"task {dep!r}; use an 'after' edge"
                    )

        self._order = self._topological_order()

    def _topological_order(self) -> list[str]:
        """Kahn's algorithm, ties broken by phase then task id."""
        in_degree = {
            tid: len(n.requires) + len(n.after) for tid, n in self._nodes.items()
        }
        key = lambda tid: (self._nodes[tid].ordinal, tid)  # noqa: E731
        queue = deque(sorted((t for t, d in in_degree.items() if d == 0), key=key))
        order: list[str] = []
        while queue:
            tid = queue.popleft()
            order.append(tid)
            for dep in sorted(self._dependents[tid], key=key):
                in_degree[dep] -= 1
                if in_degree[dep] == 0:
                    queue.append(dep)
        if len(order) != len(self._nodes):
            raise CyclicDependencyError(
                f"Task graph has a cycle. Visited {len(order)}/{len(self._nodes)} tasks."
            )
        return order

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    @property
    def task_ids(self) -> list[str]:
        """All task ids in topological order."""
        return list(self._order)

    def node(self, task_id: str) -> TaskNode:
        return self._nodes[task_id]

    def __len__(self) -> int:
        return len(self._nodes)

    def get_dependents(self, task_id: str) -> list[str]:
        """Transitive hard dependents (BFS over ``requires`` edges)."""
        result: list[str] = []
        queue = deque(self._hard_dependents.get(task_id, []))
        visited: set[str] = set()
        while queue:
            tid = queue.popleft()
            if tid in visited:
                continue
            visited.add(tid)
            result.append(tid)
            queue.extend(self._hard_dependents.get(tid, []))
        return result

    def is_ready(self, task_id: str, states: Mapping[str, TaskState]) -> bool:
        node = self._nodes[task_id]
        return all(states[r] == TaskState.PASSED for r in node.requires) and all(
            states[a] in _TERMINAL for a in node.after
        )

    def is_blocked(self, task_id: str, states: Mapping[str, TaskState]) -> bool:
        node = self._nodes[task_id]
        return any(
            states[r] in (TaskState.FAILED, TaskState.SKIPPED, TaskState.CANCELLED)
            for r in node.requires
        )

    def lowest_unfinished_phase(
        self, states: Mapping[str, TaskState]
    ) -> PipelineState | None:
        pending = [self._nodes[t] for t, s in states.items() if s not in _TERMINAL]
        if not pending:
            return None
        return min(pending, key=lambda n: n.ordinal).phase


class ScheduleResult(BaseModel):
    """Outcome of one scheduler run that did not hit a fatal error."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    states: dict[str, TaskState]
    results: dict[str, Any] = Field(default_factory=dict)
    # Tolerated failures of optional tasks, by task id
    failures: dict[str, BaseException] = Field(default_factory=dict)

    def skipped(self) -> list[str]:
        return [t for t, s in self.states.items() if s == TaskState.SKIPPED]


class TaskScheduler:
    """Runs a TaskGraph on a bounded worker pool.

    Parameters
    ----------
    max_workers:
        Upper bound on concurrently running tasks.
    cancel_event:
        Shared event set when a required task fails. Handlers that run long
        (builders) watch it and stop early.
    on_progress:
        Called with the lowest phase that still has unfinished tasks. The
        value never decreases over one run.
    on_task:
        Called as ``on_task(task_id, old_state, new_state, detail)`` for every
        task state change. Always invoked from the dispatching thread.
    """

    def __init__(
        self,
        max_workers: int = 4,
        *,
        cancel_event: threading.Event | None = None,
        on_progress: Callable[[PipelineState], Any] | None = None,
        on_task: Callable[[str, TaskState, TaskState, dict[str, Any]], Any] | None = None,
    ) -> None:
        self._max_workers = max(1, max_workers)
        self.cancel_event = cancel_event or threading.Event()
        self._on_progress = on_progress
        self._on_task = on_task

    def _set(
        self,
        states: dict[str, TaskState],
        task_id: str,
        new: TaskState,
        detail: dict[str, Any] | None = None,
    ) -> None:
        old = states[task_id]
        states[task_id] = new
        if self._on_task:
            self._on_task(task_id, old, new, detail or {})

    def run(
        self, graph: TaskGraph, handlers: Mapping[str, Callable[[], Any]]
    ) -> ScheduleResult:
        """Execute every task of ``graph``.

        Returns a ScheduleResult when all required tasks passed. Raises the
        first fatal error otherwise, after running siblings have finished.
        """
        missing = [t for t in graph.task_ids if t not in handlers]
        if missing:
            raise ValueError(f"No handler for tasks: {missing}")

        states = {tid: TaskState.NOT_STARTED for tid in graph.task_ids}
        results: dict[str, Any] = {}
        failures: dict[str, BaseException] = {}
        running: dict[Future, str] = {}
        fatal: BaseException | None = None

        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            while True:
                if fatal is None:
                    for tid in graph.task_ids:
                        if states[tid] != TaskState.NOT_STARTED:
                            continue
                        if graph.is_blocked(tid, states):
                            self._set(states, tid, TaskState.SKIPPED, {"reason": "prerequisite failed"})
                        elif graph.is_ready(tid, states):
                            self._set(states, tid, TaskState.RUNNING)
                            running[pool.submit(handlers[tid])] = tid
                    self._report_progress(graph, states)

                if not running:
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    tid = running.pop(future)
                    if future.cancelled():
                        self._set(states, tid, TaskState.CANCELLED)
                        continue
                    exc = future.exception()
                    if exc is None:
                        results[tid] = future.result()
                        self._set(states, tid, TaskState.PASSED)
                        continue
                    if isinstance(exc, PipelineCancelled) and fatal is not None:
                        self._set(states, tid, TaskState.CANCELLED)
                        continue

                    detail = {"kind": type(exc).__name__, "message": str(exc)}
                    self._set(states, tid, TaskState.FAILED, detail)
                    tolerated = graph.node(tid).optional and not getattr(
                        exc, "fatal_for_optional", True
                    )
                    if tolerated:
                        logger.warning("Optional task %s failed: %s", tid, exc)
                        failures[tid] = exc
                    elif fatal is None:
                        logger.error("Task %s failed: %s", tid, exc)
                        fatal = exc
                        self.cancel_event.set()
                        for pending, pending_id in list(running.items()):
                            if pending.cancel():
                                running.pop(pending)
                                self._set(states, pending_id, TaskState.CANCELLED)

        if fatal is not None:
            for tid, state in states.items():
                if state == TaskState.NOT_STARTED:
                    self._set(states, tid, TaskState.CANCELLED)
            raise fatal
        return ScheduleResult(states=states, results=results, failures=failures)

    def _report_progress(
        self, graph: TaskGraph, states: Mapping[str, TaskState]
    ) -> None:
        if self._on_progress is None:
            return
        phase = graph.lowest_unfinished_phase(states)
        if phase is not None:
            self._on_progress(phase)
