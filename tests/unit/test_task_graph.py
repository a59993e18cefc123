"""Tests for the TaskGraph and the bounded TaskScheduler."""

from __future__ import annotations

import threading
import time

import pytest

from pinforge.core.errors import (
    ComponentBuildFailed,
    IntegrityMismatch,
    PipelineCancelled,
)
from pinforge.core.task_graph import CyclicDependencyError, TaskGraph, TaskScheduler
from pinforge.models.stages import PipelineState, TaskNode, TaskState

_F = PipelineState.FETCHING
_B = PipelineState.BUILDING
_A = PipelineState.ASSEMBLING


def _node(task_id, phase=_B, requires=(), after=(), optional=False) -> TaskNode:
    return TaskNode(
        task_id=task_id,
        phase=phase,
        requires=list(requires),
        after=list(after),
        optional=optional,
    )


def _ok(value=None):
    return lambda: value


def _raise(exc):
    def _handler():
        raise exc

    return _handler


class TestTaskGraph:
    def test_topological_order(self):
        graph = TaskGraph(
            [
                _node("assemble", _A, requires=["build:a"]),
                _node("build:a", requires=["fetch:a"]),
                _node("fetch:a", _F),
            ]
        )
        assert graph.task_ids == ["fetch:a", "build:a", "assemble"]

    def test_ties_broken_by_phase_then_id(self):
        graph = TaskGraph([_node("b", _B), _node("z", _F), _node("a", _B)])
        assert graph.task_ids == ["z", "a", "b"]

    def test_cycle_detected(self):
        with pytest.raises(CyclicDependencyError):
            TaskGraph([_node("a", requires=["b"]), _node("b", requires=["a"])])

    def test_unknown_edge_rejected(self):
        with pytest.raises(ValueError, match="unknown task"):
            TaskGraph([_node("a", requires=["ghost"])])

    def test_duplicate_id_rejected(self):
        with pytest.raises(ValueError, match="Duplicate"):
            TaskGraph([_node("a"), _node("a")])

    def test_required_cannot_require_optional(self):
        with pytest.raises(ValueError, match="after"):
            TaskGraph([_node("ext", optional=True), _node("assemble", _A, requires=["ext"])])

    def test_transitive_dependents(self):
        graph = TaskGraph(
            [
                _node("fetch", _F),
                _node("build", requires=["fetch"]),
                _node("assemble", _A, requires=["build"]),
                _node("other", _F),
            ]
        )
        assert graph.get_dependents("fetch") == ["build", "assemble"]


class TestScheduler:
    def test_all_pass(self):
        graph = TaskGraph([_node("fetch", _F), _node("build", requires=["fetch"])])
        result = TaskScheduler(2).run(graph, {"fetch": _ok(1), "build": _ok(2)})
        assert result.results == {"fetch": 1, "build": 2}
        assert set(result.states.values()) == {TaskState.PASSED}

    def test_missing_handler_rejected(self):
        graph = TaskGraph([_node("fetch", _F)])
        with pytest.raises(ValueError, match="No handler"):
            TaskScheduler().run(graph, {})

    def test_requires_waits_for_pass(self):
        order: list[str] = []

        def _slow():
            time.sleep(0.05)
            order.append("fetch")

        graph = TaskGraph([_node("fetch", _F), _node("build", requires=["fetch"])])
        TaskScheduler(4).run(graph, {"fetch": _slow, "build": lambda: order.append("build")})
        assert order == ["fetch", "build"]

    def test_bounded_concurrency(self):
        lock = threading.Lock()
        active = [0]
        peak = [0]

        def _work():
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            time.sleep(0.02)
            with lock:
                active[0] -= 1

        nodes = [_node(f"t{i}") for i in range(8)]
        TaskScheduler(2).run(TaskGraph(nodes), {n.task_id: _work for n in nodes})
        assert peak[0] <= 2

    def test_optional_failure_skips_only_its_chain(self):
        graph = TaskGraph(
            [
                _node("build:ext", optional=True),
                _node("install:ext", _A, requires=["build:ext"], optional=True),
                _node("build:core"),
                _node("assemble", _A, requires=["build:core"], after=["build:ext"]),
            ]
        )
        handlers = {
            "build:ext": _raise(ComponentBuildFailed("make failed", subject="ext")),
            "install:ext": _ok(),
            "build:core": _ok("core"),
            "assemble": _ok("tree"),
        }
        result = TaskScheduler(2).run(graph, handlers)
        assert result.states["build:ext"] == TaskState.FAILED
        assert result.states["install:ext"] == TaskState.SKIPPED
        assert result.states["assemble"] == TaskState.PASSED
        assert result.skipped() == ["install:ext"]
        assert isinstance(result.failures["build:ext"], ComponentBuildFailed)

    def test_integrity_failure_fatal_even_when_optional(self):
        graph = TaskGraph([_node("fetch:ext", _F, optional=True), _node("build:core")])
        handlers = {
            "fetch:ext": _raise(IntegrityMismatch("bad", subject="ext")),
            "build:core": _ok(),
        }
        with pytest.raises(IntegrityMismatch):
            TaskScheduler(1).run(graph, handlers)

    def test_required_failure_cancels_and_raises(self):
        cancel = threading.Event()
        states: dict[str, TaskState] = {}

        def _long():
            if not cancel.wait(timeout=5):
                return "finished"
            raise PipelineCancelled("stopped", subject="build:b")

        graph = TaskGraph(
            [
                _node("build:a"),
                _node("build:b"),
                _node("build:c"),
                _node("assemble", _A, requires=["build:a", "build:b", "build:c"]),
            ]
        )
        handlers = {
            "build:a": _raise(ComponentBuildFailed("boom", subject="a")),
            "build:b": _long,
            "build:c": _long,
            "assemble": _ok(),
        }
        scheduler = TaskScheduler(
            2,
            cancel_event=cancel,
            on_task=lambda tid, old, new, detail: states.__setitem__(tid, new),
        )
        with pytest.raises(ComponentBuildFailed):
            scheduler.run(graph, handlers)
        assert cancel.is_set()
        assert states["build:a"] == TaskState.FAILED
        assert states["assemble"] == TaskState.CANCELLED
        assert TaskState.PASSED not in states.values()

    def test_on_task_reports_transitions(self):
        seen: list[tuple[str, TaskState, TaskState]] = []
        graph = TaskGraph([_node("fetch", _F)])
        TaskScheduler(
            on_task=lambda tid, old, new, detail: seen.append((tid, old, new))
        ).run(graph, {"fetch": _ok()})
        assert seen == [
            ("fetch", TaskState.NOT_STARTED, TaskState.RUNNING),
            ("fetch", TaskState.RUNNING, TaskState.PASSED),
        ]

    def test_progress_never_decreases(self):
        reported: list[PipelineState] = []
        graph = TaskGraph(
            [
                _node("fetch:a", _F),
                _node("fetch:b", _F),
                _node("build:a", _B, requires=["fetch:a"]),
                _node("assemble", _A, requires=["build:a"], after=["fetch:b"]),
            ]
        )
        TaskScheduler(4, on_progress=reported.append).run(
            graph, {t: _ok() for t in graph.task_ids}
        )
        ordinals = [TaskNode(task_id="x", phase=p).ordinal for p in reported]
        assert ordinals == sorted(ordinals)
        assert reported[0] == _F
        assert reported[-1] == _A
