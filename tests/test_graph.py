"""Tests for the dependency graph (graph.py)."""

from __future__ import annotations

from typing import Callable

import pytest

from kanban_engine.board import BoardState
from kanban_engine.errors import CircularDependency, DependencyNotFound, DuplicateDependency, NotFound, SelfDependency
from kanban_engine.graph import DependencyGraph
from kanban_engine.model import Priority, Task, TaskState


@pytest.fixture
def graph(state: BoardState) -> DependencyGraph:
    return DependencyGraph(state)


class TestAddDependency:
    def test_updates_both_sides(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        a = add_task("a")
        b = add_task("b")
        graph.add_dependency("b", "a")
        assert b.depends_on == ["a"]
        assert a.blocks == ["b"]

    def test_cycle_through_chain_is_rejected(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        a, b, c = add_task("a"), add_task("b"), add_task("c")
        graph.add_dependency("a", "b")
        graph.add_dependency("b", "c")
        with pytest.raises(CircularDependency) as exc:
            graph.add_dependency("c", "a")
        assert exc.value.ids == ["c", "a"]
        # Nothing was written.
        assert c.depends_on == []
        assert a.blocks == []
        assert b.depends_on == ["c"]

    def test_self_dependency(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        add_task("a")
        with pytest.raises(SelfDependency):
            graph.add_dependency("a", "a")

    def test_duplicate(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        add_task("a")
        add_task("b")
        graph.add_dependency("b", "a")
        with pytest.raises(DuplicateDependency):
            graph.add_dependency("b", "a")

    def test_unknown_ids(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        add_task("a")
        with pytest.raises(NotFound) as exc:
            graph.add_dependency("a", "ghost")
        assert exc.value.ids == ["ghost"]

    def test_walk_tolerates_dangling_ids(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        add_task("a", depends_on=["ghost"])
        add_task("b")
        graph.add_dependency("b", "a")
        assert graph.state.tasks.get("b").depends_on == ["a"]

    def test_walk_terminates_on_corrupt_cycle(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        add_task("a", depends_on=["b"])
        add_task("b", depends_on=["a"])
        add_task("c")
        graph.add_dependency("c", "a")
        assert graph.state.tasks.get("c").depends_on == ["a"]


class TestRemoveDependency:
    def test_removes_both_sides(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        a, b = add_task("a"), add_task("b")
        graph.add_dependency("b", "a")
        graph.remove_dependency("b", "a")
        assert b.depends_on == []
        assert a.blocks == []

    def test_missing_edge(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        add_task("a")
        add_task("b")
        with pytest.raises(DependencyNotFound):
            graph.remove_dependency("b", "a")

    def test_detach(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        a, b, c = add_task("a"), add_task("b"), add_task("c")
        graph.add_dependency("b", "a")
        graph.add_dependency("c", "b")
        touched = graph.detach("b")
        assert sorted(touched) == ["a", "c"]
        assert a.blocks == []
        assert c.depends_on == []
        assert b.depends_on == [] and b.blocks == []


class TestQueries:
    def test_unresolved_dependencies(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        add_task("done", state=TaskState.DONE)
        add_task("open")
        add_task("t", depends_on=["done", "open", "ghost"])
        assert graph.unresolved_dependencies("t") == ["open", "ghost"]

    def test_dependents_and_dependencies(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        add_task("a")
        add_task("b")
        graph.add_dependency("b", "a")
        assert [t.id for t in graph.dependents("a")] == ["b"]
        assert [t.id for t in graph.dependencies("b")] == ["a"]

    def test_subgraph_follows_both_directions(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        for tid in ("a", "b", "c", "lonely"):
            add_task(tid)
        graph.add_dependency("b", "a")
        graph.add_dependency("c", "b")
        sub = graph.subgraph("b")
        assert set(sub) == {"a", "b", "c"}
        assert sub["c"] == ["b"]

    def test_execution_order(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        add_task("low", priority=Priority.LOW)
        add_task("crit", priority=Priority.CRITICAL)
        add_task("finished", state=TaskState.DONE)
        add_task("last")
        graph.add_dependency("last", "low")
        graph.add_dependency("last", "crit")
        graph.add_dependency("last", "finished")
        assert graph.execution_order() == [["crit", "low"], ["last"]]

    def test_execution_order_skips_cycles(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        add_task("a", depends_on=["b"])
        add_task("b", depends_on=["a"])
        add_task("free")
        assert graph.execution_order() == [["free"]]


class TestFindCycles:
    def test_clean_graph(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        add_task("a")
        add_task("b")
        graph.add_dependency("b", "a")
        assert graph.find_cycles() == []

    def test_two_node_cycle(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        add_task("a", depends_on=["b"])
        add_task("b", depends_on=["a"])
        cycles = graph.find_cycles()
        assert len(cycles) == 1
        assert set(cycles[0]) == {"a", "b"}

    def test_self_loop(self, graph: DependencyGraph, add_task: Callable[..., Task]) -> None:
        add_task("a", depends_on=["a"])
        assert graph.find_cycles() == [["a"]]
