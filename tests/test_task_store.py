"""Tests for task CRUD and the task state machine (tasks.py)."""

from __future__ import annotations

import pytest

from kanban_engine.board import BoardState
from kanban_engine.config import EngineConfig
from kanban_engine.errors import Forbidden, InvalidTransition, NoOpTransition, NotFound, ValidationError
from kanban_engine.model import Column, Priority, TaskState
from kanban_engine.policy import Actor
from kanban_engine.tasks import TaskStore


@pytest.fixture
def store(state: BoardState) -> TaskStore:
    return TaskStore(state)


class TestCreate:
    def test_create(self, store: TaskStore, architect: Actor) -> None:
        task = store.create_task(architect, "  Write parser  ", "details", "high", assignee="agent-1")
        assert task.title == "Write parser"
        assert task.priority == Priority.HIGH
        assert task.assignee == "agent-1"
        assert task.state == TaskState.BACKLOG
        assert store.state.tasks.get(task.id) is task

    def test_worker_cannot_create(self, store: TaskStore, worker: Actor) -> None:
        with pytest.raises(Forbidden):
            store.create_task(worker, "Nope")

    @pytest.mark.parametrize("title", ["", "   ", "x" * 201])
    def test_invalid_title(self, store: TaskStore, architect: Actor, title: str) -> None:
        with pytest.raises(ValidationError):
            store.create_task(architect, title)
        assert len(store.state.tasks) == 0

    def test_invalid_priority(self, store: TaskStore, architect: Actor) -> None:
        with pytest.raises(ValidationError, match="priority"):
            store.create_task(architect, "Task", priority="urgent")

    def test_default_max_iterations_from_config(self, state: BoardState, architect: Actor) -> None:
        store = TaskStore(state, EngineConfig(task_max_iterations=7))
        assert store.create_task(architect, "Task").max_iterations == 7
        assert store.create_task(architect, "Task", max_iterations=2).max_iterations == 2

    def test_acceptance_criteria_from_mapping(self, store: TaskStore, architect: Actor) -> None:
        task = store.create_task(
            architect,
            "Task",
            acceptance_criteria={"description": "green build", "verification_steps": ["pytest"], "check_command": "make test"},
        )
        assert task.acceptance_criteria is not None
        assert task.acceptance_criteria.verification_steps == ["pytest"]
        assert task.acceptance_criteria.check_command == "make test"


class TestMove:
    def test_worker_starts_own_task(self, store: TaskStore, architect: Actor, worker: Actor) -> None:
        task = store.create_task(architect, "Task", assignee=worker.agent_id)
        moved, previous = store.move_task(worker, task.id, "in_progress")
        assert previous == TaskState.BACKLOG
        assert moved.state == TaskState.IN_PROGRESS

    def test_worker_cannot_move_other_task(self, store: TaskStore, architect: Actor, worker: Actor) -> None:
        task = store.create_task(architect, "Task", assignee="agent-2")
        with pytest.raises(Forbidden):
            store.move_task(worker, task.id, "in_progress")

    def test_worker_done_submits_for_review(self, store: TaskStore, architect: Actor, worker: Actor) -> None:
        task = store.create_task(architect, "Task", assignee=worker.agent_id)
        task.qa_feedback = "old feedback"
        store.move_task(worker, task.id, "in_progress")
        store.move_task(worker, task.id, "done")
        assert task.state == TaskState.AWAITING_REVIEW
        assert task.column == Column.DONE
        assert task.pending_qa is True
        assert task.qa_feedback is None

    def test_worker_done_twice_is_noop(self, store: TaskStore, architect: Actor, worker: Actor) -> None:
        task = store.create_task(architect, "Task", assignee=worker.agent_id)
        store.move_task(worker, task.id, "in_progress")
        store.move_task(worker, task.id, "done")
        with pytest.raises(NoOpTransition):
            store.move_task(worker, task.id, "done")

    def test_worker_cannot_pull_back_from_review(self, store: TaskStore, architect: Actor, worker: Actor) -> None:
        task = store.create_task(architect, "Task", assignee=worker.agent_id)
        store.move_task(worker, task.id, "in_progress")
        store.move_task(worker, task.id, "done")
        with pytest.raises(InvalidTransition):
            store.move_task(worker, task.id, "in_progress")

    def test_privileged_done_completes(self, store: TaskStore, architect: Actor) -> None:
        task = store.create_task(architect, "Task")
        store.move_task(architect, task.id, Column.DONE)
        assert task.state == TaskState.DONE
        assert task.pending_qa is False
        assert task.completed_at is not None

    def test_moving_out_of_done_clears_completion(self, store: TaskStore, architect: Actor) -> None:
        task = store.create_task(architect, "Task")
        store.move_task(architect, task.id, "done")
        store.move_task(architect, task.id, "backlog")
        assert task.completed_at is None
        assert task.column == Column.BACKLOG

    def test_same_column_is_noop(self, store: TaskStore, architect: Actor) -> None:
        task = store.create_task(architect, "Task")
        with pytest.raises(NoOpTransition):
            store.move_task(architect, task.id, "backlog")

    def test_unknown_task(self, store: TaskStore, architect: Actor) -> None:
        with pytest.raises(NotFound):
            store.move_task(architect, "task-missing", "done")

    def test_pending_qa_only_in_done_column(self, store: TaskStore, architect: Actor, worker: Actor, qa: Actor) -> None:
        task = store.create_task(architect, "Task", assignee=worker.agent_id)
        steps = [
            (worker, "in_progress"),
            (worker, "blocked"),
            (worker, "in_progress"),
            (worker, "done"),
            (qa, "in_progress"),
            (worker, "done"),
            (qa, "done"),
            (architect, "blocked"),
        ]
        for actor, column in steps:
            store.move_task(actor, task.id, column)
            if task.pending_qa:
                assert task.column == Column.DONE
        assert task.state == TaskState.BLOCKED


class TestReadAndUpdate:
    def test_worker_only_sees_own_tasks(self, store: TaskStore, architect: Actor, worker: Actor) -> None:
        mine = store.create_task(architect, "Mine", assignee=worker.agent_id)
        store.create_task(architect, "Theirs", assignee="agent-2")
        assert [t.id for t in store.list_tasks(worker)] == [mine.id]
        assert store.list_tasks(worker, assignee="agent-2") == []
        assert len(store.list_tasks(architect)) == 2

    def test_worker_cannot_get_other_task(self, store: TaskStore, architect: Actor, worker: Actor) -> None:
        task = store.create_task(architect, "Theirs", assignee="agent-2")
        with pytest.raises(Forbidden):
            store.get_task(worker, task.id)

    def test_filters(self, store: TaskStore, architect: Actor) -> None:
        a = store.create_task(architect, "Parser work", priority="high")
        b = store.create_task(architect, "Docs")
        store.move_task(architect, b.id, "done")
        assert [t.id for t in store.list_tasks(architect, search="parser")] == [a.id]
        assert [t.id for t in store.list_tasks(architect, column="done")] == [b.id]
        assert [t.id for t in store.list_tasks(architect, priority="high")] == [a.id]

    def test_worker_updates_title(self, store: TaskStore, architect: Actor, worker: Actor) -> None:
        task = store.create_task(architect, "Old", assignee=worker.agent_id)
        store.update_task(worker, task.id, {"title": "New"})
        assert task.title == "New"

    def test_worker_cannot_change_priority(self, store: TaskStore, architect: Actor, worker: Actor) -> None:
        task = store.create_task(architect, "Task", assignee=worker.agent_id)
        with pytest.raises(ValidationError, match="priority"):
            store.update_task(worker, task.id, {"priority": "critical"})

    def test_empty_update(self, store: TaskStore, architect: Actor) -> None:
        task = store.create_task(architect, "Task")
        with pytest.raises(ValidationError, match="No updates"):
            store.update_task(architect, task.id, {})

    def test_invalid_update_leaves_task_alone(self, store: TaskStore, architect: Actor) -> None:
        task = store.create_task(architect, "Task")
        with pytest.raises(ValidationError):
            store.update_task(architect, task.id, {"title": "Renamed", "max_iterations": 0})
        assert task.title == "Task"
        assert task.max_iterations == 3

    def test_assign_and_unassign(self, store: TaskStore, architect: Actor) -> None:
        task = store.create_task(architect, "Task")
        _, previous = store.assign_task(architect, task.id, "agent-1")
        assert previous is None
        _, previous = store.assign_task(architect, task.id, None)
        assert previous == "agent-1"
        assert task.assignee is None

    def test_worker_cannot_assign(self, store: TaskStore, architect: Actor, worker: Actor) -> None:
        task = store.create_task(architect, "Task", assignee=worker.agent_id)
        with pytest.raises(Forbidden):
            store.assign_task(worker, task.id, "agent-2")


class TestDeleteAndStats:
    def test_delete_detaches_dependencies(self, store: TaskStore, architect: Actor) -> None:
        a = store.create_task(architect, "A")
        b = store.create_task(architect, "B")
        store.graph.add_dependency(b.id, a.id)
        store.delete_task(architect, a.id)
        assert a.id not in store.state.tasks
        assert b.depends_on == []

    def test_stats(self, store: TaskStore, architect: Actor, worker: Actor) -> None:
        store.create_task(architect, "A", priority="critical")
        b = store.create_task(architect, "B", assignee=worker.agent_id)
        store.move_task(worker, b.id, "in_progress")
        store.move_task(worker, b.id, "done")
        stats = store.stats()
        assert stats["total"] == 2
        assert stats["by_column"] == {"backlog": 1, "in_progress": 0, "blocked": 0, "done": 1}
        assert stats["by_priority"]["critical"] == 1
        assert stats["unassigned"] == 1
        assert stats["pending_qa"] == 1
        assert stats["needs_refill"] is True

    def test_board_groups_by_column(self, store: TaskStore, architect: Actor) -> None:
        low = store.create_task(architect, "Low", priority="low")
        crit = store.create_task(architect, "Crit", priority="critical")
        board = store.board()
        assert [t.id for t in board["backlog"]] == [crit.id, low.id]
        assert board["done"] == []
