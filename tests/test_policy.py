"""Tests for roles, actions and transition rules (policy.py)."""

from __future__ import annotations

import pytest

from kanban_engine.errors import Forbidden, InvalidTransition, NoOpTransition, ValidationError
from kanban_engine.model import Column, Task, TaskState
from kanban_engine.policy import Action, Actor, Role, authorize, can_transition, check_transition, target_state_for


class TestActor:
    def test_worker_requires_agent_id(self) -> None:
        with pytest.raises(ValidationError):
            Actor(Role.WORKER)

    def test_labels(self) -> None:
        assert Actor.worker("a1").label == "worker:a1"
        assert Actor.privileged().label == "privileged"


class TestTransitionTable:
    @pytest.mark.parametrize(
        "role,from_state,to_state,expected",
        [
            (Role.WORKER, TaskState.BACKLOG, TaskState.IN_PROGRESS, True),
            (Role.WORKER, TaskState.IN_PROGRESS, TaskState.BLOCKED, True),
            (Role.WORKER, TaskState.BLOCKED, TaskState.IN_PROGRESS, True),
            (Role.WORKER, TaskState.IN_PROGRESS, TaskState.AWAITING_REVIEW, True),
            (Role.WORKER, TaskState.IN_PROGRESS, TaskState.DONE, False),
            (Role.WORKER, TaskState.AWAITING_REVIEW, TaskState.IN_PROGRESS, False),
            (Role.REVIEWER, TaskState.AWAITING_REVIEW, TaskState.DONE, True),
            (Role.REVIEWER, TaskState.AWAITING_REVIEW, TaskState.IN_PROGRESS, True),
            (Role.REVIEWER, TaskState.BACKLOG, TaskState.IN_PROGRESS, False),
            (Role.PRIVILEGED, TaskState.BACKLOG, TaskState.DONE, True),
            (Role.PRIVILEGED, TaskState.DONE, TaskState.BACKLOG, True),
            (Role.PRIVILEGED, TaskState.IN_PROGRESS, TaskState.AWAITING_REVIEW, False),
        ],
    )
    def test_can_transition(self, role: Role, from_state: TaskState, to_state: TaskState, expected: bool) -> None:
        assert can_transition(role, from_state, to_state) is expected

    def test_no_self_transitions(self) -> None:
        for role in Role:
            for state in TaskState:
                assert not can_transition(role, state, state)


class TestTargetState:
    def test_worker_done_means_review(self) -> None:
        assert target_state_for(Actor.worker("a"), "done") == TaskState.AWAITING_REVIEW

    def test_privileged_done_completes(self) -> None:
        assert target_state_for(Actor.privileged(), Column.DONE) == TaskState.DONE

    def test_awaiting_review_is_not_a_column(self) -> None:
        with pytest.raises(ValidationError):
            target_state_for(Actor.privileged(), "awaiting_review")

    def test_unknown_column(self) -> None:
        with pytest.raises(ValidationError, match="Unknown column"):
            target_state_for(Actor.privileged(), "archive")


class TestAuthorize:
    def test_worker_on_own_task(self) -> None:
        authorize(Actor.worker("a1"), Action.MOVE_TASK, Task(title="x", assignee="a1"))

    def test_worker_on_other_task(self) -> None:
        task = Task(title="x", assignee="a2")
        with pytest.raises(Forbidden) as exc:
            authorize(Actor.worker("a1"), Action.MOVE_TASK, task)
        assert exc.value.ids == [task.id]
        assert exc.value.to_dict()["kind"] == "forbidden"

    def test_worker_cannot_create(self) -> None:
        with pytest.raises(Forbidden):
            authorize(Actor.worker("a1"), Action.CREATE_TASK)

    def test_reviewer_cannot_work_iterations(self) -> None:
        with pytest.raises(Forbidden):
            authorize(Actor.reviewer(), Action.WORK_ITERATION, Task(title="x"))

    def test_privileged_does_not_review(self) -> None:
        with pytest.raises(Forbidden):
            authorize(Actor.privileged(), Action.REVIEW, Task(title="x"))

    def test_reviewer_sees_any_task(self) -> None:
        authorize(Actor.reviewer(), Action.VIEW_TASK, Task(title="x", assignee="a2"))


class TestCheckTransition:
    def test_no_op(self) -> None:
        task = Task(title="x", state=TaskState.BLOCKED)
        with pytest.raises(NoOpTransition) as exc:
            check_transition(Actor.privileged(), task, TaskState.BLOCKED)
        assert isinstance(exc.value, InvalidTransition)

    def test_illegal_for_role(self) -> None:
        task = Task(title="x", state=TaskState.BACKLOG, assignee="a1")
        with pytest.raises(InvalidTransition, match="cannot move"):
            check_transition(Actor.worker("a1"), task, TaskState.BLOCKED)
