"""Who may do what on the board.

All authorization rules live here: the role/action table, the per-role task
state transition table, and the "workers only touch their own tasks" rule.
The engine does not authenticate callers; it only checks that the claimed
worker identity matches the task assignment.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import Forbidden, InvalidTransition, NoOpTransition, ValidationError
from .model import Column, Task, TaskState


class Role(str, Enum):
    PRIVILEGED = "privileged"  # architect: full control
    WORKER = "worker"  # agent: own tasks only
    REVIEWER = "reviewer"  # qa: approves or rejects submissions


class Action(str, Enum):
    VIEW_TASK = "view_task"
    CREATE_TASK = "create_task"
    UPDATE_TASK = "update_task"
    ASSIGN_TASK = "assign_task"
    DELETE_TASK = "delete_task"
    MOVE_TASK = "move_task"
    MANAGE_DEPENDENCIES = "manage_dependencies"
    WORK_ITERATION = "work_iteration"
    REVIEW = "review"
    MANAGE_SPRINT = "manage_sprint"
    FORCE_COMPLETE = "force_complete"
    MANAGE_LEARNING = "manage_learning"
    MANAGE_AGENTS = "manage_agents"
    MANAGE_SESSION = "manage_session"


_ROLE_ACTIONS: dict[Role, set[Action]] = {
    Role.PRIVILEGED: set(Action) - {Action.WORK_ITERATION, Action.REVIEW},
    Role.WORKER: {
        Action.VIEW_TASK,
        Action.UPDATE_TASK,
        Action.MOVE_TASK,
        Action.MANAGE_DEPENDENCIES,
        Action.WORK_ITERATION,
        Action.MANAGE_SESSION,
    },
    Role.REVIEWER: {Action.VIEW_TASK, Action.MOVE_TASK, Action.REVIEW, Action.MANAGE_SESSION},
}

# Actions a worker may only perform on a task assigned to itself.
_ASSIGNMENT_SCOPED = {
    Action.VIEW_TASK,
    Action.UPDATE_TASK,
    Action.MOVE_TASK,
    Action.MANAGE_DEPENDENCIES,
    Action.WORK_ITERATION,
}

_ALL_STATES = set(TaskState)

_TRANSITIONS: dict[Role, dict[TaskState, set[TaskState]]] = {
    # Architects move freely but never park a task in review themselves;
    # a privileged move to "done" completes the task outright.
    Role.PRIVILEGED: {s: _ALL_STATES - {s, TaskState.AWAITING_REVIEW} for s in TaskState},
    Role.WORKER: {
        TaskState.BACKLOG: {TaskState.IN_PROGRESS},
        TaskState.IN_PROGRESS: {TaskState.BACKLOG, TaskState.BLOCKED, TaskState.AWAITING_REVIEW},
        TaskState.BLOCKED: {TaskState.IN_PROGRESS, TaskState.BACKLOG},
        TaskState.AWAITING_REVIEW: set(),
        TaskState.DONE: set(),
    },
    Role.REVIEWER: {
        TaskState.BACKLOG: set(),
        TaskState.IN_PROGRESS: set(),
        TaskState.BLOCKED: set(),
        TaskState.AWAITING_REVIEW: {TaskState.DONE, TaskState.IN_PROGRESS},
        TaskState.DONE: set(),
    },
}


@dataclass(frozen=True)
class Actor:
    """The caller of a mutating operation."""

    role: Role
    agent_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.role is Role.WORKER and not self.agent_id:
            raise ValidationError("agent_id is required for the worker role")

    @classmethod
    def privileged(cls, agent_id: Optional[str] = None) -> "Actor":
        return cls(Role.PRIVILEGED, agent_id)

    @classmethod
    def worker(cls, agent_id: str) -> "Actor":
        return cls(Role.WORKER, agent_id)

    @classmethod
    def reviewer(cls, agent_id: Optional[str] = None) -> "Actor":
        return cls(Role.REVIEWER, agent_id)

    @property
    def label(self) -> str:
        return f"{self.role.value}:{self.agent_id}" if self.agent_id else self.role.value


def can_transition(role: Role, from_state: TaskState, to_state: TaskState) -> bool:
    return to_state in _TRANSITIONS[role].get(from_state, set())


def authorize(actor: Actor, action: Action, task: Optional[Task] = None) -> None:
    """Raise :class:`Forbidden` unless *actor* may perform *action* (on *task*)."""
    if action not in _ROLE_ACTIONS[actor.role]:
        raise Forbidden(
            f"Role '{actor.role.value}' may not {action.value.replace('_', ' ')}",
            ids=[task.id] if task else None,
        )
    if task is not None and actor.role is Role.WORKER and action in _ASSIGNMENT_SCOPED:
        if task.assignee != actor.agent_id:
            raise Forbidden(
                f"Access denied: task {task.id} is not assigned to {actor.agent_id}",
                ids=[task.id],
            )


def check_transition(actor: Actor, task: Task, to_state: TaskState) -> None:
    """Validate a state change for *task* requested by *actor*."""
    if task.state is to_state:
        raise NoOpTransition(f"Task {task.id} is already {to_state.value}", ids=[task.id])
    if not can_transition(actor.role, task.state, to_state):
        raise InvalidTransition(
            f"Role '{actor.role.value}' cannot move {task.id} from {task.state.value} to {to_state.value}",
            ids=[task.id],
        )


def target_state_for(actor: Actor, column: Column | str) -> TaskState:
    """Map a requested column to the state it means for *actor*.

    A worker finishing a task only submits it for review; a privileged move
    to ``done`` completes it directly.
    """
    column_value = column.value if isinstance(column, Column) else str(column)
    try:
        state = TaskState(column_value)
    except ValueError:
        raise ValidationError(f"Unknown column '{column_value}'") from None
    if state is TaskState.AWAITING_REVIEW:
        raise ValidationError("'awaiting_review' is not a column; move the task to 'done'")
    if state is TaskState.DONE and actor.role is Role.WORKER:
        return TaskState.AWAITING_REVIEW
    return state
