"""Task records and the task state machine.

:class:`TaskStore` is the only component that creates, edits or deletes
tasks.  Who may move a task where is decided by :mod:`kanban_engine.policy`;
this module applies the result.
"""

from __future__ import annotations

from typing import Any, Optional

from loguru import logger

from .board import BoardState
from .config import EngineConfig
from .errors import NotFound, ValidationError
from .graph import DependencyGraph
from .model import AcceptanceCriteria, Column, IterationOutcome, Priority, Task, TaskState
from .policy import Action, Actor, Role, authorize, check_transition, target_state_for

# Fields each role may change through update_task.
_UPDATABLE_FIELDS: dict[Role, set[str]] = {
    Role.PRIVILEGED: {"title", "description", "priority", "acceptance_criteria", "max_iterations", "metadata"},
    Role.WORKER: {"title", "description"},
    Role.REVIEWER: set(),
}

_WORKING_STATES = (TaskState.BACKLOG, TaskState.IN_PROGRESS, TaskState.BLOCKED)


def _coerce_criteria(raw: Any) -> Optional[AcceptanceCriteria]:
    if raw is None or isinstance(raw, AcceptanceCriteria):
        return raw
    if isinstance(raw, dict):
        return AcceptanceCriteria.from_dict(raw)
    raise ValidationError("'acceptance_criteria' must be a mapping")


class TaskStore:
    """CRUD and column moves for tasks on a :class:`BoardState`."""

    def __init__(self, state: BoardState, config: Optional[EngineConfig] = None) -> None:
        self.state = state
        self.config = config or EngineConfig()
        self.graph = DependencyGraph(state)

    def require(self, task_id: str) -> Task:
        task = self.state.tasks.get(task_id)
        if task is None:
            raise NotFound(f"Task not found: {task_id}", ids=[task_id])
        return task

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_task(
        self,
        actor: Actor,
        title: str,
        description: str = "",
        priority: str | Priority = Priority.MEDIUM,
        *,
        assignee: Optional[str] = None,
        acceptance_criteria: Any = None,
        max_iterations: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Task:
        authorize(actor, Action.CREATE_TASK)
        fields = {"title": title, "description": description, "priority": priority}
        if max_iterations is not None:
            fields["max_iterations"] = max_iterations
        errors = Task.validate_dict(fields)
        if errors:
            raise ValidationError("; ".join(errors))
        task = Task(
            title=title.strip(),
            description=description or "",
            priority=Priority(priority),
            assignee=assignee or None,
            acceptance_criteria=_coerce_criteria(acceptance_criteria),
            max_iterations=max_iterations or self.config.task_max_iterations,
            metadata=dict(metadata or {}),
        )
        self.state.tasks.upsert(task)
        logger.info("Created task {}: {}", task.id, task.title)
        return task

    def get_task(self, actor: Actor, task_id: str) -> Task:
        task = self.require(task_id)
        authorize(actor, Action.VIEW_TASK, task)
        return task

    def list_tasks(
        self,
        actor: Actor,
        *,
        column: Optional[str] = None,
        state: Optional[str] = None,
        assignee: Optional[str] = None,
        priority: Optional[str] = None,
        sprint_id: Optional[str] = None,
        pending_qa: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> list[Task]:
        """List tasks matching every given filter.

        Workers only ever see the tasks assigned to themselves.
        """
        authorize(actor, Action.VIEW_TASK)
        if actor.role is Role.WORKER:
            if assignee and assignee != actor.agent_id:
                return []
            assignee = actor.agent_id
        return self.state.find_tasks(
            column=column,
            state=state,
            assignee=assignee,
            priority=priority,
            sprint_id=sprint_id,
            pending_qa=pending_qa,
            search=search,
        )

    def update_task(self, actor: Actor, task_id: str, changes: dict[str, Any]) -> Task:
        """Apply partial updates to a task and return it."""
        task = self.require(task_id)
        authorize(actor, Action.UPDATE_TASK, task)
        if not changes:
            raise ValidationError("No updates provided", ids=[task_id])
        allowed = _UPDATABLE_FIELDS[actor.role]
        rejected = sorted(set(changes) - allowed)
        if rejected:
            raise ValidationError(
                f"Role '{actor.role.value}' cannot update fields: {', '.join(rejected)}",
                ids=[task_id],
            )
        errors = Task.validate_dict(changes)
        if errors:
            raise ValidationError("; ".join(errors), ids=[task_id])
        criteria = _coerce_criteria(changes["acceptance_criteria"]) if "acceptance_criteria" in changes else None

        if "title" in changes:
            task.title = str(changes["title"]).strip()
        if "description" in changes:
            task.description = changes["description"] or ""
        if "priority" in changes:
            task.priority = Priority(changes["priority"])
        if "acceptance_criteria" in changes:
            task.acceptance_criteria = criteria
        if "max_iterations" in changes:
            task.max_iterations = changes["max_iterations"]
        if "metadata" in changes:
            task.metadata = dict(changes["metadata"] or {})
        task.touch()
        logger.info("Updated task {} fields {}", task.id, sorted(changes))
        return task

    def assign_task(self, actor: Actor, task_id: str, assignee: Optional[str]) -> tuple[Task, Optional[str]]:
        """Assign *task_id* to *assignee* (``None`` unassigns).

        Returns:
            The task and the previous assignee.
        """
        task = self.require(task_id)
        authorize(actor, Action.ASSIGN_TASK, task)
        if assignee is not None and not str(assignee).strip():
            raise ValidationError("assignee must be a non-empty agent id or None", ids=[task_id])
        previous = task.assignee
        task.assignee = assignee.strip() if assignee else None
        task.touch()
        logger.info("Task {} assigned to {} (was {})", task.id, task.assignee, previous)
        return task, previous

    def delete_task(self, actor: Actor, task_id: str) -> Task:
        """Remove a task and every dependency edge that points at it."""
        task = self.require(task_id)
        authorize(actor, Action.DELETE_TASK, task)
        touched = self.graph.detach(task_id)
        self.state.tasks.delete(task_id)
        logger.info("Deleted task {} (detached from {})", task_id, touched or "no tasks")
        return task

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def move_task(self, actor: Actor, task_id: str, column: Column | str) -> tuple[Task, TaskState]:
        """Move a task to *column* on behalf of *actor*.

        A worker moving its task to ``done`` submits it for review; the
        reviewer (or a privileged caller) completes it.

        Returns:
            The task and the state it was in before the move.

        Raises:
            NoOpTransition: The task is already in the requested state.
            InvalidTransition: The role may not make this move.
        """
        task = self.require(task_id)
        authorize(actor, Action.MOVE_TASK, task)
        target = target_state_for(actor, column)
        check_transition(actor, task, target)
        previous = self.apply_state(task, target)
        if target in _WORKING_STATES:
            self._withdraw_submission(task, actor)
        return task, previous

    @staticmethod
    def _withdraw_submission(task: Task, actor: Actor) -> None:
        """Close a submission nobody reviewed once its task is reopened."""
        entry = task.latest_entry
        if entry is None or entry.outcome is not IterationOutcome.SUBMITTED:
            return
        entry.outcome = IterationOutcome.WITHDRAWN
        entry.reviewer_notes = f"Reopened by {actor.label}"
        logger.info("Withdrew unreviewed iteration {} on {}", entry.iteration, task.id)

    def apply_state(self, task: Task, target: TaskState) -> TaskState:
        """Put *task* in *target* with the side effects of entering that state.

        Callers have already checked the move is legal.
        """
        previous = task.state
        if target is TaskState.AWAITING_REVIEW:
            task.qa_feedback = None
        task.transition(target)
        logger.info("Task {} moved {} -> {}", task.id, previous.value, target.value)
        return previous

    def set_sprint(self, task_id: str, sprint_id: Optional[str]) -> Task:
        task = self.require(task_id)
        task.sprint_id = sprint_id
        task.touch()
        return task

    # ------------------------------------------------------------------
    # Board view
    # ------------------------------------------------------------------

    def board(self) -> dict[str, list[Task]]:
        """Tasks grouped by column, sorted by priority then creation time."""
        columns: dict[str, list[Task]] = {c.value: [] for c in Column}
        for t in self.state.tasks:
            columns[t.column.value].append(t)
        for col_tasks in columns.values():
            col_tasks.sort(key=lambda t: (t.priority.sort_key, t.created_at))
        return columns

    def stats(self) -> dict[str, Any]:
        tasks = self.state.tasks.list()
        by_column = {c.value: 0 for c in Column}
        by_priority = {p.value: 0 for p in Priority}
        for t in tasks:
            by_column[t.column.value] += 1
            by_priority[t.priority.value] += 1
        return {
            "total": len(tasks),
            "by_column": by_column,
            "by_priority": by_priority,
            "unassigned": sum(1 for t in tasks if not t.assignee),
            "pending_qa": sum(1 for t in tasks if t.pending_qa),
            "needs_refill": by_column[Column.BACKLOG.value] < self.config.health.low_backlog_threshold,
        }
