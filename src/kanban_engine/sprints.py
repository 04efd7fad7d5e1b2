"""Sprint records and the sprint state machine.

A sprint moves ``planning -> executing -> reviewing`` and then either back
to ``executing`` for another iteration or on to ``complete``.  Each pass
through ``executing`` is one entry in ``iteration_history``; running out of
iterations fails the sprint.  Sprints only hold task ids; the task side of the
relation (``task.sprint_id``) is written through :class:`TaskStore`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from loguru import logger

from .board import BoardState
from .config import EngineConfig
from .errors import IncompleteTasks, InvalidTransition, MaxIterationsExceeded, NoOpTransition, NotFound, ValidationError
from .model import (
    AcceptanceCriteria,
    IterationLogEntry,
    IterationOutcome,
    Sprint,
    SprintIteration,
    SprintStatus,
    TaskState,
    _coerce_enum,
)
from .policy import Action, Actor, authorize
from .tasks import TaskStore
from .utils import _now_iso, _parse_iso, _unique

_SPRINT_TRANSITIONS: dict[SprintStatus, set[SprintStatus]] = {
    SprintStatus.PLANNING: {SprintStatus.EXECUTING, SprintStatus.COMPLETE, SprintStatus.FAILED},
    SprintStatus.EXECUTING: {SprintStatus.REVIEWING, SprintStatus.COMPLETE, SprintStatus.FAILED},
    SprintStatus.REVIEWING: {SprintStatus.EXECUTING, SprintStatus.COMPLETE, SprintStatus.FAILED},
    SprintStatus.COMPLETE: set(),
    SprintStatus.FAILED: set(),
}


@dataclass
class SprintTransition:
    """Outcome of a sprint status change.

    ``failure`` is set when reopening the sprint for another iteration ran
    past ``max_iterations``; the sprint is then persisted as failed.
    """

    sprint: Sprint
    previous: SprintStatus
    failure: Optional[MaxIterationsExceeded] = None

    @property
    def failed(self) -> bool:
        return self.failure is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sprint": self.sprint.to_dict(),
            "previous": self.previous.value,
            "failure": self.failure.to_dict() if self.failure else None,
        }


class SprintController:
    def __init__(self, state: BoardState, tasks: TaskStore, config: Optional[EngineConfig] = None) -> None:
        self.state = state
        self.tasks = tasks
        self.config = config or EngineConfig()

    def require(self, sprint_id: str) -> Sprint:
        sprint = self.state.sprints.get(sprint_id)
        if sprint is None:
            raise NotFound(f"Sprint not found: {sprint_id}", ids=[sprint_id])
        return sprint

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create_sprint(
        self,
        actor: Actor,
        goal: str,
        description: str = "",
        *,
        success_criteria: Any = None,
        max_iterations: Optional[int] = None,
        task_ids: Optional[list[str]] = None,
    ) -> Sprint:
        authorize(actor, Action.MANAGE_SPRINT)
        if not isinstance(goal, str) or not goal.strip():
            raise ValidationError("'goal' is required and must be non-empty")
        if max_iterations is not None and (
            isinstance(max_iterations, bool) or not isinstance(max_iterations, int) or max_iterations < 1
        ):
            raise ValidationError("'max_iterations' must be an integer >= 1")
        if success_criteria is not None and not isinstance(success_criteria, (AcceptanceCriteria, dict)):
            raise ValidationError("'success_criteria' must be a mapping")
        self._require_tasks(task_ids or [])
        sprint = Sprint(
            goal=goal.strip(),
            description=description or "",
            success_criteria=(
                success_criteria if isinstance(success_criteria, AcceptanceCriteria)
                else AcceptanceCriteria.from_dict(success_criteria)
            ),
            max_iterations=max_iterations or self.config.sprint_max_iterations,
        )
        self.state.sprints.upsert(sprint)
        if task_ids:
            self._attach(sprint, task_ids)
        logger.info("Created sprint {}: {}", sprint.id, sprint.goal)
        return sprint

    def get_sprint(self, sprint_id: str) -> Sprint:
        return self.require(sprint_id)

    def list_sprints(self, status: Optional[str] = None) -> list[Sprint]:
        if status is None:
            return self.state.sprints.list()
        wanted = _coerce_enum(SprintStatus, status, None)
        if wanted is None:
            raise ValidationError(f"Unknown sprint status '{status}'")
        return self.state.sprints.list(lambda s: s.status is wanted)

    def add_tasks(self, actor: Actor, sprint_id: str, task_ids: list[str]) -> Sprint:
        """Add tasks to a sprint, taking them out of any sprint they were in."""
        authorize(actor, Action.MANAGE_SPRINT)
        sprint = self.require(sprint_id)
        if sprint.status.is_terminal:
            raise InvalidTransition(f"Sprint {sprint.id} is {sprint.status.value}", ids=[sprint.id])
        if not task_ids:
            raise ValidationError("No task ids provided", ids=[sprint.id])
        self._require_tasks(task_ids)
        self._attach(sprint, task_ids)
        return sprint

    def remove_task(self, actor: Actor, sprint_id: str, task_id: str) -> Sprint:
        authorize(actor, Action.MANAGE_SPRINT)
        sprint = self.require(sprint_id)
        if task_id not in sprint.task_ids:
            raise NotFound(f"Task {task_id} is not in sprint {sprint.id}", ids=[sprint.id, task_id])
        sprint.task_ids.remove(task_id)
        sprint.touch()
        task = self.state.tasks.get(task_id)
        if task is not None and task.sprint_id == sprint.id:
            self.tasks.set_sprint(task_id, None)
        logger.info("Removed task {} from sprint {}", task_id, sprint.id)
        return sprint

    def forget_task(self, task_id: str) -> list[str]:
        """Drop *task_id* from every sprint; used when a task is deleted."""
        changed: list[str] = []
        for sprint in self.state.sprints:
            if task_id in sprint.task_ids:
                sprint.task_ids.remove(task_id)
                sprint.touch()
                changed.append(sprint.id)
        return changed

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def update_status(
        self,
        actor: Actor,
        sprint_id: str,
        status: SprintStatus | str,
        *,
        reason: Optional[str] = None,
    ) -> SprintTransition:
        """Move a sprint to *status*.

        Raises:
            NoOpTransition: The sprint already has *status*.
            InvalidTransition: The move is not allowed from the current status.
            IncompleteTasks: Completion requested while tasks are unfinished.
        """
        authorize(actor, Action.MANAGE_SPRINT)
        sprint = self.require(sprint_id)
        target = _coerce_enum(SprintStatus, status, None)
        if target is None:
            raise ValidationError(f"Unknown sprint status '{status}'", ids=[sprint.id])
        if target is sprint.status:
            raise NoOpTransition(f"Sprint {sprint.id} is already {target.value}", ids=[sprint.id])
        if target not in _SPRINT_TRANSITIONS[sprint.status]:
            raise InvalidTransition(
                f"Cannot move sprint {sprint.id} from {sprint.status.value} to {target.value}",
                ids=[sprint.id],
            )

        previous = sprint.status
        failure: Optional[MaxIterationsExceeded] = None
        if target is SprintStatus.COMPLETE:
            self._complete(sprint)
        elif target is SprintStatus.FAILED:
            self._fail(sprint, reason or "Marked as failed")
        elif target is SprintStatus.REVIEWING:
            sprint.status = SprintStatus.REVIEWING
        elif previous is SprintStatus.PLANNING:
            sprint.current_iteration = 1
            sprint.iteration_history.append(SprintIteration(iteration=1))
            sprint.status = SprintStatus.EXECUTING
        else:
            failure = self._next_iteration(sprint)
        sprint.touch()
        logger.info("Sprint {} moved {} -> {}", sprint.id, previous.value, sprint.status.value)
        return SprintTransition(sprint=sprint, previous=previous, failure=failure)

    def force_complete(self, actor: Actor, sprint_id: str, reason: str) -> Sprint:
        """Mark every sprint task done and complete the sprint, bypassing review."""
        authorize(actor, Action.FORCE_COMPLETE)
        sprint = self.require(sprint_id)
        if sprint.status.is_terminal:
            raise InvalidTransition(f"Sprint {sprint.id} is already {sprint.status.value}", ids=[sprint.id])
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to force-complete a sprint", ids=[sprint.id])
        for task_id in sprint.task_ids:
            task = self.state.tasks.get(task_id)
            if task is None or task.is_complete:
                continue
            task.metadata = dict(task.metadata or {})
            task.metadata["force_completed"] = reason
            self.tasks.apply_state(task, TaskState.DONE)
        self._complete(sprint, check=False)
        sprint.touch()
        logger.warning("Force-completed sprint {}: {}", sprint.id, reason)
        return sprint

    def record_lesson(self, actor: Actor, sprint_id: str, lesson: str) -> SprintIteration:
        authorize(actor, Action.MANAGE_SPRINT)
        sprint = self.require(sprint_id)
        lesson = (lesson or "").strip()
        if not lesson:
            raise ValidationError("lesson text must be non-empty", ids=[sprint.id])
        current = sprint.current_history
        if current is None:
            raise InvalidTransition(f"Sprint {sprint.id} has not started an iteration", ids=[sprint.id])
        current.lessons_learned.append(lesson)
        sprint.touch()
        return current

    def progress(self, sprint_id: str) -> dict[str, Any]:
        sprint = self.require(sprint_id)
        counts = {state.value: 0 for state in TaskState}
        missing: list[str] = []
        for task_id in sprint.task_ids:
            task = self.state.tasks.get(task_id)
            if task is None:
                missing.append(task_id)
                continue
            counts[task.state.value] += 1
        total = len(sprint.task_ids)
        return {
            "sprint_id": sprint.id,
            "status": sprint.status.value,
            "iteration": f"{sprint.current_iteration}/{sprint.max_iterations}",
            "total": total,
            "by_state": counts,
            "missing": missing,
            "percent_done": round(100 * counts[TaskState.DONE.value] / total, 1) if total else 0.0,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_tasks(self, task_ids: list[str]) -> None:
        missing = [tid for tid in task_ids if tid not in self.state.tasks]
        if missing:
            raise NotFound(f"Task not found: {', '.join(missing)}", ids=missing)

    def _attach(self, sprint: Sprint, task_ids: list[str]) -> None:
        for task_id in _unique(list(task_ids)):
            task = self.tasks.require(task_id)
            if task.sprint_id and task.sprint_id != sprint.id:
                previous = self.state.sprints.get(task.sprint_id)
                if previous is not None and task_id in previous.task_ids:
                    previous.task_ids.remove(task_id)
                    previous.touch()
                    logger.info("Moved task {} out of sprint {}", task_id, previous.id)
            if task_id not in sprint.task_ids:
                sprint.task_ids.append(task_id)
            self.tasks.set_sprint(task_id, sprint.id)
        sprint.touch()

    def _unfinished(self, sprint: Sprint) -> list[str]:
        unfinished: list[str] = []
        for task_id in sprint.task_ids:
            task = self.state.tasks.get(task_id)
            if task is None or not task.is_complete:
                unfinished.append(task_id)
        return unfinished

    def _close_history(self, sprint: Sprint) -> None:
        current = sprint.current_history
        if current is None or current.completed_at:
            return
        opened = _parse_iso(current.started_at)
        done = 0
        rejected = 0
        for task_id in sprint.task_ids:
            task = self.state.tasks.get(task_id)
            if task is None:
                continue
            if task.is_complete:
                done += 1
            if any(_rejected_since(e, opened) for e in task.iteration_log):
                rejected += 1
        current.tasks_completed = done
        current.tasks_rejected = rejected
        current.completed_at = _now_iso()

    def _complete(self, sprint: Sprint, *, check: bool = True) -> None:
        if check:
            unfinished = self._unfinished(sprint)
            if unfinished:
                raise IncompleteTasks(
                    f"Sprint {sprint.id} has {len(unfinished)} unfinished task(s)",
                    ids=unfinished,
                )
        self._close_history(sprint)
        sprint.status = SprintStatus.COMPLETE
        sprint.completed_at = _now_iso()

    def _fail(self, sprint: Sprint, reason: str) -> None:
        self._close_history(sprint)
        sprint.status = SprintStatus.FAILED
        sprint.failure_reason = reason
        sprint.completed_at = _now_iso()

    def _next_iteration(self, sprint: Sprint) -> Optional[MaxIterationsExceeded]:
        self._close_history(sprint)
        sprint.current_iteration += 1
        if sprint.current_iteration > sprint.max_iterations:
            failure = MaxIterationsExceeded(
                f"Sprint {sprint.id} exceeded {sprint.max_iterations} iteration(s)",
                ids=[sprint.id],
                metadata={"iteration": sprint.current_iteration, "max_iterations": sprint.max_iterations},
            )
            sprint.status = SprintStatus.FAILED
            sprint.failure_reason = failure.message
            sprint.completed_at = _now_iso()
            logger.warning(failure.message)
            return failure
        sprint.iteration_history.append(SprintIteration(iteration=sprint.current_iteration))
        sprint.status = SprintStatus.EXECUTING
        return None


def _rejected_since(entry: IterationLogEntry, opened: Optional[datetime]) -> bool:
    if entry.outcome is not IterationOutcome.REJECTED:
        return False
    reviewed = _parse_iso(entry.reviewed_at or entry.completed_at or entry.started_at)
    return opened is None or (reviewed is not None and reviewed >= opened)
