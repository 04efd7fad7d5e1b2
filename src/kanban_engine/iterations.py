"""Per-task attempt ledger.

A worker starts an iteration, submits it, and QA either approves (the task is
done) or rejects it (the task goes back to the worker with feedback and the
iteration counter advances).  Rejection is the only place ``task.iteration``
increases.  A task whose counter passes ``max_iterations`` without reaching
the done column is escalated; it is reported, not blocked.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from loguru import logger

from .board import BoardState
from .constants import FEEDBACK_MAX_LENGTH
from .errors import InvalidTransition, ValidationError
from .learning import LearningEngine, _coerce_category
from .learning_model import ProjectLesson
from .model import FeedbackSeverity, IterationLogEntry, IterationOutcome, Task, TaskState, _coerce_enum
from .policy import Action, Actor, authorize
from .tasks import TaskStore
from .utils import _now_iso


@dataclass
class RejectionResult:
    task: Task
    entry: IterationLogEntry
    iteration: int
    max_iterations: int
    max_reached: bool
    lesson: Optional[ProjectLesson] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task.id,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "max_reached": self.max_reached,
            "lesson": self.lesson.to_dict() if self.lesson else None,
        }


class IterationTracker:
    def __init__(self, state: BoardState, tasks: TaskStore, learning: LearningEngine) -> None:
        self.state = state
        self.tasks = tasks
        self.learning = learning

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def start_iteration(self, actor: Actor, task_id: str) -> tuple[IterationLogEntry, bool]:
        """Open an attempt on *task_id* for the assigned worker.

        Returns:
            The active entry and whether it was created by this call.  Calling
            again while an attempt is open returns the open entry.

        Raises:
            InvalidTransition: The task is waiting for review or done.
        """
        task = self.tasks.require(task_id)
        authorize(actor, Action.WORK_ITERATION, task)

        active = task.active_entry
        if active is not None:
            return active, False

        if task.state in (TaskState.AWAITING_REVIEW, TaskState.DONE):
            raise InvalidTransition(f"Task {task.id} is {task.state.value}; cannot start an iteration", ids=[task.id])

        if self.is_escalated(task):
            logger.warning(
                "Task {} is past its iteration limit ({}/{})",
                task.id,
                task.iteration,
                task.max_iterations,
            )
        entry = self._open_entry(task, actor)
        if task.state is not TaskState.IN_PROGRESS:
            self.tasks.apply_state(task, TaskState.IN_PROGRESS)
        logger.info("Started iteration {} on {} for {}", entry.iteration, task.id, actor.agent_id)
        return entry, True

    def submit_iteration(
        self,
        actor: Actor,
        task_id: str,
        notes: Optional[str] = None,
        files_changed: Optional[list[str]] = None,
    ) -> IterationLogEntry:
        """Close the open attempt and hand the task to QA."""
        task = self.tasks.require(task_id)
        authorize(actor, Action.WORK_ITERATION, task)
        if task.state is not TaskState.IN_PROGRESS:
            raise InvalidTransition(
                f"Task {task.id} must be in_progress to submit, not {task.state.value}",
                ids=[task.id],
            )
        entry = task.active_entry or self._open_entry(task, actor)
        entry.outcome = IterationOutcome.SUBMITTED
        entry.completed_at = _now_iso()
        entry.agent_notes = notes
        entry.files_changed = list(files_changed or [])
        self.tasks.apply_state(task, TaskState.AWAITING_REVIEW)
        logger.info("Submitted iteration {} on {} for review", entry.iteration, task.id)
        return entry

    # ------------------------------------------------------------------
    # Reviewer side
    # ------------------------------------------------------------------

    def record_approval(self, actor: Actor, task_id: str, notes: Optional[str] = None) -> IterationLogEntry:
        task = self.tasks.require(task_id)
        authorize(actor, Action.REVIEW, task)
        entry = self._require_submitted(task)
        entry.outcome = IterationOutcome.APPROVED
        entry.reviewer_notes = notes
        entry.reviewed_at = _now_iso()
        task.qa_feedback = None
        self.tasks.apply_state(task, TaskState.DONE)
        agent_id = entry.agent_id or task.assignee
        if agent_id:
            self.learning.record_task_completion(agent_id, task.iteration)
        logger.info("Approved {} at iteration {}", task.id, task.iteration)
        return entry

    def record_rejection(
        self,
        actor: Actor,
        task_id: str,
        feedback: str,
        category: Any,
        severity: Any = None,
    ) -> RejectionResult:
        """Send a submitted attempt back to the worker.

        The feedback lands on the log entry, on ``task.qa_feedback`` and in
        the learning engine.  ``max_reached`` is true once the new iteration
        number is past ``max_iterations``.
        """
        task = self.tasks.require(task_id)
        authorize(actor, Action.REVIEW, task)
        feedback = (feedback or "").strip()
        if not feedback:
            raise ValidationError("Rejection feedback is required", ids=[task.id])
        if len(feedback) > FEEDBACK_MAX_LENGTH:
            raise ValidationError(f"Feedback must be at most {FEEDBACK_MAX_LENGTH} characters", ids=[task.id])
        category = _coerce_category(category)
        if severity is not None and _coerce_enum(FeedbackSeverity, severity, None) is None:
            raise ValidationError(f"Unknown feedback severity '{severity}'", ids=[task.id])
        severity = _coerce_enum(FeedbackSeverity, severity, FeedbackSeverity.MAJOR)
        entry = self._require_submitted(task)

        entry.outcome = IterationOutcome.REJECTED
        entry.feedback = feedback
        entry.feedback_category = category
        entry.feedback_severity = severity
        entry.reviewed_at = _now_iso()
        task.qa_feedback = feedback
        self.tasks.apply_state(task, TaskState.IN_PROGRESS)
        task.iteration += 1

        lesson = None
        agent_id = entry.agent_id or task.assignee
        if agent_id:
            lesson = self.learning.record_rejection(agent_id, task, feedback, category, severity)

        result = RejectionResult(
            task=task,
            entry=entry,
            iteration=task.iteration,
            max_iterations=task.max_iterations,
            max_reached=task.iteration > task.max_iterations,
            lesson=lesson,
        )
        if result.max_reached:
            logger.warning("Task {} exceeded max iterations ({}/{})", task.id, task.iteration, task.max_iterations)
        else:
            logger.info("Rejected {}; now on iteration {}/{}", task.id, task.iteration, task.max_iterations)
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def is_escalated(task: Task) -> bool:
        return task.is_escalated

    def escalated_tasks(self) -> list[Task]:
        return self.state.tasks.list(lambda t: t.is_escalated)

    def history(self, actor: Actor, task_id: str) -> list[IterationLogEntry]:
        task = self.tasks.require(task_id)
        authorize(actor, Action.VIEW_TASK, task)
        return list(task.iteration_log)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _open_entry(task: Task, actor: Actor) -> IterationLogEntry:
        entry = IterationLogEntry(iteration=task.iteration, agent_id=actor.agent_id or task.assignee)
        task.iteration_log.append(entry)
        task.touch()
        return entry

    @staticmethod
    def _require_submitted(task: Task) -> IterationLogEntry:
        entry = task.latest_entry
        if entry is None or entry.outcome is not IterationOutcome.SUBMITTED:
            outcome = entry.outcome.value if entry else "none"
            raise InvalidTransition(
                f"Task {task.id} has no submitted iteration to review (latest: {outcome})",
                ids=[task.id],
            )
        if task.state is not TaskState.AWAITING_REVIEW:
            raise InvalidTransition(
                f"Task {task.id} is {task.state.value}, not awaiting review",
                ids=[task.id],
            )
        return entry
