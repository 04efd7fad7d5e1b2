"""Task and sprint model for the kanban engine.

Tasks carry a single tagged :class:`TaskState` instead of a column plus a
"pending QA" flag: ``awaiting_review`` is shown in the ``done`` column, so a
task can never be pending review while sitting in any other column.  The
legacy ``column`` / ``pending_qa`` encoding is still accepted by
:meth:`Task.from_dict`.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from .constants import DEFAULT_SPRINT_MAX_ITERATIONS, DEFAULT_TASK_MAX_ITERATIONS, DESCRIPTION_MAX_LENGTH, TITLE_MAX_LENGTH
from .utils import _generate_id, _now_iso, _unique


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def sort_key(self) -> int:
        return {"critical": 0, "high": 1, "medium": 2, "low": 3}[self.value]


class Column(str, Enum):
    """The four board columns."""

    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DONE = "done"


class TaskState(str, Enum):
    """Lifecycle state of a task."""

    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    AWAITING_REVIEW = "awaiting_review"
    DONE = "done"

    @property
    def column(self) -> Column:
        if self is TaskState.AWAITING_REVIEW:
            return Column.DONE
        return Column(self.value)


class IterationOutcome(str, Enum):
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"  # reopened before review


class FeedbackCategory(str, Enum):
    LOGIC = "logic"
    TESTING = "testing"
    STYLE = "style"
    SECURITY = "security"
    PERFORMANCE = "performance"
    MISSING_FEATURE = "missing-feature"
    OTHER = "other"

    @property
    def description(self) -> str:
        return _CATEGORY_DESCRIPTIONS[self]


_CATEGORY_DESCRIPTIONS = {
    FeedbackCategory.LOGIC: "Logic errors and incorrect implementations",
    FeedbackCategory.TESTING: "Missing or inadequate test coverage",
    FeedbackCategory.STYLE: "Code style and formatting issues",
    FeedbackCategory.SECURITY: "Security vulnerabilities or unsafe practices",
    FeedbackCategory.PERFORMANCE: "Performance issues or inefficiencies",
    FeedbackCategory.MISSING_FEATURE: "Incomplete implementation of requirements",
    FeedbackCategory.OTHER: "Other issues",
}


class FeedbackSeverity(str, Enum):
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"


class SprintStatus(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    REVIEWING = "reviewing"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SprintStatus.COMPLETE, SprintStatus.FAILED)


def _coerce_enum(enum_cls: type[Enum], raw: Any, default: Any) -> Any:
    if raw is None:
        return default
    if isinstance(raw, enum_cls):
        return raw
    try:
        return enum_cls(str(raw))
    except (ValueError, KeyError):
        return default


def _coerce_int(raw: Any, default: int, minimum: Optional[int] = None) -> int:
    try:
        value = int(raw) if raw is not None else default
    except (TypeError, ValueError):
        value = default
    return value if minimum is None else max(minimum, value)


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------

@dataclass
class AcceptanceCriteria:
    """A description plus an ordered checklist defining "done"."""

    description: str = ""
    verification_steps: list[str] = field(default_factory=list)
    check_command: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional["AcceptanceCriteria"]:
        if not isinstance(data, dict):
            return None
        return cls(
            description=str(data.get("description") or ""),
            verification_steps=[str(s) for s in list(data.get("verification_steps") or [])],
            check_command=data.get("check_command"),
        )


@dataclass
class IterationLogEntry:
    """One attempt by a worker on a task."""

    iteration: int = 1
    agent_id: Optional[str] = None
    started_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None
    outcome: IterationOutcome = IterationOutcome.IN_PROGRESS
    agent_notes: Optional[str] = None
    files_changed: list[str] = field(default_factory=list)
    feedback: Optional[str] = None
    feedback_category: Optional[FeedbackCategory] = None
    feedback_severity: Optional[FeedbackSeverity] = None
    reviewer_notes: Optional[str] = None
    reviewed_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        data["feedback_category"] = self.feedback_category.value if self.feedback_category else None
        data["feedback_severity"] = self.feedback_severity.value if self.feedback_severity else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IterationLogEntry":
        return cls(
            iteration=_coerce_int(data.get("iteration"), 1, minimum=1),
            agent_id=data.get("agent_id"),
            started_at=str(data.get("started_at") or _now_iso()),
            completed_at=data.get("completed_at"),
            outcome=_coerce_enum(IterationOutcome, data.get("outcome"), IterationOutcome.IN_PROGRESS),
            agent_notes=data.get("agent_notes"),
            files_changed=list(data.get("files_changed") or []),
            feedback=data.get("feedback"),
            feedback_category=_coerce_enum(FeedbackCategory, data.get("feedback_category"), None),
            feedback_severity=_coerce_enum(FeedbackSeverity, data.get("feedback_severity"), None),
            reviewer_notes=data.get("reviewer_notes"),
            reviewed_at=data.get("reviewed_at"),
        )


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """A unit of work on the board."""

    # Identity
    id: str = field(default_factory=lambda: _generate_id("task"))
    title: str = ""
    description: str = ""
    priority: Priority = Priority.MEDIUM

    # Lifecycle
    state: TaskState = TaskState.BACKLOG
    assignee: Optional[str] = None
    qa_feedback: Optional[str] = None

    # Dependencies
    depends_on: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)

    # Iterations
    iteration: int = 1
    max_iterations: int = DEFAULT_TASK_MAX_ITERATIONS
    acceptance_criteria: Optional[AcceptanceCriteria] = None
    iteration_log: list[IterationLogEntry] = field(default_factory=list)

    sprint_id: Optional[str] = None

    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None

    metadata: dict[str, Any] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @classmethod
    def validate_dict(cls, data: dict[str, Any]) -> list[str]:
        """Check user-supplied task fields, returning error strings (empty = valid)."""
        errors: list[str] = []
        if not isinstance(data, dict):
            return ["Expected a dict"]
        if "title" in data:
            title = data.get("title")
            if not isinstance(title, str) or not title.strip():
                errors.append("'title' is required and must be non-empty")
            elif len(title) > TITLE_MAX_LENGTH:
                errors.append(f"'title' must be at most {TITLE_MAX_LENGTH} characters")
        description = data.get("description")
        if description is not None:
            if not isinstance(description, str):
                errors.append("'description' must be a string")
            elif len(description) > DESCRIPTION_MAX_LENGTH:
                errors.append(f"'description' must be at most {DESCRIPTION_MAX_LENGTH} characters")
        priority = data.get("priority")
        if priority is not None and not isinstance(priority, Priority):
            valid = {e.value for e in Priority}
            if priority not in valid:
                errors.append(f"'priority' must be one of {sorted(valid)}, got '{priority}'")
        max_iterations = data.get("max_iterations")
        if max_iterations is not None:
            if isinstance(max_iterations, bool) or not isinstance(max_iterations, int) or max_iterations < 1:
                errors.append("'max_iterations' must be an integer >= 1")
        return errors

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for YAML/JSON persistence."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "state": self.state.value,
            "column": self.column.value,
            "pending_qa": self.pending_qa,
            "assignee": self.assignee,
            "qa_feedback": self.qa_feedback,
            "depends_on": list(self.depends_on),
            "blocks": list(self.blocks),
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "acceptance_criteria": self.acceptance_criteria.to_dict() if self.acceptance_criteria else None,
            "iteration_log": [entry.to_dict() for entry in self.iteration_log],
            "sprint_id": self.sprint_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize from a plain dict, coercing enums gracefully."""
        d = dict(data)
        state = _coerce_enum(TaskState, d.get("state"), None)
        if state is None:
            # Legacy encoding: column + pending_qa flag.
            column = _coerce_enum(Column, d.get("column"), Column.BACKLOG)
            if column is Column.DONE and d.get("pending_qa"):
                state = TaskState.AWAITING_REVIEW
            else:
                state = TaskState(column.value)
        log = [IterationLogEntry.from_dict(e) for e in list(d.get("iteration_log") or []) if isinstance(e, dict)]
        return cls(
            id=str(d.get("id") or _generate_id("task")),
            title=str(d.get("title") or ""),
            description=str(d.get("description") or ""),
            priority=_coerce_enum(Priority, d.get("priority"), Priority.MEDIUM),
            state=state,
            assignee=d.get("assignee"),
            qa_feedback=d.get("qa_feedback"),
            depends_on=_unique([str(x) for x in list(d.get("depends_on") or [])]),
            blocks=_unique([str(x) for x in list(d.get("blocks") or [])]),
            iteration=_coerce_int(d.get("iteration"), 1, minimum=1),
            max_iterations=_coerce_int(d.get("max_iterations") or None, DEFAULT_TASK_MAX_ITERATIONS, minimum=1),
            acceptance_criteria=AcceptanceCriteria.from_dict(d.get("acceptance_criteria")),
            iteration_log=log,
            sprint_id=d.get("sprint_id"),
            created_at=str(d.get("created_at") or _now_iso()),
            updated_at=str(d.get("updated_at") or _now_iso()),
            completed_at=d.get("completed_at"),
            metadata=dict(d.get("metadata") or {}),
        )

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def column(self) -> Column:
        return self.state.column

    @property
    def pending_qa(self) -> bool:
        return self.state is TaskState.AWAITING_REVIEW

    @property
    def is_complete(self) -> bool:
        return self.state is TaskState.DONE

    @property
    def is_escalated(self) -> bool:
        """Iterations exhausted without the task reaching the done column."""
        return self.iteration > self.max_iterations and self.column is not Column.DONE

    @property
    def latest_entry(self) -> Optional[IterationLogEntry]:
        return self.iteration_log[-1] if self.iteration_log else None

    @property
    def active_entry(self) -> Optional[IterationLogEntry]:
        entry = self.latest_entry
        if entry is not None and entry.outcome is IterationOutcome.IN_PROGRESS:
            return entry
        return None

    # ------------------------------------------------------------------
    # Mutation helpers
    # ------------------------------------------------------------------

    def touch(self) -> None:
        """Bump ``updated_at`` to now."""
        self.updated_at = _now_iso()

    def transition(self, new_state: TaskState) -> None:
        """Move to *new_state* with timestamp bookkeeping."""
        self.state = new_state
        if new_state is TaskState.DONE:
            self.completed_at = _now_iso()
        else:
            self.completed_at = None
        self.touch()

    def add_depends_on(self, task_id: str) -> None:
        if task_id not in self.depends_on:
            self.depends_on.append(task_id)
            self.touch()

    def remove_depends_on(self, task_id: str) -> None:
        if task_id in self.depends_on:
            self.depends_on.remove(task_id)
            self.touch()

    def add_blocks(self, task_id: str) -> None:
        if task_id not in self.blocks:
            self.blocks.append(task_id)
            self.touch()

    def remove_blocks(self, task_id: str) -> None:
        if task_id in self.blocks:
            self.blocks.remove(task_id)
            self.touch()


# ---------------------------------------------------------------------------
# Sprint
# ---------------------------------------------------------------------------

@dataclass
class SprintIteration:
    iteration: int = 1
    started_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None
    tasks_completed: int = 0
    tasks_rejected: int = 0
    lessons_learned: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SprintIteration":
        return cls(
            iteration=_coerce_int(data.get("iteration"), 1, minimum=1),
            started_at=str(data.get("started_at") or _now_iso()),
            completed_at=data.get("completed_at"),
            tasks_completed=_coerce_int(data.get("tasks_completed"), 0),
            tasks_rejected=_coerce_int(data.get("tasks_rejected"), 0),
            lessons_learned=list(data.get("lessons_learned") or []),
        )


@dataclass
class Sprint:
    """A goal-scoped, iteration-bounded group of tasks.

    The sprint only references its tasks by id; the tasks themselves are
    owned by the task store.
    """

    id: str = field(default_factory=lambda: _generate_id("sprint"))
    goal: str = ""
    description: str = ""
    success_criteria: Optional[AcceptanceCriteria] = None
    status: SprintStatus = SprintStatus.PLANNING
    current_iteration: int = 0
    max_iterations: int = DEFAULT_SPRINT_MAX_ITERATIONS
    task_ids: list[str] = field(default_factory=list)
    iteration_history: list[SprintIteration] = field(default_factory=list)
    failure_reason: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "description": self.description,
            "success_criteria": self.success_criteria.to_dict() if self.success_criteria else None,
            "status": self.status.value,
            "current_iteration": self.current_iteration,
            "max_iterations": self.max_iterations,
            "task_ids": list(self.task_ids),
            "iteration_history": [h.to_dict() for h in self.iteration_history],
            "failure_reason": self.failure_reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Sprint":
        history = [SprintIteration.from_dict(h) for h in list(data.get("iteration_history") or []) if isinstance(h, dict)]
        return cls(
            id=str(data.get("id") or _generate_id("sprint")),
            goal=str(data.get("goal") or ""),
            description=str(data.get("description") or ""),
            success_criteria=AcceptanceCriteria.from_dict(data.get("success_criteria")),
            status=_coerce_enum(SprintStatus, data.get("status"), SprintStatus.PLANNING),
            current_iteration=_coerce_int(data.get("current_iteration"), 0),
            max_iterations=_coerce_int(data.get("max_iterations") or None, DEFAULT_SPRINT_MAX_ITERATIONS, minimum=1),
            task_ids=_unique([str(x) for x in list(data.get("task_ids") or [])]),
            iteration_history=history,
            failure_reason=data.get("failure_reason"),
            created_at=str(data.get("created_at") or _now_iso()),
            updated_at=str(data.get("updated_at") or _now_iso()),
            completed_at=data.get("completed_at"),
        )

    @property
    def current_history(self) -> Optional[SprintIteration]:
        return self.iteration_history[-1] if self.iteration_history else None

    def touch(self) -> None:
        self.updated_at = _now_iso()


# ---------------------------------------------------------------------------
# Agent capability
# ---------------------------------------------------------------------------

def _normalize_terms(terms: list[str]) -> list[str]:
    return _unique([str(t).lower().strip() for t in terms if str(t).strip()])


@dataclass
class AgentCapability:
    """Skills an agent advertises for capability-based assignment."""

    agent_id: str
    skills: list[str] = field(default_factory=list)
    specializations: list[str] = field(default_factory=list)
    max_concurrent_tasks: int = 3
    is_active: bool = True
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def __post_init__(self) -> None:
        self.skills = _normalize_terms(self.skills)
        self.specializations = _normalize_terms(self.specializations)

    @property
    def id(self) -> str:
        return self.agent_id

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentCapability":
        return cls(
            agent_id=str(data.get("agent_id") or ""),
            skills=list(data.get("skills") or []),
            specializations=list(data.get("specializations") or []),
            max_concurrent_tasks=_coerce_int(data.get("max_concurrent_tasks") or None, 3, minimum=1),
            is_active=bool(data.get("is_active", True)),
            created_at=str(data.get("created_at") or _now_iso()),
            updated_at=str(data.get("updated_at") or _now_iso()),
        )


# ---------------------------------------------------------------------------
# Work sessions
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"  # superseded by a newer session


@dataclass
class Session:
    """One stretch of work by an agent, carried over to its next session."""

    agent_id: str
    id: str = field(default_factory=lambda: _generate_id("session"))
    status: SessionStatus = SessionStatus.ACTIVE
    started_at: str = field(default_factory=_now_iso)
    ended_at: Optional[str] = None
    context_summary: Optional[str] = None
    session_notes: Optional[str] = None
    pending_items: list[str] = field(default_factory=list)
    known_issues: list[str] = field(default_factory=list)
    clean_state: bool = False
    tasks_touched: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            agent_id=str(data.get("agent_id") or ""),
            id=str(data.get("id") or _generate_id("session")),
            status=_coerce_enum(SessionStatus, data.get("status"), SessionStatus.COMPLETED),
            started_at=str(data.get("started_at") or _now_iso()),
            ended_at=data.get("ended_at"),
            context_summary=data.get("context_summary"),
            session_notes=data.get("session_notes"),
            pending_items=[str(x) for x in list(data.get("pending_items") or [])],
            known_issues=[str(x) for x in list(data.get("known_issues") or [])],
            clean_state=bool(data.get("clean_state", False)),
            tasks_touched=_unique([str(x) for x in list(data.get("tasks_touched") or [])]),
        )


@dataclass
class ActivityRecord:
    action: str
    agent_id: Optional[str] = None
    task_id: Optional[str] = None
    task_title: Optional[str] = None
    details: Optional[str] = None
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActivityRecord":
        return cls(
            action=str(data.get("action") or "unknown"),
            agent_id=data.get("agent_id"),
            task_id=data.get("task_id"),
            task_title=data.get("task_title"),
            details=data.get("details"),
            timestamp=str(data.get("timestamp") or _now_iso()),
        )
