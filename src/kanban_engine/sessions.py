"""Agent work sessions and the board activity log.

A session brackets one stretch of work by an agent.  Its closing notes,
pending items and known issues are handed to the agent's next session by
:meth:`SessionTracker.get_session_context`, together with a board summary,
urgent items and the agent's learning context.  The activity log is a capped,
newest-last list of what happened on the board.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from loguru import logger

from .board import BoardState
from .config import EngineConfig
from .constants import (
    ACTIVITY_LOG_LIMIT,
    FIX_FIRST_THRESHOLD,
    SESSION_CONVENTIONS,
    SESSION_MISTAKES_TO_AVOID,
    SESSION_RECENT_ACTIVITY,
)
from .errors import Forbidden, ValidationError
from .graph import DependencyGraph
from .learning import LearningEngine
from .model import ActivityRecord, Priority, Session, SessionStatus, Sprint, SprintStatus, Task, TaskState
from .policy import Action, Actor, Role, authorize
from .tasks import TaskStore
from .utils import _now_iso, _parse_iso

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _latest(sessions: list[Session], stamp: Callable[[Session], Optional[str]]) -> Optional[Session]:
    """Newest by *stamp*; ties go to the one recorded last."""
    best: Optional[Session] = None
    for session in sessions:
        if best is None or (_parse_iso(stamp(session)) or _EPOCH) >= (_parse_iso(stamp(best)) or _EPOCH):
            best = session
    return best


@dataclass
class BoardVerification:
    """Whether an agent should start new work or clean up first."""

    recommendation: str  # proceed | fix_first | escalate
    issues: dict[str, int]
    suggested_action: Optional[str] = None
    checked_at: str = field(default_factory=_now_iso)

    @property
    def healthy(self) -> bool:
        return self.recommendation == "proceed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "recommendation": self.recommendation,
            "issues": dict(self.issues),
            "suggested_action": self.suggested_action,
            "checked_at": self.checked_at,
        }


def _task_brief(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "priority": task.priority.value,
        "state": task.state.value,
        "assignee": task.assignee,
        "iteration": task.iteration,
        "max_iterations": task.max_iterations,
    }


class SessionTracker:
    def __init__(
        self,
        state: BoardState,
        tasks: TaskStore,
        learning: LearningEngine,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.state = state
        self.tasks = tasks
        self.learning = learning
        self.config = config or EngineConfig()
        self.graph = DependencyGraph(state)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start_session(
        self,
        actor: Actor,
        agent_id: Optional[str] = None,
        context_summary: Optional[str] = None,
    ) -> tuple[Session, Optional[Session]]:
        """Open a session for the agent.

        Returns:
            The new session and the previously active one, which is closed as
            abandoned, if there was one.
        """
        agent_id = self._resolve_agent(actor, agent_id)
        previous = self.get_active_session(agent_id)
        if previous is not None:
            previous.status = SessionStatus.ABANDONED
            previous.ended_at = _now_iso()
            logger.warning("Session {} for {} was never ended; marking it abandoned", previous.id, agent_id)
        session = self.state.sessions.upsert(Session(agent_id=agent_id, context_summary=context_summary))
        self.log_activity(agent_id, "session_start", details=f"Session {session.id} started")
        logger.info("Started session {} for {}", session.id, agent_id)
        return session, previous

    def end_session(
        self,
        actor: Actor,
        notes: str,
        *,
        agent_id: Optional[str] = None,
        pending_items: Optional[list[str]] = None,
        known_issues: Optional[list[str]] = None,
        clean_state: bool = False,
    ) -> Session:
        """Close the agent's active session with hand-over notes.

        An agent without an active session gets one that is opened and closed
        in the same call, so the notes are never lost.
        """
        agent_id = self._resolve_agent(actor, agent_id)
        notes = (notes or "").strip()
        if not notes:
            raise ValidationError("Session notes are required")
        session = self.get_active_session(agent_id)
        if session is None:
            session, _ = self.start_session(actor, agent_id)
        session.status = SessionStatus.COMPLETED
        session.ended_at = _now_iso()
        session.session_notes = notes
        session.pending_items = [str(item) for item in pending_items or []]
        session.known_issues = [str(issue) for issue in known_issues or []]
        session.clean_state = bool(clean_state)
        self.log_activity(agent_id, "session_end", details=notes)
        logger.info("Ended session {} for {} ({} task(s) touched)", session.id, agent_id, len(session.tasks_touched))
        return session

    def get_active_session(self, agent_id: str) -> Optional[Session]:
        active = self.state.sessions.list(lambda s: s.agent_id == agent_id and s.status is SessionStatus.ACTIVE)
        return _latest(active, lambda s: s.started_at)

    def get_last_session(self, agent_id: str) -> Optional[Session]:
        """The agent's most recently ended session."""
        done = self.state.sessions.list(lambda s: s.agent_id == agent_id and s.status is SessionStatus.COMPLETED)
        return _latest(done, lambda s: s.ended_at or s.started_at)

    def record_task_touch(self, agent_id: Optional[str], task_id: str) -> bool:
        """Remember that the agent's active session worked on *task_id*."""
        session = self.get_active_session(agent_id) if agent_id else None
        if session is None or task_id in session.tasks_touched:
            return False
        session.tasks_touched.append(task_id)
        return True

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def log_activity(
        self,
        agent_id: Optional[str],
        action: str,
        task: Optional[Task] = None,
        details: Optional[str] = None,
    ) -> ActivityRecord:
        record = ActivityRecord(
            action=action,
            agent_id=agent_id,
            task_id=task.id if task else None,
            task_title=task.title if task else None,
            details=details,
        )
        self.state.activity.append(record)
        del self.state.activity[:-ACTIVITY_LOG_LIMIT]
        return record

    def recent_activity(self, limit: int = SESSION_RECENT_ACTIVITY) -> list[ActivityRecord]:
        """Newest first."""
        if limit <= 0:
            return []
        return list(reversed(self.state.activity[-limit:]))

    # ------------------------------------------------------------------
    # Getting an agent up to speed
    # ------------------------------------------------------------------

    def active_sprint(self) -> Optional[Sprint]:
        for sprint in self.state.sprints:
            if sprint.status in (SprintStatus.EXECUTING, SprintStatus.REVIEWING):
                return sprint
        return None

    def suggested_next_task(self, agent_id: Optional[str] = None) -> Optional[Task]:
        """Pick the next task for *agent_id*.

        Work the agent already has in progress comes first.  After that the
        highest-priority, oldest backlog task with no unfinished dependencies
        that is assigned to the agent or to nobody.
        """
        candidates: list[Task] = []
        for task in self.state.tasks:
            if task.state not in (TaskState.BACKLOG, TaskState.IN_PROGRESS):
                continue
            if agent_id is not None and task.assignee not in (agent_id, None):
                continue
            if self.graph.unresolved_dependencies(task.id):
                continue
            candidates.append(task)
        if not candidates:
            return None

        def rank(task: Task) -> tuple[int, int, str]:
            own_work = task.state is TaskState.IN_PROGRESS and agent_id is not None and task.assignee == agent_id
            return (0 if own_work else 1, task.priority.sort_key, task.created_at)

        return min(candidates, key=rank)

    def board_summary(self) -> str:
        stats = self.tasks.stats()
        columns = stats["by_column"]
        lines = [
            f"Board: {stats['total']} tasks ({columns['backlog']} backlog, {columns['in_progress']} in progress, "
            f"{columns['blocked']} blocked, {columns['done']} done)"
        ]
        sprint = self.active_sprint()
        if sprint is not None:
            lines.append(
                f'Active Sprint: "{sprint.goal}" - {sprint.status.value} '
                f"(iteration {sprint.current_iteration}/{sprint.max_iterations})"
            )
        if stats["pending_qa"]:
            lines.append(f"{stats['pending_qa']} task(s) pending QA review")
        if stats["by_priority"]["critical"]:
            lines.append(f"{stats['by_priority']['critical']} CRITICAL priority task(s) need attention")
        return "\n".join(lines)

    def get_session_context(self, agent_id: str) -> dict[str, Any]:
        """Everything an agent reads when it picks up work in a new session."""
        last = self.get_last_session(agent_id)
        learning = self.learning.get_full_context(agent_id)
        suggested = self.suggested_next_task(agent_id)
        sprint = self.active_sprint()
        open_tasks = [t for t in self.state.tasks if not t.is_complete]
        return {
            "board_summary": self.board_summary(),
            "active_sprint": sprint.to_dict() if sprint else None,
            "recent_activity": [record.to_dict() for record in self.recent_activity()],
            "urgent_items": {
                "escalated": [_task_brief(t) for t in open_tasks if t.is_escalated],
                "blocked": [_task_brief(t) for t in open_tasks if t.state is TaskState.BLOCKED],
                "critical": [_task_brief(t) for t in open_tasks if t.priority is Priority.CRITICAL],
            },
            "last_session": {
                "id": last.id,
                "ended_at": last.ended_at or last.started_at,
                "session_notes": last.session_notes or "",
                "pending_items": list(last.pending_items),
                "known_issues": list(last.known_issues),
                "tasks_touched": list(last.tasks_touched),
            } if last else None,
            "suggested_next_task": _task_brief(suggested) if suggested else None,
            "learning_context": {
                "mistakes_to_avoid": [
                    f"{m['category']}: {m['description']}" for m in learning["agent_mistakes"][:SESSION_MISTAKES_TO_AVOID]
                ],
                "project_conventions": [c["description"] for c in learning["codebase_conventions"][:SESSION_CONVENTIONS]],
            },
        }

    def verify_board_health(self, now: Optional[datetime] = None) -> BoardVerification:
        """Decide whether new work should start.

        ``escalate`` while any task is past its iteration limit, ``fix_first``
        when more than two tasks are stale or blocked, otherwise ``proceed``.
        """
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        cutoff = now - timedelta(hours=self.config.health.stale_threshold_hours)
        tasks = self.state.tasks.list()

        def stale(task: Task) -> bool:
            updated = _parse_iso(task.updated_at)
            return task.state is TaskState.IN_PROGRESS and updated is not None and updated < cutoff

        issues = {
            "escalated_tasks": sum(1 for t in tasks if t.is_escalated),
            "blocked_tasks": sum(1 for t in tasks if t.state is TaskState.BLOCKED),
            "stale_in_progress": sum(1 for t in tasks if stale(t)),
            "qa_backlog": sum(1 for t in tasks if t.pending_qa),
            "orphaned_tasks": sum(
                1 for t in tasks if t.state is TaskState.BACKLOG and not t.assignee and not t.sprint_id
            ),
        }
        if issues["escalated_tasks"]:
            return BoardVerification(
                recommendation="escalate",
                issues=issues,
                suggested_action=f"{issues['escalated_tasks']} task(s) have exceeded max iterations and need human review",
                checked_at=now.isoformat(),
            )
        if issues["stale_in_progress"] > FIX_FIRST_THRESHOLD:
            action = f"{issues['stale_in_progress']} tasks are stale in progress; review or move them"
        elif issues["blocked_tasks"] > FIX_FIRST_THRESHOLD:
            action = f"{issues['blocked_tasks']} tasks are blocked; unblock them before new work"
        else:
            return BoardVerification(recommendation="proceed", issues=issues, checked_at=now.isoformat())
        return BoardVerification(recommendation="fix_first", issues=issues, suggested_action=action, checked_at=now.isoformat())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_agent(actor: Actor, agent_id: Optional[str]) -> str:
        """Agents manage their own sessions; privileged callers may name any agent."""
        authorize(actor, Action.MANAGE_SESSION)
        agent_id = (agent_id or actor.agent_id or "").strip()
        if not agent_id:
            raise ValidationError("agent_id is required to manage a session")
        if actor.role is not Role.PRIVILEGED and agent_id != actor.agent_id:
            raise Forbidden(f"Access denied: {actor.label} cannot manage sessions of {agent_id}", ids=[agent_id])
        return agent_id
