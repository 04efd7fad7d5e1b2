"""Kanban engine: the single entry point for board operations.

Every mutating call runs under one re-entrant board lock and follows the same
sequence:

1. copy the in-memory board,
2. run the component operation,
3. on error restore the copy and re-raise (nothing is ever half applied),
4. on success save a snapshot through the repository and publish the events
   queued by the operation.

A failed save is logged and retried with the next mutation; the in-memory
change stands.  A failing notifier never affects the board.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from loguru import logger

from .agents import AgentMatch, AgentRegistry
from .board import BoardState
from .config import EngineConfig, load_engine_config
from .constants import EVENTS_FILE, STATE_DIR_NAME
from .errors import KanbanError, PersistenceError
from .events import EventBus, JsonlEventLog, Notifier
from .graph import DependencyGraph
from .health import HealthMonitor, HealthReport
from .iterations import IterationTracker, RejectionResult
from .learning import LearningEngine
from .learning_model import CodebaseConvention, ProjectLesson
from .logging_utils import configure_logging, summarize_task
from .model import (
    ActivityRecord,
    AgentCapability,
    Column,
    IterationLogEntry,
    Session,
    Sprint,
    SprintIteration,
    SprintStatus,
    Task,
)
from .policy import Action, Actor, authorize
from .sessions import BoardVerification, SessionTracker
from .sprints import SprintController, SprintTransition
from .storage import BoardRepository, FileBoardRepository, InMemoryBoardRepository
from .tasks import TaskStore
from .utils import _now_iso


@dataclass
class IterationStart:
    """Result of starting (or resuming) an iteration, with the learning context."""

    entry: IterationLogEntry
    created: bool
    context: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"entry": self.entry.to_dict(), "created": self.created, "context": self.context}


class _Outbox:
    """Events queued during one mutation, published after it is saved."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def add(self, event_kind: str, **payload: Any) -> None:
        self.events.append((event_kind, payload))


class KanbanEngine:
    """Coordinate tasks, sprints and learning on one board.

    Parameters
    ----------
    repository:
        Where snapshots are loaded from and saved to.  Defaults to an
        in-memory repository.
    config:
        Engine configuration; defaults apply when omitted.
    notifiers:
        Receivers for board events.
    """

    def __init__(
        self,
        repository: Optional[BoardRepository] = None,
        *,
        config: Optional[EngineConfig] = None,
        notifiers: Optional[Iterable[Notifier]] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.repository = repository or InMemoryBoardRepository()
        self.bus = EventBus(notifiers)
        self._lock = threading.RLock()
        self._save_pending = False

        self.state = BoardState.from_dict(self.repository.load_snapshot())
        self.graph = DependencyGraph(self.state)
        self.tasks = TaskStore(self.state, self.config)
        self.learning = LearningEngine(self.state, self.config)
        self.iterations = IterationTracker(self.state, self.tasks, self.learning)
        self.sprints = SprintController(self.state, self.tasks, self.config)
        self.health = HealthMonitor(self.state, self.config)
        self.agents = AgentRegistry(self.state)
        self.sessions = SessionTracker(self.state, self.tasks, self.learning, self.config)
        logger.debug(
            "Loaded board: {} task(s), {} sprint(s), {} lesson(s)",
            len(self.state.tasks),
            len(self.state.sprints),
            len(self.state.lessons),
        )

    @classmethod
    def open(
        cls,
        project_dir: Path,
        *,
        notifiers: Optional[Iterable[Notifier]] = None,
        setup_logging: bool = False,
    ) -> "KanbanEngine":
        """Open the file-backed board of *project_dir* (``.kanban/`` inside it).

        With ``setup_logging`` the loguru sink is (re)installed at the level
        from ``config.yaml``.
        """
        config, err = load_engine_config(project_dir)
        if setup_logging:
            configure_logging(config.log_level)
        if err:
            logger.warning("Ignoring unreadable engine config: {}", err)
        state_dir = project_dir.resolve() / STATE_DIR_NAME
        all_notifiers: list[Notifier] = [JsonlEventLog(state_dir / EVENTS_FILE)]
        all_notifiers.extend(notifiers or [])
        return cls(FileBoardRepository(state_dir), config=config, notifiers=all_notifiers)

    # ------------------------------------------------------------------
    # Mutation plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _mutation(self, operation: str) -> Iterator[_Outbox]:
        with self._lock:
            backup = self.state.copy()
            outbox = _Outbox()
            try:
                yield outbox
            except KanbanError as exc:
                self.state.restore(backup)
                logger.warning("{} rejected ({}): {}", operation, exc.kind, exc.message)
                raise
            except Exception:
                self.state.restore(backup)
                logger.exception("{} failed; board state restored", operation)
                raise
            self.state.last_modified = _now_iso()
            self._save()
            for event_kind, payload in outbox.events:
                self.bus.emit(event_kind, payload)

    def _save(self) -> bool:
        try:
            self.repository.save_snapshot(self.state.to_dict())
        except Exception:
            self._save_pending = True
            logger.exception("Failed to save board snapshot; will retry on next change")
            return False
        if self._save_pending:
            logger.info("Board snapshot saved after earlier failure")
        self._save_pending = False
        return True

    @property
    def save_pending(self) -> bool:
        return self._save_pending

    def flush(self) -> None:
        """Retry a failed save now.

        Raises:
            PersistenceError: The snapshot still cannot be saved.
        """
        with self._lock:
            if self._save_pending and not self._save():
                raise PersistenceError("Board snapshot could not be saved")

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return self.state.to_dict()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(
        self,
        actor: Actor,
        title: str,
        description: str = "",
        priority: str = "medium",
        *,
        assignee: Optional[str] = None,
        acceptance_criteria: Any = None,
        max_iterations: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Task:
        with self._mutation("create_task") as out:
            task = self.tasks.create_task(
                actor,
                title,
                description,
                priority,
                assignee=assignee,
                acceptance_criteria=acceptance_criteria,
                max_iterations=max_iterations,
                metadata=metadata,
            )
            out.add("task_created", task=task.to_dict())
            return task

    def get_task(self, actor: Actor, task_id: str) -> Task:
        with self._lock:
            return self.tasks.get_task(actor, task_id)

    def list_tasks(self, actor: Actor, **filters: Any) -> list[Task]:
        with self._lock:
            return self.tasks.list_tasks(actor, **filters)

    def update_task(self, actor: Actor, task_id: str, **changes: Any) -> Task:
        with self._mutation("update_task") as out:
            task = self.tasks.update_task(actor, task_id, changes)
            out.add("task_updated", task=task.to_dict(), fields=sorted(changes))
            return task

    def assign_task(self, actor: Actor, task_id: str, assignee: Optional[str]) -> Task:
        with self._mutation("assign_task") as out:
            task, previous = self.tasks.assign_task(actor, task_id, assignee)
            out.add("task_updated", task=task.to_dict(), previous_assignee=previous)
            return task

    def move_task(self, actor: Actor, task_id: str, column: Column | str) -> Task:
        with self._mutation("move_task") as out:
            task, previous = self.tasks.move_task(actor, task_id, column)
            out.add(
                "task_moved",
                task=task.to_dict(),
                from_column=previous.column.value,
                to_column=task.column.value,
                from_state=previous.value,
                to_state=task.state.value,
            )
            return task

    def delete_task(self, actor: Actor, task_id: str) -> Task:
        """Delete a task, its dependency edges and its sprint membership."""
        with self._mutation("delete_task") as out:
            task = self.tasks.delete_task(actor, task_id)
            sprint_ids = self.sprints.forget_task(task_id)
            out.add("task_deleted", task_id=task_id, title=task.title, sprint_ids=sprint_ids)
            return task

    def board(self, actor: Actor) -> dict[str, list[dict[str, Any]]]:
        with self._lock:
            authorize(actor, Action.VIEW_TASK)
            visible = {t.id for t in self.tasks.list_tasks(actor)}
            return {
                column: [t.to_dict() for t in tasks if t.id in visible]
                for column, tasks in self.tasks.board().items()
            }

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return self.tasks.stats()

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def add_dependency(self, actor: Actor, task_id: str, depends_on_id: str) -> Task:
        with self._mutation("add_dependency") as out:
            authorize(actor, Action.MANAGE_DEPENDENCIES, self.tasks.require(task_id))
            task = self.graph.add_dependency(task_id, depends_on_id)
            out.add("dependency_added", task_id=task_id, depends_on=depends_on_id)
            return task

    def remove_dependency(self, actor: Actor, task_id: str, depends_on_id: str) -> Task:
        with self._mutation("remove_dependency") as out:
            authorize(actor, Action.MANAGE_DEPENDENCIES, self.tasks.require(task_id))
            task = self.graph.remove_dependency(task_id, depends_on_id)
            out.add("dependency_removed", task_id=task_id, depends_on=depends_on_id)
            return task

    def dependency_graph(self, task_id: Optional[str] = None) -> dict[str, list[str]]:
        with self._lock:
            return self.graph.subgraph(task_id) if task_id else self.graph.adjacency()

    def execution_order(self) -> list[list[str]]:
        with self._lock:
            return self.graph.execution_order()

    # ------------------------------------------------------------------
    # Iterations
    # ------------------------------------------------------------------

    def start_iteration(self, actor: Actor, task_id: str) -> IterationStart:
        with self._mutation("start_iteration") as out:
            entry, created = self.iterations.start_iteration(actor, task_id)
            context = self.learning.get_full_context(actor.agent_id or "")
            if created:
                task = self.tasks.require(task_id)
                self.sessions.record_task_touch(actor.agent_id, task_id)
                self.sessions.log_activity(actor.agent_id, "started", task, f"Iteration {entry.iteration}")
                out.add("iteration_started", task=task.to_dict(), iteration=entry.iteration, agent_id=actor.agent_id)
            return IterationStart(entry=entry, created=created, context=context)

    def submit_iteration(
        self,
        actor: Actor,
        task_id: str,
        notes: Optional[str] = None,
        files_changed: Optional[list[str]] = None,
    ) -> IterationLogEntry:
        with self._mutation("submit_iteration") as out:
            entry = self.iterations.submit_iteration(actor, task_id, notes, files_changed)
            task = self.tasks.require(task_id)
            self.sessions.record_task_touch(actor.agent_id, task_id)
            self.sessions.log_activity(actor.agent_id, "submitting", task, notes)
            out.add("iteration_submitted", task=task.to_dict(), iteration=entry.iteration)
            return entry

    def approve_task(self, actor: Actor, task_id: str, notes: Optional[str] = None) -> Task:
        with self._mutation("approve_task") as out:
            entry = self.iterations.record_approval(actor, task_id, notes)
            task = self.tasks.require(task_id)
            self.sessions.log_activity(actor.agent_id, "qa_review", task, "approved")
            out.add("task_approved", task=task.to_dict(), iteration=entry.iteration)
            logger.info("{}", summarize_task(task))
            return task

    def reject_task(
        self,
        actor: Actor,
        task_id: str,
        feedback: str,
        category: Any,
        severity: Any = None,
    ) -> RejectionResult:
        with self._mutation("reject_task") as out:
            result = self.iterations.record_rejection(actor, task_id, feedback, category, severity)
            category_value = result.entry.feedback_category.value if result.entry.feedback_category else "unknown"
            self.sessions.log_activity(actor.agent_id, "qa_review", result.task, f"rejected: {category_value}")
            out.add("task_rejected", task=result.task.to_dict(), **result.to_dict())
            if result.lesson is not None:
                out.add("lesson_promoted", lesson=result.lesson.to_dict())
            return result

    def iteration_history(self, actor: Actor, task_id: str) -> list[IterationLogEntry]:
        with self._lock:
            return self.iterations.history(actor, task_id)

    def escalated_tasks(self) -> list[Task]:
        with self._lock:
            return self.iterations.escalated_tasks()

    # ------------------------------------------------------------------
    # Sprints
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
        with self._mutation("create_sprint") as out:
            sprint = self.sprints.create_sprint(
                actor,
                goal,
                description,
                success_criteria=success_criteria,
                max_iterations=max_iterations,
                task_ids=task_ids,
            )
            out.add("sprint_created", sprint=sprint.to_dict())
            return sprint

    def get_sprint(self, sprint_id: str) -> Sprint:
        with self._lock:
            return self.sprints.get_sprint(sprint_id)

    def list_sprints(self, status: Optional[str] = None) -> list[Sprint]:
        with self._lock:
            return self.sprints.list_sprints(status)

    def add_tasks_to_sprint(self, actor: Actor, sprint_id: str, task_ids: list[str]) -> Sprint:
        with self._mutation("add_tasks_to_sprint") as out:
            sprint = self.sprints.add_tasks(actor, sprint_id, task_ids)
            out.add("sprint_updated", sprint=sprint.to_dict(), added=list(task_ids))
            return sprint

    def remove_task_from_sprint(self, actor: Actor, sprint_id: str, task_id: str) -> Sprint:
        with self._mutation("remove_task_from_sprint") as out:
            sprint = self.sprints.remove_task(actor, sprint_id, task_id)
            out.add("sprint_updated", sprint=sprint.to_dict(), removed=[task_id])
            return sprint

    def update_sprint_status(
        self,
        actor: Actor,
        sprint_id: str,
        status: SprintStatus | str,
        *,
        reason: Optional[str] = None,
    ) -> SprintTransition:
        """Change a sprint's status.

        Running out of iterations is not raised: the sprint is saved as failed
        and the returned transition carries the ``MaxIterationsExceeded``.
        """
        with self._mutation("update_sprint_status") as out:
            result = self.sprints.update_status(actor, sprint_id, status, reason=reason)
            out.add("sprint_updated", sprint=result.sprint.to_dict(), previous=result.previous.value)
            if result.failure is not None:
                out.add("sprint_failed", sprint_id=sprint_id, error=result.failure.to_dict())
            return result

    def force_complete_sprint(self, actor: Actor, sprint_id: str, reason: str) -> Sprint:
        with self._mutation("force_complete_sprint") as out:
            sprint = self.sprints.force_complete(actor, sprint_id, reason)
            out.add("sprint_updated", sprint=sprint.to_dict(), forced=True, reason=reason)
            return sprint

    def record_sprint_lesson(self, actor: Actor, sprint_id: str, lesson: str) -> SprintIteration:
        with self._mutation("record_sprint_lesson") as out:
            entry = self.sprints.record_lesson(actor, sprint_id, lesson)
            out.add("sprint_updated", sprint=self.sprints.require(sprint_id).to_dict(), lesson=lesson)
            return entry

    def sprint_progress(self, sprint_id: str) -> dict[str, Any]:
        with self._lock:
            return self.sprints.progress(sprint_id)

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def add_lesson(
        self,
        actor: Actor,
        category: Any,
        lesson: str,
        source: str = "architect",
        applicability: Optional[list[str]] = None,
    ) -> ProjectLesson:
        with self._mutation("add_lesson") as out:
            authorize(actor, Action.MANAGE_LEARNING)
            created = self.learning.add_lesson(category, lesson, source, applicability)
            out.add("learning_updated", lesson=created.to_dict())
            return created

    def add_convention(
        self,
        actor: Actor,
        pattern: str,
        description: str,
        examples: Optional[list[str]] = None,
    ) -> CodebaseConvention:
        with self._mutation("add_convention") as out:
            authorize(actor, Action.MANAGE_LEARNING)
            convention = self.learning.add_convention(pattern, description, examples)
            out.add("learning_updated", convention=convention.to_dict())
            return convention

    def get_agent_context(self, agent_id: str) -> dict[str, Any]:
        with self._lock:
            return self.learning.get_agent_context(agent_id)

    def get_relevant_lessons(self, categories: Optional[list[Any]] = None) -> list[ProjectLesson]:
        with self._lock:
            return self.learning.get_relevant_lessons(categories)

    def get_full_context(self, agent_id: str, categories: Optional[list[Any]] = None) -> dict[str, Any]:
        with self._lock:
            return self.learning.get_full_context(agent_id, categories)

    def get_all_agent_stats(self) -> list[dict[str, Any]]:
        with self._lock:
            return self.learning.get_all_agent_stats()

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def register_agent(
        self,
        actor: Actor,
        agent_id: str,
        skills: Iterable[str] = (),
        specializations: Iterable[str] = (),
        max_concurrent_tasks: int = 3,
    ) -> AgentCapability:
        with self._mutation("register_agent") as out:
            agent = self.agents.register_agent(actor, agent_id, skills, specializations, max_concurrent_tasks)
            out.add("agent_updated", agent=agent.to_dict())
            return agent

    def update_agent(self, actor: Actor, agent_id: str, **changes: Any) -> AgentCapability:
        with self._mutation("update_agent") as out:
            agent = self.agents.update_agent(actor, agent_id, changes)
            out.add("agent_updated", agent=agent.to_dict())
            return agent

    def deactivate_agent(self, actor: Actor, agent_id: str) -> AgentCapability:
        with self._mutation("deactivate_agent") as out:
            agent = self.agents.deactivate_agent(actor, agent_id)
            out.add("agent_updated", agent=agent.to_dict())
            return agent

    def delete_agent(self, actor: Actor, agent_id: str) -> AgentCapability:
        with self._mutation("delete_agent") as out:
            agent = self.agents.delete_agent(actor, agent_id)
            out.add("agent_deleted", agent_id=agent_id)
            return agent

    def list_agents(self, active_only: bool = True) -> list[AgentCapability]:
        with self._lock:
            return self.agents.list_agents(active_only)

    def find_best_agent(
        self,
        labels: Iterable[str] = (),
        keywords: Iterable[str] = (),
        title: Optional[str] = None,
    ) -> Optional[AgentMatch]:
        with self._lock:
            return self.agents.find_best_agent(labels, keywords, title)

    def find_best_match(
        self,
        labels: Iterable[str] = (),
        keywords: Iterable[str] = (),
        title: Optional[str] = None,
    ) -> list[AgentMatch]:
        with self._lock:
            return self.agents.find_best_match(labels, keywords, title)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start_session(
        self,
        actor: Actor,
        agent_id: Optional[str] = None,
        context_summary: Optional[str] = None,
    ) -> Session:
        with self._mutation("start_session") as out:
            session, abandoned = self.sessions.start_session(actor, agent_id, context_summary)
            if abandoned is not None:
                out.add("session_ended", session=abandoned.to_dict())
            out.add("session_started", session=session.to_dict())
            return session

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
        with self._mutation("end_session") as out:
            session = self.sessions.end_session(
                actor,
                notes,
                agent_id=agent_id,
                pending_items=pending_items,
                known_issues=known_issues,
                clean_state=clean_state,
            )
            out.add("session_ended", session=session.to_dict())
            return session

    def get_active_session(self, agent_id: str) -> Optional[Session]:
        with self._lock:
            return self.sessions.get_active_session(agent_id)

    def get_last_session(self, agent_id: str) -> Optional[Session]:
        with self._lock:
            return self.sessions.get_last_session(agent_id)

    def get_session_context(self, agent_id: str) -> dict[str, Any]:
        with self._lock:
            return self.sessions.get_session_context(agent_id)

    def recent_activity(self, limit: int = 10) -> list[ActivityRecord]:
        with self._lock:
            return self.sessions.recent_activity(limit)

    def suggested_next_task(self, agent_id: Optional[str] = None) -> Optional[Task]:
        with self._lock:
            return self.sessions.suggested_next_task(agent_id)

    def verify_board_health(self, now: Optional[datetime] = None) -> BoardVerification:
        with self._lock:
            return self.sessions.verify_board_health(now)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_check(self, now: Optional[datetime] = None) -> HealthReport:
        with self._lock:
            return self.health.check(now)
