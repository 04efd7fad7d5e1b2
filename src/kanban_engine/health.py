"""Read-only board health checks.

:meth:`HealthMonitor.check` is a pure function of the tasks and sprints on
the board at a given ``now``; it never mutates state.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from .board import BoardState
from .config import EngineConfig, HealthConfig
from .graph import DependencyGraph
from .model import Priority, SprintStatus, TaskState
from .utils import _parse_iso


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class HealthIssue:
    kind: str
    severity: Severity
    message: str
    ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "severity": self.severity.value, "message": self.message, "ids": list(self.ids)}


@dataclass
class HealthReport:
    status: HealthStatus
    issues: list[HealthIssue]
    summary: str
    checked_at: str

    def by_kind(self, kind: str) -> list[HealthIssue]:
        return [issue for issue in self.issues if issue.kind == kind]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "summary": self.summary,
            "checked_at": self.checked_at,
            "issues": [issue.to_dict() for issue in self.issues],
        }


class HealthMonitor:
    def __init__(self, state: BoardState, config: Optional[EngineConfig] = None) -> None:
        self.state = state
        self.settings: HealthConfig = (config or EngineConfig()).health
        self.graph = DependencyGraph(state)

    def check(self, now: Optional[datetime] = None) -> HealthReport:
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        issues: list[HealthIssue] = []
        issues += self._stale_tasks(now)
        issues += self._unassigned_blocked()
        issues += self._low_backlog()
        issues += self._overloaded_agents()
        issues += self._pending_qa_backlog()
        issues += self._critical_not_started()
        issues += self._circular_dependencies()
        issues += self._escalated_tasks()
        issues += self._sprints_at_limit()

        severities = {issue.severity for issue in issues}
        if Severity.CRITICAL in severities:
            status = HealthStatus.CRITICAL
        elif severities & {Severity.HIGH, Severity.MEDIUM}:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.HEALTHY
        return HealthReport(status=status, issues=issues, summary=_summarize(issues), checked_at=now.isoformat())

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------

    def _stale_tasks(self, now: datetime) -> list[HealthIssue]:
        cutoff = now - timedelta(hours=self.settings.stale_threshold_hours)
        issues: list[HealthIssue] = []
        for task in self.state.tasks:
            if task.state is not TaskState.IN_PROGRESS:
                continue
            updated = _parse_iso(task.updated_at)
            if updated is None or updated >= cutoff:
                continue
            hours = int((now - updated).total_seconds() // 3600)
            issues.append(HealthIssue(
                kind="stale_task",
                severity=Severity.MEDIUM,
                message=f"Task '{task.title}' has been in progress for {hours}h without updates",
                ids=[task.id],
            ))
        return issues

    def _unassigned_blocked(self) -> list[HealthIssue]:
        return [
            HealthIssue(
                kind="unassigned_blocked",
                severity=Severity.HIGH,
                message=f"Blocked task '{task.title}' has no assignee",
                ids=[task.id],
            )
            for task in self.state.tasks
            if task.state is TaskState.BLOCKED and not task.assignee
        ]

    def _low_backlog(self) -> list[HealthIssue]:
        backlog = sum(1 for t in self.state.tasks if t.state is TaskState.BACKLOG)
        if backlog >= self.settings.low_backlog_threshold:
            return []
        return [HealthIssue(
            kind="low_backlog",
            severity=Severity.CRITICAL if backlog == 0 else Severity.MEDIUM,
            message=f"Backlog has {backlog} task(s); threshold is {self.settings.low_backlog_threshold}",
        )]

    def _overloaded_agents(self) -> list[HealthIssue]:
        load = Counter(t.assignee for t in self.state.tasks if t.state is TaskState.IN_PROGRESS and t.assignee)
        issues: list[HealthIssue] = []
        for agent_id, count in sorted(load.items()):
            if count <= self.settings.overload_threshold:
                continue
            issues.append(HealthIssue(
                kind="overloaded_agent",
                severity=Severity.HIGH if count > self.settings.overload_high_threshold else Severity.MEDIUM,
                message=f"Agent {agent_id} has {count} tasks in progress",
                ids=[agent_id],
            ))
        return issues

    def _pending_qa_backlog(self) -> list[HealthIssue]:
        pending = [t.id for t in self.state.tasks if t.pending_qa]
        if len(pending) <= self.settings.pending_qa_threshold:
            return []
        return [HealthIssue(
            kind="pending_qa_backlog",
            severity=Severity.MEDIUM,
            message=f"{len(pending)} tasks are waiting for QA review",
            ids=pending,
        )]

    def _critical_not_started(self) -> list[HealthIssue]:
        return [
            HealthIssue(
                kind="critical_not_started",
                severity=Severity.HIGH,
                message=f"Critical task '{task.title}' is still in the backlog",
                ids=[task.id],
            )
            for task in self.state.tasks
            if task.priority is Priority.CRITICAL and task.state is TaskState.BACKLOG
        ]

    def _circular_dependencies(self) -> list[HealthIssue]:
        return [
            HealthIssue(
                kind="circular_dependency",
                severity=Severity.CRITICAL,
                message=f"Circular dependency: {' -> '.join(cycle + cycle[:1])}",
                ids=cycle,
            )
            for cycle in self.graph.find_cycles()
        ]

    def _escalated_tasks(self) -> list[HealthIssue]:
        return [
            HealthIssue(
                kind="escalated_task",
                severity=Severity.HIGH,
                message=f"Task '{task.title}' used {task.iteration - 1} of {task.max_iterations} iterations without approval",
                ids=[task.id],
            )
            for task in self.state.tasks
            if task.is_escalated
        ]

    def _sprints_at_limit(self) -> list[HealthIssue]:
        return [
            HealthIssue(
                kind="sprint_at_iteration_limit",
                severity=Severity.LOW,
                message=f"Sprint '{sprint.goal}' is on its last iteration ({sprint.current_iteration}/{sprint.max_iterations})",
                ids=[sprint.id],
            )
            for sprint in self.state.sprints
            if sprint.status in (SprintStatus.EXECUTING, SprintStatus.REVIEWING)
            and sprint.current_iteration >= sprint.max_iterations
        ]


def _summarize(issues: list[HealthIssue]) -> str:
    if not issues:
        return "Board is healthy"
    counts = Counter(issue.severity for issue in issues)
    parts = [f"{counts[s]} {s.value}" for s in reversed(list(Severity)) if counts[s]]
    return f"{len(issues)} issue(s): {', '.join(parts)}"
