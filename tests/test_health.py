"""Tests for board health checks (health.py)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest

from kanban_engine.board import BoardState
from kanban_engine.config import EngineConfig, HealthConfig
from kanban_engine.health import HealthMonitor, HealthStatus, Severity
from kanban_engine.model import Priority, Sprint, SprintStatus, Task, TaskState

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def monitor(state: BoardState) -> HealthMonitor:
    return HealthMonitor(state)


@pytest.fixture
def healthy_backlog(add_task: Callable[..., Task]) -> None:
    for n in range(3):
        add_task(f"backlog-{n}")


def _kinds(monitor: HealthMonitor) -> list[str]:
    return [issue.kind for issue in monitor.check(NOW).issues]


class TestChecks:
    def test_healthy_board(self, monitor: HealthMonitor, healthy_backlog: None) -> None:
        report = monitor.check(NOW)
        assert report.status == HealthStatus.HEALTHY
        assert report.issues == []
        assert report.summary == "Board is healthy"
        assert report.checked_at == NOW.isoformat()

    def test_empty_backlog_is_critical(self, monitor: HealthMonitor) -> None:
        report = monitor.check(NOW)
        (issue,) = report.by_kind("low_backlog")
        assert issue.severity == Severity.CRITICAL
        assert report.status == HealthStatus.CRITICAL

    def test_low_backlog_is_medium(self, monitor: HealthMonitor, add_task: Callable[..., Task]) -> None:
        add_task("only")
        (issue,) = monitor.check(NOW).by_kind("low_backlog")
        assert issue.severity == Severity.MEDIUM

    def test_stale_task(self, monitor: HealthMonitor, healthy_backlog: None, add_task: Callable[..., Task]) -> None:
        add_task("old", state=TaskState.IN_PROGRESS, updated_at=(NOW - timedelta(hours=30)).isoformat())
        add_task("fresh", state=TaskState.IN_PROGRESS, updated_at=(NOW - timedelta(hours=2)).isoformat())
        add_task("parked", state=TaskState.BLOCKED, assignee="a1", updated_at=(NOW - timedelta(days=5)).isoformat())
        report = monitor.check(NOW)
        (issue,) = report.by_kind("stale_task")
        assert issue.ids == ["old"]
        assert "30h" in issue.message
        assert report.status == HealthStatus.WARNING

    def test_stale_threshold_is_configurable(self, state: BoardState, add_task: Callable[..., Task]) -> None:
        add_task("t", state=TaskState.IN_PROGRESS, updated_at=(NOW - timedelta(hours=2)).isoformat())
        monitor = HealthMonitor(state, EngineConfig(health=HealthConfig(stale_threshold_hours=1)))
        assert "stale_task" in _kinds(monitor)

    def test_unassigned_blocked(self, monitor: HealthMonitor, add_task: Callable[..., Task]) -> None:
        add_task("orphan", state=TaskState.BLOCKED)
        add_task("owned", state=TaskState.BLOCKED, assignee="a1")
        (issue,) = monitor.check(NOW).by_kind("unassigned_blocked")
        assert issue.ids == ["orphan"]
        assert issue.severity == Severity.HIGH

    @pytest.mark.parametrize("count,severity", [(5, None), (6, Severity.MEDIUM), (9, Severity.HIGH)])
    def test_overloaded_agent(
        self,
        monitor: HealthMonitor,
        add_task: Callable[..., Task],
        count: int,
        severity: Severity,
    ) -> None:
        for n in range(count):
            add_task(f"t{n}", state=TaskState.IN_PROGRESS, assignee="busy", updated_at=NOW.isoformat())
        issues = monitor.check(NOW).by_kind("overloaded_agent")
        if severity is None:
            assert issues == []
        else:
            assert [(i.ids, i.severity) for i in issues] == [(["busy"], severity)]

    def test_pending_qa_backlog(self, monitor: HealthMonitor, healthy_backlog: None, add_task: Callable[..., Task]) -> None:
        for n in range(3):
            add_task(f"review-{n}", state=TaskState.AWAITING_REVIEW)
        assert "pending_qa_backlog" not in _kinds(monitor)
        add_task("review-3", state=TaskState.AWAITING_REVIEW)
        (issue,) = monitor.check(NOW).by_kind("pending_qa_backlog")
        assert len(issue.ids) == 4

    def test_critical_not_started(self, monitor: HealthMonitor, add_task: Callable[..., Task]) -> None:
        add_task("urgent", priority=Priority.CRITICAL)
        add_task("urgent-but-started", priority=Priority.CRITICAL, state=TaskState.IN_PROGRESS, updated_at=NOW.isoformat())
        (issue,) = monitor.check(NOW).by_kind("critical_not_started")
        assert issue.ids == ["urgent"]

    def test_circular_dependency(self, monitor: HealthMonitor, healthy_backlog: None, add_task: Callable[..., Task]) -> None:
        add_task("a", depends_on=["b"])
        add_task("b", depends_on=["a"])
        report = monitor.check(NOW)
        (issue,) = report.by_kind("circular_dependency")
        assert set(issue.ids) == {"a", "b"}
        assert report.status == HealthStatus.CRITICAL

    def test_escalated_task(self, monitor: HealthMonitor, healthy_backlog: None, add_task: Callable[..., Task]) -> None:
        add_task("stuck", state=TaskState.IN_PROGRESS, iteration=4, max_iterations=3, updated_at=NOW.isoformat())
        add_task("finished", state=TaskState.DONE, iteration=4, max_iterations=3)
        (issue,) = monitor.check(NOW).by_kind("escalated_task")
        assert issue.ids == ["stuck"]
        assert issue.severity == Severity.HIGH

    def test_sprint_at_iteration_limit(self, monitor: HealthMonitor, state: BoardState, healthy_backlog: None) -> None:
        last = state.sprints.upsert(
            Sprint(goal="Last", status=SprintStatus.REVIEWING, current_iteration=3, max_iterations=3)
        )
        state.sprints.upsert(Sprint(goal="Early", status=SprintStatus.EXECUTING, current_iteration=1, max_iterations=3))
        state.sprints.upsert(Sprint(goal="Done", status=SprintStatus.COMPLETE, current_iteration=3, max_iterations=3))
        report = monitor.check(NOW)
        (issue,) = report.by_kind("sprint_at_iteration_limit")
        assert issue.ids == [last.id]
        assert report.status == HealthStatus.HEALTHY


class TestReport:
    def test_summary_counts_by_severity(self, monitor: HealthMonitor, add_task: Callable[..., Task]) -> None:
        add_task("orphan", state=TaskState.BLOCKED)
        report = monitor.check(NOW)
        assert report.summary == "2 issue(s): 1 critical, 1 high"

    def test_check_does_not_mutate(self, monitor: HealthMonitor, state: BoardState, add_task: Callable[..., Task]) -> None:
        add_task("a", depends_on=["b"])
        add_task("b", depends_on=["a"])
        before = state.to_dict()
        monitor.check(NOW)
        assert state.to_dict() == before

    def test_to_dict(self, monitor: HealthMonitor) -> None:
        data = monitor.check(NOW).to_dict()
        assert data["status"] == "critical"
        assert data["issues"][0] == {
            "kind": "low_backlog",
            "severity": "critical",
            "message": "Backlog has 0 task(s); threshold is 3",
            "ids": [],
        }


class TestClock:
    def test_naive_now_is_treated_as_utc(
        self, monitor: HealthMonitor, healthy_backlog: None, add_task: Callable[..., Task]
    ) -> None:
        add_task("busy", state=TaskState.IN_PROGRESS, updated_at=(NOW - timedelta(hours=30)).isoformat())
        report = monitor.check(NOW.replace(tzinfo=None))
        assert [i.ids for i in report.by_kind("stale_task")] == [["busy"]]
        assert report.checked_at == NOW.isoformat()
