"""Tests for the agent capability registry and matching (agents.py)."""

from __future__ import annotations

from typing import Callable

import pytest

from kanban_engine.agents import AgentRegistry
from kanban_engine.board import BoardState
from kanban_engine.errors import Forbidden, NotFound, ValidationError
from kanban_engine.model import Task, TaskState
from kanban_engine.policy import Actor


@pytest.fixture
def registry(state: BoardState) -> AgentRegistry:
    return AgentRegistry(state)


def _busy(add_task: Callable[..., Task], agent_id: str, count: int) -> None:
    for n in range(count):
        add_task(f"{agent_id}-work-{n}", state=TaskState.IN_PROGRESS, assignee=agent_id)


class TestRegistration:
    def test_register_normalizes_terms(self, registry: AgentRegistry, architect: Actor) -> None:
        agent = registry.register_agent(architect, "py-1", skills=["Python", " python ", "SQL"], specializations=["Backend"])
        assert agent.skills == ["python", "sql"]
        assert agent.specializations == ["backend"]
        assert agent.max_concurrent_tasks == 3

    def test_reregister_keeps_created_at(self, registry: AgentRegistry, architect: Actor) -> None:
        first = registry.register_agent(architect, "py-1", skills=["python"])
        second = registry.register_agent(architect, "py-1", skills=["rust"])
        assert second.created_at == first.created_at
        assert registry.require("py-1").skills == ["rust"]

    def test_only_privileged_registers(self, registry: AgentRegistry, worker: Actor) -> None:
        with pytest.raises(Forbidden):
            registry.register_agent(worker, "py-1")

    @pytest.mark.parametrize("capacity", [0, -1, True, "3"])
    def test_invalid_capacity(self, registry: AgentRegistry, architect: Actor, capacity: object) -> None:
        with pytest.raises(ValidationError):
            registry.register_agent(architect, "py-1", max_concurrent_tasks=capacity)

    def test_update_rejects_unknown_fields(self, registry: AgentRegistry, architect: Actor) -> None:
        registry.register_agent(architect, "py-1")
        with pytest.raises(ValidationError, match="agent_id"):
            registry.update_agent(architect, "py-1", {"agent_id": "other"})

    def test_update(self, registry: AgentRegistry, architect: Actor) -> None:
        registry.register_agent(architect, "py-1", skills=["python"])
        agent = registry.update_agent(architect, "py-1", {"skills": ["Go"], "max_concurrent_tasks": 5})
        assert agent.skills == ["go"]
        assert agent.max_concurrent_tasks == 5

    def test_deactivate_hides_agent(self, registry: AgentRegistry, architect: Actor) -> None:
        registry.register_agent(architect, "py-1", skills=["python"])
        registry.deactivate_agent(architect, "py-1")
        assert registry.list_agents() == []
        assert [a.agent_id for a in registry.list_agents(active_only=False)] == ["py-1"]
        assert registry.find_best_match(labels=["python"]) == []

    def test_delete(self, registry: AgentRegistry, architect: Actor) -> None:
        registry.register_agent(architect, "py-1")
        registry.delete_agent(architect, "py-1")
        with pytest.raises(NotFound):
            registry.delete_agent(architect, "py-1")


class TestWorkload:
    def test_workload_counts_in_progress_only(self, registry: AgentRegistry, architect: Actor, add_task: Callable[..., Task]) -> None:
        registry.register_agent(architect, "py-1")
        _busy(add_task, "py-1", 2)
        add_task("queued", assignee="py-1")
        assert registry.workload("py-1") == 2
        (available,) = registry.available_agents()
        assert available["available_slots"] == 1

    def test_full_agent_is_not_available(self, registry: AgentRegistry, architect: Actor, add_task: Callable[..., Task]) -> None:
        registry.register_agent(architect, "py-1", max_concurrent_tasks=1)
        _busy(add_task, "py-1", 1)
        assert registry.available_agents() == []


class TestMatching:
    def test_label_scores(self, registry: AgentRegistry, architect: Actor) -> None:
        registry.register_agent(architect, "full", skills=["python"], specializations=["python"])
        registry.register_agent(architect, "skill", skills=["python"])
        registry.register_agent(architect, "specialist", specializations=["python"])
        registry.register_agent(architect, "none", skills=["rust"])
        matches = registry.find_best_match(labels=["Python"])
        assert [(m.agent_id, m.score) for m in matches] == [("full", 18), ("skill", 10), ("specialist", 8)]
        assert matches[0].matched_skills == ["python"]
        assert matches[0].matched_specializations == ["python"]

    def test_keyword_not_double_counted(self, registry: AgentRegistry, architect: Actor) -> None:
        registry.register_agent(architect, "py-1", skills=["python", "sql"])
        (match,) = registry.find_best_match(labels=["python"], keywords=["python", "sql"])
        assert match.score == 15
        assert match.matched_skills == ["python", "sql"]

    def test_title_matches_are_capped(self, registry: AgentRegistry, architect: Actor) -> None:
        registry.register_agent(
            architect,
            "api-1",
            skills=["api", "auth", "tokens", "login"],
            specializations=["api", "auth", "login"],
        )
        (match,) = registry.find_best_match(title="Build api/auth login-tokens flow")
        assert match.score == 3 * 5 + 2 * 3

    def test_short_title_words_ignored(self, registry: AgentRegistry, architect: Actor) -> None:
        registry.register_agent(architect, "ui-1", skills=["ui"])
        assert registry.find_best_match(title="Fix ui") == []

    def test_capacity_penalties(self, registry: AgentRegistry, architect: Actor, add_task: Callable[..., Task]) -> None:
        registry.register_agent(architect, "idle", skills=["python"])
        registry.register_agent(architect, "nearly", skills=["python"])
        registry.register_agent(architect, "full", skills=["python"])
        _busy(add_task, "nearly", 2)
        _busy(add_task, "full", 3)
        matches = registry.find_best_match(labels=["python"])
        assert [(m.agent_id, m.score) for m in matches] == [("idle", 10), ("nearly", 5)]
        assert "nearly-full" in matches[1].reason

    def test_no_requirements_lists_all_active(self, registry: AgentRegistry, architect: Actor, add_task: Callable[..., Task]) -> None:
        registry.register_agent(architect, "a", skills=["python"])
        registry.register_agent(architect, "b", skills=["rust"])
        _busy(add_task, "a", 1)
        matches = registry.find_best_match()
        assert [m.agent_id for m in matches] == ["b", "a"]
        assert matches[0].reason == "available"
        assert registry.find_best_agent() is None

    def test_ties_go_to_less_loaded(self, registry: AgentRegistry, architect: Actor, add_task: Callable[..., Task]) -> None:
        registry.register_agent(architect, "a", skills=["python"], max_concurrent_tasks=10)
        registry.register_agent(architect, "b", skills=["python"], max_concurrent_tasks=10)
        _busy(add_task, "a", 2)
        assert registry.find_best_agent(labels=["python"]).agent_id == "b"

    def test_best_agent_requires_positive_score(self, registry: AgentRegistry, architect: Actor) -> None:
        registry.register_agent(architect, "a", skills=["rust"])
        assert registry.find_best_agent(labels=["python"]) is None
