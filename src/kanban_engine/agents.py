"""Agent capability registry and capability-based assignment.

Agents advertise skills and specializations; :meth:`AgentRegistry.find_best_match`
scores every active agent against a task's labels, keywords and title, and
penalizes agents that have no free slots left.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from loguru import logger

from .board import BoardState
from .constants import DEFAULT_AGENT_MAX_CONCURRENT_TASKS
from .errors import NotFound, ValidationError
from .model import AgentCapability, TaskState, _normalize_terms
from .policy import Action, Actor, authorize
from .utils import _now_iso

# Match weights.
LABEL_SKILL_SCORE = 10
LABEL_SPECIALIZATION_SCORE = 8
KEYWORD_SKILL_SCORE = 5
TITLE_SKILL_SCORE = 5
TITLE_SKILL_MAX = 3
TITLE_SPECIALIZATION_SCORE = 3
TITLE_SPECIALIZATION_MAX = 2
OVERLOADED_PENALTY = -100
NEARLY_FULL_PENALTY = -5

_TITLE_SPLIT_RE = re.compile(r"[\s\-_./]+")

_UPDATABLE_FIELDS = {"skills", "specializations", "max_concurrent_tasks", "is_active"}


@dataclass
class AgentMatch:
    agent_id: str
    score: int
    current_workload: int
    matched_skills: list[str] = field(default_factory=list)
    matched_specializations: list[str] = field(default_factory=list)
    reason: str = "available"

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "score": self.score,
            "current_workload": self.current_workload,
            "matched_skills": list(self.matched_skills),
            "matched_specializations": list(self.matched_specializations),
            "reason": self.reason,
        }


def _title_words(title: Optional[str]) -> list[str]:
    return [w for w in _TITLE_SPLIT_RE.split((title or "").lower()) if len(w) > 2]


def _overlaps(word: str, terms: list[str]) -> bool:
    return any(word in term or term in word for term in terms)


class AgentRegistry:
    def __init__(self, state: BoardState) -> None:
        self.state = state

    def require(self, agent_id: str) -> AgentCapability:
        agent = self.state.agents.get(agent_id)
        if agent is None:
            raise NotFound(f"Agent not found: {agent_id}", ids=[agent_id])
        return agent

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_agent(
        self,
        actor: Actor,
        agent_id: str,
        skills: Iterable[str] = (),
        specializations: Iterable[str] = (),
        max_concurrent_tasks: int = DEFAULT_AGENT_MAX_CONCURRENT_TASKS,
    ) -> AgentCapability:
        """Register (or re-register) an agent; re-registering keeps ``created_at``."""
        authorize(actor, Action.MANAGE_AGENTS)
        agent_id = (agent_id or "").strip()
        if not agent_id:
            raise ValidationError("agent_id must be non-empty")
        _check_capacity(max_concurrent_tasks)
        existing = self.state.agents.get(agent_id)
        agent = AgentCapability(
            agent_id=agent_id,
            skills=list(skills),
            specializations=list(specializations),
            max_concurrent_tasks=max_concurrent_tasks,
        )
        if existing is not None:
            agent.created_at = existing.created_at
        self.state.agents.upsert(agent)
        logger.info("Registered agent {} (skills={}, specializations={})", agent_id, agent.skills, agent.specializations)
        return agent

    def update_agent(self, actor: Actor, agent_id: str, changes: dict[str, Any]) -> AgentCapability:
        authorize(actor, Action.MANAGE_AGENTS)
        agent = self.require(agent_id)
        unknown = sorted(set(changes) - _UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update agent fields: {', '.join(unknown)}", ids=[agent_id])
        if "max_concurrent_tasks" in changes:
            _check_capacity(changes["max_concurrent_tasks"])
        if "skills" in changes:
            agent.skills = _normalize_terms(list(changes["skills"] or []))
        if "specializations" in changes:
            agent.specializations = _normalize_terms(list(changes["specializations"] or []))
        if "max_concurrent_tasks" in changes:
            agent.max_concurrent_tasks = changes["max_concurrent_tasks"]
        if "is_active" in changes:
            agent.is_active = bool(changes["is_active"])
        agent.updated_at = _now_iso()
        return agent

    def deactivate_agent(self, actor: Actor, agent_id: str) -> AgentCapability:
        return self.update_agent(actor, agent_id, {"is_active": False})

    def delete_agent(self, actor: Actor, agent_id: str) -> AgentCapability:
        authorize(actor, Action.MANAGE_AGENTS)
        agent = self.require(agent_id)
        self.state.agents.delete(agent_id)
        logger.info("Deleted agent {}", agent_id)
        return agent

    def list_agents(self, active_only: bool = True) -> list[AgentCapability]:
        agents = self.state.agents.list(lambda a: a.is_active or not active_only)
        agents.sort(key=lambda a: a.updated_at, reverse=True)
        return agents

    # ------------------------------------------------------------------
    # Workload
    # ------------------------------------------------------------------

    def workload(self, agent_id: str) -> int:
        """Number of tasks the agent currently has in progress."""
        return sum(1 for t in self.state.tasks if t.assignee == agent_id and t.state is TaskState.IN_PROGRESS)

    def available_agents(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for agent in self.list_agents(active_only=True):
            load = self.workload(agent.agent_id)
            slots = agent.max_concurrent_tasks - load
            if slots > 0:
                out.append({**agent.to_dict(), "current_workload": load, "available_slots": slots})
        return out

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def find_best_match(
        self,
        labels: Iterable[str] = (),
        keywords: Iterable[str] = (),
        title: Optional[str] = None,
    ) -> list[AgentMatch]:
        """Score every active agent against the requirements, best first.

        Without any requirements every active agent is returned; otherwise only
        agents with a positive score are.  Ties go to the less loaded agent.
        """
        labels = [str(x).lower().strip() for x in labels]
        keywords = [str(x).lower().strip() for x in keywords]
        words = _title_words(title)
        has_requirements = bool(labels or keywords or words)

        results: list[AgentMatch] = []
        for agent in self.list_agents(active_only=True):
            load = self.workload(agent.agent_id)
            match = AgentMatch(agent_id=agent.agent_id, score=0, current_workload=load)
            reasons: list[str] = []

            for label in labels:
                if label in agent.skills:
                    match.score += LABEL_SKILL_SCORE
                    match.matched_skills.append(label)
                    reasons.append(f"skill:{label}")
            for label in labels:
                if label in agent.specializations:
                    match.score += LABEL_SPECIALIZATION_SCORE
                    match.matched_specializations.append(label)
                    reasons.append(f"specialization:{label}")
            for keyword in keywords:
                if keyword in agent.skills and keyword not in match.matched_skills:
                    match.score += KEYWORD_SKILL_SCORE
                    match.matched_skills.append(keyword)
                    reasons.append(f"keyword-skill:{keyword}")

            title_hits = 0
            for word in words:
                if title_hits >= TITLE_SKILL_MAX:
                    break
                if _overlaps(word, agent.skills):
                    match.score += TITLE_SKILL_SCORE
                    title_hits += 1
                    reasons.append(f"title-skill:{word}")
            spec_hits = 0
            for word in words:
                if spec_hits >= TITLE_SPECIALIZATION_MAX:
                    break
                if _overlaps(word, agent.specializations):
                    match.score += TITLE_SPECIALIZATION_SCORE
                    spec_hits += 1
                    reasons.append(f"title-specialization:{word}")

            slots = agent.max_concurrent_tasks - load
            if slots <= 0:
                match.score += OVERLOADED_PENALTY
                reasons.append("overloaded")
            elif slots == 1:
                match.score += NEARLY_FULL_PENALTY
                reasons.append("nearly-full")

            if match.score > 0 or not has_requirements:
                match.matched_skills = list(dict.fromkeys(match.matched_skills))
                match.matched_specializations = list(dict.fromkeys(match.matched_specializations))
                match.reason = ", ".join(reasons) or "available"
                results.append(match)

        results.sort(key=lambda m: (-m.score, m.current_workload))
        return results

    def find_best_agent(
        self,
        labels: Iterable[str] = (),
        keywords: Iterable[str] = (),
        title: Optional[str] = None,
    ) -> Optional[AgentMatch]:
        matches = self.find_best_match(labels, keywords, title)
        if matches and matches[0].score > 0:
            return matches[0]
        return None


def _check_capacity(value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError("max_concurrent_tasks must be an integer >= 1")
