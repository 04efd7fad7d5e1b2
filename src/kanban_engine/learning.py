"""Feedback learning across tasks, agents and the project.

Three tiers of memory:

1. Task feedback, kept in each task's ``iteration_log``.
2. Per-agent mistake patterns and recent feedback (:class:`AgentLearningProfile`).
3. Project lessons and codebase conventions shared by every agent.

A QA rejection updates tier 2.  When enough agents share a mistake pattern
for the rejected category, the feedback is promoted to a tier 3 lesson.
Lesson extraction is a text clean-up, not language understanding.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Optional

from loguru import logger

from .board import BoardState
from .config import EngineConfig, LearningConfig
from .constants import REJECTED_PREFIX
from .errors import ValidationError
from .learning_model import AgentLearningProfile, CodebaseConvention, FeedbackRecord, MistakePattern, ProjectLesson
from .model import FeedbackCategory, FeedbackSeverity, Task
from .utils import _now_iso

_REJECTED_RE = re.compile(r"^" + re.escape(REJECTED_PREFIX) + r"\s*", re.IGNORECASE)
_WS_RE = re.compile(r"\s+")


def _coerce_category(raw: Any) -> FeedbackCategory:
    try:
        return FeedbackCategory(raw)
    except ValueError:
        raise ValidationError(f"Unknown feedback category '{raw}'") from None


class LearningEngine:
    def __init__(self, state: BoardState, config: Optional[EngineConfig] = None) -> None:
        self.state = state
        self.settings: LearningConfig = (config or EngineConfig()).learning

    # ------------------------------------------------------------------
    # Tier 2: agents
    # ------------------------------------------------------------------

    def get_agent_profile(self, agent_id: str) -> AgentLearningProfile:
        """Return the stored profile, or a fresh unsaved one for a new agent."""
        return self.state.agent_profiles.get(agent_id) or AgentLearningProfile(agent_id=agent_id)

    def _profile_for_update(self, agent_id: str) -> AgentLearningProfile:
        profile = self.state.agent_profiles.get(agent_id)
        if profile is None:
            profile = self.state.agent_profiles.upsert(AgentLearningProfile(agent_id=agent_id))
        return profile

    def record_task_completion(self, agent_id: str, iterations_used: int) -> AgentLearningProfile:
        profile = self._profile_for_update(agent_id)
        profile.tasks_completed += 1
        profile.total_iterations += max(1, int(iterations_used))
        profile.last_updated = _now_iso()
        logger.info(
            "Agent {} completed a task in {} iteration(s); avg {:.2f}",
            agent_id,
            iterations_used,
            profile.avg_iterations_per_task,
        )
        return profile

    def record_rejection(
        self,
        agent_id: str,
        task: Task,
        feedback: str,
        category: FeedbackCategory | str,
        severity: FeedbackSeverity | str | None = None,
    ) -> Optional[ProjectLesson]:
        """Learn from a QA rejection.

        Returns:
            The project lesson created or reinforced by this rejection, if the
            category crossed the promotion threshold.
        """
        category = _coerce_category(category)
        now = _now_iso()
        profile = self._profile_for_update(agent_id)

        profile.recent_feedback.insert(
            0,
            FeedbackRecord(task_id=task.id, task_title=task.title, feedback=feedback, category=category, timestamp=now),
        )
        del profile.recent_feedback[self.settings.recent_feedback_limit:]

        pattern = profile.pattern_for(category)
        if pattern is None:
            pattern = MistakePattern(category=category, description=category.description)
            profile.mistake_patterns.append(pattern)
        pattern.occurrences += 1
        pattern.last_seen = now
        if task.id not in pattern.example_task_ids:
            pattern.example_task_ids.append(task.id)
            pattern.example_task_ids = pattern.example_task_ids[-self.settings.example_task_limit:]

        # Most frequent first; sort is stable so ties keep their order.
        profile.mistake_patterns.sort(key=lambda p: p.occurrences, reverse=True)
        profile.last_updated = now
        logger.info(
            "Recorded {} rejection for {} on {} (severity {}, {} occurrence(s))",
            category.value,
            agent_id,
            task.id,
            getattr(severity, "value", severity),
            pattern.occurrences,
        )
        if pattern.occurrences < self.settings.promotion_trigger_occurrences:
            return None
        return self._maybe_promote(category, feedback, task.id)

    def agents_with_pattern(self, category: FeedbackCategory) -> list[str]:
        """Agents whose *category* pattern reached the promotion occurrence count."""
        threshold = self.settings.promotion_min_occurrences
        out: list[str] = []
        for profile in self.state.agent_profiles:
            pattern = profile.pattern_for(category)
            if pattern is not None and pattern.occurrences >= threshold:
                out.append(profile.agent_id)
        return out

    def get_agent_context(self, agent_id: str) -> dict[str, Any]:
        profile = self.get_agent_profile(agent_id)
        return {
            "mistake_patterns": [p.to_dict() for p in profile.mistake_patterns[: self.settings.context_patterns]],
            "recent_feedback": [f.to_dict() for f in profile.recent_feedback[: self.settings.context_feedback]],
            "avg_iterations": profile.avg_iterations_per_task,
        }

    def get_all_agent_stats(self) -> list[dict[str, Any]]:
        return [
            {
                "agent_id": profile.agent_id,
                "tasks_completed": profile.tasks_completed,
                "avg_iterations": profile.avg_iterations_per_task,
                "top_mistake_category": profile.mistake_patterns[0].category.value if profile.mistake_patterns else None,
            }
            for profile in self.state.agent_profiles
        ]

    # ------------------------------------------------------------------
    # Tier 3: project
    # ------------------------------------------------------------------

    def add_lesson(
        self,
        category: FeedbackCategory | str,
        lesson: str,
        source: str,
        applicability: Optional[Iterable[str]] = None,
    ) -> ProjectLesson:
        """Insert a lesson, or reinforce the existing one with the same text."""
        category = _coerce_category(category)
        text = (lesson or "").strip()
        if not text:
            raise ValidationError("lesson text must be non-empty")
        for existing in self.state.lessons:
            if existing.matches(category, text):
                existing.occurrences += 1
                existing.confidence = min(1.0, round(existing.confidence + self.settings.confidence_step, 6))
                existing.updated_at = _now_iso()
                return existing
        created = ProjectLesson(
            category=category,
            lesson=text,
            source=source,
            applicability=list(applicability or []),
            confidence=self.settings.initial_confidence,
        )
        self.state.lessons.upsert(created)
        logger.info("Added project lesson {}: {}", created.id, text)
        return created

    def get_relevant_lessons(self, categories: Optional[Iterable[FeedbackCategory | str]] = None) -> list[ProjectLesson]:
        lessons = self.state.lessons.list()
        wanted = {_coerce_category(c) for c in categories or []}
        if wanted:
            lessons = [lesson for lesson in lessons if lesson.category in wanted]
        lessons.sort(key=lambda lesson: lesson.score, reverse=True)
        return lessons[: self.settings.top_lessons]

    def add_convention(self, pattern: str, description: str, examples: Optional[Iterable[str]] = None) -> CodebaseConvention:
        pattern = (pattern or "").strip()
        if not pattern:
            raise ValidationError("convention pattern must be non-empty")
        existing = self.state.conventions.get(pattern)
        if existing is not None:
            existing.description = description
            existing.merge_examples(list(examples or []))
            return existing
        convention = CodebaseConvention(pattern=pattern, description=description)
        convention.merge_examples(list(examples or []))
        return self.state.conventions.upsert(convention)

    def get_conventions(self) -> list[CodebaseConvention]:
        return self.state.conventions.list()

    def get_full_context(
        self,
        agent_id: str,
        categories: Optional[Iterable[FeedbackCategory | str]] = None,
    ) -> dict[str, Any]:
        """Everything an agent should read before starting work."""
        agent = self.get_agent_context(agent_id)
        return {
            "agent_mistakes": agent["mistake_patterns"],
            "agent_recent_feedback": agent["recent_feedback"],
            "avg_iterations": agent["avg_iterations"],
            "project_lessons": [lesson.to_dict() for lesson in self.get_relevant_lessons(categories)],
            "codebase_conventions": [c.to_dict() for c in self.get_conventions()],
        }

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    def extract_lesson(self, category: FeedbackCategory, feedback: str) -> Optional[str]:
        cleaned = _WS_RE.sub(" ", _REJECTED_RE.sub("", (feedback or "").strip())).strip()
        if not self.settings.lesson_min_length <= len(cleaned) <= self.settings.lesson_max_length:
            return None
        return f"{category.description}: {cleaned}"

    def _maybe_promote(self, category: FeedbackCategory, feedback: str, source_task_id: str) -> Optional[ProjectLesson]:
        if len(self.agents_with_pattern(category)) < self.settings.promotion_min_agents:
            return None
        text = self.extract_lesson(category, feedback)
        if text is None:
            return None
        lesson = self.add_lesson(category, text, f"Auto-promoted from task {source_task_id}")
        logger.info("Promoted {} pattern to project lesson {}", category.value, lesson.id)
        return lesson
