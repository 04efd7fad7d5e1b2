"""Records kept by the learning engine.

Tier 1 (task feedback) lives in ``Task.iteration_log``.  This module holds
tier 2 (per-agent mistake patterns) and tier 3 (project lessons and codebase
conventions).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from .model import FeedbackCategory, _coerce_enum, _coerce_int
from .utils import _generate_id, _now_iso, _unique


@dataclass
class MistakePattern:
    category: FeedbackCategory
    description: str = ""
    occurrences: int = 0
    last_seen: str = field(default_factory=_now_iso)
    example_task_ids: list[str] = field(default_factory=list)
    mitigation: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "description": self.description,
            "occurrences": self.occurrences,
            "last_seen": self.last_seen,
            "example_task_ids": list(self.example_task_ids),
            "mitigation": self.mitigation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MistakePattern":
        category = _coerce_enum(FeedbackCategory, data.get("category"), FeedbackCategory.OTHER)
        return cls(
            category=category,
            description=str(data.get("description") or category.description),
            occurrences=_coerce_int(data.get("occurrences"), 0),
            last_seen=str(data.get("last_seen") or _now_iso()),
            example_task_ids=list(data.get("example_task_ids") or []),
            mitigation=data.get("mitigation"),
        )


@dataclass
class FeedbackRecord:
    task_id: str
    task_title: str
    feedback: str
    category: FeedbackCategory
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "task_title": self.task_title,
            "feedback": self.feedback,
            "category": self.category.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FeedbackRecord":
        return cls(
            task_id=str(data.get("task_id") or ""),
            task_title=str(data.get("task_title") or ""),
            feedback=str(data.get("feedback") or ""),
            category=_coerce_enum(FeedbackCategory, data.get("category"), FeedbackCategory.OTHER),
            timestamp=str(data.get("timestamp") or _now_iso()),
        )


@dataclass
class AgentLearningProfile:
    agent_id: str
    tasks_completed: int = 0
    total_iterations: int = 0
    mistake_patterns: list[MistakePattern] = field(default_factory=list)
    strengths: list[str] = field(default_factory=list)
    recent_feedback: list[FeedbackRecord] = field(default_factory=list)
    last_updated: str = field(default_factory=_now_iso)

    @property
    def id(self) -> str:
        return self.agent_id

    @property
    def avg_iterations_per_task(self) -> float:
        if not self.tasks_completed:
            return 0.0
        return self.total_iterations / self.tasks_completed

    def pattern_for(self, category: FeedbackCategory) -> Optional[MistakePattern]:
        for pattern in self.mistake_patterns:
            if pattern.category is category:
                return pattern
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "tasks_completed": self.tasks_completed,
            "total_iterations": self.total_iterations,
            "avg_iterations_per_task": self.avg_iterations_per_task,
            "mistake_patterns": [p.to_dict() for p in self.mistake_patterns],
            "strengths": list(self.strengths),
            "recent_feedback": [f.to_dict() for f in self.recent_feedback],
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentLearningProfile":
        return cls(
            agent_id=str(data.get("agent_id") or ""),
            tasks_completed=_coerce_int(data.get("tasks_completed"), 0),
            total_iterations=_coerce_int(data.get("total_iterations"), 0),
            mistake_patterns=[MistakePattern.from_dict(p) for p in list(data.get("mistake_patterns") or []) if isinstance(p, dict)],
            strengths=list(data.get("strengths") or []),
            recent_feedback=[FeedbackRecord.from_dict(f) for f in list(data.get("recent_feedback") or []) if isinstance(f, dict)],
            last_updated=str(data.get("last_updated") or _now_iso()),
        )


@dataclass
class ProjectLesson:
    category: FeedbackCategory
    lesson: str
    source: str = ""
    applicability: list[str] = field(default_factory=list)
    confidence: float = 0.5
    occurrences: int = 1
    id: str = field(default_factory=lambda: _generate_id("lesson"))
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    @property
    def score(self) -> float:
        return self.confidence * self.occurrences

    def matches(self, category: FeedbackCategory, lesson: str) -> bool:
        return self.category is category and self.lesson.lower() == lesson.lower()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "lesson": self.lesson,
            "source": self.source,
            "applicability": list(self.applicability),
            "confidence": self.confidence,
            "occurrences": self.occurrences,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProjectLesson":
        try:
            confidence = float(data.get("confidence") if data.get("confidence") is not None else 0.5)
        except (TypeError, ValueError):
            confidence = 0.5
        return cls(
            id=str(data.get("id") or _generate_id("lesson")),
            category=_coerce_enum(FeedbackCategory, data.get("category"), FeedbackCategory.OTHER),
            lesson=str(data.get("lesson") or ""),
            source=str(data.get("source") or ""),
            applicability=list(data.get("applicability") or []),
            confidence=min(1.0, max(0.0, confidence)),
            occurrences=_coerce_int(data.get("occurrences") or None, 1, minimum=1),
            created_at=str(data.get("created_at") or _now_iso()),
            updated_at=str(data.get("updated_at") or _now_iso()),
        )


@dataclass
class CodebaseConvention:
    pattern: str
    description: str = ""
    examples: list[str] = field(default_factory=list)
    added_at: str = field(default_factory=_now_iso)

    @property
    def id(self) -> str:
        return self.pattern

    def merge_examples(self, examples: list[str]) -> None:
        self.examples = _unique(self.examples + list(examples))

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "description": self.description,
            "examples": list(self.examples),
            "added_at": self.added_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CodebaseConvention":
        return cls(
            pattern=str(data.get("pattern") or ""),
            description=str(data.get("description") or ""),
            examples=_unique(list(data.get("examples") or [])),
            added_at=str(data.get("added_at") or _now_iso()),
        )
