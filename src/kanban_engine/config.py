"""Load optional engine configuration from `.kanban/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from .constants import (
    CONFIG_FILE,
    CONTEXT_FEEDBACK_LIMIT,
    CONTEXT_PATTERNS_LIMIT,
    DEFAULT_LOW_BACKLOG_THRESHOLD,
    DEFAULT_OVERLOAD_HIGH_THRESHOLD,
    DEFAULT_OVERLOAD_THRESHOLD,
    DEFAULT_PENDING_QA_THRESHOLD,
    DEFAULT_SPRINT_MAX_ITERATIONS,
    DEFAULT_STALE_THRESHOLD_HOURS,
    DEFAULT_TASK_MAX_ITERATIONS,
    EXAMPLE_TASK_LIMIT,
    INITIAL_LESSON_CONFIDENCE,
    LESSON_CONFIDENCE_STEP,
    LESSON_MAX_LENGTH,
    LESSON_MIN_LENGTH,
    PROMOTION_MIN_AGENTS,
    PROMOTION_MIN_OCCURRENCES,
    PROMOTION_TRIGGER_OCCURRENCES,
    RECENT_FEEDBACK_LIMIT,
    STATE_DIR_NAME,
    TOP_LESSONS_LIMIT,
)
from .io_utils import _load_data_with_error


@dataclass
class HealthConfig:
    stale_threshold_hours: float = DEFAULT_STALE_THRESHOLD_HOURS
    low_backlog_threshold: int = DEFAULT_LOW_BACKLOG_THRESHOLD
    overload_threshold: int = DEFAULT_OVERLOAD_THRESHOLD
    overload_high_threshold: int = DEFAULT_OVERLOAD_HIGH_THRESHOLD
    pending_qa_threshold: int = DEFAULT_PENDING_QA_THRESHOLD


@dataclass
class LearningConfig:
    """Tunable policy for the feedback-learning heuristics."""

    recent_feedback_limit: int = RECENT_FEEDBACK_LIMIT
    example_task_limit: int = EXAMPLE_TASK_LIMIT
    promotion_trigger_occurrences: int = PROMOTION_TRIGGER_OCCURRENCES
    promotion_min_agents: int = PROMOTION_MIN_AGENTS
    promotion_min_occurrences: int = PROMOTION_MIN_OCCURRENCES
    lesson_min_length: int = LESSON_MIN_LENGTH
    lesson_max_length: int = LESSON_MAX_LENGTH
    initial_confidence: float = INITIAL_LESSON_CONFIDENCE
    confidence_step: float = LESSON_CONFIDENCE_STEP
    top_lessons: int = TOP_LESSONS_LIMIT
    context_patterns: int = CONTEXT_PATTERNS_LIMIT
    context_feedback: int = CONTEXT_FEEDBACK_LIMIT


@dataclass
class EngineConfig:
    task_max_iterations: int = DEFAULT_TASK_MAX_ITERATIONS
    sprint_max_iterations: int = DEFAULT_SPRINT_MAX_ITERATIONS
    log_level: str = "INFO"
    health: HealthConfig = field(default_factory=HealthConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "EngineConfig":
        """Build a config from the raw YAML mapping.

        Unknown keys are ignored and values of the wrong type fall back to the
        defaults, so a partially valid file still yields a usable config.
        """
        out = cls()
        task_max = _get_nested(config, "tasks", "default_max_iterations")
        if _is_positive_int(task_max):
            out.task_max_iterations = task_max
        sprint_max = _get_nested(config, "sprints", "default_max_iterations")
        if _is_positive_int(sprint_max):
            out.sprint_max_iterations = sprint_max
        level = _get_nested(config, "logging", "level")
        if isinstance(level, str) and level:
            out.log_level = level.upper()
        out.health = _fill_section(HealthConfig(), _get_nested(config, "health"))
        out.learning = _fill_section(LearningConfig(), _get_nested(config, "learning"))
        return out


def load_engine_config(project_dir: Path) -> tuple[EngineConfig, str | None]:
    """Load the optional engine config file.

    Args:
        project_dir: Project root directory (the parent of `.kanban/`).

    Returns:
        A tuple of `(config, error_message)`. If the file is missing or
        unreadable, the default config is returned.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if err:
        return EngineConfig(), err
    return EngineConfig.from_dict(data), None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _fill_section(section: Any, raw: Any) -> Any:
    if not isinstance(raw, dict):
        return section
    for f in fields(section):
        if f.name not in raw:
            continue
        value = raw[f.name]
        if isinstance(value, bool):
            continue
        # Annotations are strings under postponed evaluation.
        if f.type == "int" and isinstance(value, int):
            setattr(section, f.name, value)
        elif f.type == "float" and isinstance(value, (int, float)):
            setattr(section, f.name, float(value))
    return section
