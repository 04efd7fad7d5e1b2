"""Tests for engine configuration loading (config.py)."""

from __future__ import annotations

from pathlib import Path

from kanban_engine.config import EngineConfig, load_engine_config
from kanban_engine.engine import KanbanEngine
from kanban_engine.policy import Actor


def _write_config(project_dir: Path, text: str) -> None:
    state_dir = project_dir / ".kanban"
    state_dir.mkdir(parents=True, exist_ok=True)
    (state_dir / "config.yaml").write_text(text, encoding="utf-8")


class TestEngineConfig:
    def test_defaults(self) -> None:
        config = EngineConfig()
        assert config.task_max_iterations == 3
        assert config.sprint_max_iterations == 5
        assert config.health.stale_threshold_hours == 24
        assert config.learning.promotion_min_agents == 2
        assert config.learning.promotion_trigger_occurrences == 1
        assert config.learning.lesson_max_length == 200

    def test_from_dict(self) -> None:
        config = EngineConfig.from_dict(
            {
                "tasks": {"default_max_iterations": 4},
                "sprints": {"default_max_iterations": 2},
                "logging": {"level": "debug"},
                "health": {"stale_threshold_hours": 6, "pending_qa_threshold": 10},
                "learning": {"initial_confidence": 0.4, "top_lessons": 3},
            }
        )
        assert config.task_max_iterations == 4
        assert config.sprint_max_iterations == 2
        assert config.log_level == "DEBUG"
        assert config.health.stale_threshold_hours == 6.0
        assert isinstance(config.health.stale_threshold_hours, float)
        assert config.health.pending_qa_threshold == 10
        assert config.learning.initial_confidence == 0.4
        assert config.learning.top_lessons == 3

    def test_invalid_values_fall_back(self) -> None:
        config = EngineConfig.from_dict(
            {
                "tasks": {"default_max_iterations": 0},
                "sprints": "five",
                "health": {"low_backlog_threshold": "many", "overload_threshold": True},
                "learning": {"top_lessons": 2.5, "unknown_key": 1},
                "extra": {"ignored": True},
            }
        )
        assert config.task_max_iterations == 3
        assert config.sprint_max_iterations == 5
        assert config.health.low_backlog_threshold == 3
        assert config.health.overload_threshold == 5
        assert config.learning.top_lessons == 10


class TestLoadEngineConfig:
    def test_missing_file(self, tmp_path: Path) -> None:
        config, err = load_engine_config(tmp_path)
        assert err is None
        assert config == EngineConfig()

    def test_loads_yaml(self, tmp_path: Path) -> None:
        _write_config(tmp_path, "tasks:\n  default_max_iterations: 6\n")
        config, err = load_engine_config(tmp_path)
        assert err is None
        assert config.task_max_iterations == 6

    def test_invalid_yaml_reports_error(self, tmp_path: Path) -> None:
        _write_config(tmp_path, "tasks: [unclosed\n")
        config, err = load_engine_config(tmp_path)
        assert err is not None
        assert "config.yaml" in err
        assert config == EngineConfig()

    def test_engine_open_uses_config(self, tmp_path: Path, architect: Actor) -> None:
        _write_config(tmp_path, "tasks:\n  default_max_iterations: 7\nsprints:\n  default_max_iterations: 2\n")
        engine = KanbanEngine.open(tmp_path)
        assert engine.create_task(architect, "Task").max_iterations == 7
        assert engine.create_sprint(architect, "Goal").max_iterations == 2

    def test_engine_open_survives_bad_config(self, tmp_path: Path, architect: Actor) -> None:
        _write_config(tmp_path, ":\n  - [bad")
        engine = KanbanEngine.open(tmp_path)
        assert engine.config == EngineConfig()
        assert engine.create_task(architect, "Task").max_iterations == 3
