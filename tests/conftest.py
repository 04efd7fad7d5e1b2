from __future__ import annotations

from typing import Any, Callable

import pytest

from kanban_engine.board import BoardState
from kanban_engine.engine import KanbanEngine
from kanban_engine.events import MemoryNotifier
from kanban_engine.model import Task
from kanban_engine.policy import Actor
from kanban_engine.storage import InMemoryBoardRepository


@pytest.fixture
def architect() -> Actor:
    return Actor.privileged("architect")


@pytest.fixture
def qa() -> Actor:
    return Actor.reviewer("qa")


@pytest.fixture
def worker() -> Actor:
    return Actor.worker("agent-1")


@pytest.fixture
def state() -> BoardState:
    return BoardState()


@pytest.fixture
def repo() -> InMemoryBoardRepository:
    return InMemoryBoardRepository()


@pytest.fixture
def notifier() -> MemoryNotifier:
    return MemoryNotifier()


@pytest.fixture
def engine(repo: InMemoryBoardRepository, notifier: MemoryNotifier) -> KanbanEngine:
    return KanbanEngine(repo, notifiers=[notifier])


@pytest.fixture
def add_task(state: BoardState) -> Callable[..., Task]:
    """Insert a task straight into ``state`` (no validation, no policy)."""

    def _add(task_id: str, **fields: Any) -> Task:
        fields.setdefault("title", task_id.upper())
        return state.tasks.upsert(Task(id=task_id, **fields))

    return _add


@pytest.fixture
def submitted_task(engine: KanbanEngine, architect: Actor, worker: Actor) -> Callable[..., Task]:
    """Create a task assigned to ``worker`` and run it up to review."""

    def _make(title: str = "Build feature", **kwargs: Any) -> Task:
        task = engine.create_task(architect, title, assignee=worker.agent_id, **kwargs)
        engine.start_iteration(worker, task.id)
        engine.submit_iteration(worker, task.id, notes="first try")
        return engine.get_task(architect, task.id)

    return _make
