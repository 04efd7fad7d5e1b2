"""Provide the public `kanban_engine` package exports."""

from __future__ import annotations

from .board import BoardState
from .config import EngineConfig, load_engine_config
from .engine import IterationStart, KanbanEngine
from .errors import (
    CircularDependency,
    DependencyNotFound,
    DuplicateDependency,
    Forbidden,
    IncompleteTasks,
    InvalidTransition,
    KanbanError,
    MaxIterationsExceeded,
    NoOpTransition,
    NotFound,
    PersistenceError,
    SelfDependency,
    ValidationError,
)
from .events import EventBus, JsonlEventLog, MemoryNotifier, Notifier
from .model import (
    AcceptanceCriteria,
    Column,
    FeedbackCategory,
    FeedbackSeverity,
    Priority,
    Session,
    SessionStatus,
    Sprint,
    SprintStatus,
    Task,
    TaskState,
)
from .policy import Actor, Role
from .sessions import BoardVerification, SessionTracker
from .storage import BoardRepository, FileBoardRepository, InMemoryBoardRepository

__all__ = [
    "AcceptanceCriteria",
    "Actor",
    "BoardRepository",
    "BoardState",
    "BoardVerification",
    "CircularDependency",
    "Column",
    "DependencyNotFound",
    "DuplicateDependency",
    "EngineConfig",
    "EventBus",
    "FeedbackCategory",
    "FeedbackSeverity",
    "FileBoardRepository",
    "Forbidden",
    "InMemoryBoardRepository",
    "IncompleteTasks",
    "InvalidTransition",
    "IterationStart",
    "JsonlEventLog",
    "KanbanEngine",
    "KanbanError",
    "MaxIterationsExceeded",
    "MemoryNotifier",
    "NoOpTransition",
    "NotFound",
    "Notifier",
    "PersistenceError",
    "Priority",
    "Role",
    "SelfDependency",
    "Session",
    "SessionStatus",
    "SessionTracker",
    "Sprint",
    "SprintStatus",
    "Task",
    "TaskState",
    "ValidationError",
    "load_engine_config",
]
