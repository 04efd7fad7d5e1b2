"""Error hierarchy for the kanban engine.

Every error carries a machine-readable ``kind``, a human-readable message and
the ids of the records it concerns, so callers at the protocol boundary can
render it as a result value via :meth:`KanbanError.to_dict`.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional


class KanbanError(Exception):
    """Base error for all engine operations.

    Attributes:
        kind: Error kind used for classification (e.g. ``"not_found"``).
        ids: Offending task/sprint/agent ids.
        metadata: Additional context for logging.
    """

    kind: str = "error"

    def __init__(
        self,
        message: str,
        *,
        ids: Optional[Iterable[str]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.ids = list(ids or [])
        self.metadata = metadata or {}

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind, "message": self.message, "ids": list(self.ids)}
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data


class NotFound(KanbanError):
    """Unknown task, sprint or agent id."""

    kind = "not_found"


class Forbidden(KanbanError):
    """Role or assignment mismatch."""

    kind = "forbidden"


class ValidationError(KanbanError, ValueError):
    """Schema-level validation failure (empty title, bad enum value...)."""

    kind = "validation_error"


class InvalidTransition(KanbanError):
    """The requested state change is not legal from the current state."""

    kind = "invalid_transition"


class NoOpTransition(InvalidTransition):
    """The record is already in the requested state."""

    kind = "no_op_transition"


# Dependency graph errors
class CircularDependency(KanbanError):
    kind = "circular_dependency"


class SelfDependency(KanbanError):
    kind = "self_dependency"


class DuplicateDependency(KanbanError):
    kind = "duplicate_dependency"


class DependencyNotFound(KanbanError):
    kind = "dependency_not_found"


# Sprint errors
class IncompleteTasks(KanbanError):
    """Sprint completion requested while some of its tasks are not done."""

    kind = "incomplete_tasks"


class MaxIterationsExceeded(KanbanError):
    """A sprint ran out of review iterations and was failed."""

    kind = "max_iterations_exceeded"


class PersistenceError(KanbanError):
    """Snapshot could not be loaded or saved."""

    kind = "persistence_error"
