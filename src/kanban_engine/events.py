"""Event publication for board changes.

Components never talk to notifiers directly: the engine queues events during a
mutation and hands them to :class:`EventBus` once the change is applied.
A failing notifier is logged and skipped so it can never roll back or block a
state change.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from .io_utils import _append_jsonl
from .utils import _now_iso

Subscriber = Callable[[dict[str, Any]], None]


class Notifier(ABC):
    @abstractmethod
    def publish(self, event_kind: str, payload: dict[str, Any]) -> None:
        ...


def _event(event_kind: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"ts": _now_iso(), "type": event_kind, "payload": dict(payload)}


class EventBus:
    """Fan events out to every registered notifier."""

    def __init__(self, notifiers: Optional[Iterable[Notifier]] = None) -> None:
        self._notifiers: list[Notifier] = list(notifiers or [])

    def add(self, notifier: Notifier) -> None:
        self._notifiers.append(notifier)

    def emit(self, event_kind: str, payload: dict[str, Any]) -> None:
        for notifier in self._notifiers:
            try:
                notifier.publish(event_kind, payload)
            except Exception:
                logger.exception("Notifier {} failed to publish {}", type(notifier).__name__, event_kind)


class JsonlEventLog(Notifier):
    """Append-only JSONL event file.

    Parameters
    ----------
    path:
        Location of the events file, usually ``.kanban/events.jsonl``.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def publish(self, event_kind: str, payload: dict[str, Any]) -> None:
        _append_jsonl(self.path, _event(event_kind, payload))

    def recent(self, limit: int = 100) -> list[dict[str, Any]]:
        if limit < 1 or not self.path.exists():
            return []
        lines = self.path.read_text(encoding="utf-8").splitlines()
        events: list[dict[str, Any]] = []
        for line in lines[-limit:]:
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                events.append(payload)
        return events


class MemoryNotifier(Notifier):
    """In-process notifier that keeps events and calls subscribers."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; the returned function unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event_kind: str, payload: dict[str, Any]) -> None:
        event = _event(event_kind, payload)
        self.events.append(event)
        for callback in list(self._subscribers):
            callback(event)

    def kinds(self) -> list[str]:
        return [e["type"] for e in self.events]
