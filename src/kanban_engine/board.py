"""In-memory board state shared by every engine component.

:class:`BoardState` is the explicit store handle passed into each component
constructor.  Each record type lives in a :class:`Collection` that offers the
repository operations (``get``, ``list``, ``upsert``, ``delete``) while keeping
insertion order, so snapshots serialize deterministically.
"""

from __future__ import annotations

import copy
from typing import Any, Callable, Generic, Iterator, Optional, Protocol, TypeVar

from .constants import SNAPSHOT_VERSION
from .learning_model import AgentLearningProfile, CodebaseConvention, ProjectLesson
from .model import ActivityRecord, AgentCapability, Session, Sprint, Task
from .utils import _now_iso


class _Record(Protocol):
    @property
    def id(self) -> str: ...

    def to_dict(self) -> dict[str, Any]: ...


T = TypeVar("T", bound=_Record)


class Collection(Generic[T]):
    """Ordered id-keyed collection of records."""

    def __init__(self, items: Optional[list[T]] = None) -> None:
        self._items: dict[str, T] = {}
        for item in items or []:
            self._items[item.id] = item

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items.values()))

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def get(self, item_id: str) -> Optional[T]:
        return self._items.get(item_id)

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> list[T]:
        items = list(self._items.values())
        if predicate is None:
            return items
        return [item for item in items if predicate(item)]

    def upsert(self, item: T) -> T:
        self._items[item.id] = item
        return item

    def delete(self, item_id: str) -> bool:
        return self._items.pop(item_id, None) is not None

    def ids(self) -> list[str]:
        return list(self._items.keys())

    def dump(self) -> list[dict[str, Any]]:
        return [item.to_dict() for item in self._items.values()]


def _load_items(raw: Any, loader: Callable[[dict[str, Any]], T]) -> list[T]:
    if not isinstance(raw, list):
        return []
    return [loader(item) for item in raw if isinstance(item, dict)]


class BoardState:
    """Every record the engine owns, in one place."""

    def __init__(self) -> None:
        self.tasks: Collection[Task] = Collection()
        self.sprints: Collection[Sprint] = Collection()
        self.agent_profiles: Collection[AgentLearningProfile] = Collection()
        self.lessons: Collection[ProjectLesson] = Collection()
        self.conventions: Collection[CodebaseConvention] = Collection()
        self.agents: Collection[AgentCapability] = Collection()
        self.sessions: Collection[Session] = Collection()
        self.activity: list[ActivityRecord] = []
        self.last_modified: str = _now_iso()

    # -- tasks ----------------------------------------------------------------

    def find_tasks(
        self,
        *,
        column: Optional[str] = None,
        state: Optional[str] = None,
        assignee: Optional[str] = None,
        priority: Optional[str] = None,
        sprint_id: Optional[str] = None,
        pending_qa: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> list[Task]:
        out: list[Task] = []
        for t in self.tasks:
            if column and t.column.value != column:
                continue
            if state and t.state.value != state:
                continue
            if assignee and t.assignee != assignee:
                continue
            if priority and t.priority.value != priority:
                continue
            if sprint_id and t.sprint_id != sprint_id:
                continue
            if pending_qa is not None and t.pending_qa != pending_qa:
                continue
            if search:
                q = search.lower()
                if q not in t.title.lower() and q not in t.description.lower() and q not in t.id.lower():
                    continue
            out.append(t)
        return out

    # -- snapshots ------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "last_modified": self.last_modified,
            "tasks": self.tasks.dump(),
            "sprints": self.sprints.dump(),
            "learning": {
                "agents": self.agent_profiles.dump(),
                "lessons": self.lessons.dump(),
                "conventions": self.conventions.dump(),
            },
            "agents": self.agents.dump(),
            "sessions": self.sessions.dump(),
            "activity": [record.to_dict() for record in self.activity],
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "BoardState":
        state = cls()
        if not isinstance(data, dict):
            return state
        learning = data.get("learning") if isinstance(data.get("learning"), dict) else {}
        state.tasks = Collection(_load_items(data.get("tasks"), Task.from_dict))
        state.sprints = Collection(_load_items(data.get("sprints"), Sprint.from_dict))
        state.agent_profiles = Collection(_load_items(learning.get("agents"), AgentLearningProfile.from_dict))
        state.lessons = Collection(_load_items(learning.get("lessons"), ProjectLesson.from_dict))
        state.conventions = Collection(_load_items(learning.get("conventions"), CodebaseConvention.from_dict))
        state.agents = Collection(_load_items(data.get("agents"), AgentCapability.from_dict))
        state.sessions = Collection(_load_items(data.get("sessions"), Session.from_dict))
        state.activity = _load_items(data.get("activity"), ActivityRecord.from_dict)
        state.last_modified = str(data.get("last_modified") or _now_iso())
        return state

    def copy(self) -> "BoardState":
        return copy.deepcopy(self)

    def restore(self, other: "BoardState") -> None:
        """Replace this state's contents in place with *other*'s.

        Components keep a reference to the same ``BoardState`` object, so a
        rollback must swap the collections rather than the handle.
        """
        self.tasks = other.tasks
        self.sprints = other.sprints
        self.agent_profiles = other.agent_profiles
        self.lessons = other.lessons
        self.conventions = other.conventions
        self.agents = other.agents
        self.sessions = other.sessions
        self.activity = other.activity
        self.last_modified = other.last_modified
