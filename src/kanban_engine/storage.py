"""Board snapshot repositories.

The engine only needs two calls from a repository: load the last snapshot and
save a new one.  :class:`FileBoardRepository` keeps the snapshot in a single
YAML file inside the project's ``.kanban/`` directory and takes an exclusive
file lock around every read and write, so several processes can share a
board.  :class:`InMemoryBoardRepository` is used by tests and embedders that
do not want disk state.
"""

from __future__ import annotations

import copy
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from filelock import FileLock, Timeout
from loguru import logger

from .constants import BOARD_FILE, BOARD_LOCK_FILE, STATE_DIR_NAME
from .errors import PersistenceError
from .io_utils import _atomic_write_yaml, _load_data_with_error

LOCK_TIMEOUT = 30  # seconds


class BoardRepository(ABC):
    @abstractmethod
    def load_snapshot(self) -> dict[str, Any]:
        """Return the last saved snapshot, or an empty dict for a new board."""

    @abstractmethod
    def save_snapshot(self, snapshot: dict[str, Any]) -> None:
        """Persist *snapshot*, replacing the previous one."""


class InMemoryBoardRepository(BoardRepository):
    def __init__(self, snapshot: Optional[dict[str, Any]] = None) -> None:
        self._snapshot: dict[str, Any] = copy.deepcopy(snapshot) if snapshot else {}
        self.saves = 0

    def load_snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._snapshot)

    def save_snapshot(self, snapshot: dict[str, Any]) -> None:
        self._snapshot = copy.deepcopy(snapshot)
        self.saves += 1


class FileBoardRepository(BoardRepository):
    """YAML file repository with inter-process locking.

    Parameters
    ----------
    state_dir:
        Path to the ``.kanban/`` directory of the project.
    """

    def __init__(self, state_dir: Path, *, lock_timeout: float = LOCK_TIMEOUT) -> None:
        self.state_dir = state_dir
        self.path = state_dir / BOARD_FILE
        self.lock_path = state_dir / BOARD_LOCK_FILE
        self._lock_timeout = lock_timeout

    @classmethod
    def for_project(cls, project_dir: Path) -> "FileBoardRepository":
        return cls(project_dir.resolve() / STATE_DIR_NAME)

    def _lock(self) -> FileLock:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self.lock_path), timeout=self._lock_timeout)

    def load_snapshot(self) -> dict[str, Any]:
        try:
            with self._lock():
                data, err = _load_data_with_error(self.path, {})
        except Timeout as exc:
            raise PersistenceError(f"Timed out waiting for board lock {self.lock_path}") from exc
        if err:
            # Refuse to continue with an empty board; a later save would
            # overwrite the unreadable file.
            raise PersistenceError(f"Unable to load board snapshot: {err}")
        return data

    def save_snapshot(self, snapshot: dict[str, Any]) -> None:
        try:
            with self._lock():
                _atomic_write_yaml(self.path, snapshot)
        except Timeout as exc:
            raise PersistenceError(f"Timed out waiting for board lock {self.lock_path}") from exc
        except OSError as exc:
            raise PersistenceError(f"Unable to save board snapshot: {exc}") from exc
        logger.debug("Saved board snapshot to {}", self.path)
