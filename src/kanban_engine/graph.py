"""Dependency graph between tasks.

Edges are stored on both ends: ``task.depends_on`` lists the tasks that must
finish first and ``dep.blocks`` lists the tasks waiting on ``dep``.  Every
mutation here validates first and only then touches both sides, so a failed
call never leaves a half-written edge behind.
"""

from __future__ import annotations

from collections import defaultdict, deque
from typing import Optional

from loguru import logger

from .board import BoardState
from .errors import CircularDependency, DependencyNotFound, DuplicateDependency, NotFound, SelfDependency
from .model import Task


class DependencyGraph:
    def __init__(self, state: BoardState) -> None:
        self.state = state

    def _require(self, *task_ids: str) -> list[Task]:
        missing = [tid for tid in task_ids if tid not in self.state.tasks]
        if missing:
            raise NotFound(f"Task not found: {', '.join(missing)}", ids=missing)
        return [self.state.tasks.get(tid) for tid in task_ids]  # type: ignore[misc]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_dependency(self, task_id: str, depends_on_id: str) -> Task:
        """Record that *task_id* cannot start before *depends_on_id* is done.

        Raises:
            NotFound: Either id is unknown.
            SelfDependency: Both ids are the same task.
            DuplicateDependency: The edge already exists.
            CircularDependency: The edge would close a cycle.
        """
        task, dep = self._require(task_id, depends_on_id)
        if task_id == depends_on_id:
            raise SelfDependency(f"Task {task_id} cannot depend on itself", ids=[task_id])
        if depends_on_id in task.depends_on:
            raise DuplicateDependency(
                f"Task {task_id} already depends on {depends_on_id}",
                ids=[task_id, depends_on_id],
            )
        if self._would_cycle(task_id, depends_on_id):
            raise CircularDependency(
                f"Adding dependency {task_id} -> {depends_on_id} would create a cycle",
                ids=[task_id, depends_on_id],
            )
        task.add_depends_on(depends_on_id)
        dep.add_blocks(task_id)
        logger.info("Task {} now depends on {}", task_id, depends_on_id)
        return task

    def remove_dependency(self, task_id: str, depends_on_id: str) -> Task:
        task, dep = self._require(task_id, depends_on_id)
        if depends_on_id not in task.depends_on and task_id not in dep.blocks:
            raise DependencyNotFound(
                f"Task {task_id} does not depend on {depends_on_id}",
                ids=[task_id, depends_on_id],
            )
        task.remove_depends_on(depends_on_id)
        dep.remove_blocks(task_id)
        logger.info("Removed dependency {} -> {}", task_id, depends_on_id)
        return task

    def detach(self, task_id: str) -> list[str]:
        """Drop every edge touching *task_id*; returns the ids of the other tasks changed."""
        touched: list[str] = []
        for other in self.state.tasks:
            if other.id == task_id:
                continue
            if task_id in other.depends_on or task_id in other.blocks:
                other.remove_depends_on(task_id)
                other.remove_blocks(task_id)
                touched.append(other.id)
        task = self.state.tasks.get(task_id)
        if task is not None:
            task.depends_on = []
            task.blocks = []
        return touched

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def dependencies(self, task_id: str) -> list[Task]:
        (task,) = self._require(task_id)
        return [t for t in (self.state.tasks.get(d) for d in task.depends_on) if t is not None]

    def dependents(self, task_id: str) -> list[Task]:
        self._require(task_id)
        return [t for t in self.state.tasks if task_id in t.depends_on]

    def unresolved_dependencies(self, task_id: str) -> list[str]:
        """Ids this task waits on that are not done (dangling ids count as unresolved)."""
        (task,) = self._require(task_id)
        unresolved: list[str] = []
        for dep_id in task.depends_on:
            dep = self.state.tasks.get(dep_id)
            if dep is None or not dep.is_complete:
                unresolved.append(dep_id)
        return unresolved

    def adjacency(self) -> dict[str, list[str]]:
        """Return ``{task_id: [depends_on ids]}`` for the whole board."""
        return {t.id: list(t.depends_on) for t in self.state.tasks}

    def subgraph(self, task_id: str) -> dict[str, list[str]]:
        """Return the part of the graph connected to *task_id*, following edges both ways."""
        self._require(task_id)
        graph = self.adjacency()
        visited: set[str] = set()
        queue: deque[str] = deque([task_id])
        sub: dict[str, list[str]] = {}
        while queue:
            nid = queue.popleft()
            if nid in visited:
                continue
            visited.add(nid)
            deps = graph.get(nid, [])
            sub[nid] = deps
            queue.extend(d for d in deps if d not in visited)
            for tid, dep_list in graph.items():
                if nid in dep_list and tid not in visited:
                    queue.append(tid)
        return sub

    def execution_order(self) -> list[list[str]]:
        """Topological sort of unfinished tasks into batches (Kahn's algorithm).

        Each batch only depends on earlier batches and is sorted by priority.
        Tasks caught in a cycle are left out and logged.
        """
        task_map = {t.id: t for t in self.state.tasks if not t.is_complete}
        in_degree: dict[str, int] = {tid: 0 for tid in task_map}
        adj: dict[str, list[str]] = defaultdict(list)

        for t in task_map.values():
            for dep_id in t.depends_on:
                if dep_id in task_map:
                    adj[dep_id].append(t.id)
                    in_degree[t.id] += 1

        def _order(ids: list[str]) -> list[str]:
            return sorted(ids, key=lambda tid: (task_map[tid].priority.sort_key, task_map[tid].created_at))

        batches: list[list[str]] = []
        queue = _order([tid for tid, deg in in_degree.items() if deg == 0])
        while queue:
            batches.append(queue)
            next_queue: list[str] = []
            for tid in queue:
                for neighbor in adj.get(tid, []):
                    in_degree[neighbor] -= 1
                    if in_degree[neighbor] == 0:
                        next_queue.append(neighbor)
            queue = _order(next_queue)

        remaining = [tid for tid, deg in in_degree.items() if deg > 0]
        if remaining:
            logger.warning("Dependency cycle detected among tasks: {}", remaining)
        return batches

    def find_cycles(self) -> list[list[str]]:
        """Return every distinct cycle reachable through ``depends_on`` edges.

        Only snapshots edited outside the engine can contain cycles; the
        mutation path rejects them up front.
        """
        graph = self.adjacency()
        cycles: list[list[str]] = []
        seen: set[frozenset[str]] = set()
        done: set[str] = set()

        for start in graph:
            if start in done:
                continue
            path: list[str] = []
            on_path: set[str] = set()
            stack: list[tuple[str, int]] = [(start, 0)]
            while stack:
                node, idx = stack.pop()
                if idx == 0:
                    path.append(node)
                    on_path.add(node)
                deps = [d for d in graph.get(node, []) if d in graph]
                if idx < len(deps):
                    stack.append((node, idx + 1))
                    nxt = deps[idx]
                    if nxt in on_path:
                        cycle = path[path.index(nxt):]
                        key = frozenset(cycle)
                        if key not in seen:
                            seen.add(key)
                            cycles.append(cycle)
                    elif nxt not in done:
                        stack.append((nxt, 0))
                else:
                    path.pop()
                    on_path.discard(node)
                    done.add(node)
        return cycles

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _would_cycle(self, task_id: str, new_dep_id: str) -> bool:
        """Return True if adding ``task_id -> new_dep_id`` creates a cycle.

        Walks ``depends_on`` edges from *new_dep_id*; reaching *task_id* means
        *new_dep_id* already (transitively) depends on *task_id*.
        """
        visited: set[str] = set()
        stack: list[str] = [new_dep_id]
        while stack:
            current = stack.pop()
            if current == task_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            node: Optional[Task] = self.state.tasks.get(current)
            if node is None:
                continue
            stack.extend(d for d in node.depends_on if d not in visited)
        return False
