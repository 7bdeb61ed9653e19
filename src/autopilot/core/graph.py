"""Task graph for one session or improvement cycle.

Tasks carry a priority (0 = most urgent) and a set of dependency ids.
Selection is deterministic: the pending, unblocked task with the lowest
priority wins, ties broken by the lowest id. The ``depends_on`` relation
is kept acyclic; additions that would close a cycle are rolled back and
reported with the offending path.

Task list file format::

    {"spec_id": "user-auth", "tasks": [{"id": "1", "title": ..., ...}]}
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from typing import Dict, Iterable, Iterator, List, Optional

from autopilot.core.fileio import read_json, write_json_atomic

logger = logging.getLogger("autopilot.graph")

PENDING = "pending"
IN_PROGRESS = "in_progress"
DONE = "done"
TASK_STATUSES = {PENDING, IN_PROGRESS, DONE}

DEFAULT_PRIORITY = 2


class CycleError(ValueError):
    """A dependency addition would make the graph cyclic."""

    def __init__(self, cycle: List[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"dependency cycle: {' -> '.join(self.cycle)}")


class UnknownTaskError(KeyError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(task_id)

    def __str__(self) -> str:
        return f"unknown task: {self.task_id}"


class DuplicateTaskError(ValueError):
    pass


def task_id_sort_key(task_id: str) -> tuple[int, int, str]:
    """Numeric ids order numerically and precede all other ids."""
    if task_id.isascii() and task_id.isdigit():
        return (0, int(task_id), "")
    return (1, 0, task_id)


@dataclass
class Task:
    task_id: str
    title: str
    description: str = ""
    priority: int = DEFAULT_PRIORITY
    status: str = PENDING
    depends_on: List[str] = field(default_factory=list)
    blocker_count: int = 0
    skipped: bool = False
    skip_reason: str = ""
    parallel: bool = False          # metadata only; the loop never runs tasks concurrently

    @property
    def is_terminal(self) -> bool:
        return self.status == DONE or self.skipped

    def to_dict(self) -> dict:
        return {
            "id": self.task_id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "status": self.status,
            "depends_on": list(self.depends_on),
            "blocker_count": self.blocker_count,
            "skipped": self.skipped,
            "skip_reason": self.skip_reason,
            "parallel": self.parallel,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Task:
        status = d.get("status", PENDING)
        if status not in TASK_STATUSES:
            raise ValueError(f"Invalid status for task {d.get('id')!r}: {status!r}")
        priority = d.get("priority")
        return cls(
            task_id=str(d["id"]),
            title=d.get("title", ""),
            description=d.get("description", ""),
            priority=DEFAULT_PRIORITY if priority is None else int(priority),
            status=status,
            depends_on=[str(dep) for dep in d.get("depends_on") or []],
            blocker_count=int(d.get("blocker_count", 0)),
            skipped=bool(d.get("skipped", False)),
            skip_reason=d.get("skip_reason", ""),
            parallel=bool(d.get("parallel", False)),
        )


class TaskGraph:
    """Dependency-annotated, ordered collection of tasks."""

    def __init__(self, spec_id: str = "", max_blockers: int = 3) -> None:
        if max_blockers < 1:
            raise ValueError(f"max_blockers must be >= 1, got: {max_blockers}")
        self.spec_id = spec_id
        self.max_blockers = max_blockers
        self._tasks: Dict[str, Task] = {}

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __iter__(self) -> Iterator[Task]:
        return iter(list(self._tasks.values()))

    # ── Construction ─────────────────────────────────────────

    def add_task(self, task: Task) -> Task:
        """Insert *task* as ``pending``. Raises CycleError if it closes a cycle."""
        task.status = PENDING
        return self._insert(task, validate=True)

    def _insert(self, task: Task, validate: bool) -> Task:
        if task.task_id in self._tasks:
            raise DuplicateTaskError(f"Duplicate task id: {task.task_id}")
        task.depends_on = list(dict.fromkeys(task.depends_on))
        self._tasks[task.task_id] = task
        if validate:
            cycle = self._find_cycle([task.task_id])
            if cycle:
                del self._tasks[task.task_id]
                raise CycleError(cycle)
        return task

    def add_dependency(self, task_id: str, dep_id: str) -> None:
        task = self.get(task_id)
        if dep_id in task.depends_on:
            return
        task.depends_on.append(dep_id)
        cycle = self._find_cycle([task_id])
        if cycle:
            task.depends_on.remove(dep_id)
            raise CycleError(cycle)

    # ── Queries ──────────────────────────────────────────────

    def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise UnknownTaskError(task_id)
        return task

    def tasks(self) -> List[Task]:
        return list(self._tasks.values())

    def list_tasks(self, status: Optional[str] = None) -> List[Task]:
        """Return tasks in insertion order, optionally filtered.

        ``status="skipped"`` selects auto-skipped tasks; the real statuses
        exclude them.
        """
        if status is None:
            return self.tasks()
        if status == "skipped":
            return [t for t in self._tasks.values() if t.skipped]
        return [t for t in self._tasks.values() if t.status == status and not t.skipped]

    def count_by_status(self) -> dict[str, int]:
        counts = {PENDING: 0, IN_PROGRESS: 0, DONE: 0, "skipped": 0}
        for task in self._tasks.values():
            if task.skipped:
                counts["skipped"] += 1
            else:
                counts[task.status] += 1
        return counts

    def is_blocked(self, task_id: str) -> bool:
        task = self.get(task_id)
        for dep in task.depends_on:
            dep_task = self._tasks.get(dep)
            if dep_task is None or dep_task.status != DONE:
                return True
        return False

    def next_unblocked(self) -> Optional[Task]:
        """Lowest-priority pending unblocked task, ties broken by lowest id."""
        candidates = [
            task
            for task in self._tasks.values()
            if task.status == PENDING and not task.skipped and not self.is_blocked(task.task_id)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda t: (t.priority, task_id_sort_key(t.task_id)))

    def all_terminal(self) -> bool:
        return all(task.is_terminal for task in self._tasks.values())

    def blocked_tasks(self) -> List[Task]:
        """Non-terminal tasks that cannot currently run."""
        return [
            task
            for task in self._tasks.values()
            if not task.is_terminal and self.is_blocked(task.task_id)
        ]

    def missing_dependencies(self) -> dict[str, List[str]]:
        missing: dict[str, List[str]] = {}
        for task in self._tasks.values():
            unknown = [dep for dep in task.depends_on if dep not in self._tasks]
            if unknown:
                missing[task.task_id] = unknown
        return missing

    def next_task_id(self) -> str:
        numeric = [int(t) for t in self._tasks if t.isascii() and t.isdigit()]
        return str(max(numeric, default=0) + 1)

    def detect_cycle(self) -> Optional[List[str]]:
        """Return the first cycle found as ``[a, b, ..., a]``, or None."""
        return self._find_cycle(self._tasks.keys())

    def _known_deps(self, task_id: str) -> List[str]:
        return [dep for dep in self._tasks[task_id].depends_on if dep in self._tasks]

    def _find_cycle(self, roots: Iterable[str]) -> Optional[List[str]]:
        visited: set[str] = set()
        for root in list(roots):
            if root in visited:
                continue
            visited.add(root)
            path = [root]
            on_path = {root}
            stack = [iter(self._known_deps(root))]
            while stack:
                dep = next(stack[-1], None)
                if dep is None:
                    stack.pop()
                    on_path.discard(path.pop())
                    continue
                if dep in on_path:
                    return path[path.index(dep):] + [dep]
                if dep not in visited:
                    visited.add(dep)
                    path.append(dep)
                    on_path.add(dep)
                    stack.append(iter(self._known_deps(dep)))
        return None

    # ── Status transitions ───────────────────────────────────

    def mark_in_progress(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task.is_terminal:
            raise ValueError(f"Task {task_id} is already terminal")
        task.status = IN_PROGRESS
        return task

    def mark_done(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task.skipped:
            raise ValueError(f"Task {task_id} was skipped and cannot complete")
        task.status = DONE
        return task

    def mark_failed(self, task_id: str, reason: str = "") -> Task:
        """Record a failed attempt; auto-skips once ``max_blockers`` is reached."""
        task = self.get(task_id)
        if task.is_terminal:
            raise ValueError(f"Task {task_id} is already terminal")
        task.blocker_count += 1
        task.status = PENDING
        if task.blocker_count >= self.max_blockers:
            skip_reason = f"exceeded {self.max_blockers} failed attempts"
            if reason:
                skip_reason = f"{skip_reason}: {reason}"
            self.mark_skipped(task_id, skip_reason)
        return task

    def mark_skipped(self, task_id: str, reason: str) -> Task:
        task = self.get(task_id)
        if task.status == DONE:
            raise ValueError(f"Task {task_id} is done and cannot be skipped")
        task.status = PENDING
        task.skipped = True
        task.skip_reason = reason
        logger.warning("Task %s skipped: %s", task_id, reason)
        return task

    def reset_in_progress(self, task_id: str) -> bool:
        """Return an in-flight task to ``pending`` without counting a failure."""
        task = self.get(task_id)
        if task.status != IN_PROGRESS:
            return False
        task.status = PENDING
        return True

    # ── Serialization ────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "spec_id": self.spec_id,
            "tasks": [task.to_dict() for task in self._tasks.values()],
        }

    @classmethod
    def from_dict(cls, d: dict, max_blockers: int = 3) -> TaskGraph:
        graph = cls(spec_id=d.get("spec_id", ""), max_blockers=max_blockers)
        for item in d.get("tasks", []):
            graph._insert(Task.from_dict(item), validate=False)
        cycle = graph.detect_cycle()
        if cycle:
            raise CycleError(cycle)
        return graph


def load_task_file(path: str, max_blockers: int = 3) -> TaskGraph:
    graph = TaskGraph.from_dict(read_json(path), max_blockers=max_blockers)
    if not graph.spec_id:
        graph.spec_id = os.path.splitext(os.path.basename(path))[0]
    return graph


def save_task_file(graph: TaskGraph, path: str) -> None:
    write_json_atomic(path, graph.to_dict())
