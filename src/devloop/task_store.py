"""Task records and the shared task store.

This module provides the persisted side of task management:
- Task records with a lifecycle state, work category and metadata
- A store interface with conditional (compare-state-then-write) updates
- An in-memory store for tests and single-process use
- A JSON file store that several engine processes can share

The store is the only cross-process coordination point. A conditional write
compares the stored state with the caller's expected state and rejects the
write with StateConflictError on mismatch.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    """Lifecycle states a task record moves through."""

    DRAFT = "draft"
    PENDING = "pending"
    AVAILABLE = "available"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


class WorkCategory(str, Enum):
    """Kind of work a task represents."""

    DOCUMENTATION = "documentation"
    CODING = "coding"
    OPERATIONS = "operations"
    PLANNING = "planning"

    @property
    def code_bearing(self) -> bool:
        return self is WorkCategory.CODING


PRIORITY_LABELS = {"critical": 3, "high": 2, "medium": 1, "low": 0}


def now_iso() -> str:
    return datetime.now().isoformat()


@dataclass
class Task:
    """A unit of work held in the task store."""

    id: str
    name: str
    category: WorkCategory = WorkCategory.CODING
    state: TaskState = TaskState.AVAILABLE
    properties: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=now_iso)

    @property
    def priority(self) -> int:
        """Numeric priority. Labels map to critical=3 ... low=0."""
        value = self.properties.get("priority", 1)
        if isinstance(value, str):
            label = value.strip().lower()
            if label in PRIORITY_LABELS:
                return PRIORITY_LABELS[label]
            value = label
        try:
            return int(value)
        except (TypeError, ValueError):
            return PRIORITY_LABELS["medium"]

    @property
    def description(self) -> str:
        return self.properties.get("description", "")

    @property
    def output_path(self) -> Optional[str]:
        return self.properties.get("output_path")

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["category"] = self.category.value
        d["state"] = self.state.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Task:
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            category=WorkCategory(data.get("category", WorkCategory.CODING.value)),
            state=TaskState(data.get("state", TaskState.AVAILABLE.value)),
            properties=dict(data.get("properties") or {}),
            metadata=dict(data.get("metadata") or {}),
            created_at=data.get("created_at") or now_iso(),
        )


@dataclass
class TaskFilter:
    """Selection criteria for fetch()."""

    state: Optional[TaskState] = None
    category: Optional[WorkCategory] = None
    exclude_ids: frozenset = frozenset()

    def matches(self, task: Task) -> bool:
        if self.state is not None and task.state != self.state:
            return False
        if self.category is not None and task.category != self.category:
            return False
        return task.id not in self.exclude_ids


def candidate_order(task: Task) -> tuple:
    """Sort key: highest priority first, then oldest, then id."""
    return (-task.priority, task.created_at, task.id)


class TaskStoreError(Exception):
    """Base exception for task store errors."""

    pass


class StateConflictError(TaskStoreError):
    """The stored state did not match the expected prior state."""

    def __init__(self, task_id: str, expected: TaskState, actual: TaskState):
        super().__init__(
            f"Task {task_id}: expected state {expected.value}, found {actual.value}"
        )
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


class RecordNotFoundError(TaskStoreError):
    """No task exists with the requested id."""

    pass


class StoreUnreachableError(TaskStoreError):
    """The backing store could not be read or written."""

    pass


class TaskStore(ABC):
    """Interface to the shared, persisted task records."""

    @abstractmethod
    def get(self, task_id: str) -> Task:
        """Return a copy of the task. Raises RecordNotFoundError."""

    @abstractmethod
    def set(
        self,
        task_id: str,
        fields: Dict[str, Any],
        expected_state: Optional[TaskState] = None,
    ) -> Task:
        """Conditionally update a task.

        Args:
            task_id: Task to update.
            fields: Values to write. ``state`` replaces the state, ``metadata``
                and ``properties`` are merged into the existing maps, ``name``
                replaces the name.
            expected_state: When given, the write only happens if the stored
                state still equals it.

        Returns:
            The updated task.

        Raises:
            StateConflictError: The stored state differs from expected_state.
            RecordNotFoundError: No such task.
        """

    @abstractmethod
    def delete(self, task_id: str) -> None:
        """Remove a task. Raises RecordNotFoundError."""

    @abstractmethod
    def fetch(self, task_filter: Optional[TaskFilter] = None) -> List[Task]:
        """Return matching tasks in candidate order."""

    @abstractmethod
    def add(self, task: Task) -> Task:
        """Insert a new task. Raises TaskStoreError if the id is taken."""


def _apply_fields(task: Task, fields: Dict[str, Any]) -> None:
    for key, value in fields.items():
        if key == "state":
            task.state = TaskState(value)
        elif key == "metadata":
            task.metadata.update(value)
        elif key == "properties":
            task.properties.update(value)
        elif key == "name":
            task.name = value
        else:
            raise TaskStoreError(f"Unsupported task field: {key}")


class InMemoryTaskStore(TaskStore):
    """Task store kept in process memory.

    The internal lock makes each conditional write atomic, standing in for
    the transactional guarantee of a real backing store.
    """

    def __init__(self, tasks: Optional[List[Task]] = None):
        self._tasks: Dict[str, Task] = {}
        self._lock = threading.Lock()
        for task in tasks or []:
            self._tasks[task.id] = copy.deepcopy(task)

    def get(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise RecordNotFoundError(f"Task not found: {task_id}")
            return copy.deepcopy(task)

    def set(
        self,
        task_id: str,
        fields: Dict[str, Any],
        expected_state: Optional[TaskState] = None,
    ) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise RecordNotFoundError(f"Task not found: {task_id}")
            if expected_state is not None and task.state != expected_state:
                raise StateConflictError(task_id, expected_state, task.state)
            updated = copy.deepcopy(task)
            _apply_fields(updated, fields)
            self._tasks[task_id] = updated
            return copy.deepcopy(updated)

    def delete(self, task_id: str) -> None:
        with self._lock:
            if self._tasks.pop(task_id, None) is None:
                raise RecordNotFoundError(f"Task not found: {task_id}")

    def fetch(self, task_filter: Optional[TaskFilter] = None) -> List[Task]:
        task_filter = task_filter or TaskFilter()
        with self._lock:
            matches = [copy.deepcopy(t) for t in self._tasks.values() if task_filter.matches(t)]
        return sorted(matches, key=candidate_order)

    def add(self, task: Task) -> Task:
        with self._lock:
            if task.id in self._tasks:
                raise TaskStoreError(f"Task already exists: {task.id}")
            self._tasks[task.id] = copy.deepcopy(task)
            return copy.deepcopy(task)


class JsonTaskStore(TaskStore):
    """Task store persisted to a JSON file shared between processes.

    Every operation re-reads the file under a FileLock, so a conditional
    write compares against the latest state written by any process.
    """

    DEFAULT_TASKS_FILE = "devloop_tasks.json"

    def __init__(self, path: Optional[Path] = None, lock_timeout: float = 10.0):
        """Initialize the store.

        Args:
            path: JSON file holding the task records. Created on first write.
            lock_timeout: Seconds to wait for the file lock before the store
                is considered unreachable.
        """
        self.path = Path(path or self.DEFAULT_TASKS_FILE)
        self.lock_timeout = lock_timeout
        self._lock = FileLock(str(self.path) + ".lock")

    def _read(self) -> Dict[str, Task]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreUnreachableError(f"Failed to read task store {self.path}: {e}") from e
        return {str(item["id"]): Task.from_dict(item) for item in data.get("tasks", [])}

    def _write(self, tasks: Dict[str, Task]) -> None:
        payload = {
            "last_updated": now_iso(),
            "tasks": [t.to_dict() for t in tasks.values()],
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            tmp_path.replace(self.path)
        except OSError as e:
            raise StoreUnreachableError(f"Failed to write task store {self.path}: {e}") from e
        logger.debug(f"Saved {len(tasks)} tasks to {self.path}")

    @contextmanager
    def _locked(self) -> Iterator[None]:
        try:
            self._lock.acquire(timeout=self.lock_timeout)
        except Timeout as e:
            raise StoreUnreachableError(f"Timed out waiting for lock on {self.path}") from e
        except OSError as e:
            raise StoreUnreachableError(f"Cannot lock task store {self.path}: {e}") from e
        try:
            yield
        finally:
            self._lock.release()

    def get(self, task_id: str) -> Task:
        with self._locked():
            tasks = self._read()
        if task_id not in tasks:
            raise RecordNotFoundError(f"Task not found: {task_id}")
        return tasks[task_id]

    def set(
        self,
        task_id: str,
        fields: Dict[str, Any],
        expected_state: Optional[TaskState] = None,
    ) -> Task:
        with self._locked():
            tasks = self._read()
            task = tasks.get(task_id)
            if task is None:
                raise RecordNotFoundError(f"Task not found: {task_id}")
            if expected_state is not None and task.state != expected_state:
                raise StateConflictError(task_id, expected_state, task.state)
            _apply_fields(task, fields)
            self._write(tasks)
            return task

    def delete(self, task_id: str) -> None:
        with self._locked():
            tasks = self._read()
            if tasks.pop(task_id, None) is None:
                raise RecordNotFoundError(f"Task not found: {task_id}")
            self._write(tasks)

    def fetch(self, task_filter: Optional[TaskFilter] = None) -> List[Task]:
        task_filter = task_filter or TaskFilter()
        with self._locked():
            tasks = self._read()
        return sorted((t for t in tasks.values() if task_filter.matches(t)), key=candidate_order)

    def add(self, task: Task) -> Task:
        with self._locked():
            tasks = self._read()
            if task.id in tasks:
                raise TaskStoreError(f"Task already exists: {task.id}")
            tasks[task.id] = task
            self._write(tasks)
        return task
