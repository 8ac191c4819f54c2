"""Task lifecycle state machine.

Every state change a task record goes through is validated here before the
store is touched, then written with a conditional update against the
expected prior state.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .task_store import Task, TaskState, TaskStore

logger = logging.getLogger(__name__)

Edge = Tuple[TaskState, TaskState]

# Edges driven by the orchestration core.
CORE_TRANSITIONS: FrozenSet[Edge] = frozenset({
    (TaskState.AVAILABLE, TaskState.IN_PROGRESS),
    (TaskState.IN_PROGRESS, TaskState.COMPLETED),
    (TaskState.IN_PROGRESS, TaskState.FAILED),
    (TaskState.IN_PROGRESS, TaskState.AVAILABLE),
})

# Edges owned by upstream (proposal) and downstream (archival) collaborators.
UPSTREAM_TRANSITIONS: FrozenSet[Edge] = frozenset({
    (TaskState.DRAFT, TaskState.PENDING),
    (TaskState.PENDING, TaskState.AVAILABLE),
    (TaskState.COMPLETED, TaskState.ARCHIVED),
    (TaskState.FAILED, TaskState.ARCHIVED),
})

LEGAL_TRANSITIONS: FrozenSet[Edge] = CORE_TRANSITIONS | UPSTREAM_TRANSITIONS


class IllegalTransitionError(Exception):
    """Raised for a state change outside the legal edge set."""

    def __init__(self, task_id: str, source: TaskState, target: TaskState):
        super().__init__(
            f"Illegal transition for task {task_id}: {source.value} -> {target.value}"
        )
        self.task_id = task_id
        self.source = source
        self.target = target


def is_legal(source: TaskState, target: TaskState) -> bool:
    return (source, target) in LEGAL_TRANSITIONS


class TaskStateMachine:
    """Applies validated state transitions to task records in a store."""

    def __init__(self, store: TaskStore):
        self.store = store

    def transition(
        self,
        task: Task,
        target: TaskState,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Task:
        """Move a task from its current state to ``target``.

        The write is conditional on the store still holding ``task.state``,
        so a concurrent writer that got there first causes a
        StateConflictError instead of a lost update.

        Args:
            task: Task as last read by the caller.
            target: Desired state.
            metadata: Entries merged into the task's metadata in the same write.

        Returns:
            The updated task record.

        Raises:
            IllegalTransitionError: The edge is not in LEGAL_TRANSITIONS. The
                store is not touched.
            StateConflictError: The stored state no longer equals task.state.
        """
        source = task.state
        if not is_legal(source, target):
            raise IllegalTransitionError(task.id, source, target)

        fields: Dict[str, Any] = {"state": target.value}
        if metadata:
            fields["metadata"] = metadata

        updated = self.store.set(task.id, fields, expected_state=source)
        logger.info(f"Task {task.id} status -> {target.value}")
        return updated
