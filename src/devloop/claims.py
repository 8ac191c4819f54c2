"""Atomic task claiming over the shared task store.

Ownership of a task is asserted purely by the conditional write
available -> in_progress. Two engines racing for the same task both attempt
the write; the store accepts exactly one and the loser sees a conflict and
moves on to the next candidate.
"""

from __future__ import annotations

import logging
import os
import socket
from typing import Any, Dict, Iterable, List, Optional

from .lifecycle import TaskStateMachine
from .task_store import (
    RecordNotFoundError,
    StateConflictError,
    Task,
    TaskFilter,
    TaskState,
    TaskStore,
    WorkCategory,
    now_iso,
)

logger = logging.getLogger(__name__)


def default_owner() -> str:
    """Identify this engine instance as host:pid."""
    return f"{socket.gethostname()}:{os.getpid()}"


class ClaimManager:
    """Picks, claims, releases and finalizes tasks for one engine instance."""

    def __init__(
        self,
        store: TaskStore,
        owner: Optional[str] = None,
        state_machine: Optional[TaskStateMachine] = None,
    ):
        """Initialize the claim manager.

        Args:
            store: Shared task store.
            owner: Identifier recorded as claimed_by. Defaults to host:pid.
            state_machine: Transition validator. Built from ``store`` if omitted.
        """
        self.store = store
        self.owner = owner or default_owner()
        self.state_machine = state_machine or TaskStateMachine(store)

    def pick(
        self,
        category: Optional[WorkCategory] = None,
        exclude: Iterable[str] = (),
    ) -> List[Task]:
        """Return available tasks, highest priority first, oldest first on ties."""
        return self.store.fetch(
            TaskFilter(
                state=TaskState.AVAILABLE,
                category=category,
                exclude_ids=frozenset(exclude),
            )
        )

    def claim(self, task: Task) -> Optional[Task]:
        """Try to take ownership of a task.

        Returns:
            The in-progress task, or None if another claimant won the race or
            the record disappeared. Neither case is an error for the caller;
            it should pick again.
        """
        try:
            claimed = self.state_machine.transition(
                task,
                TaskState.IN_PROGRESS,
                metadata={"claimed_at": now_iso(), "claimed_by": self.owner},
            )
        except StateConflictError as e:
            logger.info(f"Claim conflict on task {task.id}: {e}")
            return None
        except RecordNotFoundError:
            logger.warning(f"Task {task.id} vanished before it could be claimed")
            return None

        logger.info(f"Claimed task {claimed.id} ({claimed.name}) as {self.owner}")
        return claimed

    def claim_next(
        self,
        category: Optional[WorkCategory] = None,
        exclude: Iterable[str] = (),
    ) -> Optional[Task]:
        """Claim the best available candidate, re-picking past conflicts."""
        for candidate in self.pick(category=category, exclude=exclude):
            claimed = self.claim(candidate)
            if claimed is not None:
                return claimed
        return None

    def release(self, task: Task, reason: str, retryable: bool = True) -> Task:
        """Give up a claimed task.

        Args:
            task: The in-progress task.
            reason: Why the task is being released; stored in metadata.
            retryable: True returns the task to available, False marks it failed.

        Returns:
            The updated task record.
        """
        if retryable:
            updated = self.state_machine.transition(
                task,
                TaskState.AVAILABLE,
                metadata={"released_at": now_iso(), "release_reason": reason},
            )
            logger.info(f"Released task {task.id}: {reason}")
        else:
            updated = self.state_machine.transition(
                task,
                TaskState.FAILED,
                metadata={"failed_at": now_iso(), "failure_reason": reason},
            )
            logger.warning(f"Task {task.id} failed: {reason}")
        return updated

    def complete(self, task: Task, outcome: Optional[Dict[str, Any]] = None) -> Task:
        """Mark a claimed task completed, recording its outcome metadata."""
        metadata = {"completed_at": now_iso()}
        metadata.update(outcome or {})
        return self.state_machine.transition(task, TaskState.COMPLETED, metadata=metadata)

    def fail(self, task: Task, reason: str, outcome: Optional[Dict[str, Any]] = None) -> Task:
        """Mark a claimed task failed with extra outcome metadata."""
        metadata = {"failed_at": now_iso(), "failure_reason": reason}
        metadata.update(outcome or {})
        updated = self.state_machine.transition(task, TaskState.FAILED, metadata=metadata)
        logger.warning(f"Task {task.id} failed: {reason}")
        return updated
