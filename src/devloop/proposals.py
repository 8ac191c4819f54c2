"""Work acquisition: proposing new tasks when the store runs dry."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .operations import OperationDefinition
from .task_store import Task, TaskState, TaskStore, WorkCategory

logger = logging.getLogger(__name__)

PROPERTY_KEYS = ("description", "acceptance_criteria", "priority", "template", "output_path")


class TaskProposer(ABC):
    """Produces candidate tasks during acquisition."""

    @abstractmethod
    def propose(self, store: TaskStore, definition: OperationDefinition) -> List[Task]:
        """Return new tasks to add as available. At most ``definition.limit``."""


class BacklogProposer(TaskProposer):
    """Proposes tasks from a YAML backlog file.

    The backlog looks like::

        tasks:
          - id: add-retry
            name: Add retry to the HTTP client
            category: coding
            priority: high
            description: ...
            acceptance_criteria:
              - retries 3 times on 5xx

    Entries whose id is already in the store are skipped.
    """

    def __init__(self, backlog_file: Optional[Path] = None):
        self.backlog_file = Path(backlog_file) if backlog_file else None

    def _entries(self) -> List[Dict[str, Any]]:
        if self.backlog_file is None or not self.backlog_file.exists():
            logger.info("No backlog file; nothing to propose")
            return []
        with open(self.backlog_file, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return list(data.get("tasks", []) or [])

    def propose(self, store: TaskStore, definition: OperationDefinition) -> List[Task]:
        known = {task.id for task in store.fetch()}
        proposed: List[Task] = []
        for entry in self._entries():
            if len(proposed) >= definition.limit:
                break
            task_id = str(entry.get("id", "")).strip()
            if not task_id or task_id in known:
                continue
            try:
                category = WorkCategory(entry.get("category", WorkCategory.CODING.value))
            except ValueError:
                logger.warning(f"Backlog entry {task_id} has unknown category {entry.get('category')!r}")
                continue
            proposed.append(
                Task(
                    id=task_id,
                    name=entry.get("name") or task_id,
                    category=category,
                    state=TaskState.AVAILABLE,
                    properties={k: entry[k] for k in PROPERTY_KEYS if k in entry},
                    metadata={"source": "backlog"},
                )
            )
            known.add(task_id)
        logger.info(f"Backlog proposed {len(proposed)} task(s)")
        return proposed
