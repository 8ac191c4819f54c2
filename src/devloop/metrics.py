"""Per-cycle metrics for the development loop.

Each cycle accumulates its figures in a CycleMetrics record. At the end of
the cycle the record is finalized and appended as one line to a JSON-lines
log. A finalized record is read-only, and an unfinalized one is never
written, so the log only ever holds complete cycles.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from .providers import TokenUsage

logger = logging.getLogger(__name__)


class MetricsError(Exception):
    """Exception raised for invalid metrics operations."""

    pass


@dataclass
class CycleMetrics:
    """Statistics for one development-loop cycle."""

    cycle: int
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    tokens: TokenUsage = field(default_factory=TokenUsage)
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_released: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    word_delta: int = 0
    operations: list[str] = field(default_factory=list)
    test_pass_rate: Optional[float] = None
    lint_violations: Optional[int] = None
    finalized: bool = False

    def __setattr__(self, name, value):
        if getattr(self, "finalized", False):
            raise MetricsError(f"Cycle {self.cycle} metrics are finalized")
        super().__setattr__(name, value)

    def _check_open(self) -> None:
        if self.finalized:
            raise MetricsError(f"Cycle {self.cycle} metrics are finalized")

    @property
    def line_delta(self) -> int:
        return self.lines_added - self.lines_removed

    @property
    def tasks_attempted(self) -> int:
        return self.tasks_completed + self.tasks_failed

    @property
    def completion_rate(self) -> Optional[float]:
        if self.tasks_attempted == 0:
            return None
        return self.tasks_completed / self.tasks_attempted

    @property
    def growth_per_task(self) -> Optional[float]:
        if self.tasks_completed == 0:
            return None
        return self.line_delta / self.tasks_completed

    @property
    def wall_time(self) -> float:
        """Get duration in seconds."""
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    def record_operation(self, operation: str) -> None:
        self._check_open()
        self.operations.append(operation)

    def record_task(self, outcome) -> None:
        """Add a TaskOutcome's figures to the cycle."""
        self._check_open()
        self.tokens.add(outcome.usage)
        if outcome.status == "completed":
            self.tasks_completed += 1
            self.lines_added += outcome.lines_added
            self.lines_removed += outcome.lines_removed
            self.word_delta += outcome.word_delta
        elif outcome.status == "failed":
            self.tasks_failed += 1
        else:
            self.tasks_released += 1

    def finalize(self) -> None:
        self._check_open()
        self.end_time = datetime.now()
        self.finalized = True

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "cycle": self.cycle,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "wall_time": self.wall_time,
            "tokens": self.tokens.to_dict(),
            "tasks": {
                "completed": self.tasks_completed,
                "failed": self.tasks_failed,
                "released": self.tasks_released,
            },
            "lines": {
                "added": self.lines_added,
                "removed": self.lines_removed,
                "delta": self.line_delta,
            },
            "word_delta": self.word_delta,
            "operations": list(self.operations),
            "test_pass_rate": self.test_pass_rate,
            "lint_violations": self.lint_violations,
        }

    @classmethod
    def from_dict(cls, data: dict) -> CycleMetrics:
        tokens = data.get("tokens", {})
        tasks = data.get("tasks", {})
        lines = data.get("lines", {})
        end_time = data.get("end_time")
        metrics = cls(
            cycle=int(data["cycle"]),
            start_time=datetime.fromisoformat(data["start_time"]),
            end_time=datetime.fromisoformat(end_time) if end_time else None,
            tokens=TokenUsage(
                tokens.get("input", 0), tokens.get("output", 0), tokens.get("invocations", 0)
            ),
            tasks_completed=tasks.get("completed", 0),
            tasks_failed=tasks.get("failed", 0),
            tasks_released=tasks.get("released", 0),
            lines_added=lines.get("added", 0),
            lines_removed=lines.get("removed", 0),
            word_delta=data.get("word_delta", 0),
            operations=list(data.get("operations", [])),
            test_pass_rate=data.get("test_pass_rate"),
            lint_violations=data.get("lint_violations"),
        )
        metrics.finalized = True
        return metrics


class MetricsLog:
    """Append-only JSON-lines log of finalized cycle metrics."""

    def __init__(self, path: Optional[Path] = None):
        """Initialize the metrics log.

        Args:
            path: JSON-lines file. Defaults to logs/cycles.jsonl.
        """
        self.path = Path(path or "logs/cycles.jsonl")

    def append(self, metrics: CycleMetrics) -> None:
        """Append a finalized cycle.

        Raises:
            MetricsError: The metrics have not been finalized.
        """
        if not metrics.finalized:
            raise MetricsError(f"Cycle {metrics.cycle} metrics must be finalized before logging")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(metrics.to_dict()) + "\n")
        logger.info(f"Cycle {metrics.cycle} metrics logged to {self.path}")

    def history(self, limit: Optional[int] = None) -> list[CycleMetrics]:
        """Load logged cycles, oldest first.

        ``limit`` keeps only the most recent entries; None or a value <= 0
        returns the whole log, matching HealthThresholds.window.
        """
        if not self.path.exists():
            return []
        entries = []
        with open(self.path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    entries.append(CycleMetrics.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed metrics line {line_no} in {self.path}: {e}")
        if limit is not None and limit > 0:
            entries = entries[-limit:]
        return entries
