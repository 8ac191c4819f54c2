"""Path health: is the codebase on a sustainable development path?

Health combines the latest gate report on the shared tree with a window of
recent cycle metrics. Each threshold that is crossed is recorded as a
violation, and the violations decide whether corrective work is needed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .config import HealthThresholds
from .gates import GateReport
from .metrics import CycleMetrics
from .operations import OperationKind

logger = logging.getLogger(__name__)


@dataclass
class PathHealth:
    """Health figures for the current cycle."""

    test_pass_rate: Optional[float] = None
    new_lint_violations: Optional[int] = None
    growth_per_task: Optional[float] = None
    completion_rate: Optional[float] = None
    violations: list[str] = field(default_factory=list)
    tests_failing: bool = False
    lint_failing: bool = False
    growth_exceeded: bool = False
    completion_low: bool = False

    @property
    def healthy(self) -> bool:
        return not self.violations

    def to_dict(self) -> dict:
        return {
            "test_pass_rate": self.test_pass_rate,
            "new_lint_violations": self.new_lint_violations,
            "growth_per_task": self.growth_per_task,
            "completion_rate": self.completion_rate,
            "violations": list(self.violations),
        }


def compute_path_health(
    history: Sequence[CycleMetrics],
    report: Optional[GateReport],
    thresholds: Optional[HealthThresholds] = None,
    lint_baseline: Optional[int] = None,
) -> PathHealth:
    """Compute path health.

    Args:
        history: Cycle metrics, oldest first. Only the last ``thresholds.window``
            entries are considered. May include the current, unfinalized cycle.
        report: Latest gate report on the shared tree, if gates were run.
        thresholds: Limits to check against.
        lint_baseline: Lint violations at the start of the run. New
            violations are counted relative to it.
    """
    thresholds = thresholds or HealthThresholds()
    health = PathHealth()

    if report is not None:
        health.test_pass_rate = report.test_pass_rate
        lint = report.get("lint")
        if lint is not None and not lint.skipped:
            count = report.lint_violations
            if count is None:
                count = 0 if lint.passed else 1
            health.new_lint_violations = max(0, count - (lint_baseline or 0))

    window = list(history)[-thresholds.window:] if thresholds.window > 0 else list(history)
    completed = sum(m.tasks_completed for m in window)
    attempted = sum(m.tasks_attempted for m in window)
    if completed:
        health.growth_per_task = sum(m.line_delta for m in window) / completed
    if attempted:
        health.completion_rate = completed / attempted

    if health.test_pass_rate is not None and health.test_pass_rate < thresholds.min_test_pass_rate:
        health.tests_failing = True
        health.violations.append(
            f"test pass rate {health.test_pass_rate:.0%} below {thresholds.min_test_pass_rate:.0%}"
        )
    if (
        health.new_lint_violations is not None
        and health.new_lint_violations > thresholds.max_new_lint_violations
    ):
        health.lint_failing = True
        health.violations.append(
            f"{health.new_lint_violations} new lint violations (max {thresholds.max_new_lint_violations})"
        )
    if health.growth_per_task is not None and health.growth_per_task > thresholds.max_growth_per_task:
        health.growth_exceeded = True
        health.violations.append(
            f"code growth {health.growth_per_task:.0f} lines/task exceeds {thresholds.max_growth_per_task:.0f}"
        )
    if health.completion_rate is not None and health.completion_rate < thresholds.min_completion_rate:
        health.completion_low = True
        health.violations.append(
            f"task completion rate {health.completion_rate:.0%} below {thresholds.min_completion_rate:.0%}"
        )

    if health.violations:
        logger.warning(f"Path health degraded: {'; '.join(health.violations)}")
    return health


def recommend_operation(health: PathHealth) -> Optional[OperationKind]:
    """Pick the corrective operation for a health assessment.

    Failing tests or new lint violations call for a fix, which takes
    precedence over redesign. Excess growth calls for a redesign. A low
    completion rate alone is reported but does not trigger corrective work.
    """
    if health.tests_failing or health.lint_failing:
        return OperationKind.FIX
    if health.growth_exceeded:
        return OperationKind.REDESIGN
    return None
