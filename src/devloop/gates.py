"""Quality gates that decide whether an agent's work is kept.

Coding work runs tests, lint and build, in that order, inside its worktree.
Every non-skipped gate must exit 0. All gates run even after a failure so the
report is complete; the first failure's output is the diagnostic handed to
corrective work. Documentation work only has to produce a non-empty file.
"""

from __future__ import annotations

import logging
import re
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from .cancellation import CancelToken, OperationCancelled, run_shell
from .config import GateSettings
from .task_store import Task, WorkCategory

logger = logging.getLogger(__name__)

GATE_ORDER = ("tests", "lint", "build")

_PYTEST_COUNT = re.compile(r"(\d+) (passed|failed|errors?)\b")
_RUFF_FOUND = re.compile(r"Found (\d+) errors?")


@dataclass(frozen=True)
class GateResult:
    """Outcome of a single gate."""

    name: str
    command: str
    passed: bool
    exit_code: int
    duration: float = 0.0
    output: str = ""
    skipped: bool = False

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped"
        return "passed" if self.passed else "failed"


@dataclass(frozen=True)
class GateReport:
    """Immutable set of gate results for one verification attempt."""

    results: tuple = field(default_factory=tuple)

    @property
    def passed(self) -> bool:
        return all(r.passed or r.skipped for r in self.results)

    @property
    def first_failure(self) -> Optional[GateResult]:
        for result in self.results:
            if not result.skipped and not result.passed:
                return result
        return None

    @property
    def diagnostic(self) -> str:
        failure = self.first_failure
        return failure.output if failure else ""

    def get(self, name: str) -> Optional[GateResult]:
        for result in self.results:
            if result.name == name:
                return result
        return None

    @property
    def test_pass_rate(self) -> Optional[float]:
        """Fraction of tests passing, or None when tests did not run."""
        tests = self.get("tests")
        if tests is None or tests.skipped:
            return None
        counts = parse_test_counts(tests.output)
        if counts is not None and sum(counts) > 0:
            passed, failed = counts
            return passed / (passed + failed)
        return 1.0 if tests.passed else 0.0

    @property
    def lint_violations(self) -> Optional[int]:
        lint = self.get("lint")
        if lint is None or lint.skipped:
            return None
        count = parse_lint_violations(lint.output)
        if count is not None:
            return count
        return 0 if lint.passed else None

    def summary(self) -> str:
        if not self.results:
            return "no gates"
        return ", ".join(f"{r.name}: {r.status}" for r in self.results)

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "gates": {r.name: r.status for r in self.results},
        }

    def to_markdown(self) -> str:
        lines = ["| Gate | Status | Exit | Duration |", "|---|---|---|---|"]
        for r in self.results:
            lines.append(f"| {r.name} | {r.status} | {r.exit_code} | {r.duration:.1f}s |")
        if self.first_failure:
            lines.extend(["", f"### {self.first_failure.name} output", "", "```", self.diagnostic[-4000:], "```"])
        return "\n".join(lines)


def parse_test_counts(output: str) -> Optional[tuple[int, int]]:
    """Parse (passed, failed) from a pytest summary line. Errors count as failures."""
    passed = failed = 0
    found = False
    for count, word in _PYTEST_COUNT.findall(output or ""):
        found = True
        if word == "passed":
            passed += int(count)
        else:
            failed += int(count)
    return (passed, failed) if found else None


def parse_lint_violations(output: str) -> Optional[int]:
    """Parse the violation count from ruff output."""
    match = _RUFF_FOUND.search(output or "")
    if match:
        return int(match.group(1))
    if "All checks passed" in (output or ""):
        return 0
    return None


def _has_content(target: Path) -> bool:
    if target.is_dir():
        return any(_has_content(child) for child in target.iterdir() if child.name != ".git")
    if target.is_file():
        return target.read_text(encoding="utf-8", errors="replace").strip() != ""
    return False


class QualityGateRunner:
    """Runs verification commands against a directory."""

    def __init__(self, settings: Optional[GateSettings] = None):
        self.settings = settings or GateSettings()

    def _gates(self) -> list[tuple[str, str, bool]]:
        s = self.settings
        return [
            ("tests", s.test_command, s.skip_tests),
            ("lint", s.lint_command, s.skip_lint),
            ("build", s.build_command, s.skip_build),
        ]

    def run(
        self,
        path: Path,
        cancel: Optional[CancelToken] = None,
        only: Optional[Iterable[str]] = None,
    ) -> GateReport:
        """Run tests, lint and build in ``path``.

        Args:
            path: Directory to verify.
            cancel: Cancellation for the whole run.
            only: Gate names to run. Gates left out are reported as skipped.
                None runs every configured gate.

        Raises:
            OperationCancelled: Cancellation or the deadline was reached.
        """
        cancel = cancel or CancelToken()
        selected = set(only) if only is not None else set(GATE_ORDER)
        unknown = selected - set(GATE_ORDER)
        if unknown:
            logger.warning(f"Ignoring unknown gates: {', '.join(sorted(unknown))}")
        results = []
        for name, command, skip in self._gates():
            if skip or not command or name not in selected:
                results.append(GateResult(name=name, command=command or "", passed=True, exit_code=0, skipped=True))
                continue
            cancel.raise_if_cancelled()
            results.append(self._run_gate(name, command, path, cancel))

        report = GateReport(results=tuple(results))
        logger.info(f"Gates {'passed' if report.passed else 'failed'} in {path}: {report.summary()}")
        return report

    def _run_gate(self, name: str, command: str, path: Path, cancel: CancelToken) -> GateResult:
        timeout = self.settings.timeout
        logger.info(f"Running {name}: {command}")
        start = time.monotonic()
        try:
            result = run_shell(command, cwd=path, timeout=timeout, cancel=cancel)
        except OperationCancelled:
            logger.warning(f"{name} gate interrupted")
            raise
        except subprocess.TimeoutExpired:
            logger.error(f"{name} timed out after {timeout}s")
            return GateResult(
                name=name,
                command=command,
                passed=False,
                exit_code=-1,
                duration=time.monotonic() - start,
                output=f"{name} timed out after {timeout} seconds",
            )
        except OSError as e:
            logger.error(f"{name} could not be started: {e}")
            return GateResult(
                name=name,
                command=command,
                passed=False,
                exit_code=-1,
                duration=time.monotonic() - start,
                output=str(e),
            )

        output = result.stdout
        if result.stderr:
            output = f"{output}\nSTDERR:\n{result.stderr}" if output else result.stderr
        passed = result.returncode == 0
        logger.info(f"{name} {'passed' if passed else 'failed'} (exit code: {result.returncode})")
        return GateResult(
            name=name,
            command=command,
            passed=passed,
            exit_code=result.returncode,
            duration=time.monotonic() - start,
            output=output,
        )

    def check_documentation(self, root: Path, output_path: Optional[str]) -> GateReport:
        """Pass when the declared output exists and is non-empty.

        The output may be a file with non-blank content or a directory holding
        at least one such file.
        """
        if not output_path:
            result = GateResult(
                name="documentation",
                command="",
                passed=False,
                exit_code=1,
                output="No output path declared for documentation task",
            )
            return GateReport(results=(result,))

        exists = _has_content(Path(root) / output_path)
        result = GateResult(
            name="documentation",
            command=f"check {output_path}",
            passed=exists,
            exit_code=0 if exists else 1,
            output="" if exists else f"{output_path} is missing or empty",
        )
        return GateReport(results=(result,))

    def run_for(self, task: Task, path: Path, cancel: Optional[CancelToken] = None) -> GateReport:
        """Run the gates that apply to the task's category."""
        if task.category.code_bearing:
            return self.run(path, cancel)
        if task.category is WorkCategory.DOCUMENTATION or task.output_path:
            return self.check_documentation(path, task.output_path)
        return GateReport()
