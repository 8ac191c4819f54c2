"""Tests for quality gates."""

from __future__ import annotations

import threading
import time

import pytest

from devloop.cancellation import CancelToken, OperationCancelled
from devloop.config import GateSettings
from devloop.gates import (
    GATE_ORDER,
    GateReport,
    GateResult,
    QualityGateRunner,
    parse_lint_violations,
    parse_test_counts,
)
from devloop.task_store import WorkCategory


class TestParsing:
    @pytest.mark.parametrize(
        "output,expected",
        [
            ("===== 12 passed in 0.5s =====", (12, 0)),
            ("=== 3 failed, 9 passed, 1 error in 2s ===", (9, 4)),
            ("no tests ran", None),
            ("", None),
        ],
    )
    def test_parse_test_counts(self, output, expected):
        assert parse_test_counts(output) == expected

    @pytest.mark.parametrize(
        "output,expected",
        [
            ("a.py:1:1: F401 unused\nFound 3 errors.", 3),
            ("Found 1 error.", 1),
            ("All checks passed!", 0),
            ("something else", None),
        ],
    )
    def test_parse_lint_violations(self, output, expected):
        assert parse_lint_violations(output) == expected


class TestGateReport:
    """Tests for GateReport summaries."""

    def test_empty_report_passes(self):
        report = GateReport()
        assert report.passed
        assert report.summary() == "no gates"
        assert report.test_pass_rate is None

    def test_first_failure_is_diagnostic(self):
        report = GateReport(
            results=(
                GateResult("tests", "pytest", True, 0, output="5 passed"),
                GateResult("lint", "ruff", False, 1, output="Found 2 errors."),
                GateResult("build", "make", False, 2, output="build broke"),
            )
        )

        assert not report.passed
        assert report.first_failure.name == "lint"
        assert report.diagnostic == "Found 2 errors."
        assert report.lint_violations == 2
        assert report.test_pass_rate == 1.0
        assert report.to_dict() == {
            "passed": False,
            "gates": {"tests": "passed", "lint": "failed", "build": "failed"},
        }
        assert "### lint output" in report.to_markdown()

    def test_pass_rate_from_counts(self):
        report = GateReport(results=(GateResult("tests", "pytest", False, 1, output="1 failed, 1 passed"),))
        assert report.test_pass_rate == 0.5

    def test_pass_rate_without_counts(self):
        report = GateReport(results=(GateResult("tests", "make test", False, 2, output="boom"),))
        assert report.test_pass_rate == 0.0


class TestQualityGateRunner:
    """Tests for QualityGateRunner against real shell commands."""

    def test_all_pass(self, tmp_path, passing_gates):
        report = passing_gates.run(tmp_path)

        assert report.passed
        assert tuple(r.name for r in report.results) == GATE_ORDER

    def test_every_gate_runs_after_failure(self, tmp_path):
        runner = QualityGateRunner(
            GateSettings(
                test_command="echo tests-broke; exit 1",
                lint_command="echo lint-ok",
                build_command="echo build-broke >&2; exit 2",
            )
        )

        report = runner.run(tmp_path)

        assert [r.status for r in report.results] == ["failed", "passed", "failed"]
        assert report.first_failure.name == "tests"
        assert "tests-broke" in report.diagnostic
        assert report.get("build").exit_code == 2
        assert "build-broke" in report.get("build").output

    def test_lint_failure_with_tests_passing(self, tmp_path):
        runner = QualityGateRunner(
            GateSettings(test_command="exit 0", lint_command="echo 'Found 4 errors.'; exit 1", build_command="exit 0")
        )

        report = runner.run(tmp_path)

        assert not report.passed
        assert report.first_failure.name == "lint"
        assert report.lint_violations == 4

    def test_only_runs_selected_gates(self, tmp_path):
        runner = QualityGateRunner(
            GateSettings(test_command="exit 1", lint_command="exit 0", build_command="exit 0")
        )

        report = runner.run(tmp_path, only=["lint", "build"])

        assert report.passed
        assert report.get("tests").skipped
        assert not report.get("lint").skipped

    def test_skipped_gates_pass(self, tmp_path, skipped_gates):
        report = skipped_gates.run(tmp_path)

        assert report.passed
        assert all(r.skipped for r in report.results)
        assert report.test_pass_rate is None

    def test_runs_in_given_directory(self, tmp_path):
        (tmp_path / "marker.txt").write_text("x")
        runner = QualityGateRunner(
            GateSettings(test_command="test -f marker.txt", skip_lint=True, skip_build=True)
        )

        assert runner.run(tmp_path).passed

    def test_gate_timeout_is_failure(self, tmp_path):
        runner = QualityGateRunner(
            GateSettings(test_command="sleep 5", skip_lint=True, skip_build=True, timeout=1)
        )

        report = runner.run(tmp_path)

        assert not report.passed
        assert "timed out" in report.diagnostic

    def test_cancelled_before_running(self, tmp_path, passing_gates):
        cancel = CancelToken()
        cancel.cancel()

        with pytest.raises(OperationCancelled):
            passing_gates.run(tmp_path, cancel)

    def test_cancel_stops_running_gate(self, tmp_path):
        """A cancel request kills the gate command instead of waiting it out."""
        runner = QualityGateRunner(
            GateSettings(test_command="sleep 30", skip_lint=True, skip_build=True, timeout=60)
        )
        cancel = CancelToken()
        timer = threading.Timer(0.3, cancel.cancel)
        timer.start()
        start = time.monotonic()
        try:
            with pytest.raises(OperationCancelled) as exc_info:
                runner.run(tmp_path, cancel)
        finally:
            timer.cancel()

        assert time.monotonic() - start < 10
        assert not exc_info.value.expired

    def test_deadline_stops_running_gate(self, tmp_path):
        runner = QualityGateRunner(
            GateSettings(test_command="sleep 30", skip_lint=True, skip_build=True, timeout=60)
        )

        with pytest.raises(OperationCancelled) as exc_info:
            runner.run(tmp_path, CancelToken(timeout=0.5))

        assert exc_info.value.expired


class TestDocumentationGate:
    def test_non_empty_file_passes(self, tmp_path, passing_gates):
        (tmp_path / "docs").mkdir()
        (tmp_path / "docs" / "guide.md").write_text("# Guide\n")

        assert passing_gates.check_documentation(tmp_path, "docs/guide.md").passed

    @pytest.mark.parametrize("content", [None, "   \n"])
    def test_missing_or_empty_fails(self, tmp_path, passing_gates, content):
        if content is not None:
            (tmp_path / "guide.md").write_text(content)

        report = passing_gates.check_documentation(tmp_path, "guide.md")

        assert not report.passed
        assert "missing or empty" in report.diagnostic

    def test_no_output_path_fails(self, tmp_path, passing_gates):
        assert not passing_gates.check_documentation(tmp_path, None).passed

    def test_non_empty_directory_passes(self, tmp_path, passing_gates):
        (tmp_path / "docs" / "api").mkdir(parents=True)
        (tmp_path / "docs" / "api" / "index.md").write_text("# API\n")

        assert passing_gates.check_documentation(tmp_path, "docs").passed

    def test_directory_of_blank_files_fails(self, tmp_path, passing_gates):
        (tmp_path / "docs").mkdir()
        (tmp_path / "docs" / "empty.md").write_text("\n")

        assert not passing_gates.check_documentation(tmp_path, "docs").passed


class TestRunFor:
    def test_coding_runs_all_gates(self, tmp_path, passing_gates, make_task):
        report = passing_gates.run_for(make_task("t1"), tmp_path)
        assert [r.name for r in report.results] == list(GATE_ORDER)

    def test_documentation_checks_output(self, tmp_path, passing_gates, make_task):
        task = make_task("d1", category=WorkCategory.DOCUMENTATION, output_path="README.md")
        report = passing_gates.run_for(task, tmp_path)
        assert [r.name for r in report.results] == ["documentation"]
        assert not report.passed

    def test_operations_without_output_passes(self, tmp_path, passing_gates, make_task):
        task = make_task("o1", category=WorkCategory.OPERATIONS)
        assert passing_gates.run_for(task, tmp_path).results == ()

    def test_planning_with_output_is_checked(self, tmp_path, passing_gates, make_task):
        (tmp_path / "plan.md").write_text("plan")
        task = make_task("p1", category=WorkCategory.PLANNING, output_path="plan.md")
        assert passing_gates.run_for(task, tmp_path).passed
