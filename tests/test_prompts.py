"""Tests for prompt rendering."""

from __future__ import annotations

from dataclasses import replace

from devloop.operations import DEFAULT_DEFINITIONS, OperationKind
from devloop.prompts import SYSTEM_PROMPT, TemplatePromptProvider
from devloop.task_store import WorkCategory


class TestTemplatePromptProvider:
    """Tests for TemplatePromptProvider."""

    def test_coding_prompt(self, prompts, make_task):
        task = make_task(
            "t1",
            name="Add retry",
            description="Retry idempotent requests.",
            acceptance_criteria=["retries 3 times", "logs each retry"],
        )

        prompt = prompts.render_task(task)

        assert prompt.startswith("# Coding Task: Add retry")
        assert "Retry idempotent requests." in prompt
        assert "- retries 3 times\n- logs each retry" in prompt
        assert "tests, lint and build" in prompt

    def test_documentation_prompt_names_output(self, prompts, make_task):
        task = make_task("d1", category=WorkCategory.DOCUMENTATION, output_path="docs/usage.md")

        prompt = prompts.render_task(task)

        assert "# Documentation Task" in prompt
        assert "`docs/usage.md`" in prompt
        assert "Acceptance Criteria" not in prompt

    def test_template_override(self, tmp_path, make_task):
        (tmp_path / "short.j2").write_text("Do {{ task.name }} now")
        provider = TemplatePromptProvider(tmp_path)

        assert provider.render_task(make_task("t1", name="X", template="short.j2")) == "Do X now"

    def test_missing_override_falls_back(self, tmp_path, make_task):
        provider = TemplatePromptProvider(tmp_path)

        prompt = provider.render_task(make_task("t1", name="X", template="nope.j2"))

        assert prompt.startswith("# Coding Task: X")

    def test_rendered_prompt_property_wins(self, prompts, make_task):
        assert prompts.render_task(make_task("fix-1", prompt="Fix the build")) == "Fix the build"

    def test_execute_instructions_appended(self, prompts, make_task):
        execute = DEFAULT_DEFINITIONS[OperationKind.EXECUTE]

        prompt = prompts.render_task(make_task("t1", name="Add retry"), execute)

        assert prompt.startswith("# Coding Task: Add retry")
        assert prompt.endswith("Stay within the scope of this task and leave unrelated code untouched.\n")

    def test_execute_instructions_skip_corrective_prompt(self, prompts, make_task):
        execute = DEFAULT_DEFINITIONS[OperationKind.EXECUTE]

        assert prompts.render_task(make_task("fix-1", prompt="Fix the build"), execute) == "Fix the build"

    def test_fix_operation(self, prompts):
        fix = DEFAULT_DEFINITIONS[OperationKind.FIX]
        context = {"cycle": 3, "attempt": 1, "failing_gate": "lint", "diagnostic": "F401 unused import"}

        assert "Failing gate: lint" in prompts.render_operation(fix, context)
        assert prompts.render_task_name(fix, context) == "Fix failing quality gates (cycle 3, attempt 1)"

    def test_redesign_operation_lists_findings(self, prompts):
        redesign = DEFAULT_DEFINITIONS[OperationKind.REDESIGN]

        prompt = prompts.render_operation(redesign, {"cycle": 2, "findings": ["growth too high"]})

        assert "- growth too high" in prompt

    def test_broken_template_returns_source(self, prompts):
        broken = replace(DEFAULT_DEFINITIONS[OperationKind.FIX], prompt="{% if %}")

        assert prompts.render_operation(broken, {}) == "{% if %}"

    def test_system_prompt(self, prompts):
        assert prompts.system_prompt == SYSTEM_PROMPT
