"""Prompt rendering for task dispatches and corrective operations."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from jinja2 import Template, TemplateError

from .operations import OperationDefinition
from .task_store import Task, WorkCategory

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """\
You are an autonomous software engineer working inside an isolated checkout
of a repository. Use the available tools to inspect and change files and to
run commands. When the work is done, reply with a short summary of what you
changed and do not call any more tools.
"""

_ACCEPTANCE = """\
{% if task.properties.acceptance_criteria %}
## Acceptance Criteria

{% for item in task.properties.acceptance_criteria %}- {{ item }}
{% endfor %}{% endif %}"""

DEFAULT_TEMPLATES = {
    WorkCategory.CODING: """\
# Coding Task: {{ task.name }}

{{ task.description }}
""" + _ACCEPTANCE + """
Your changes must pass the project's tests, lint and build checks. They will
be run automatically after you finish; work that fails them is discarded.
""",
    WorkCategory.DOCUMENTATION: """\
# Documentation Task: {{ task.name }}

{{ task.description }}
""" + _ACCEPTANCE + """
Write the result to `{{ task.output_path }}`. The task only counts as done when
that file exists and is non-empty.
""",
    WorkCategory.OPERATIONS: """\
# Operations Task: {{ task.name }}

{{ task.description }}
""" + _ACCEPTANCE + """{% if task.output_path %}
Record the outcome in `{{ task.output_path }}`.
{% endif %}""",
    WorkCategory.PLANNING: """\
# Planning Task: {{ task.name }}

{{ task.description }}
""" + _ACCEPTANCE + """{% if task.output_path %}
Write the plan to `{{ task.output_path }}`.
{% endif %}""",
}


class PromptProvider(ABC):
    """Supplies the first-turn prompt for a dispatch."""

    system_prompt: Optional[str] = SYSTEM_PROMPT

    @abstractmethod
    def render_task(self, task: Task, operation: Optional[OperationDefinition] = None) -> str:
        """Render the prompt that starts work on a task.

        ``operation`` is the resolved execute definition; its prompt, rendered
        with the task, is appended as standing instructions.
        """

    @abstractmethod
    def render_operation(self, definition: OperationDefinition, context: dict[str, Any]) -> str:
        """Render a corrective operation's prompt with its context."""

    def render_task_name(self, definition: OperationDefinition, context: dict[str, Any]) -> str:
        return _render(definition.task_name or definition.kind.value, context) or definition.kind.value


def _render(source: str, context: dict[str, Any]) -> str:
    try:
        return Template(source).render(**context)
    except TemplateError as e:
        logger.warning(f"Jinja2 template error: {e}")
        # Fallback to raw template if rendering fails
        return source


class TemplatePromptProvider(PromptProvider):
    """Renders prompts from jinja2 templates.

    A task may name an override template in ``properties.template``; it is
    looked up in ``templates_dir``. Otherwise the category's default is used.
    """

    def __init__(self, templates_dir: Optional[Path] = None):
        self.templates_dir = Path(templates_dir) if templates_dir else None

    def _template_for(self, task: Task) -> str:
        name = task.properties.get("template")
        if name and self.templates_dir:
            path = self.templates_dir / name
            if path.is_file():
                return path.read_text(encoding="utf-8")
            logger.warning(f"Template {name} not found in {self.templates_dir}, using default")
        return DEFAULT_TEMPLATES[task.category]

    def render_task(self, task: Task, operation: Optional[OperationDefinition] = None) -> str:
        logger.debug(f"Rendering prompt for task {task.id}")
        if task.properties.get("prompt"):
            # corrective tasks carry their rendered operation prompt
            return task.properties["prompt"]
        prompt = _render(self._template_for(task), {"task": task})
        if operation is not None and operation.prompt:
            instructions = _render(operation.prompt, {"task": task}).strip()
            if instructions:
                prompt = f"{prompt.rstrip()}\n\n{instructions}\n"
        return prompt

    def render_operation(self, definition: OperationDefinition, context: dict[str, Any]) -> str:
        logger.debug(f"Rendering {definition.kind.value} operation v{definition.version}")
        return _render(definition.prompt, context)
