"""Tools the agent can call during a dispatch.

Tools are rooted at a directory (a task's worktree, or the shared tree for
non-coding tasks). Paths that resolve outside that root are rejected.
"""

from __future__ import annotations

import json
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .cancellation import CancelToken, OperationCancelled, run_shell
from .providers import ToolCall, ToolSpec

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 20000


class ToolError(Exception):
    """Raised by a tool when a call cannot be carried out."""

    pass


class Tool(ABC):
    """Base class for agent tools."""

    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = {"type": "object", "properties": {}}

    @abstractmethod
    def execute(self, arguments: Dict[str, Any]) -> str:
        """Run the tool and return text content for the agent."""

    def spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description, parameters=self.parameters)


class ToolRegistry:
    """Routes tool calls to registered tools."""

    def __init__(self, tools: Optional[Iterable[Tool]] = None):
        self._tools: Dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def names(self) -> List[str]:
        return sorted(self._tools)

    def specs(self) -> List[ToolSpec]:
        return [tool.spec() for tool in self._tools.values()]

    def execute(self, call: ToolCall) -> Tuple[str, bool]:
        """Execute a tool call.

        Returns:
            (content, is_error). Unknown tools and tool exceptions are
            reported as error content rather than raised.
        """
        tool = self._tools.get(call.name)
        if tool is None:
            logger.warning(f"Unknown tool requested: {call.name}")
            return f"Unknown tool: {call.name}", True

        try:
            logger.debug(f"Executing tool {call.name}")
            return tool.execute(call.arguments), False
        except ToolError as e:
            logger.info(f"Tool {call.name} rejected call: {e}")
            return f"Error: {e}", True
        except Exception as e:
            logger.error(f"Tool {call.name} failed: {e}", exc_info=True)
            return f"Tool execution failed: {e}", True


def _truncate(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[:MAX_OUTPUT_CHARS] + f"\n... [truncated {len(text) - MAX_OUTPUT_CHARS} chars]"


class _RootedTool(Tool):
    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def _resolve(self, relative: Any) -> Path:
        if not isinstance(relative, str) or not relative:
            raise ToolError("'path' must be a non-empty string")
        path = (self.root / relative).resolve()
        if path != self.root and self.root not in path.parents:
            raise ToolError(f"Path escapes the workspace: {relative}")
        return path


class ReadFileTool(_RootedTool):
    name = "read_file"
    description = "Read a text file from the workspace."
    parameters = {
        "type": "object",
        "properties": {"path": {"type": "string", "description": "Path relative to the workspace root"}},
        "required": ["path"],
    }

    def execute(self, arguments: Dict[str, Any]) -> str:
        path = self._resolve(arguments.get("path"))
        if not path.is_file():
            raise ToolError(f"File not found: {arguments.get('path')}")
        return _truncate(path.read_text(encoding="utf-8", errors="replace"))


class WriteFileTool(_RootedTool):
    name = "write_file"
    description = "Create or overwrite a text file in the workspace."
    parameters = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Path relative to the workspace root"},
            "content": {"type": "string", "description": "Full file content"},
        },
        "required": ["path", "content"],
    }

    def execute(self, arguments: Dict[str, Any]) -> str:
        path = self._resolve(arguments.get("path"))
        content = arguments.get("content", "")
        if not isinstance(content, str):
            raise ToolError("'content' must be a string")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return f"Wrote {len(content)} characters to {arguments['path']}"


class ListFilesTool(_RootedTool):
    name = "list_files"
    description = "List files under a workspace directory."
    parameters = {
        "type": "object",
        "properties": {"path": {"type": "string", "description": "Directory relative to the workspace root"}},
    }

    def execute(self, arguments: Dict[str, Any]) -> str:
        directory = self._resolve(arguments.get("path") or ".")
        if not directory.is_dir():
            raise ToolError(f"Not a directory: {arguments.get('path')}")
        files = []
        for path in sorted(directory.rglob("*")):
            if ".git" in path.parts or not path.is_file():
                continue
            files.append(str(path.relative_to(self.root)))
        return _truncate("\n".join(files)) or "(empty)"


class RunCommandTool(_RootedTool):
    name = "run_command"
    description = "Run a shell command in the workspace and return its output."
    parameters = {
        "type": "object",
        "properties": {"command": {"type": "string", "description": "Shell command to run"}},
        "required": ["command"],
    }

    def __init__(self, root: Path, timeout: int = 300, cancel: Optional[CancelToken] = None):
        super().__init__(root)
        self.timeout = timeout
        self.cancel = cancel or CancelToken()

    def execute(self, arguments: Dict[str, Any]) -> str:
        command = arguments.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ToolError("'command' must be a non-empty string")
        logger.info(f"Agent command: {command}")
        try:
            result = run_shell(command, cwd=self.root, timeout=self.timeout, cancel=self.cancel)
        except subprocess.TimeoutExpired as e:
            raise ToolError(f"Command timed out after {self.timeout} seconds") from e
        except OperationCancelled as e:
            raise ToolError(f"Command interrupted: {e}") from e
        return _truncate(
            json.dumps(
                {"exit_code": result.returncode, "stdout": result.stdout, "stderr": result.stderr},
                indent=2,
            )
        )


def default_tools(
    root: Path, command_timeout: int = 300, cancel: Optional[CancelToken] = None
) -> ToolRegistry:
    """Registry with the built-in file and shell tools rooted at ``root``."""
    return ToolRegistry([
        ReadFileTool(root),
        WriteFileTool(root),
        ListFilesTool(root),
        RunCommandTool(root, timeout=command_timeout, cancel=cancel),
    ])
