"""Per-task lifecycle: workspace, dispatch, gates, merge or discard, finalize.

A claimed task is run exactly once. Coding work happens in its own worktree;
only work that passes every gate is committed and merged. The worktree and
branch are removed before the task's final state is written, whatever
happened in between.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .cancellation import CancelToken, OperationCancelled
from .claims import ClaimManager
from .dispatch import DispatchError, DispatchLoop, DispatchTimeout
from .gates import GateReport, QualityGateRunner
from .operations import OperationDefinition
from .prompts import PromptProvider
from .providers import AgentProvider, TokenUsage
from .task_store import (
    RecordNotFoundError,
    StateConflictError,
    StoreUnreachableError,
    Task,
    TaskStoreError,
)
from .tools import ToolRegistry, default_tools
from .workspace_manager import (
    MergeConflictError,
    VersionControlUnavailableError,
    Workspace,
    WorkspaceError,
    WorkspaceManager,
)

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"
RELEASED = "released"


@dataclass
class TaskOutcome:
    """What happened to one task attempt."""

    task_id: str
    status: str = FAILED
    reason: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    lines_added: int = 0
    lines_removed: int = 0
    word_delta: int = 0
    gate_report: Optional[GateReport] = None
    commit: Optional[str] = None
    merged: bool = False
    workspace_removed: Optional[bool] = None
    turn_limit_reached: bool = False
    truncated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == COMPLETED

    @property
    def line_delta(self) -> int:
        return self.lines_added - self.lines_removed

    def metadata(self) -> Dict[str, Any]:
        """Outcome fields persisted on the task record."""
        data: Dict[str, Any] = {
            "tokens": self.usage.to_dict(),
            "line_delta": self.line_delta,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
            "word_delta": self.word_delta,
        }
        if self.gate_report is not None:
            data["gates"] = self.gate_report.to_dict()
        if self.commit:
            data["commit"] = self.commit
        if self.turn_limit_reached:
            data["turn_limit_reached"] = True
        if self.truncated:
            data["truncated"] = True
        return data


def count_words(path: Path) -> int:
    if path.is_dir():
        return sum(count_words(child) for child in path.iterdir() if child.name != ".git")
    if not path.is_file():
        return 0
    return len(path.read_text(encoding="utf-8", errors="replace").split())


class TaskExecutor:
    """Runs claimed tasks through dispatch and quality gates."""

    def __init__(
        self,
        claims: ClaimManager,
        provider: AgentProvider,
        gates: QualityGateRunner,
        prompts: PromptProvider,
        repo_path: Path,
        workspaces: Optional[WorkspaceManager] = None,
        max_turns: int = 50,
        overrides: Optional[Dict[str, Any]] = None,
        tool_factory: Callable[..., ToolRegistry] = default_tools,
    ):
        """Initialize the executor.

        Args:
            claims: Claim manager used to finalize tasks.
            provider: Agent provider for dispatches.
            gates: Quality gate runner.
            prompts: Prompt provider for the first turn.
            repo_path: Shared working tree; non-coding work runs here.
            workspaces: Workspace manager. Required for coding tasks.
            max_turns: Turn limit per dispatch.
            overrides: Per-call provider settings.
            tool_factory: Builds the tool registry for a working directory;
                called with the root and a ``cancel`` keyword.
        """
        self.claims = claims
        self.provider = provider
        self.gates = gates
        self.prompts = prompts
        self.repo_path = Path(repo_path)
        self.workspaces = workspaces
        self.max_turns = max_turns
        self.overrides = dict(overrides or {})
        self.tool_factory = tool_factory

    def _dispatch(self, prompt: str, root: Path, outcome: TaskOutcome, cancel: CancelToken) -> None:
        loop = DispatchLoop(
            self.provider,
            tools=self.tool_factory(root, cancel=cancel),
            max_turns=self.max_turns,
            overrides=self.overrides,
            system=self.prompts.system_prompt,
        )
        result = loop.run(prompt, cancel)
        outcome.usage = result.usage
        outcome.turn_limit_reached = result.turn_limit_reached
        outcome.truncated = result.truncated

    def execute(
        self,
        task: Task,
        cancel: Optional[CancelToken] = None,
        operation: Optional[OperationDefinition] = None,
    ) -> TaskOutcome:
        """Run a claimed (in-progress) task and write its final state.

        Args:
            task: The in-progress task.
            cancel: Cancellation and deadline for this attempt.
            operation: The resolved execute definition; its prompt is
                appended to the task prompt.

        Raises:
            VersionControlUnavailableError: git became unusable. The task is
                released on a best-effort basis first.
            StoreUnreachableError: The task store cannot be reached.
        """
        cancel = cancel or CancelToken()
        logger.info(f"Executing task {task.id} ({task.category.value}): {task.name}")
        outcome = TaskOutcome(task_id=task.id)
        try:
            prompt = self.prompts.render_task(task, operation)
            if task.category.code_bearing:
                self._execute_coding(task, prompt, outcome, cancel)
            else:
                self._execute_in_place(task, prompt, outcome, cancel)
        except VersionControlUnavailableError:
            self._release_quietly(task, "version control unavailable")
            raise
        except StoreUnreachableError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while executing task {task.id}")
            self._record_failure(outcome, f"Unexpected error: {type(e).__name__}: {e}")
        return self._finalize(task, outcome)

    def _execute_coding(self, task: Task, prompt: str, outcome: TaskOutcome, cancel: CancelToken) -> None:
        if self.workspaces is None:
            raise WorkspaceError("Coding tasks require a workspace manager")

        try:
            workspace = self.workspaces.create(task)
        except WorkspaceError as e:
            self._record_failure(outcome, f"Workspace creation failed: {e}")
            return

        try:
            self._run_in_workspace(task, prompt, workspace, outcome, cancel)
        except DispatchError as e:
            outcome.usage = e.usage
            self._record_dispatch_error(outcome, e)
        except (DispatchTimeout, OperationCancelled) as e:
            if isinstance(e, DispatchTimeout):
                outcome.usage = e.usage
            self._record_release(outcome, f"Cancelled: {e}")
        except MergeConflictError as e:
            self._record_failure(outcome, f"Merge conflict: {e}")
            outcome.merged = False
        except WorkspaceError as e:
            self._record_failure(outcome, f"Workspace error: {e}")
        finally:
            outcome.workspace_removed = self.workspaces.cleanup(workspace)

    def _run_in_workspace(
        self, task: Task, prompt: str, workspace: Workspace, outcome: TaskOutcome, cancel: CancelToken
    ) -> None:
        self._dispatch(prompt, workspace.path, outcome, cancel)

        report = self.gates.run(workspace.path, cancel)
        outcome.gate_report = report
        if not report.passed:
            failure = report.first_failure
            self._record_failure(outcome, f"Quality gate failed: {failure.name}")
            return

        cancel.raise_if_cancelled()
        outcome.commit = self.workspaces.commit(workspace, f"{task.name}\n\nTask: {task.id}")
        if self.workspaces.has_commits(workspace):
            outcome.lines_added, outcome.lines_removed = self.workspaces.diff_stats(workspace)
            self.workspaces.merge(workspace, cancel)
            outcome.merged = True
        else:
            logger.info(f"Task {task.id} produced no changes")
        outcome.status = COMPLETED

    def _execute_in_place(self, task: Task, prompt: str, outcome: TaskOutcome, cancel: CancelToken) -> None:
        target = self.repo_path / task.output_path if task.output_path else None
        words_before = count_words(target) if target else 0
        try:
            self._dispatch(prompt, self.repo_path, outcome, cancel)
            report = self.gates.run_for(task, self.repo_path, cancel)
        except DispatchError as e:
            outcome.usage = e.usage
            self._record_dispatch_error(outcome, e)
            return
        except (DispatchTimeout, OperationCancelled) as e:
            if isinstance(e, DispatchTimeout):
                outcome.usage = e.usage
            self._record_release(outcome, f"Cancelled: {e}")
            return

        outcome.gate_report = report
        if target:
            outcome.word_delta = count_words(target) - words_before
        if report.passed:
            outcome.status = COMPLETED
        else:
            self._record_failure(outcome, f"Quality gate failed: {report.first_failure.name}")

    def _record_failure(self, outcome: TaskOutcome, reason: str) -> None:
        outcome.status = FAILED
        outcome.reason = reason

    def _record_release(self, outcome: TaskOutcome, reason: str) -> None:
        outcome.status = RELEASED
        outcome.reason = reason

    def _record_dispatch_error(self, outcome: TaskOutcome, error: DispatchError) -> None:
        reason = f"Agent dispatch failed ({error.kind.value}): {error}"
        if error.retryable:
            self._record_release(outcome, reason)
        else:
            self._record_failure(outcome, reason)

    def _finalize(self, task: Task, outcome: TaskOutcome) -> TaskOutcome:
        try:
            if outcome.status == COMPLETED:
                self.claims.complete(task, outcome.metadata())
                logger.info(
                    f"Task {task.id} completed ({outcome.usage.total_tokens} tokens, "
                    f"line delta {outcome.line_delta:+d})"
                )
            elif outcome.status == RELEASED:
                self.claims.release(task, outcome.reason, retryable=True)
            else:
                self.claims.fail(task, outcome.reason, outcome.metadata())
        except StateConflictError as e:
            # Someone else moved the task (e.g. a manual release).
            logger.error(f"Could not finalize task {task.id}: {e}")
            outcome.reason = outcome.reason or str(e)
        except RecordNotFoundError as e:
            logger.error(f"Task {task.id} vanished before it could be finalized: {e}")
            outcome.reason = outcome.reason or str(e)
        return outcome

    def _release_quietly(self, task: Task, reason: str) -> None:
        try:
            self.claims.release(task, reason, retryable=True)
        except TaskStoreError as e:
            logger.error(f"Failed to release task {task.id} after fatal error: {e}")
