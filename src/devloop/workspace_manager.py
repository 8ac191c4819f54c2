"""Isolated per-task workspaces built on git branches and worktrees.

Each code-bearing task gets its own branch and worktree, namespaced by task
id, so concurrent engines never collide. Successful work is merged into the
shared working tree; every path out of a workspace, successful or not,
removes the worktree and the branch.
"""

from __future__ import annotations

import hashlib
import logging
import re
import shutil
import unicodedata
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import git
from git.exc import GitCommandNotFound, InvalidGitRepositoryError, NoSuchPathError

from .cancellation import CancelToken
from .task_store import Task

logger = logging.getLogger(__name__)


class WorkspaceError(Exception):
    """Raised when a workspace operation fails. Fatal to the task attempt."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class MergeConflictError(WorkspaceError):
    """Raised when a task branch cannot be merged cleanly."""

    pass


class VersionControlUnavailableError(Exception):
    """Raised when git is missing or the repository is unusable. Fatal to the run."""

    pass


@dataclass
class GitResult:
    """Result of a single git invocation."""

    success: bool
    command: str
    exit_code: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        """Combined stdout and stderr output."""
        parts = []
        if self.stdout:
            parts.append(self.stdout)
        if self.stderr:
            parts.append(f"STDERR:\n{self.stderr}")
        return "\n".join(parts)


@dataclass
class Workspace:
    """An isolated branch + worktree owned by one task."""

    task_id: str
    branch: str
    path: Path
    base_commit: str


def slugify(text: str, max_len: int = 60) -> str:
    """Convert a task id into a branch- and path-safe slug.

    Examples:
        "Task 12" -> "task-12"
        "fix/ci#3" -> "fix-ci-3"
    """
    normalized = unicodedata.normalize("NFKD", text)
    ascii_text = normalized.encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9._]+", "-", ascii_text.lower()).strip("-.")
    if len(slug) > max_len:
        slug = slug[:max_len].rstrip("-.")
    return slug or "task"


class WorkspaceManager:
    """Creates, merges and removes per-task git workspaces."""

    def __init__(
        self,
        repo_path: Path,
        worktrees_dir: Optional[Path] = None,
        branch_prefix: str = "devloop",
        author_name: str = "devloop",
        author_email: str = "devloop@localhost",
        timeout: int = 120,
    ):
        """Initialize workspace manager.

        Args:
            repo_path: Path to the shared working tree.
            worktrees_dir: Directory for task worktrees. Defaults to
                <repo>/.devloop/worktrees.
            branch_prefix: Prefix for task branch names.
            author_name: Commit author used when the repository has no identity.
            author_email: Commit email used when the repository has no identity.
            timeout: Default timeout in seconds for a git invocation.

        Raises:
            VersionControlUnavailableError: git is not installed or repo_path
                is not a git repository.
        """
        self.repo_path = Path(repo_path)
        self.worktrees_dir = Path(worktrees_dir or self.repo_path / ".devloop" / "worktrees")
        self.branch_prefix = branch_prefix.rstrip("/")
        self.timeout = timeout

        try:
            self.repo = git.Repo(self.repo_path)
        except (InvalidGitRepositoryError, NoSuchPathError) as exc:
            raise VersionControlUnavailableError(
                f"Not a git repository: {self.repo_path}"
            ) from exc

        self._identity_args: list[str] = []
        if not self._git("config", "user.email").stdout.strip():
            self._identity_args = [
                "-c", f"user.name={author_name}",
                "-c", f"user.email={author_email}",
            ]
        self._exclude_worktrees_dir()

    def _git(
        self,
        *args: str,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> GitResult:
        """Run a git command and capture its outcome."""
        command = ["git", *args]
        runner = git.Git(str(cwd or self.repo_path))
        try:
            status, stdout, stderr = runner.execute(
                command,
                with_extended_output=True,
                with_exceptions=False,
                kill_after_timeout=timeout if timeout is not None else self.timeout,
            )
        except GitCommandNotFound as exc:
            raise VersionControlUnavailableError(f"git executable not available: {exc}") from exc

        result = GitResult(
            success=status == 0,
            command=" ".join(command),
            exit_code=status,
            stdout=stdout,
            stderr=stderr,
        )
        if not result.success:
            logger.debug(f"{result.command} failed ({status}): {stderr}")
        return result

    def _exclude_worktrees_dir(self) -> None:
        """Keep in-repo worktrees out of the shared tree's status."""
        try:
            relative = self.worktrees_dir.resolve().relative_to(self.repo_path.resolve())
        except ValueError:
            return
        result = self._git("rev-parse", "--git-path", "info/exclude")
        if not result.success:
            return
        exclude_file = Path(result.stdout.strip())
        if not exclude_file.is_absolute():
            exclude_file = self.repo_path / exclude_file
        pattern = f"/{relative.parts[0]}/"
        existing = exclude_file.read_text(encoding="utf-8") if exclude_file.exists() else ""
        if pattern not in existing.splitlines():
            exclude_file.parent.mkdir(parents=True, exist_ok=True)
            with open(exclude_file, "a", encoding="utf-8") as f:
                if existing and not existing.endswith("\n"):
                    f.write("\n")
                f.write(pattern + "\n")

    def workspace_name(self, task_id: str) -> str:
        """Readable slug plus a digest of the raw id; distinct ids never share a name."""
        digest = hashlib.sha1(task_id.encode("utf-8")).hexdigest()[:8]
        return f"{slugify(task_id, max_len=48)}-{digest}"

    def branch_name(self, task_id: str) -> str:
        return f"{self.branch_prefix}/{self.workspace_name(task_id)}"

    def worktree_path(self, task_id: str) -> Path:
        return self.worktrees_dir / self.workspace_name(task_id)

    def branch_exists(self, branch: str) -> bool:
        return self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}").success

    def head_commit(self) -> str:
        result = self._git("rev-parse", "HEAD")
        if not result.success:
            raise WorkspaceError("Cannot resolve HEAD of the shared tree", result.output)
        return result.stdout.strip()

    def create(self, task: Task) -> Workspace:
        """Create a branch from HEAD and an isolated worktree for a task.

        Leftovers from an earlier attempt at the same task are removed first.

        Raises:
            WorkspaceError: If the branch or worktree cannot be created.
        """
        workspace = Workspace(
            task_id=task.id,
            branch=self.branch_name(task.id),
            path=self.worktree_path(task.id),
            base_commit=self.head_commit(),
        )

        if workspace.path.exists() or self.branch_exists(workspace.branch):
            logger.warning(f"Removing stale workspace for task {task.id}")
            self.cleanup(workspace)

        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Creating workspace {workspace.branch} at {workspace.path}")
        result = self._git(
            "worktree", "add", "-b", workspace.branch,
            str(workspace.path), workspace.base_commit,
        )
        if not result.success:
            self.cleanup(workspace)
            raise WorkspaceError(
                f"Failed to create workspace for task {task.id}", result.output
            )
        return workspace

    def commit(self, workspace: Workspace, message: str) -> Optional[str]:
        """Stage and commit everything in the worktree.

        Returns:
            The new commit hash, or None if there was nothing to commit.
        """
        add = self._git("add", "-A", cwd=workspace.path)
        if not add.success:
            raise WorkspaceError(f"git add failed in {workspace.path}", add.output)

        status = self._git("status", "--porcelain", cwd=workspace.path)
        if not status.stdout.strip():
            logger.info(f"No changes to commit for task {workspace.task_id}")
            return None

        result = self._git(*self._identity_args, "commit", "-m", message, cwd=workspace.path)
        if not result.success:
            raise WorkspaceError(f"git commit failed for task {workspace.task_id}", result.output)

        commit_hash = self._git("rev-parse", "HEAD", cwd=workspace.path).stdout.strip()
        logger.info(f"Created commit {commit_hash[:8]} on {workspace.branch}")
        return commit_hash

    def diff_stats(self, workspace: Workspace) -> tuple[int, int]:
        """Count lines added and removed on the task branch since its base."""
        result = self._git("diff", "--numstat", workspace.base_commit, workspace.branch)
        if not result.success:
            raise WorkspaceError(f"git diff failed for {workspace.branch}", result.output)

        added = removed = 0
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) < 3 or parts[0] == "-":
                continue  # binary
            added += int(parts[0])
            removed += int(parts[1])
        return added, removed

    def has_commits(self, workspace: Workspace) -> bool:
        result = self._git("rev-list", "--count", f"{workspace.base_commit}..{workspace.branch}")
        return result.success and result.stdout.strip() not in ("", "0")

    def merge(self, workspace: Workspace, cancel: Optional[CancelToken] = None) -> GitResult:
        """Merge the task branch into the shared working tree.

        On conflict the merge is aborted so the shared tree is left exactly
        as it was.

        Raises:
            MergeConflictError: The branch does not merge cleanly.
        """
        timeout = cancel.timeout_for(self.timeout) if cancel else None
        logger.info(f"Merging {workspace.branch} into shared tree")
        result = self._git(
            *self._identity_args,
            "merge", "--no-ff", "--no-edit",
            "-m", f"Merge task {workspace.task_id} ({workspace.branch})",
            workspace.branch,
            timeout=timeout,
        )
        if not result.success:
            abort = self._git("merge", "--abort")
            if not abort.success:
                logger.warning(f"git merge --abort failed: {abort.output}")
            raise MergeConflictError(
                f"Merge of {workspace.branch} failed", result.output
            )
        return result

    def cleanup(self, workspace: Workspace) -> bool:
        """Remove the worktree and branch. Never raises.

        Returns:
            True if neither the worktree nor the branch remains.
        """
        try:
            if workspace.path.exists():
                result = self._git("worktree", "remove", "--force", str(workspace.path))
                if not result.success:
                    logger.warning(
                        f"git worktree remove failed for {workspace.path}: {result.stderr}"
                    )
                    shutil.rmtree(workspace.path, ignore_errors=True)
            self._git("worktree", "prune")

            if self.branch_exists(workspace.branch):
                result = self._git("branch", "-D", workspace.branch)
                if not result.success:
                    logger.warning(f"Failed to delete branch {workspace.branch}: {result.stderr}")

            clean = not workspace.path.exists() and not self.branch_exists(workspace.branch)
        except (VersionControlUnavailableError, OSError) as e:
            logger.error(f"Workspace cleanup failed for task {workspace.task_id}: {e}")
            return False

        if clean:
            logger.debug(f"Removed workspace for task {workspace.task_id}")
        else:
            logger.error(f"Workspace for task {workspace.task_id} was not fully removed")
        return clean

    @contextmanager
    def workspace(self, task: Task) -> Iterator[Workspace]:
        """Create a workspace and always clean it up when the block exits."""
        workspace = self.create(task)
        try:
            yield workspace
        finally:
            self.cleanup(workspace)

    def get_git_status(self) -> str:
        """Get porcelain status of the shared tree."""
        return self._git("status", "--porcelain").stdout
