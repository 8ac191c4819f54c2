"""Shared test fixtures for devloop tests."""

from __future__ import annotations

import shutil
from pathlib import Path

import git
import pytest

from devloop.claims import ClaimManager
from devloop.config import GateSettings
from devloop.gates import QualityGateRunner
from devloop.prompts import TemplatePromptProvider
from devloop.providers import MockProvider
from devloop.task_store import InMemoryTaskStore, Task, TaskState, WorkCategory
from devloop.workspace_manager import WorkspaceManager


@pytest.fixture
def git_repo(tmp_path: Path) -> git.Repo:
    """Create a temporary git repository with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git executable not available")
    repo_dir = tmp_path / "repo"
    repo_dir.mkdir()
    repo = git.Repo.init(repo_dir)

    # Configure git user for commits
    repo.config_writer().set_value("user", "name", "Test User").release()
    repo.config_writer().set_value("user", "email", "test@example.com").release()

    (repo_dir / "app.py").write_text("def answer():\n    return 42\n")
    repo.index.add(["app.py"])
    repo.index.commit("Initial commit")
    return repo


@pytest.fixture
def repo_path(git_repo: git.Repo) -> Path:
    return Path(git_repo.working_tree_dir)


@pytest.fixture
def workspaces(repo_path: Path, tmp_path: Path) -> WorkspaceManager:
    return WorkspaceManager(repo_path, worktrees_dir=tmp_path / "worktrees", branch_prefix="test")


@pytest.fixture
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture
def claims(store: InMemoryTaskStore) -> ClaimManager:
    return ClaimManager(store, owner="test-engine")


@pytest.fixture
def passing_gates() -> QualityGateRunner:
    """Gates whose commands always succeed."""
    return QualityGateRunner(
        GateSettings(test_command="exit 0", lint_command="exit 0", build_command="exit 0")
    )


@pytest.fixture
def skipped_gates() -> QualityGateRunner:
    return QualityGateRunner(GateSettings(skip_tests=True, skip_lint=True, skip_build=True))


@pytest.fixture
def prompts() -> TemplatePromptProvider:
    return TemplatePromptProvider()


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def make_task():
    """Factory for tasks with a fixed created_at so ordering is deterministic."""

    def _make(
        task_id: str,
        name: str = "",
        category: WorkCategory = WorkCategory.CODING,
        state: TaskState = TaskState.AVAILABLE,
        created_at: str = "2026-01-01T00:00:00",
        **properties,
    ) -> Task:
        return Task(
            id=task_id,
            name=name or f"Task {task_id}",
            category=category,
            state=state,
            properties=properties,
            created_at=created_at,
        )

    return _make
