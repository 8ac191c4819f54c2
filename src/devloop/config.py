"""Configuration management for devloop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv


# Type alias for provider names
ProviderName = Literal["anthropic", "grok", "ollama", "mock"]

PROVIDER_NAMES = ("anthropic", "grok", "ollama", "mock")


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class ProviderSettings:
    """Settings for the agent provider used by the dispatch loop."""

    name: ProviderName = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 8192
    temperature: float = 0.2
    timeout: int = 120
    base_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> ProviderSettings:
        """Create ProviderSettings from dictionary."""
        name = data.get("name", "anthropic")
        if name not in PROVIDER_NAMES:
            name = "anthropic"
        return cls(
            name=name,
            model=data.get("model", "claude-sonnet-4-20250514"),
            max_tokens=int(data.get("max_tokens", 8192)),
            temperature=float(data.get("temperature", 0.2)),
            timeout=int(data.get("timeout", 120)),
            base_url=data.get("base_url"),
        )


@dataclass
class GateSettings:
    """Verification commands run against a coding task's workspace."""

    test_command: str = "pytest -q"
    lint_command: str = "ruff check ."
    build_command: str = "python -m compileall -q ."
    skip_tests: bool = False
    skip_lint: bool = False
    skip_build: bool = False
    timeout: int = 600

    @classmethod
    def from_dict(cls, data: dict) -> GateSettings:
        """Create GateSettings from dictionary."""
        return cls(
            test_command=data.get("test_command", "pytest -q"),
            lint_command=data.get("lint_command", "ruff check ."),
            build_command=data.get("build_command", "python -m compileall -q ."),
            skip_tests=bool(data.get("skip_tests", False)),
            skip_lint=bool(data.get("skip_lint", False)),
            skip_build=bool(data.get("skip_build", False)),
            timeout=int(data.get("timeout", 600)),
        )


@dataclass
class HealthThresholds:
    """Limits that separate a healthy development path from a degraded one."""

    min_test_pass_rate: float = 0.9
    max_new_lint_violations: int = 0
    max_growth_per_task: float = 200.0
    min_completion_rate: float = 0.8
    window: int = 3  # cycles of history considered

    @classmethod
    def from_dict(cls, data: dict) -> HealthThresholds:
        """Create HealthThresholds from dictionary."""
        return cls(
            min_test_pass_rate=float(data.get("min_test_pass_rate", 0.9)),
            max_new_lint_violations=int(data.get("max_new_lint_violations", 0)),
            max_growth_per_task=float(data.get("max_growth_per_task", 200.0)),
            min_completion_rate=float(data.get("min_completion_rate", 0.8)),
            window=int(data.get("window", 3)),
        )


@dataclass
class LoopConfig:
    """Configuration for the development-loop controller."""

    max_cycles: int = 0  # 0 = unbounded
    guided: bool = True
    stop_on_failure: bool = False
    failure_threshold: float = 0.5
    max_fix_attempts: int = 2
    redesign_interval: int = 0  # cycles; 0 = only on degraded health
    max_turns: int = 50
    task_timeout: int = 1800
    branch_prefix: str = "devloop"
    gates: GateSettings = field(default_factory=GateSettings)
    health: HealthThresholds = field(default_factory=HealthThresholds)
    provider: ProviderSettings = field(default_factory=ProviderSettings)

    @classmethod
    def from_dict(cls, data: dict) -> LoopConfig:
        """Create LoopConfig from dictionary."""
        loop_data = data.get("loop", {}) or {}
        return cls(
            max_cycles=int(loop_data.get("max_cycles", 0)),
            guided=loop_data.get("guided", True),
            stop_on_failure=loop_data.get("stop_on_failure", False),
            failure_threshold=float(loop_data.get("failure_threshold", 0.5)),
            max_fix_attempts=int(loop_data.get("max_fix_attempts", 2)),
            redesign_interval=int(loop_data.get("redesign_interval", 0)),
            max_turns=int(loop_data.get("max_turns", 50)),
            task_timeout=int(loop_data.get("task_timeout", 1800)),
            branch_prefix=loop_data.get("branch_prefix", "devloop"),
            gates=GateSettings.from_dict(data.get("gates", {}) or {}),
            health=HealthThresholds.from_dict(data.get("health", {}) or {}),
            provider=ProviderSettings.from_dict(data.get("provider", {}) or {}),
        )

    @classmethod
    def load_from_file(cls, config_dir: Path) -> LoopConfig:
        """Load loop config from YAML file."""
        loop_config_path = config_dir / "loop_config.yaml"
        if loop_config_path.exists():
            with open(loop_config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            return cls.from_dict(data)
        return cls()  # Return defaults if file doesn't exist


@dataclass
class Config:
    """Configuration settings for a devloop engine instance."""

    # API Keys
    anthropic_api_key: Optional[str] = None
    grok_api_key: Optional[str] = None

    # Paths
    repo_path: Path = field(default_factory=Path.cwd)
    config_dir: Path = field(default_factory=lambda: Path.cwd() / "config")
    state_dir: Path = field(default_factory=lambda: Path.cwd() / ".devloop")

    # Runtime Settings
    owner: Optional[str] = None
    log_level: str = "INFO"
    mock_mode: bool = False

    # Loop Settings (loaded from loop_config.yaml)
    loop: LoopConfig = field(default_factory=LoopConfig)

    @classmethod
    def from_env(cls, repo_path: Optional[Path] = None) -> Config:
        """Load configuration from environment variables.

        Args:
            repo_path: Optional path to the repository. Defaults to CWD.

        Returns:
            Config instance populated from environment.
        """
        load_dotenv()

        repo = Path(repo_path) if repo_path else Path.cwd()
        config_dir = Path(os.getenv("DEVLOOP_CONFIG_DIR", str(repo / "config")))

        loop_config = LoopConfig.load_from_file(config_dir)

        return cls(
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            grok_api_key=os.getenv("GROK_API_KEY"),
            repo_path=repo,
            config_dir=config_dir,
            state_dir=Path(os.getenv("DEVLOOP_STATE_DIR", str(repo / ".devloop"))),
            owner=os.getenv("DEVLOOP_OWNER"),
            log_level=os.getenv("DEVLOOP_LOG_LEVEL", "INFO"),
            mock_mode=_env_flag("DEVLOOP_MOCK_MODE"),
            loop=loop_config,
        )

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = []

        provider = self.loop.provider.name
        if not self.mock_mode:
            if provider == "anthropic" and not self.anthropic_api_key:
                errors.append("ANTHROPIC_API_KEY is required for the anthropic provider")
            if provider == "grok" and not self.grok_api_key:
                errors.append("GROK_API_KEY is required for the grok provider")

        if not self.repo_path.exists():
            errors.append(f"Repository path does not exist: {self.repo_path}")
        elif not (self.repo_path / ".git").exists():
            errors.append(f"Repository path is not a git repository: {self.repo_path}")

        if not 0.0 <= self.loop.failure_threshold <= 1.0:
            errors.append("failure_threshold must be between 0 and 1")

        if self.loop.max_cycles < 0:
            errors.append("max_cycles must be 0 (unbounded) or positive")

        return errors

    @property
    def store_path(self) -> Path:
        """Path to the shared JSON task store."""
        return self.state_dir / "tasks.json"

    @property
    def worktrees_dir(self) -> Path:
        """Directory holding per-task git worktrees."""
        return self.state_dir / "worktrees"

    @property
    def metrics_path(self) -> Path:
        """Path to the append-only cycle metrics log."""
        return self.state_dir / "logs" / "cycles.jsonl"

    @property
    def backlog_file(self) -> Path:
        """Path to backlog.yaml with candidate tasks for acquisition."""
        return self.config_dir / "backlog.yaml"

    @property
    def operations_file(self) -> Path:
        """Path to operations.yaml with versioned operation overrides."""
        return self.config_dir / "operations.yaml"

    @property
    def templates_dir(self) -> Path:
        """Path to prompt template overrides."""
        return self.config_dir / "templates"

    @property
    def loop_config_file(self) -> Path:
        """Path to loop_config.yaml file."""
        return self.config_dir / "loop_config.yaml"
