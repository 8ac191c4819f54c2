"""Development-loop controller.

The controller sequences work in cycles. A cycle acquires work when none is
available, executes the available tasks one at a time, evaluates the shared
tree, runs corrective fix or redesign work when path health calls for it and
ends with a report. State lives on the controller instance; each call to
step() runs the handler for the current LoopState and moves to the next one.

    IDLE -> ACQUIRING -> EXECUTING -> EVALUATING -> REPORTING -> IDLE
                                        |   ^  \\
                                        v   |   -> REDESIGNING -> REPORTING
                                       FIXING

REPORTING moves to STOPPED when the cycle cap is reached, on cancellation,
or when a guided run is not resumed.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .cancellation import CancelToken, OperationCancelled
from .claims import ClaimManager
from .config import Config, LoopConfig
from .executor import FAILED, TaskExecutor, TaskOutcome
from .gates import GateReport, QualityGateRunner
from .health import PathHealth, compute_path_health, recommend_operation
from .metrics import CycleMetrics, MetricsLog
from .operations import OperationDefinition, OperationKind, OperationRegistry
from .prompts import PromptProvider, TemplatePromptProvider
from .proposals import BacklogProposer, TaskProposer
from .providers import AgentProvider, TokenUsage, create_provider
from .task_store import (
    JsonTaskStore,
    RecordNotFoundError,
    StoreUnreachableError,
    Task,
    TaskState,
    TaskStore,
    TaskStoreError,
)
from .workspace_manager import VersionControlUnavailableError, WorkspaceManager

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    EXECUTING = "executing"
    EVALUATING = "evaluating"
    FIXING = "fixing"
    REDESIGNING = "redesigning"
    REPORTING = "reporting"
    STOPPED = "stopped"


@dataclass
class CycleReport:
    """What happened in one cycle, for the human in guided mode."""

    cycle: int
    metrics: CycleMetrics
    health: PathHealth
    gate_report: Optional[GateReport] = None
    findings: List[str] = field(default_factory=list)
    pending_decisions: List[str] = field(default_factory=list)

    def to_markdown(self) -> str:
        m = self.metrics
        lines = [
            f"# Cycle {self.cycle} Report",
            "",
            f"**Tasks:** {m.tasks_completed} completed, {m.tasks_failed} failed, {m.tasks_released} released",
            f"**Tokens:** {m.tokens.total_tokens} ({m.tokens.invocations} invocations)",
            f"**Lines:** +{m.lines_added} / -{m.lines_removed}",
            f"**Documentation words:** {m.word_delta:+d}",
            f"**Wall time:** {m.wall_time:.1f}s",
            f"**Operations:** {', '.join(m.operations) or 'none'}",
            f"**Health:** {'healthy' if self.health.healthy else 'degraded'}",
        ]
        for violation in self.health.violations:
            lines.append(f"- {violation}")
        if self.gate_report is not None:
            lines.extend(["", "## Gates", "", self.gate_report.to_markdown()])
        if self.findings:
            lines.extend(["", "## Findings", ""])
            lines.extend(f"- {finding}" for finding in self.findings)
        if self.pending_decisions:
            lines.extend(["", "## Pending Decisions", ""])
            lines.extend(f"- {decision}" for decision in self.pending_decisions)
        return "\n".join(lines)


@dataclass
class RunSummary:
    """Result of a controller run."""

    success: bool
    cycles_completed: int
    stop_reason: str = ""
    tasks_completed: int = 0
    tasks_failed: int = 0
    tokens: TokenUsage = field(default_factory=TokenUsage)
    reports: List[CycleReport] = field(default_factory=list)
    error: Optional[str] = None


ResumeFn = Callable[[CycleReport], bool]


class DevLoopController:
    """Runs the development loop for one engine instance."""

    def __init__(
        self,
        config: LoopConfig,
        store: TaskStore,
        claims: ClaimManager,
        executor: TaskExecutor,
        gates: QualityGateRunner,
        registry: OperationRegistry,
        proposer: TaskProposer,
        metrics_log: MetricsLog,
        prompts: PromptProvider,
        repo_path: Path,
        resume_fn: Optional[ResumeFn] = None,
        cancel: Optional[CancelToken] = None,
        lint_baseline: Optional[int] = None,
    ):
        """Initialize the controller.

        Args:
            config: Loop settings.
            store: Shared task store.
            claims: Claim manager for this engine.
            executor: Runs claimed tasks.
            gates: Gate runner used to evaluate the shared tree.
            registry: Operation definitions.
            proposer: Produces new tasks during acquisition.
            metrics_log: Where finalized cycle metrics go.
            prompts: Renders corrective operation prompts.
            repo_path: The shared working tree.
            resume_fn: Called with each cycle report in guided mode; blocks
                until the human answers. False stops the run.
            cancel: Cancellation for the whole run.
            lint_baseline: Lint violations already present when the run
                started; only violations above it count as new.
        """
        self.config = config
        self.store = store
        self.claims = claims
        self.executor = executor
        self.gates = gates
        self.registry = registry
        self.proposer = proposer
        self.metrics_log = metrics_log
        self.prompts = prompts
        self.repo_path = Path(repo_path)
        self.resume_fn = resume_fn
        self.cancel = cancel or CancelToken()
        self.lint_baseline = lint_baseline

        self.state = LoopState.IDLE
        self.cycles_completed = 0
        self.reports: List[CycleReport] = []
        self.stop_reason = ""
        self.error: Optional[str] = None

        self._metrics: Optional[CycleMetrics] = None
        self._batch: Optional[List[str]] = None
        self._batch_size = 0
        self._batch_failures = 0
        self._execute_definition: Optional[OperationDefinition] = None
        self._attempted: set[str] = set()
        self._fix_attempts = 0
        self._redesigned = False
        self._acquired_nothing = False
        self._force_acquire = False
        self._last_gate_report: Optional[GateReport] = None
        self._health: Optional[PathHealth] = None
        self._findings: List[str] = []

        self._handlers: Dict[LoopState, Callable[[], LoopState]] = {
            LoopState.IDLE: self._idle,
            LoopState.ACQUIRING: self._acquiring,
            LoopState.EXECUTING: self._executing,
            LoopState.EVALUATING: self._evaluating,
            LoopState.FIXING: self._fixing,
            LoopState.REDESIGNING: self._redesigning,
            LoopState.REPORTING: self._reporting,
        }

    @property
    def metrics(self) -> CycleMetrics:
        if self._metrics is None:
            self._start_cycle()
        return self._metrics

    def _start_cycle(self) -> None:
        self._metrics = CycleMetrics(cycle=self.cycles_completed + 1)
        self._batch = None
        self._attempted = set()
        self._fix_attempts = 0
        self._redesigned = False
        self._acquired_nothing = False
        self._last_gate_report = None
        self._health = None
        self._findings = []
        logger.info(f"Starting cycle {self._metrics.cycle}")

    # -- driving -----------------------------------------------------------

    def step(self) -> LoopState:
        """Run the handler for the current state and move to the next one."""
        if self.state is LoopState.STOPPED:
            return self.state
        previous = self.state
        self.state = self._handlers[previous]()
        if self.state is not previous:
            logger.debug(f"Loop state {previous.value} -> {self.state.value}")
        return self.state

    def run(self) -> RunSummary:
        """Run until the loop stops.

        Fatal infrastructure errors stop the run; they are reported in the
        summary rather than raised.
        """
        try:
            while self.state is not LoopState.STOPPED:
                self.step()
        except (StoreUnreachableError, VersionControlUnavailableError) as e:
            logger.error(f"Fatal error, stopping the loop: {e}")
            self.error = str(e)
            self.stop_reason = "fatal error"
            self.state = LoopState.STOPPED
        return self.summary()

    def summary(self) -> RunSummary:
        tokens = TokenUsage()
        completed = failed = 0
        for report in self.reports:
            tokens.add(report.metrics.tokens)
            completed += report.metrics.tasks_completed
            failed += report.metrics.tasks_failed
        return RunSummary(
            success=self.error is None,
            cycles_completed=self.cycles_completed,
            stop_reason=self.stop_reason,
            tasks_completed=completed,
            tasks_failed=failed,
            tokens=tokens,
            reports=list(self.reports),
            error=self.error,
        )

    # -- state handlers ----------------------------------------------------

    def _idle(self) -> LoopState:
        if self.cancel.cancelled:
            self.stop_reason = "cancelled"
            return LoopState.STOPPED
        if self._metrics is None:
            self._start_cycle()

        if self._force_acquire:
            self._force_acquire = False
            return LoopState.ACQUIRING
        if not self.claims.pick(exclude=self._attempted):
            return LoopState.ACQUIRING
        return LoopState.EXECUTING

    def _acquiring(self) -> LoopState:
        self.metrics.record_operation(OperationKind.ACQUIRE.value)
        definition = self.registry.resolve(OperationKind.ACQUIRE)
        added = 0
        for task in self.proposer.propose(self.store, definition):
            task.state = TaskState.AVAILABLE
            try:
                self.store.add(task)
                added += 1
            except StoreUnreachableError:
                raise
            except TaskStoreError as e:
                logger.warning(f"Skipping proposed task {task.id}: {e}")
        logger.info(f"Acquired {added} new task(s)")

        if self.claims.pick(exclude=self._attempted):
            return LoopState.EXECUTING
        self._acquired_nothing = added == 0
        return LoopState.EVALUATING

    def _executing(self) -> LoopState:
        if self._batch is None:
            self._batch = [t.id for t in self.claims.pick(exclude=self._attempted)]
            self._batch_size = len(self._batch)
            self._batch_failures = 0
            self._execute_definition = self.registry.resolve(OperationKind.EXECUTE)
            self.metrics.record_operation(OperationKind.EXECUTE.value)
            logger.info(f"Executing batch of {self._batch_size} task(s)")

        if self.cancel.cancelled:
            self.stop_reason = "cancelled"
            self._batch = None
            return LoopState.REPORTING
        if not self._batch:
            self._batch = None
            return LoopState.EVALUATING

        task_id = self._batch.pop(0)
        outcome = self._claim_and_execute(task_id)
        if outcome is None or outcome.status != FAILED:
            return LoopState.EXECUTING

        self._batch_failures += 1
        if self.config.stop_on_failure:
            logger.warning(f"Task {task_id} failed and stop_on_failure is set")
            self.stop_reason = "stop on failure"
            self._batch = None
            return LoopState.REPORTING

        ratio = self._batch_failures / self._batch_size
        if ratio > self.config.failure_threshold:
            logger.warning(
                f"{self._batch_failures}/{self._batch_size} tasks failed, "
                f"evaluating before the remaining {len(self._batch)}"
            )
            self._findings.append(
                f"Batch failure ratio {ratio:.0%} exceeded {self.config.failure_threshold:.0%}"
            )
            self._batch = None
            return LoopState.EVALUATING
        return LoopState.EXECUTING

    def _claim_and_execute(self, task_id: str) -> Optional[TaskOutcome]:
        try:
            task = self.store.get(task_id)
        except RecordNotFoundError:
            logger.warning(f"Task {task_id} disappeared from the store")
            return None
        if task.state is not TaskState.AVAILABLE:
            logger.info(f"Task {task_id} is no longer available ({task.state.value})")
            return None

        claimed = self.claims.claim(task)
        if claimed is None:
            return None
        return self._run_task(claimed, self._execute_definition)

    def _run_task(self, task: Task, operation: Optional[OperationDefinition] = None) -> TaskOutcome:
        self._attempted.add(task.id)
        timeout = self.config.task_timeout or None
        outcome = self.executor.execute(task, self.cancel.child(timeout=timeout), operation=operation)
        self.metrics.record_task(outcome)
        return outcome

    def _evaluating(self) -> LoopState:
        self.metrics.record_operation(OperationKind.EVALUATE.value)
        definition = self.registry.resolve(OperationKind.EVALUATE)
        try:
            report = self.gates.run(self.repo_path, self.cancel, only=definition.gates or None)
        except OperationCancelled:
            self.stop_reason = "cancelled"
            return LoopState.REPORTING
        self._last_gate_report = report

        health = self._assess(include_current=True)
        self.metrics.test_pass_rate = health.test_pass_rate
        self.metrics.lint_violations = health.new_lint_violations

        if health.completion_low:
            finding = f"Low task completion rate ({health.completion_rate:.0%})"
            if finding not in self._findings:
                self._findings.append(finding)

        recommended = recommend_operation(health)
        if recommended is OperationKind.FIX:
            if self._fix_attempts < self.config.max_fix_attempts:
                return LoopState.FIXING
            self._findings.append(
                f"Quality gates still failing after {self._fix_attempts} fix attempt(s)"
            )
            return LoopState.REPORTING
        if not self._redesigned and (
            recommended is OperationKind.REDESIGN or self._redesign_due()
        ):
            return LoopState.REDESIGNING
        return LoopState.REPORTING

    def _redesign_due(self) -> bool:
        interval = self.config.redesign_interval
        return interval > 0 and (self.cycles_completed + 1) % interval == 0

    def _assess(self, include_current: bool) -> PathHealth:
        history = self.metrics_log.history(limit=self.config.health.window)
        if include_current:
            history.append(self.metrics)
        self._health = compute_path_health(
            history, self._last_gate_report, self.config.health, self.lint_baseline
        )
        return self._health

    def _fixing(self) -> LoopState:
        self._fix_attempts += 1
        self.metrics.record_operation(OperationKind.FIX.value)
        report = self._last_gate_report
        failure = report.first_failure if report else None
        context = {
            "cycle": self.metrics.cycle,
            "attempt": self._fix_attempts,
            "failing_gate": failure.name if failure else "unknown",
            "diagnostic": report.diagnostic[-8000:] if report else "",
            "findings": list(self._health.violations) if self._health else [],
        }
        self._run_corrective(self.registry.resolve(OperationKind.FIX), context)
        return LoopState.EVALUATING

    def _redesigning(self) -> LoopState:
        self._redesigned = True
        self.metrics.record_operation(OperationKind.REDESIGN.value)
        context = {
            "cycle": self.metrics.cycle,
            "findings": list(self._health.violations) if self._health else [],
        }
        self._run_corrective(self.registry.resolve(OperationKind.REDESIGN), context)
        self._force_acquire = True
        return LoopState.REPORTING

    def _run_corrective(self, definition: OperationDefinition, context: Dict[str, Any]) -> None:
        name = self.prompts.render_task_name(definition, context)
        task = Task(
            id=f"{definition.kind.value}-c{self.metrics.cycle}-{uuid.uuid4().hex[:6]}",
            name=name,
            category=definition.category,
            state=TaskState.AVAILABLE,
            properties={
                "priority": definition.priority,
                "description": definition.description,
                "prompt": self.prompts.render_operation(definition, context),
            },
            metadata={"operation": definition.kind.value, "operation_version": definition.version},
        )
        self.store.add(task)
        claimed = self.claims.claim(task)
        if claimed is None:
            logger.warning(f"Corrective task {task.id} was claimed by another engine")
            return
        logger.info(f"Running {definition.kind.value} operation as task {task.id}")
        self._run_task(claimed)

    def _reporting(self) -> LoopState:
        metrics = self.metrics
        metrics.finalize()
        self.metrics_log.append(metrics)

        health = self._assess(include_current=False)
        report = CycleReport(
            cycle=metrics.cycle,
            metrics=metrics,
            health=health,
            gate_report=self._last_gate_report,
            findings=list(self._findings),
            pending_decisions=self._pending_decisions(),
        )
        self.reports.append(report)
        self.cycles_completed += 1
        self._metrics = None
        logger.info(
            f"Cycle {report.cycle} finished: {metrics.tasks_completed} completed, "
            f"{metrics.tasks_failed} failed, {metrics.tokens.total_tokens} tokens"
        )

        if self.stop_reason:
            return LoopState.STOPPED
        if self.cancel.cancelled:
            self.stop_reason = "cancelled"
            return LoopState.STOPPED
        if self.config.max_cycles and self.cycles_completed >= self.config.max_cycles:
            self.stop_reason = "max cycles reached"
            return LoopState.STOPPED
        if self._acquired_nothing and metrics.tasks_attempted == 0 and metrics.tasks_released == 0:
            self.stop_reason = "no work available"
            return LoopState.STOPPED
        if self.config.guided:
            if self.resume_fn is None or not self.resume_fn(report):
                self.stop_reason = "not resumed"
                return LoopState.STOPPED
        return LoopState.IDLE

    def _pending_decisions(self) -> List[str]:
        decisions = []
        for kind in OperationKind:
            for definition in self.registry.versions(kind):
                if not definition.approved:
                    decisions.append(
                        f"Approve {kind.value} operation v{definition.version}: {definition.description}"
                    )
        stuck = [
            t.id for t in self.store.fetch()
            if t.state is TaskState.IN_PROGRESS and t.metadata.get("claimed_by") == self.claims.owner
        ]
        if stuck:
            decisions.append(f"Tasks still claimed by this engine: {', '.join(stuck)}")
        return decisions


def create_controller(
    config: Config,
    provider: Optional[AgentProvider] = None,
    resume_fn: Optional[ResumeFn] = None,
    cancel: Optional[CancelToken] = None,
    store: Optional[TaskStore] = None,
    proposer: Optional[TaskProposer] = None,
) -> DevLoopController:
    """Wire a controller from configuration.

    Raises:
        VersionControlUnavailableError: repo_path is not a usable git repository.
    """
    loop = config.loop
    store = store or JsonTaskStore(config.store_path)
    claims = ClaimManager(store, owner=config.owner)
    workspaces = WorkspaceManager(
        config.repo_path,
        worktrees_dir=config.worktrees_dir,
        branch_prefix=loop.branch_prefix,
    )
    gates = QualityGateRunner(loop.gates)
    prompts = TemplatePromptProvider(config.templates_dir)
    executor = TaskExecutor(
        claims=claims,
        provider=provider or create_provider(config),
        gates=gates,
        prompts=prompts,
        repo_path=config.repo_path,
        workspaces=workspaces,
        max_turns=loop.max_turns,
        overrides={"timeout": loop.provider.timeout},
    )
    registry = OperationRegistry(config.operations_file)
    registry.load()
    return DevLoopController(
        config=loop,
        store=store,
        claims=claims,
        executor=executor,
        gates=gates,
        registry=registry,
        proposer=proposer or BacklogProposer(config.backlog_file),
        metrics_log=MetricsLog(config.metrics_path),
        prompts=prompts,
        repo_path=config.repo_path,
        resume_fn=resume_fn,
        cancel=cancel,
    )
