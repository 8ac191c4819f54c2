"""CLI entrypoint for devloop.

The CLI operates on a target repository (``--repo``). Task state, worktrees
and cycle logs live under the repository's ``.devloop/`` directory unless
DEVLOOP_STATE_DIR says otherwise; loop settings, the backlog and operation
overrides live in the config directory (``<repo>/config`` by default).
"""

from __future__ import annotations

import logging
import signal
from dataclasses import replace
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.table import Table

from . import __version__
from .cancellation import CancelToken
from .claims import ClaimManager
from .config import Config, LoopConfig
from .controller import CycleReport, RunSummary, create_controller
from .gates import GATE_ORDER
from .lifecycle import IllegalTransitionError
from .operations import OperationKind, OperationRegistry, OperationRegistryError, parse_gate_names
from .task_store import (
    JsonTaskStore,
    RecordNotFoundError,
    Task,
    TaskFilter,
    TaskState,
    TaskStoreError,
    WorkCategory,
)
from .workspace_manager import VersionControlUnavailableError, slugify

# Initialize Typer app
app = typer.Typer(
    name="devloop",
    help="Autonomous development loop: claim tasks, run agents in isolated worktrees, gate and merge.",
    add_completion=False,
)

console = Console()


def setup_logging(verbose: bool = False, level: str = "INFO") -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, set DEBUG level; otherwise use ``level``.
        level: Log level name from configuration.
    """
    log_level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"devloop version {__version__}")
        raise typer.Exit()


def load_config(repo: Path, config_dir: Optional[Path] = None, mock: bool = False) -> Config:
    """Build configuration for a target repository."""
    config = Config.from_env(repo.resolve())
    if config_dir:
        config.config_dir = config_dir.resolve()
        config.loop = LoopConfig.load_from_file(config.config_dir)
    if mock:
        config.mock_mode = True
    return config


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Autonomous development loop."""
    pass


def _confirm_resume(report: CycleReport) -> bool:
    console.print(Markdown(report.to_markdown()))
    return typer.confirm("Continue with the next cycle?", default=True)


def _display_summary(summary: RunSummary) -> None:
    table = Table(title="Run Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Cycles", str(summary.cycles_completed))
    table.add_row("Stop reason", summary.stop_reason or "-")
    table.add_row("Tasks completed", str(summary.tasks_completed))
    table.add_row("Tasks failed", str(summary.tasks_failed))
    table.add_row("Tokens", f"{summary.tokens.total_tokens} ({summary.tokens.invocations} invocations)")
    console.print(table)
    if summary.error:
        console.print(f"[red]Error:[/red] {summary.error}")


@app.command()
def run(
    repo: Path = typer.Option(
        Path.cwd(),
        "--repo",
        "-r",
        help="Path to the target repository.",
    ),
    config_dir: Optional[Path] = typer.Option(
        None,
        "--config-dir",
        "-c",
        help="Directory with loop_config.yaml, backlog.yaml and operations.yaml.",
    ),
    mock: bool = typer.Option(
        False,
        "--mock",
        "-m",
        help="Run with the mock agent provider (no API calls).",
    ),
    max_cycles: Optional[int] = typer.Option(
        None,
        "--max-cycles",
        "-n",
        help="Stop after this many cycles (0 = unbounded, default from config).",
    ),
    guided: bool = typer.Option(
        None,
        "--guided/--unattended",
        help="Pause for confirmation after every cycle (default from config).",
    ),
    stop_on_failure: bool = typer.Option(
        None,
        "--stop-on-failure/--continue-on-failure",
        help="Stop the run at the first failed task (default from config).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Run the development loop on a target repository."""
    config = load_config(repo, config_dir, mock)
    setup_logging(verbose, config.log_level)

    if max_cycles is not None:
        config.loop.max_cycles = max_cycles
    if guided is not None:
        config.loop.guided = guided
    if stop_on_failure is not None:
        config.loop.stop_on_failure = stop_on_failure

    errors = config.validate()
    if errors:
        for error in errors:
            console.print(f"[red]Error:[/red] {error}")
        raise typer.Exit(1)

    cancel = CancelToken()

    def _interrupt(signum, frame):
        console.print("[yellow]Interrupt received, finishing the current step...[/yellow]")
        cancel.cancel()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    previous_handler = signal.signal(signal.SIGINT, _interrupt)
    try:
        controller = create_controller(config, resume_fn=_confirm_resume, cancel=cancel)
        summary = controller.run()
    except (VersionControlUnavailableError, OperationRegistryError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    _display_summary(summary)
    if not summary.success:
        raise typer.Exit(1)


@app.command("tasks")
def list_tasks(
    repo: Path = typer.Option(Path.cwd(), "--repo", "-r", help="Path to the target repository."),
    state: Optional[str] = typer.Option(None, "--state", "-s", help="Only show tasks in this state."),
    category: Optional[str] = typer.Option(None, "--category", help="Only show this work category."),
) -> None:
    """List tasks in the store, highest priority first."""
    config = load_config(repo)
    try:
        task_filter = TaskFilter(
            state=TaskState(state) if state else None,
            category=WorkCategory(category) if category else None,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    tasks = JsonTaskStore(config.store_path).fetch(task_filter)
    if not tasks:
        console.print("[yellow]No tasks found.[/yellow]")
        return

    table = Table(title="Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Category", style="dim")
    table.add_column("State")
    table.add_column("Priority", justify="right")
    table.add_column("Claimed by", style="dim")
    for task in tasks:
        table.add_row(
            task.id,
            task.name,
            task.category.value,
            task.state.value,
            str(task.priority),
            task.metadata.get("claimed_by", "") if task.state is TaskState.IN_PROGRESS else "",
        )
    console.print(table)


@app.command("add-task")
def add_task(
    name: str = typer.Argument(..., help="Short task name."),
    repo: Path = typer.Option(Path.cwd(), "--repo", "-r", help="Path to the target repository."),
    task_id: Optional[str] = typer.Option(None, "--id", help="Task id (default: slug of the name)."),
    category: str = typer.Option("coding", "--category", help="documentation, coding, operations or planning."),
    priority: str = typer.Option("medium", "--priority", "-p", help="critical, high, medium, low or a number."),
    description: str = typer.Option("", "--description", "-d", help="What the agent should do."),
    output_path: Optional[str] = typer.Option(None, "--output-path", "-o", help="File a non-coding task must produce."),
) -> None:
    """Add an available task to the store."""
    config = load_config(repo)
    try:
        work_category = WorkCategory(category)
    except ValueError:
        console.print(f"[red]Error:[/red] Unknown category: {category}")
        raise typer.Exit(1)

    properties = {"priority": priority, "description": description}
    if output_path:
        properties["output_path"] = output_path
    task = Task(
        id=task_id or slugify(name),
        name=name,
        category=work_category,
        properties=properties,
        metadata={"source": "cli"},
    )
    try:
        JsonTaskStore(config.store_path).add(task)
    except TaskStoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[green]Added task[/green] {task.id}")


@app.command("release")
def release(
    task_id: str = typer.Argument(..., help="Id of the in-progress task."),
    repo: Path = typer.Option(Path.cwd(), "--repo", "-r", help="Path to the target repository."),
    reason: str = typer.Option("manual release", "--reason", help="Recorded as the release reason."),
    fail: bool = typer.Option(False, "--fail", help="Mark the task failed instead of available."),
) -> None:
    """Release a task left in progress by a crashed engine."""
    config = load_config(repo)
    store = JsonTaskStore(config.store_path)
    try:
        task = store.get(task_id)
    except RecordNotFoundError:
        console.print(f"[red]Error:[/red] Task not found: {task_id}")
        raise typer.Exit(1)

    if task.state is not TaskState.IN_PROGRESS:
        console.print(f"[red]Error:[/red] Task {task_id} is {task.state.value}, not in_progress")
        raise typer.Exit(1)

    try:
        updated = ClaimManager(store, owner=config.owner).release(task, reason, retryable=not fail)
    except (IllegalTransitionError, TaskStoreError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"Task {task_id} is now [cyan]{updated.state.value}[/cyan]")


@app.command("operations")
def operations(
    repo: Path = typer.Option(Path.cwd(), "--repo", "-r", help="Path to the target repository."),
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", "-c", help="Config directory."),
    show_all: bool = typer.Option(False, "--all", "-a", help="Show every stored version."),
) -> None:
    """List operation definitions in use."""
    config = load_config(repo, config_dir)
    registry = OperationRegistry(config.operations_file)
    try:
        registry.load()
    except OperationRegistryError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    table = Table(title="Operations")
    table.add_column("Kind", style="cyan")
    table.add_column("Version", justify="right")
    table.add_column("Approved")
    table.add_column("Description")
    for definition in registry.list():
        table.add_row(
            definition.kind.value,
            str(definition.version),
            definition.approved_by or "",
            definition.description,
        )
        if show_all:
            for version in registry.versions(definition.kind):
                if version.version == definition.version:
                    continue
                table.add_row(
                    "",
                    str(version.version),
                    version.approved_by or "[yellow]pending[/yellow]",
                    version.description,
                )
    console.print(table)


@app.command("propose-operation")
def propose_operation(
    kind: str = typer.Argument(..., help="acquire, execute, evaluate, fix or redesign."),
    repo: Path = typer.Option(Path.cwd(), "--repo", "-r", help="Path to the target repository."),
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", "-c", help="Config directory."),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="New description."),
    task_name: Optional[str] = typer.Option(None, "--task-name", help="Jinja2 template for corrective task names."),
    prompt_file: Optional[Path] = typer.Option(None, "--prompt-file", help="File holding the new prompt template."),
    category: Optional[str] = typer.Option(None, "--category", help="Work category of tasks this operation creates."),
    priority: Optional[int] = typer.Option(None, "--priority", "-p", help="Priority of tasks this operation creates."),
    limit: Optional[int] = typer.Option(None, "--limit", help="Most tasks one acquisition may add."),
    gates: Optional[str] = typer.Option(None, "--gates", help="Comma-separated gates run on evaluation."),
) -> None:
    """Propose a new version of an operation definition.

    Fields that are not given are copied from the definition currently in
    use. The proposal has no effect until it is approved.
    """
    config = load_config(repo, config_dir)
    registry = OperationRegistry(config.operations_file)
    try:
        operation_kind = OperationKind(kind)
    except ValueError:
        console.print(f"[red]Error:[/red] Unknown operation kind: {kind}")
        raise typer.Exit(1)

    changes: dict = {}
    if description is not None:
        changes["description"] = description
    if task_name is not None:
        changes["task_name"] = task_name
    if prompt_file is not None:
        try:
            changes["prompt"] = prompt_file.read_text(encoding="utf-8")
        except OSError as e:
            console.print(f"[red]Error:[/red] Cannot read {prompt_file}: {e}")
            raise typer.Exit(1)
    if category is not None:
        try:
            changes["category"] = WorkCategory(category)
        except ValueError:
            console.print(f"[red]Error:[/red] Unknown category: {category}")
            raise typer.Exit(1)
    if priority is not None:
        changes["priority"] = priority
    if limit is not None:
        changes["limit"] = limit
    if gates is not None:
        selected = parse_gate_names(gates)
        unknown = set(selected) - set(GATE_ORDER)
        if unknown:
            console.print(f"[red]Error:[/red] Unknown gates: {', '.join(sorted(unknown))}")
            raise typer.Exit(1)
        changes["gates"] = selected
    if not changes:
        console.print("[red]Error:[/red] Nothing to propose; give at least one field to change.")
        raise typer.Exit(1)

    try:
        registry.load()
        proposed = registry.propose(replace(registry.resolve(operation_kind), **changes))
    except (OperationRegistryError, OSError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(
        f"[green]Proposed[/green] {proposed.kind.value} v{proposed.version}. "
        f"Approve it with: devloop approve-operation {proposed.kind.value} {proposed.version} --approver NAME"
    )


@app.command("approve-operation")
def approve_operation(
    kind: str = typer.Argument(..., help="acquire, execute, evaluate, fix or redesign."),
    version: int = typer.Argument(..., help="Version to approve."),
    approver: str = typer.Option(..., "--approver", help="Who is approving the change."),
    repo: Path = typer.Option(Path.cwd(), "--repo", "-r", help="Path to the target repository."),
    config_dir: Optional[Path] = typer.Option(None, "--config-dir", "-c", help="Config directory."),
) -> None:
    """Approve a proposed operation definition."""
    config = load_config(repo, config_dir)
    registry = OperationRegistry(config.operations_file)
    try:
        registry.load()
        approved = registry.approve(OperationKind(kind), version, approver)
    except ValueError:
        console.print(f"[red]Error:[/red] Unknown operation kind: {kind}")
        raise typer.Exit(1)
    except OperationRegistryError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(
        f"[green]Approved[/green] {approved.kind.value} v{approved.version} by {approved.approved_by}"
    )


if __name__ == "__main__":
    app()
