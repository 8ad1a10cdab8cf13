"""CLI entry point for treeflow.

Commands:
- treeflow init: Create .treeflow/config.yaml and the state database
- treeflow run: Execute a workflow definition file
- treeflow status: Show persisted workflow and step state
- treeflow worktree list|create|remove|cleanup: Manage isolated worktrees
- treeflow merge detect|resolve|abort: Integrate a worktree into its target
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from treeflow import __version__
from treeflow.agent.spawner import CliAgentSpawner, OutputChunk
from treeflow.core.config import (
    CONFIG_DIR,
    ConfigError,
    EngineConfig,
    config_path,
    default_config_yaml,
    load_config,
    load_workflow,
)
from treeflow.core.executor import ExecutorError, RetryPolicy, WorkflowExecutor
from treeflow.core.git import GitError, GitGateway
from treeflow.core.merge import MergeError, MergeResolver
from treeflow.core.models import (
    ConflictResolution,
    MergeResult,
    Workflow,
    WorkflowStatus,
    WorktreeConfig,
    WorktreeStatus,
)
from treeflow.core.scheduler import SchedulerError
from treeflow.core.state import Database
from treeflow.core.workspace import WorktreeError, WorktreeManager

console = Console()

STATUS_COLORS = {
    "completed": "green",
    "running": "blue",
    "failed": "red",
    "skipped": "yellow",
    "cancelled": "yellow",
    "pending": "dim",
    "active": "green",
    "stale": "yellow",
    "removed": "dim",
}


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


def _configure_logging(verbose: bool, level: str) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _load(repo_path: Path) -> tuple[EngineConfig, Database, WorktreeManager]:
    config = load_config(repo_path)
    db = Database(repo_path / CONFIG_DIR / "state.db")
    manager = WorktreeManager(
        repo_path,
        db=db,
        base_dir=config.worktrees.base_dir,
        branch_prefix=config.worktrees.branch_prefix,
        git=GitGateway(repo_path, timeout=config.worktrees.git_timeout),
    )
    return config, db, manager


def _colored(value: str) -> str:
    return f"[{STATUS_COLORS.get(value, 'white')}]{value}[/]"


def _display_path(path: Path, repo_path: Path) -> str:
    try:
        return str(Path(path).relative_to(repo_path))
    except ValueError:
        return str(path)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """treeflow - run agent workflows in isolated git worktrees."""
    try:
        level = load_config(get_repo_path()).logging.level
    except ConfigError:
        level = "WARNING"
    _configure_logging(verbose, level)


@main.command()
def init() -> None:
    """Initialize the current repository for treeflow."""
    repo_path = get_repo_path()
    path = config_path(repo_path)

    if path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("# treeflow configuration for this repository\n" + default_config_yaml())
    Database(path.parent / "state.db")

    console.print(
        Panel(
            f"[green]Initialized treeflow[/green]\n\nConfig: {path}",
            title="treeflow init",
        )
    )


# --- Workflows ---


def _print_workflow(workflow: Workflow) -> None:
    table = Table(title=f"Workflow {escape(workflow.name or workflow.id)}")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Error")
    for step in workflow.steps:
        table.add_row(
            escape(step.id),
            _colored(step.status.value),
            str(step.attempts),
            escape(step.error or "-"),
        )
    console.print(table)


def _print_merge_result(result: MergeResult) -> None:
    console.print(f"[bold]Merge:[/bold] {_colored(result.status.value)} {escape(result.message)}")
    if result.commit:
        console.print(f"[dim]Commit: {result.commit}[/dim]")
    for conflict in result.conflicts:
        console.print(f"  - {escape(conflict.conflict_id)}")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--branch", "-b", help="Branch to run the workflow on (overrides the file)")
@click.option("--base", help="Base ref for a new branch (overrides the file)")
@click.option("--concurrency", "-c", type=int, help="Maximum steps running at once")
@click.option("--merge/--no-merge", default=None, help="Merge into the target branch on success")
@click.option("--stream/--no-stream", default=True, help="Print agent output as it arrives")
def run(
    workflow_file: Path,
    branch: str | None,
    base: str | None,
    concurrency: int | None,
    merge: bool | None,
    stream: bool,
) -> None:
    """Run a workflow definition file."""
    repo_path = get_repo_path()
    try:
        config, db, manager = _load(repo_path)
        workflow = load_workflow(workflow_file, config)
    except (ConfigError, WorktreeError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    if branch:
        workflow.branch = branch
    if base:
        workflow.base_ref = base

    def print_chunk(workflow_id: str, step_id: str, chunk: OutputChunk) -> None:
        style = "red" if chunk.stream == "stderr" else "dim"
        console.print(f"[{style}]{escape(step_id)}>[/] {escape(chunk.text.rstrip())}")

    settings = config.executor
    executor = WorkflowExecutor(
        spawner=CliAgentSpawner(
            command=config.agent.command,
            model_flag=config.agent.model_flag,
            session_flag=config.agent.session_flag,
            max_output_bytes=config.agent.max_output_bytes,
            grace_period=config.agent.grace_period,
        ),
        manager=manager,
        db=db,
        max_concurrency=concurrency or settings.max_concurrency,
        retry_policy=RetryPolicy(
            initial_delay=settings.retry_initial_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_delay=settings.retry_max_delay,
        ),
        default_timeout=config.agent.default_timeout,
        merge_on_success=settings.merge_on_success if merge is None else merge,
        remove_on_merge=settings.remove_on_merge,
        commit_on_complete=settings.commit_on_complete,
        on_output=print_chunk if stream else None,
    )

    console.print(f"\n[bold]Running workflow:[/bold] {escape(workflow.name)}")
    console.print(f"[dim]Workflow ID: {workflow.id}[/dim]\n")

    try:
        workflow_id = executor.submit(workflow)
        result = executor.wait(workflow_id)
    except (SchedulerError, ExecutorError, WorktreeError, GitError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Cancelling...[/yellow]")
        executor.shutdown()
        result = executor.get_workflow(workflow.id)

    _print_workflow(result)
    if result.worktree:
        console.print(f"[dim]Worktree: {result.worktree.path} ({result.worktree.branch})[/dim]")
    if result.merge_result:
        _print_merge_result(result.merge_result)

    if result.status == WorkflowStatus.COMPLETED:
        console.print(Panel("[green]Workflow complete![/green]", title="Status"))
        return
    console.print(
        Panel(
            f"[red]Workflow {result.status.value}[/red]\n{escape(result.error or '')}",
            title="Status",
        )
    )
    sys.exit(1)


@main.command()
@click.argument("workflow_id", required=False)
def status(workflow_id: str | None) -> None:
    """Show persisted workflow state."""
    db_path = get_repo_path() / CONFIG_DIR / "state.db"
    if not db_path.exists():
        console.print("[yellow]No treeflow database found. Run 'treeflow init' first.[/yellow]")
        return

    db = Database(db_path)
    if workflow_id is None:
        table = Table(title="Workflows")
        table.add_column("ID")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Branch")
        table.add_column("Started")
        for record in db.list_workflows():
            table.add_row(
                escape(record.id),
                escape(record.name),
                _colored(record.status.value),
                escape(record.branch or "-"),
                record.started_at.strftime("%Y-%m-%d %H:%M:%S") if record.started_at else "-",
            )
        console.print(table)
        return

    record = db.get_workflow(workflow_id)
    if record is None:
        console.print(f"[red]Workflow '{escape(workflow_id)}' not found[/]")
        sys.exit(1)

    console.print(
        Panel(
            f"[bold]Status:[/] {_colored(record.status.value)}\n"
            f"[bold]Worktree:[/] {escape(record.worktree_path or '-')}\n"
            f"[bold]Error:[/] {escape(record.error or '-')}",
            title=f"Workflow {escape(record.name or record.id)}",
        )
    )
    table = Table(title="Steps")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Error")
    for step in db.get_steps(workflow_id):
        table.add_row(
            escape(step.id),
            _colored(step.status.value),
            str(step.attempts),
            escape(step.error or "-"),
        )
    console.print(table)


# --- Worktrees ---


@main.group()
def worktree() -> None:
    """Manage isolated worktrees."""
    pass


@worktree.command("list")
def worktree_list() -> None:
    """List worktrees, reconciled against git."""
    try:
        _, _, manager = _load(get_repo_path())
        worktrees = manager.list()
    except (ConfigError, WorktreeError, GitError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    table = Table(title="Worktrees")
    table.add_column("Path")
    table.add_column("Branch")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Created")
    for wt in worktrees:
        table.add_row(
            escape(_display_path(wt.path, manager.repo_path)),
            escape(wt.branch or "?"),
            escape(wt.target_branch or "-"),
            _colored(wt.status.value),
            wt.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)
    stale = sum(1 for wt in worktrees if wt.status == WorktreeStatus.STALE)
    if stale:
        console.print(
            f"[yellow]{stale} stale worktree(s). "
            "Use 'treeflow worktree cleanup' to remove them.[/yellow]"
        )


@worktree.command("create")
@click.argument("branch")
@click.option("--base", default="HEAD", help="Ref to branch from")
@click.option("--path", "path_hint", help="Directory name under the worktrees dir")
@click.option("--target", help="Branch the work will be merged into")
def worktree_create(branch: str, base: str, path_hint: str | None, target: str | None) -> None:
    """Create a worktree for BRANCH."""
    try:
        _, _, manager = _load(get_repo_path())
        wt = manager.create(
            WorktreeConfig(branch=branch, base_ref=base, path_hint=path_hint, target_branch=target)
        )
    except (ConfigError, WorktreeError, GitError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    shown = _display_path(wt.path, manager.repo_path)
    console.print(f"[green]Created[/green] {escape(shown)} on {escape(wt.branch)}")


@worktree.command("remove")
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--force", is_flag=True, help="Discard uncommitted changes")
@click.option("--delete-branch", is_flag=True, help="Also delete the worktree's branch")
def worktree_remove(path: Path, force: bool, delete_branch: bool) -> None:
    """Remove the worktree at PATH."""
    try:
        _, _, manager = _load(get_repo_path())
        manager.remove(path, force=force, delete_branch=delete_branch)
    except (ConfigError, WorktreeError, GitError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    console.print(f"[green]Removed[/green] {escape(str(path))}")


@worktree.command("cleanup")
@click.option("--max-age", type=float, default=24.0, help="Only remove stale worktrees older than this (hours)")
def worktree_cleanup(max_age: float) -> None:
    """Remove stale worktrees."""
    try:
        _, _, manager = _load(get_repo_path())
        removed = manager.cleanup_stale(max_age_hours=max_age)
    except (ConfigError, WorktreeError, GitError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    console.print(f"Removed {len(removed)} stale worktree(s)")
    for path in removed:
        console.print(f"  - {escape(_display_path(path, manager.repo_path))}")


# --- Merging ---


@main.group()
def merge() -> None:
    """Integrate a worktree's branch into its target."""
    pass


def _resolver() -> MergeResolver:
    _, _, manager = _load(get_repo_path())
    return MergeResolver(manager)


@merge.command("detect")
@click.argument("path", type=click.Path(path_type=Path))
def merge_detect(path: Path) -> None:
    """List conflicts merging the target into the worktree at PATH (dry run)."""
    try:
        conflicts = _resolver().detect_conflicts(path)
    except (ConfigError, WorktreeError, MergeError, GitError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    if not conflicts:
        console.print("[green]No conflicts - merge would be clean[/green]")
        return
    for conflict in conflicts:
        where = (
            f"lines {conflict.markers.start}-{conflict.markers.end}"
            if conflict.markers
            else "whole file"
        )
        console.print(
            Panel(
                f"[bold]source:[/bold]\n{escape(conflict.source)}\n"
                f"[bold]target:[/bold]\n{escape(conflict.target)}",
                title=f"{escape(conflict.conflict_id)} ({where})",
            )
        )


def _parse_resolutions(path: Path) -> dict[str, ConflictResolution]:
    """Read a YAML mapping of conflict id -> strategy or {strategy, content}."""
    with open(path, encoding="utf-8") as f:
        data: Any = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping of conflict ids")
    resolutions: dict[str, ConflictResolution] = {}
    for conflict_id, value in data.items():
        if isinstance(value, str):
            value = {"strategy": value}
        try:
            resolutions[str(conflict_id)] = ConflictResolution.model_validate(value)
        except ValueError as e:
            raise ConfigError(f"Invalid resolution for {conflict_id}: {e}")
    return resolutions


@merge.command("resolve")
@click.argument("path", type=click.Path(path_type=Path))
@click.argument("resolutions_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--message", "-m", help="Merge commit message")
def merge_resolve(path: Path, resolutions_file: Path, message: str | None) -> None:
    """Merge with the resolutions in RESOLUTIONS_FILE.

    The file maps conflict ids (as printed by `merge detect`) to
    take-source, take-target, or {strategy: custom, content: ...}.
    """
    try:
        resolutions = _parse_resolutions(resolutions_file)
        with _resolver().attempt(path) as txn:
            txn.detect()
            result = txn.resolve(resolutions, message=message)
    except (ConfigError, WorktreeError, MergeError, GitError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    _print_merge_result(result)


@merge.command("abort")
@click.argument("path", type=click.Path(path_type=Path))
def merge_abort(path: Path) -> None:
    """Abort any in-progress merge in the worktree at PATH."""
    try:
        result = _resolver().abort_merge(path)
    except (ConfigError, WorktreeError, MergeError, GitError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    _print_merge_result(result)


if __name__ == "__main__":
    main()
