"""CLI entry point for autopilot.

Commands:
- autopilot init: Initialize the current repository
- autopilot submit: Run a change request up to the approval gate
- autopilot status: List tasks or show one task
- autopilot approve / reject: Decide on a task awaiting approval
- autopilot rollback: Revert a completed task
- autopilot validate: Diagnostics and tests for existing files
- autopilot plan: Decompose a request without generating code
- autopilot serve: Run the HTTP API
"""

from __future__ import annotations

import asyncio
import getpass
import logging
import os
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from autopilot import __version__
from autopilot.core.config import (
    CONFIG_DIR,
    CONFIG_FILE,
    DEFAULT_CONFIG_YAML,
    STATE_GITIGNORE,
    load_config,
    state_db_path,
)
from autopilot.core.errors import AutopilotError
from autopilot.core.models import Decomposition, Task, TaskStatus, ValidationReport
from autopilot.core.orchestrator import Orchestrator
from autopilot.core.parser import Err
from autopilot.core.state import Database

console = Console()

STATUS_STYLES = {
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.AWAITING_APPROVAL: "yellow",
}


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


def current_user() -> str:
    return os.environ.get("AUTOPILOT_USER") or getpass.getuser()


def _orchestrator() -> Orchestrator:
    repo_path = get_repo_path()
    if not state_db_path(repo_path).exists():
        console.print("[yellow]No autopilot database found. Run 'autopilot init' first.[/yellow]")
        sys.exit(1)
    return Orchestrator.from_repo(repo_path)


def _fail(e: Exception) -> None:
    console.print(f"[red]Error:[/red] {escape(str(e))}")
    sys.exit(1)


# ========== Rendering ==========


def _status(task: Task) -> str:
    style = STATUS_STYLES.get(task.status, "cyan")
    return f"[{style}]{task.status.value}[/{style}]"


def print_plan(decomposition: Decomposition) -> None:
    table = Table(title="Subtasks")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Description")
    table.add_column("Depends on", style="dim")
    table.add_column("Minutes", justify="right")
    table.add_column("Files", style="green")
    for s in decomposition.subtasks:
        table.add_row(
            s.id,
            s.type.value,
            escape(s.description),
            ", ".join(s.dependencies) or "-",
            f"{s.estimated_minutes:g}",
            escape(", ".join(s.files)) or "-",
        )
    console.print(table)

    if decomposition.plan:
        plan = decomposition.plan
        for phase in plan.phases:
            console.print(f"  [bold]{escape(phase.name)}[/bold] ({phase.duration_minutes:g} min)")
        console.print(
            f"\n[bold]Critical path:[/bold] {' -> '.join(plan.critical_path)} "
            f"({plan.critical_path_minutes:g} min, parallelization x{plan.parallelization_factor:.2f})"
        )
    for pattern in decomposition.patterns:
        console.print(
            f"[dim]Pattern hint: {escape(pattern.name)} "
            f"(similarity {pattern.similarity:.2f}, saves ~{pattern.estimated_savings_minutes:g} min)[/dim]"
        )
    if decomposition.quality:
        quality = decomposition.quality
        color = "green" if quality.passed else "red"
        console.print(f"[bold]Quality score:[/bold] [{color}]{quality.score:g}%[/{color}]")
        for warning in quality.warnings:
            console.print(f"  [yellow]- {escape(warning)}[/yellow]")
        for blocker in quality.blockers:
            console.print(f"  [red]• {escape(blocker)}[/red]")


def print_report(report: ValidationReport) -> None:
    diag = report.diagnostics
    tests = report.tests
    lines = [
        f"Safety: {'[green]safe[/green]' if report.safety else '[red]unsafe[/red]'}",
        f"Diagnostics: {diag.total_errors} errors, {diag.total_warnings} warnings",
    ]
    if tests is not None:
        lines.append(
            f"Tests: {tests.passed} passed, {tests.failed} failed, {tests.errors} errors "
            f"({tests.duration_seconds:.1f}s)"
        )
    if report.heal_attempts:
        lines.append(f"Self-heal attempts: {report.heal_attempts}")
    console.print(Panel("\n".join(lines), title="Validation"))
    for d in diag.all_diagnostics():
        if d.severity != "info":
            console.print(f"  {escape(d.file)}:{d.line}:{d.column} [red]{d.code or d.severity}[/red] {escape(d.message)}")
    for warning in report.warnings:
        console.print(f"  [yellow]- {escape(warning)}[/yellow]")


def print_task(task: Task) -> None:
    console.print(
        Panel(
            f"[bold]Prompt:[/bold] {escape(task.prompt)}\n"
            f"[bold]Status:[/bold] {_status(task)}\n"
            f"[bold]Owner:[/bold] {escape(task.owner)}\n"
            f"[bold]Updated:[/bold] {task.updated_at:%Y-%m-%d %H:%M:%S}",
            title=f"Task {task.id}",
        )
    )
    if task.error:
        console.print(f"[red]Error:[/red] {escape(task.error)}")
    if task.decomposition:
        print_plan(task.decomposition)
    if task.generated_files:
        table = Table(title="Generated Files")
        table.add_column("Path", style="cyan", no_wrap=True)
        table.add_column("Action")
        table.add_column("+", style="green", justify="right")
        table.add_column("-", style="red", justify="right")
        table.add_column("Rationale", style="dim")
        for f in task.generated_files:
            table.add_row(escape(f.path), f.action.value, str(f.additions), str(f.deletions), escape(f.rationale))
        console.print(table)
    for failure in task.generation_failures:
        console.print(f"[red]✗ {escape(failure.path)}:[/red] {escape(failure.error)}")
    if task.validation_report:
        print_report(task.validation_report)
    if task.snapshot_id:
        console.print(f"[dim]Snapshot: {task.snapshot_id}[/dim]")


# ========== Commands ==========


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show progress logs")
def main(verbose: bool) -> None:
    """Autopilot - autonomous coding agent with an approval gate.

    Plans a change request, generates code, validates and self-heals it,
    and applies it only after approval.
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
def init() -> None:
    """Initialize the current repository for autopilot."""
    repo_path = get_repo_path()
    autopilot_dir = repo_path / CONFIG_DIR
    config_path = autopilot_dir / CONFIG_FILE

    if config_path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    autopilot_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_YAML)
    (autopilot_dir / ".gitignore").write_text(STATE_GITIGNORE)
    Database(state_db_path(repo_path))

    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {autopilot_dir}\n"
            "- config.yaml: Project configuration\n"
            "- state.db: Task store",
            title="Autopilot Initialized",
        )
    )


@main.command()
@click.argument("prompt")
@click.option("--auto-approve", is_flag=True, help="Apply without review when validation is safe")
@click.option(
    "--wait/--no-wait",
    default=True,
    help="Run the task here, or only queue it for 'autopilot serve'",
)
def submit(prompt: str, auto_approve: bool, wait: bool) -> None:
    """Submit a change request.

    PROMPT describes the change, e.g.

        autopilot submit "Add a health check endpoint"
    """
    orchestrator = _orchestrator()

    async def run() -> Task:
        task = await orchestrator.enqueue(prompt, current_user(), auto_approve=auto_approve)
        if not wait:
            return task
        console.print(f"[dim]Task {task.id} submitted[/dim]")
        # Only this task runs; other pending tasks are left for the server
        await orchestrator.start(resume=False)
        with console.status("Working..."):
            return await orchestrator.run(task.id)

    try:
        task = asyncio.run(run())
    except AutopilotError as e:
        _fail(e)
        return
    if not wait:
        console.print(f"Task [cyan]{task.id}[/cyan] queued; [bold]autopilot serve[/bold] will run it")
        return
    print_task(task)
    if task.status == TaskStatus.AWAITING_APPROVAL:
        console.print(f"\nReview, then run [bold]autopilot approve {task.id}[/bold]")
    if task.status == TaskStatus.FAILED:
        sys.exit(1)


@main.command()
@click.argument("task_id", required=False)
def status(task_id: str | None) -> None:
    """List tasks, or show TASK_ID in detail."""
    orchestrator = _orchestrator()
    try:
        if task_id:
            print_task(orchestrator.get_task(task_id))
            return
        tasks = orchestrator.list_tasks()
    except AutopilotError as e:
        _fail(e)
        return

    if not tasks:
        console.print("[dim]No tasks yet[/dim]")
        return
    table = Table(title="Tasks")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Owner")
    table.add_column("Prompt")
    table.add_column("Updated", style="dim")
    for task in tasks:
        prompt = task.prompt if len(task.prompt) <= 60 else task.prompt[:57] + "..."
        table.add_row(task.id, _status(task), escape(task.owner), escape(prompt), f"{task.updated_at:%Y-%m-%d %H:%M}")
    console.print(table)


@main.command()
@click.argument("task_id")
def approve(task_id: str) -> None:
    """Apply the changes of a task awaiting approval."""
    orchestrator = _orchestrator()
    try:
        task = asyncio.run(orchestrator.approve(task_id))
    except AutopilotError as e:
        _fail(e)
        return
    if task.status == TaskStatus.COMPLETED:
        console.print(Panel(f"[green]Applied {len(task.applied_files)} file(s)[/green]", title="Status"))
        for path in task.applied_files:
            console.print(f"  - {escape(path)}")
    else:
        console.print(f"[red]Apply failed:[/red] {escape(task.error or 'unknown error')}")
        sys.exit(1)


@main.command()
@click.argument("task_id")
@click.option("--reason", "-r", default="", help="Why the changes were rejected")
def reject(task_id: str, reason: str) -> None:
    """Reject a task awaiting approval."""
    orchestrator = _orchestrator()
    try:
        asyncio.run(orchestrator.reject(task_id, reason))
    except AutopilotError as e:
        _fail(e)
        return
    console.print(f"[yellow]Task {task_id} rejected[/yellow]")


@main.command()
@click.argument("task_id")
def rollback(task_id: str) -> None:
    """Revert the changes of a completed task."""
    orchestrator = _orchestrator()
    try:
        asyncio.run(orchestrator.rollback(task_id))
    except AutopilotError as e:
        _fail(e)
        return
    console.print(Panel(f"[green]Task {task_id} rolled back[/green]", title="Status"))


@main.command()
@click.argument("files", nargs=-1, required=True)
def validate(files: tuple[str, ...]) -> None:
    """Run diagnostics and tests for FILES."""
    orchestrator = _orchestrator()
    try:
        report = asyncio.run(orchestrator.validate_files(list(files)))
    except AutopilotError as e:
        _fail(e)
        return
    print_report(report)
    if not report.safety:
        sys.exit(1)


@main.command()
@click.argument("prompt")
def plan(prompt: str) -> None:
    """Decompose PROMPT into subtasks without generating code."""
    orchestrator = _orchestrator()
    if orchestrator.patterns is not None:
        orchestrator.patterns.initialize()
    console.print(f"\n[bold]Planning:[/bold] {escape(prompt)}\n")
    with console.status("Decomposing..."):
        result = orchestrator.decomposer.decompose_task(prompt)
    if isinstance(result, Err):
        _fail(result.error)
        return
    print_plan(result.value)


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
def serve(host: str, port: int) -> None:
    """Serve the HTTP API for this repository."""
    import uvicorn

    from autopilot.api.server import create_app

    repo_path = get_repo_path()
    if not state_db_path(repo_path).exists():
        console.print("[yellow]No autopilot database found. Run 'autopilot init' first.[/yellow]")
        sys.exit(1)
    config = load_config(repo_path)
    app = create_app(Orchestrator.from_repo(repo_path, config))
    console.print(f"[bold]Serving autopilot API[/bold] on http://{host}:{port} ({config.mode} mode)")
    uvicorn.run(app, host=host, port=port)


@main.command()
def version() -> None:
    """Show the autopilot version."""
    console.print(f"autopilot {__version__}")


if __name__ == "__main__":
    main()
