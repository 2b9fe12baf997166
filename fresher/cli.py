"""
Fresher CLI — The Interface

Loop modes:
  1. fresher plan     (planning: write IMPLEMENTATION_PLAN.md from specs/)
  2. fresher build    (building: one task per fresh-context iteration)

Plus utilities:
  - fresher verify        (plan coverage against specs/)
  - fresher migrate-plan  (split a large plan into impl/ feature files)
  - fresher archive NAME  (move a finished feature into impl/.archive/)
  - fresher status        (config, last run, plan progress)
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from fresher.identity import __codename__, __tagline__, __version__, BANNER
from fresher.audit_logger import AuditLogger
from fresher.config_loader import CONTROL_DIR, FresherConfig, load_config
from fresher.controller import BUILDING, PLANNING, Controller, InterruptFlag, LoopOutcome
from fresher.errors import FresherError, SetupError
from fresher.event_bus import EventBus
from fresher.impl_index import ImplIndex, archive_feature, has_hierarchical_plan
from fresher.migrate import analyze_migration, migrate_plan
from fresher.plan import TaskStatus
from fresher.state import StateStore
from fresher.streaming import StreamHandler
from fresher.verify import VerifyReport, generate_report
from fresher.worker import ClaudeWorker, find_agent_binary

load_dotenv()

app = typer.Typer(
    name="fresher",
    help=f"{__codename__} — {__tagline__}",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


def _fail(e: Exception) -> None:
    console.print(f"[red]✗ {e}[/]")
    raise typer.Exit(1)


def _bar(percent: float, width: int = 20) -> str:
    filled = int(percent / 100.0 * width)
    return "█" * filled + "░" * (width - filled)


# ---------------------------------------------------------------------------
# Loop commands
# ---------------------------------------------------------------------------

async def _drive(controller: Controller) -> LoopOutcome:
    controller.interrupt.install(asyncio.get_running_loop())
    try:
        return await controller.run()
    finally:
        controller.interrupt.uninstall()


def _run_loop(mode: str, repo: Path, max_iterations: Optional[int], verbose: bool) -> LoopOutcome:
    project_dir = repo.resolve()
    if not (project_dir / CONTROL_DIR).exists():
        raise SetupError(f"{CONTROL_DIR}/ not found in {project_dir}. Initialize the project first.")

    config = load_config(project_dir)
    config.fresher.mode = mode
    if max_iterations is not None:
        config.fresher.max_iterations = max_iterations

    if mode == BUILDING:
        plan_path = project_dir / config.paths.plan_file
        if not plan_path.exists() and not has_hierarchical_plan(project_dir / config.paths.impl_dir):
            raise SetupError(f"{config.paths.plan_file} not found. Run `fresher plan` first to create a plan.")

    binary = find_agent_binary()

    bus = EventBus()
    AuditLogger(str(project_dir / config.paths.log_dir / "loop.jsonl"), bus)

    controller = Controller(
        config,
        project_dir,
        worker=ClaudeWorker(config, project_dir, StreamHandler(console, verbose=verbose), binary),
        bus=bus,
        interrupt=InterruptFlag(),
        console=console,
    )
    return asyncio.run(_drive(controller))


@app.command()
def build(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Project directory"),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", "-n", help="Stop after N iterations (0 = unlimited)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run the building loop: one plan task per fresh-context iteration."""
    _print_banner()
    _configure_logging(verbose)
    try:
        _run_loop(BUILDING, repo, max_iterations, verbose)
    except FresherError as e:
        _fail(e)


@app.command()
def plan(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Project directory"),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", "-n", help="Stop after N iterations (0 = unlimited)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run the planning loop: turn specs/ into an implementation plan."""
    _print_banner()
    _configure_logging(verbose)
    try:
        _run_loop(PLANNING, repo, max_iterations, verbose)
    except FresherError as e:
        _fail(e)


# ---------------------------------------------------------------------------
# verify
# ---------------------------------------------------------------------------

@app.command()
def verify(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Project directory"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON"),
    plan_file: Optional[Path] = typer.Option(None, "--plan-file", "-p", help="Plan file (default from config)"),
):
    """Check plan progress and spec traceability."""
    _configure_logging(False)
    project_dir = repo.resolve()
    try:
        config = load_config(project_dir)
        impl_dir = project_dir / config.paths.impl_dir
        spec_dir = project_dir / config.paths.spec_dir

        if has_hierarchical_plan(impl_dir):
            index = ImplIndex.load(impl_dir)
            if json_output:
                typer.echo(json.dumps(_index_json(index), indent=2))
            else:
                _print_index_report(index)
            return

        plan_path = plan_file or project_dir / config.paths.plan_file
        if not plan_path.exists():
            if json_output:
                typer.echo(json.dumps({"error": "Plan file not found", "path": str(plan_path)}, indent=2))
                raise typer.Exit(1)
            raise SetupError(f"Plan file not found: {plan_path}. Run `fresher plan` first.")

        report = generate_report(plan_path, spec_dir)
    except FresherError as e:
        _fail(e)
        return

    if json_output:
        typer.echo(report.model_dump_json(indent=2))
    else:
        _print_report(report)


def _index_json(index: ImplIndex) -> dict:
    return {
        "plan_type": "hierarchical",
        "impl_dir": str(index.impl_dir),
        "total_tasks": index.total_tasks(),
        "completed_tasks": index.completed_tasks(),
        "pending_tasks": index.pending_tasks(),
        "current_focus": index.current_focus,
        "is_complete": index.is_complete(),
        "features": [
            {**f.model_dump(mode="json"), "completion_percent": f.completion_percent()}
            for f in index.features
        ],
        "cross_cutting": index.cross_cutting_tasks.model_dump(),
    }


def _print_report(report: VerifyReport) -> None:
    done_pct = report.completed_tasks * 100 // report.total_tasks if report.total_tasks else 0

    table = Table(title="Implementation Plan Verification", border_style="cyan", show_header=False)
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("Total tasks", f"[cyan]{report.total_tasks}[/]")
    table.add_row("Completed", f"[green]{report.completed_tasks} ({done_pct}%)[/]")
    table.add_row("In progress", f"[yellow]{report.in_progress_tasks}[/]")
    table.add_row("Pending", f"[red]{report.pending_tasks}[/]")
    table.add_row("Tasks with refs", f"[cyan]{report.tasks_with_refs}[/]")
    orphan_style = "yellow" if report.orphan_tasks else "green"
    table.add_row("Orphan tasks", f"[{orphan_style}]{report.orphan_tasks}[/]")
    console.print(table)

    if report.coverage:
        console.print("\n[bold]Spec Coverage[/]")
        for entry in report.coverage:
            style = "green" if entry.coverage_percent >= 80 else "yellow" if entry.coverage_percent >= 50 else "red"
            console.print(
                f"  {entry.spec_name:20} [{_bar(entry.coverage_percent)}] "
                f"[{style}]{entry.coverage_percent:.0f}%[/] "
                f"({entry.requirement_count} reqs, {entry.task_count} tasks)",
                highlight=False,
            )

    pending = [t for t in report.tasks if t.status is TaskStatus.PENDING]
    if pending:
        console.print("\n[bold]Pending Tasks[/]")
        for task in pending[:10]:
            priority = f"P{task.priority}" if task.priority is not None else "P?"
            console.print(f"  [dim]\\[{priority}][/] [red]○[/] {task.description}")
        if len(pending) > 10:
            console.print(f"  [dim]... and {len(pending) - 10} more...[/]")

    console.print()
    if report.pending_tasks == 0 and report.total_tasks > 0:
        console.print("[green]✓[/] All tasks completed!")
    elif report.pending_tasks > 0:
        console.print(f"[yellow]→[/] {report.pending_tasks} tasks remaining")


def _print_index_report(index: ImplIndex) -> None:
    table = Table(title="Implementation Plan Verification (Hierarchical)", border_style="cyan")
    table.add_column("Feature")
    table.add_column("Progress")
    table.add_column("Done", justify="right")
    table.add_column("Status")
    for feature in index.features:
        pct = feature.completion_percent()
        style = "green" if pct >= 100 else "yellow" if pct >= 50 else "white"
        table.add_row(
            feature.name,
            _bar(pct),
            f"[{style}]{pct:.0f}% ({feature.completed_tasks}/{feature.total_tasks})[/]",
            feature.status.label,
        )
    console.print(table)

    if index.current_focus:
        console.print(f"\n[bold]Current Focus[/]\n  Active: [cyan]{index.current_focus}[/]")
        focused = index.find_feature(index.current_focus)
        if focused is not None and focused.pending_tasks > 0:
            console.print(f"  [yellow]{focused.pending_tasks}[/] pending tasks remaining")

    cc = index.cross_cutting_tasks
    if cc.total > 0:
        console.print(
            f"\n[bold]Cross-Cutting Tasks[/]\n"
            f"  Total: {cc.total}, Completed: [green]{cc.completed}[/], Pending: [yellow]{cc.pending}[/]"
        )

    total = index.total_tasks()
    done_pct = index.completed_tasks() * 100 // total if total else 0
    console.print(
        f"\n[bold]Task Summary[/]\n"
        f"  Total tasks: [cyan]{total}[/]\n"
        f"  Completed:   [green]{index.completed_tasks()} ({done_pct}%)[/]\n"
        f"  Pending:     [red]{index.pending_tasks()}[/]\n"
    )

    if index.is_complete():
        console.print("[green]✓[/] All tasks completed!")
        return
    next_focus = index.select_next_focus()
    active = sum(1 for f in index.features if f.pending_tasks > 0)
    console.print(f"[yellow]→[/] {index.pending_tasks()} tasks remaining across {active} features")
    if next_focus is not None:
        console.print(f"  Next focus: [cyan]{next_focus.name}[/] ({next_focus.pending_tasks} pending)")


# ---------------------------------------------------------------------------
# migrate-plan / archive
# ---------------------------------------------------------------------------

@app.command("migrate-plan")
def migrate_plan_cmd(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Project directory"),
    force: bool = typer.Option(False, "--force", "-f", help="Migrate even below the task threshold"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be created without writing"),
):
    """Split IMPLEMENTATION_PLAN.md into impl/ feature documents."""
    _configure_logging(False)
    project_dir = repo.resolve()
    try:
        config = load_config(project_dir)
        legacy_path = project_dir / config.paths.plan_file
        impl_dir = project_dir / config.paths.impl_dir

        if has_hierarchical_plan(impl_dir):
            raise SetupError(
                f"Hierarchical plan already exists at {impl_dir}/. Remove it to re-migrate."
            )
        if not legacy_path.exists():
            raise SetupError(f"No legacy plan found at {legacy_path}. Run `fresher plan` first.")

        threshold = 0 if force else config.fresher.single_file_threshold
        analysis = analyze_migration(legacy_path, threshold)
    except FresherError as e:
        _fail(e)
        return

    table = Table(title="Migration Analysis", border_style="cyan")
    table.add_column("Feature")
    table.add_column("Tasks", justify="right")
    for spec_name, tasks in analysis.tasks_by_spec.items():
        completed = sum(1 for t in tasks if t.status is TaskStatus.COMPLETED)
        table.add_row(f"{spec_name}.md", f"{completed}/{len(tasks)}")
    console.print(table)
    console.print(f"  Source:       {legacy_path}")
    console.print(f"  Target:       {impl_dir}/")
    console.print(f"  Total tasks:  [cyan]{analysis.total_tasks}[/]")
    console.print(f"  Orphan tasks: [yellow]{len(analysis.orphan_tasks)}[/]")

    if not analysis.should_migrate:
        console.print(
            f"\n[yellow]Note:[/] Task count ({analysis.total_tasks}) is below threshold ({threshold}). "
            "Use [cyan]--force[/] to migrate anyway."
        )
        return

    if dry_run:
        console.print("\n[green]✓[/] Dry run - no changes made.")
        return

    try:
        result = migrate_plan(legacy_path, impl_dir)
    except FresherError as e:
        _fail(e)
        return

    console.print(Panel(
        "\n".join(
            [f"Features:    {result.feature_count}",
             f"Total tasks: {result.task_count}",
             f"Backup:      {result.backup_path}",
             "",
             "Files created:"]
            + [f"  {p}" for p in result.created_files]
        ),
        title="Migration Complete",
        border_style="green",
    ))


@app.command()
def archive(
    name: str = typer.Argument(..., help="Feature name (e.g. auth or auth.md)"),
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Project directory"),
):
    """Move a completed feature document into impl/.archive/."""
    _configure_logging(False)
    project_dir = repo.resolve()
    try:
        config = load_config(project_dir)
        dest = archive_feature(project_dir / config.paths.impl_dir, name)
    except FresherError as e:
        _fail(e)
        return
    console.print(f"[green]✓[/] Archived {name} -> {dest}")


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------

@app.command()
def status(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Project directory"),
):
    """Show configuration, the last run and plan progress."""
    _configure_logging(False)
    _print_banner()
    project_dir = repo.resolve()
    try:
        config = load_config(project_dir)
        last = StateStore.for_project(project_dir).load()
    except FresherError as e:
        _fail(e)
        return

    _print_config(config)

    if last is None:
        console.print("\n[dim]No previous run recorded.[/]")
    else:
        run_table = Table(title="Last Run", border_style="cyan", show_header=False)
        run_table.add_column("Field")
        run_table.add_column("Value")
        run_table.add_row("Iterations", str(last.iteration))
        run_table.add_row("Commits", str(last.total_commits))
        run_table.add_row("Duration", f"{last.duration_seconds}s")
        run_table.add_row("Last exit code", str(last.last_exit_code))
        run_table.add_row("Finished", last.finish_type.value if last.finish_type else "[yellow]running / interrupted[/]")
        console.print(run_table)

    impl_dir = project_dir / config.paths.impl_dir
    if has_hierarchical_plan(impl_dir):
        try:
            index = ImplIndex.load(impl_dir)
        except FresherError as e:
            _fail(e)
            return
        focus = index.select_next_focus()
        console.print(
            f"\n[bold]Plan:[/] {index.completed_tasks()}/{index.total_tasks()} tasks done "
            f"across {len(index.features)} features"
            + (f", next focus [cyan]{focus.name}[/]" if focus else "")
        )


def _print_config(config: FresherConfig) -> None:
    console.print("[bold]Loop:[/]")
    console.print(f"  Mode:              {config.fresher.mode}")
    console.print(f"  Model:             {config.fresher.model}")
    console.print(f"  Max iterations:    {config.fresher.max_iterations or 'unlimited'}")
    console.print(f"  Max turns:         {config.fresher.max_turns}")
    console.print(f"  Smart termination: {config.fresher.smart_termination}")
    console.print(f"\n[bold]Hooks:[/] {'enabled' if config.hooks.enabled else 'disabled'} "
                  f"(timeout {config.hooks.timeout}s)")


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg).rstrip())}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg).rstrip())}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
