"""
CLI commands for specflow.

Provides the `specflow` command-line interface for progress, recommendations,
assignment bookkeeping, validation and the long-running watch service.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from config.loader import ConfigurationLoader
from core.errors import WorkflowError
from core.models.config import GlobalSettings, ProjectConfig
from core.models.state import Conflict
from core.scheduling.scheduler import SchedulingConstraints
from core.sync.engine import WorkflowSyncEngine

from . import __version__

console = Console()

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(settings: GlobalSettings, verbose: bool = False) -> None:
    """Configure root logging from global settings"""
    handlers = [logging.StreamHandler()]
    log_file = settings.get_log_file()
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, settings.log_level),
        format=LOG_FORMAT,
        handlers=handlers
    )


def _load_config(project: Path) -> ProjectConfig:
    try:
        return ConfigurationLoader().load_project_config(project)
    except WorkflowError as e:
        console.print(f"[red]❌ {e.message}[/red]")
        sys.exit(1)


async def _prepared(project: Path) -> WorkflowSyncEngine:
    # Must run inside the event loop that drives the engine
    engine = WorkflowSyncEngine(_load_config(project))
    await engine.initialize()
    return engine


def _fail(result) -> None:
    console.print(f"[red]❌ {result.error_code}: {result.error}[/red]")
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="specflow")
@click.option(
    '--project', '-p',
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path.cwd,
    help='Project root (default: current directory)'
)
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def main(ctx: click.Context, project: Path, verbose: bool):
    """
    specflow CLI.

    Keep specification documents and workflow state consistent, and decide
    what to work on next.
    """
    configure_logging(GlobalSettings(), verbose)
    ctx.obj = {"project": project}


@main.command()
@click.option('--force', '-f', is_flag=True, help='Overwrite existing configuration')
@click.pass_context
def init(ctx: click.Context, force: bool):
    """Create the configuration file and directory layout."""
    project = ctx.obj["project"]
    try:
        config = ConfigurationLoader().setup_project(project, overwrite=force)
    except WorkflowError as e:
        console.print(f"[red]❌ {e.message}[/red]")
        sys.exit(1)
    console.print(f"[green]✅ Initialized {config.name}[/green]")
    console.print(f"[dim]Documents: {config.documents_dir}[/dim]")
    console.print(f"[dim]State: {config.state_dir}[/dim]")


@main.command()
@click.pass_context
def status(ctx: click.Context):
    """Show project progress per specification."""
    asyncio.run(_status(ctx.obj["project"]))


async def _status(project: Path) -> None:
    engine = await _prepared(project)
    result = await engine.tracker.get_project_progress()
    if not result.success:
        _fail(result)
    progress = result.data

    table = Table(title=f"{engine.config.name} progress")
    table.add_column("Spec", style="cyan", no_wrap=True)
    table.add_column("Status", style="white")
    table.add_column("Phase", style="dim")
    table.add_column("Done", justify="right")
    table.add_column("%", justify="right")

    for spec_id, spec in sorted(progress.by_spec.items()):
        table.add_row(
            spec_id,
            spec.status or "-",
            spec.phase or "-",
            f"{spec.completed}/{spec.total} {spec.item_type}",
            f"{spec.percentage}%"
        )
    console.print(table)
    console.print(
        f"\n[bold]Overall:[/bold] {progress.completed}/{progress.total} ({progress.percentage}%)"
    )

    assignments = await engine.tracker.get_current_assignments()
    if assignments.success and assignments.data.total:
        console.print(f"[blue]{assignments.data.total} open assignment(s)[/blue]")
        for load in assignments.data.workload.values():
            console.print(f"   • {load.worker}: {', '.join(load.tasks)}")


@main.command(name="next")
@click.option('--capability', '-c', help='Worker capability (agent type)')
@click.option('--worker', '-w', help='Worker identity for the capacity check')
@click.option('--phase', help='Preferred phase')
@click.option('--count', '-n', default=1, show_default=True, help='Number of recommendations')
@click.pass_context
def next_task(ctx: click.Context, capability: Optional[str], worker: Optional[str],
              phase: Optional[str], count: int):
    """Recommend the next task(s) to work on."""
    asyncio.run(_next(ctx.obj["project"], capability, worker, phase, count))


async def _next(project: Path, capability: Optional[str], worker: Optional[str],
                phase: Optional[str], count: int) -> None:
    engine = await _prepared(project)
    constraints = SchedulingConstraints(worker=worker, phase=phase)

    if count > 1:
        recommendations = await engine.scheduler.get_batch_recommendations(count, capability, constraints)
        reason = None if recommendations else "no candidates"
    else:
        decision = await engine.scheduler.get_next_task(capability, constraints)
        recommendations = [decision.recommendation] if decision.found else []
        reason = decision.reason

    if not recommendations:
        console.print(f"[yellow]⚠️  No recommendation: {reason}[/yellow]")
        return

    table = Table(title="Recommended tasks")
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Agent", style="dim")
    table.add_column("Priority")
    table.add_column("Score", justify="right")
    for rec in recommendations:
        table.add_row(rec.key, rec.title, rec.agent_type or "any", rec.priority or "-", f"{rec.score:g}")
    console.print(table)


@main.command()
@click.argument('spec_id')
@click.argument('task_id')
@click.argument('worker')
@click.option('--hours', type=float, help='Estimated hours (default: task estimate)')
@click.option('--notes', help='Assignment notes')
@click.option('--force', is_flag=True, help='Skip the dependency check')
@click.pass_context
def assign(ctx: click.Context, spec_id: str, task_id: str, worker: str,
           hours: Optional[float], notes: Optional[str], force: bool):
    """Assign SPEC_ID/TASK_ID to WORKER."""
    asyncio.run(_assign(ctx.obj["project"], spec_id, task_id, worker, hours, notes, force))


async def _assign(project: Path, spec_id: str, task_id: str, worker: str,
                  hours: Optional[float], notes: Optional[str], force: bool) -> None:
    engine = await _prepared(project)
    result = await engine.tracker.assign_task(
        spec_id, task_id, worker, estimated_hours=hours, notes=notes, force=force
    )
    if not result.success:
        _fail(result)
    console.print(f"[green]✅ {spec_id}/{task_id} assigned to {worker}[/green]")


@main.command()
@click.argument('spec_id')
@click.argument('task_id')
@click.option('--notes', help='Completion notes passed on in the handoff')
@click.pass_context
def complete(ctx: click.Context, spec_id: str, task_id: str, notes: Optional[str]):
    """Complete SPEC_ID/TASK_ID."""
    asyncio.run(_complete(ctx.obj["project"], spec_id, task_id, notes))


async def _complete(project: Path, spec_id: str, task_id: str, notes: Optional[str]) -> None:
    engine = await _prepared(project)
    result = await engine.tracker.complete_task(spec_id, task_id, notes=notes)
    if not result.success:
        _fail(result)
    outcome = result.data
    console.print(
        f"[green]✅ {spec_id}/{task_id} completed in {outcome.record.duration_hours}h[/green]"
    )
    if outcome.handoff is not None:
        console.print(Panel(
            f"{outcome.handoff.reason}\nNext agent: {outcome.handoff.next_agent}",
            title="Handoff ready"
        ))


@main.command()
@click.pass_context
def validate(ctx: click.Context):
    """Check consistency, dependency cycles, handoffs and assignments."""
    asyncio.run(_validate(ctx.obj["project"]))


async def _validate(project: Path) -> None:
    engine = await _prepared(project)
    result = await engine.tracker.validate_state()
    if not result.success:
        _fail(result)
    report = result.data

    if report.is_consistent:
        console.print(f"[green]✅ State is consistent ({len(report.verdicts)} spec(s) checked)[/green]")
    for verdict in report.inconsistent:
        fields = ", ".join(d.path for d in verdict.divergences) or "record without document"
        console.print(
            f"[yellow]⚠️  {verdict.spec_id}: {verdict.status.value} "
            f"(confidence {verdict.confidence:.2f}) {fields}[/yellow]"
        )
    for cycle in report.cycles:
        console.print(f"[red]❌ Dependency cycle: {' -> '.join(cycle)}[/red]")
    for mismatch in report.assignment_mismatches:
        console.print(f"[yellow]⚠️  {mismatch}[/yellow]")
    for handoff in report.stale_handoffs:
        console.print(f"[yellow]⚠️  Stale handoff {handoff.spec_id}: {handoff.from_task} -> {handoff.to_task}[/yellow]")
    for path, error in report.parse_errors.items():
        console.print(f"[red]❌ {path}: {error}[/red]")
    if not report.is_consistent:
        sys.exit(1)


@main.command()
@click.pass_context
def sync(ctx: click.Context):
    """Rebuild every record from its document."""
    asyncio.run(_sync(ctx.obj["project"]))


async def _sync(project: Path) -> None:
    engine = await _prepared(project)
    result = await engine.tracker.sync_from_documents()
    if not result.success:
        _fail(result)
    console.print(f"[green]✅ Rebuilt {result.data} record(s)[/green]")


@main.command()
@click.pass_context
def conflicts(ctx: click.Context):
    """Show the manual queue and how open divergences would be arbitrated (read-only)."""
    asyncio.run(_conflicts(ctx.obj["project"]))


async def _conflicts(project: Path) -> None:
    engine = await _prepared(project)
    queue = engine.arbiter.get_manual_queue()
    queued_specs = {c.verdict.spec_id for c in queue}
    verdicts = [
        v for v in await engine.checker.check_all()
        if not v.is_consistent and v.spec_id not in queued_specs
    ]
    if not queue and not verdicts:
        console.print("[green]✅ No conflicts[/green]")
        return

    if queue:
        queued = Table(title="Awaiting manual resolution")
        queued.add_column("Conflict", style="dim", no_wrap=True)
        queued.add_column("Spec", style="cyan", no_wrap=True)
        queued.add_column("Fields")
        queued.add_column("Urgency", justify="right")
        queued.add_column("Reason")
        for conflict in queue:
            queued.add_row(
                conflict.conflict_id,
                conflict.verdict.spec_id,
                ", ".join(d.path for d in conflict.verdict.divergences) or "orphan record",
                str(engine.arbiter.urgency(conflict)),
                conflict.reasoning or ""
            )
        console.print(queued)

    if not verdicts:
        return

    pending = sorted(
        (Conflict.from_verdict(v) for v in verdicts),
        key=lambda c: -engine.arbiter.urgency(c)
    )
    table = Table(title="Divergences")
    table.add_column("Spec", style="cyan", no_wrap=True)
    table.add_column("Fields")
    table.add_column("Confidence", justify="right")
    table.add_column("Resolution")
    for conflict in pending:
        choice = engine.arbiter.choose(conflict)
        if choice is None:
            resolution = "[red]manual[/red]"
        else:
            strategy, side, _ = choice
            resolution = f"{strategy.value} from {side.value}"
        table.add_row(
            conflict.verdict.spec_id,
            ", ".join(d.path for d in conflict.verdict.divergences) or "orphan record",
            f"{conflict.confidence:.2f}",
            resolution
        )
    console.print(table)


@main.command()
@click.option('--rebuild', is_flag=True, help='Rebuild all records from documents on start')
@click.pass_context
def watch(ctx: click.Context, rebuild: bool):
    """Run the synchronization service until interrupted."""
    config = _load_config(ctx.obj["project"])
    try:
        asyncio.run(_watch(config, rebuild))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")


async def _watch(config: ProjectConfig, rebuild: bool) -> None:
    async with WorkflowSyncEngine(config, rebuild_on_start=rebuild) as engine:
        console.print(f"[blue]👀 Watching {engine.config.name} (Ctrl+C to stop)[/blue]")
        await asyncio.Event().wait()


if __name__ == "__main__":
    main()
