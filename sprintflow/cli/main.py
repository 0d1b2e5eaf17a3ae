"""Main CLI entry point using Typer."""

import anyio
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from sprintflow import __version__
from sprintflow.core.config import Settings, get_settings
from sprintflow.core.exceptions import SprintFlowError
from sprintflow.core.logging import configure_logging
from sprintflow.scheduling.models import (
    DecompositionConstraints,
    SprintPlan,
    SprintRequest,
    SprintType,
)

app = typer.Typer(
    name="sprintflow",
    help="Sprintflow - sprint decomposition and parallel task orchestration",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()

STATUS_COLORS = {
    "completed": "green",
    "failed": "red",
    "stalled": "yellow",
    "cancelled": "yellow",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]Sprintflow[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Sprintflow - break work into sprints and run them in parallel.
    """
    configure_logging()


def _build_plan(
    task: str,
    settings: Settings,
    max_sprint_duration: float | None,
    duration: float | None,
    phases: list[SprintType] | None,
) -> SprintPlan:
    from sprintflow.scheduling.decomposer import SprintDecomposer

    title, _, description = task.partition(":")
    request = SprintRequest(
        title=title.strip() or task,
        description=description.strip(),
        estimated_duration=duration,
    )
    constraints = DecompositionConstraints(
        max_sprint_duration=max_sprint_duration,
        phases=phases or None,
    )
    return SprintDecomposer(settings).decompose(request, constraints)


def _render_plan(plan: SprintPlan) -> None:
    critical = set(plan.critical_path)

    table = Table(title=f"Sprint Plan: {plan.title}")
    table.add_column("ID", style="cyan")
    table.add_column("Title", style="bold")
    table.add_column("Type")
    table.add_column("Minutes", justify="right")
    table.add_column("Depends On")
    table.add_column("Depth", justify="right")

    for node in plan.sprints:
        marker = " [red]*[/red]" if node.id in critical else ""
        table.add_row(
            f"{node.id}{marker}",
            node.title,
            node.sprint_type.value,
            f"{node.estimated_duration:g}",
            ", ".join(sorted(node.depends_on)) or "-",
            str(node.depth),
        )

    console.print(table)
    console.print(
        f"[dim]Complexity:[/dim] {plan.complexity.level.value} "
        f"(score {plan.complexity.score:.2f})"
    )
    console.print(
        f"[dim]Critical path[/dim] ({plan.graph.critical_path_duration:g} min): "
        f"{' -> '.join(plan.critical_path)}"
    )
    for index, layer in enumerate(plan.graph.get_parallel_layers()):
        console.print(f"[dim]Layer {index}:[/dim] {', '.join(layer)}")
    for warning in plan.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


@app.command()
def plan(
    task: str = typer.Argument(..., help="Task as 'title' or 'title: description'"),
    max_sprint_duration: float | None = typer.Option(
        None,
        "--max-sprint-duration",
        "-m",
        help="Maximum minutes per sprint",
    ),
    duration: float | None = typer.Option(
        None,
        "--duration",
        "-d",
        help="Known total duration in minutes",
    ),
    phase: list[SprintType] | None = typer.Option(
        None,
        "--phase",
        "-p",
        help="Use exactly these phases (repeatable)",
    ),
) -> None:
    """
    Decompose a task into sprints without executing them.

    Example:
        sprintflow plan "Checkout: design, build and test Stripe checkout"
    """
    try:
        sprint_plan = _build_plan(task, get_settings(), max_sprint_duration, duration, phase)
    except SprintFlowError as e:
        console.print(f"[bold red]Planning failed:[/bold red] {e}")
        raise typer.Exit(1) from e

    _render_plan(sprint_plan)


@app.command()
def simulate(
    task: str = typer.Argument(..., help="Task as 'title' or 'title: description'"),
    workers: int = typer.Option(3, "--workers", "-w", min=1, help="Number of simulated workers"),
    failure_rate: float = typer.Option(
        0.0,
        "--failure-rate",
        "-f",
        min=0.0,
        max=1.0,
        help="Probability that a sprint attempt fails",
    ),
    seed: int | None = typer.Option(None, "--seed", "-s", help="Random seed"),
    max_retries: int = typer.Option(3, "--max-retries", "-r", min=1, help="Attempts per sprint"),
    time_scale: float = typer.Option(
        0.001,
        "--time-scale",
        "-t",
        min=0.0,
        help="Seconds of simulated work per sprint minute",
    ),
) -> None:
    """
    Plan a task and run it against simulated workers.

    Example:
        sprintflow simulate "Checkout: build and test checkout" -w 2 -f 0.2 -s 7
    """
    from sprintflow.core.orchestrator import TaskOrchestrator
    from sprintflow.knowledge.store import InMemoryKnowledgeStore
    from sprintflow.scheduling.decomposer import SprintDecomposer
    from sprintflow.scheduling.executor import SimulatedSprintExecutor
    from sprintflow.scheduling.workers import WorkerPool

    settings = get_settings().model_copy(
        update={
            "max_retries": max_retries,
            # Timeouts scale with simulated time
            "time_unit_seconds": max(time_scale, 0.01),
            "store_retry_delay": 0.0,
        }
    )

    try:
        sprint_plan = _build_plan(task, settings, None, None, None)
    except SprintFlowError as e:
        console.print(f"[bold red]Planning failed:[/bold red] {e}")
        raise typer.Exit(1) from e

    pool = WorkerPool()
    templates = list(SprintDecomposer.SPRINT_TEMPLATES.values())
    for index in range(workers):
        skills = templates[index % len(templates)]["skills"]
        pool.register(f"worker-{index + 1}", skills=skills)

    console.print(
        Panel(
            f"[bold]{sprint_plan.total_sprints}[/bold] sprints, "
            f"[bold]{workers}[/bold] workers, failure rate {failure_rate:.0%}",
            title=f"[bold blue]Simulating {sprint_plan.title}[/bold blue]",
            border_style="blue",
        )
    )

    async def execute() -> None:
        orchestrator = TaskOrchestrator(
            sprint_plan.graph,
            pool,
            SimulatedSprintExecutor(time_scale=time_scale, failure_rate=failure_rate, seed=seed),
            settings=settings,
            store=InMemoryKnowledgeStore(),
        )
        report = await orchestrator.run()

        color = STATUS_COLORS.get(report.status.value, "white")
        console.print(f"\nStatus: [{color}]{report.status.value.upper()}[/{color}]")
        console.print(f"Completed: {', '.join(report.completed) or '-'}")
        if report.abandoned:
            console.print(f"[red]Abandoned:[/red] {', '.join(report.abandoned)}")
        if report.blocked:
            console.print(f"[yellow]Blocked:[/yellow] {', '.join(report.blocked)}")

        metrics = report.metrics
        console.print(
            f"[dim]Failed attempts: {metrics.failed_attempts}, "
            f"average duration: {metrics.average_duration:.1f} min, "
            f"parallelization: {metrics.parallelization_efficiency:.0f}%[/dim]"
        )

        if not report.succeeded:
            raise typer.Exit(1)

    try:
        anyio.run(execute)
    except SprintFlowError as e:
        console.print(f"[bold red]Simulation failed:[/bold red] {e}")
        raise typer.Exit(1) from e


if __name__ == "__main__":
    app()
