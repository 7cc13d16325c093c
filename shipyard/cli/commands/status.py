"""``shipyard status RUN_ID`` and ``shipyard runs``: read-only run views."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from shipyard.cli.common import DEFAULT_CONFIG, existing_ledger, fail, stage_definitions
from shipyard.core.errors import RunNotFoundError
from shipyard.monitor.projection import RunProjection
from shipyard.monitor.renderer import RunRenderer

console = Console()


def status_cmd(
    run_id: str = typer.Argument(..., help="The run to show."),
    live: bool = typer.Option(
        False, "--live", "-L", help="Refresh until the run is terminal (Ctrl+C to exit)."
    ),
    path: Path = typer.Option(
        DEFAULT_CONFIG, "--config", "-c", help="Pipeline config, for stage names."
    ),
    ledger_db: Path = typer.Option(
        None, "--ledger", "-l", help="Ledger database (defaults to settings)."
    ),
) -> None:
    """Show a run's status and per-stage results."""
    projection = RunProjection(existing_ledger(ledger_db))
    renderer = RunRenderer(console=console)
    definitions = stage_definitions(path)
    try:
        snapshot = projection.snapshot(run_id, definitions)
    except RunNotFoundError as exc:
        raise fail(str(exc)) from exc

    if live and not snapshot.run.is_terminal:
        renderer.render_live(run_id, projection, definitions)
    else:
        renderer.print_snapshot(snapshot)


def runs_cmd(
    pipeline_id: str = typer.Option(None, "--pipeline", "-p", help="Only this pipeline."),
    limit: int = typer.Option(20, "--limit", "-n", help="Show the newest N runs."),
    ledger_db: Path = typer.Option(
        None, "--ledger", "-l", help="Ledger database (defaults to settings)."
    ),
) -> None:
    """List runs, newest last."""
    runs = RunProjection(existing_ledger(ledger_db)).list_runs(pipeline_id)
    if not runs:
        console.print("[dim]No runs recorded.[/dim]")
        return
    console.print(RunRenderer(console=console).render_runs(runs[-limit:]))
