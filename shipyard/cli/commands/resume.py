"""``shipyard resume``: recover interrupted runs and drain the queue."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from shipyard.cli.common import DEFAULT_CONFIG, coordinator
from shipyard.monitor.renderer import RunRenderer

console = Console()


def resume_cmd(
    path: Path = typer.Option(
        DEFAULT_CONFIG, "--config", "-c", help="Pipeline config."
    ),
) -> None:
    """Resume every non-terminal run, running ones first.

    Stages whose result is already ``succeeded`` are not executed again.
    Runs another shipyard process is still driving are skipped until its
    lease (``SHIPYARD_LEASE_SECONDS``) runs out.
    """
    engine, _ = coordinator(path)
    with engine:
        recovered = engine.recover()
        if not recovered:
            console.print("[dim]Nothing to resume.[/dim]")
            return
        executed = engine.run_until_idle()
        runs = [engine.status(run_id) for run_id in executed]

    console.print(RunRenderer(console=console).render_runs(runs))
    if any(run.status.value != "succeeded" for run in runs):
        raise typer.Exit(code=1)
