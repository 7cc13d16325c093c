"""``shipyard trigger REVISION``: queue a run, optionally driving it to the end."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from shipyard.cli.common import DEFAULT_CONFIG, coordinator
from shipyard.monitor.renderer import RunRenderer

console = Console()


def trigger_cmd(
    revision: str = typer.Argument(..., help="Source revision (commit hash) to build."),
    path: Path = typer.Option(
        DEFAULT_CONFIG, "--config", "-c", help="Pipeline config."
    ),
    wait: bool = typer.Option(
        False, "--wait", "-w", help="Execute queued runs now and wait for this one."
    ),
) -> None:
    """Trigger a pipeline run for REVISION.

    Without --wait the run is only queued as pending; ``shipyard resume``
    (or another process) executes it.
    """
    engine, config = coordinator(path)
    with engine:
        if wait:
            # Earlier pending runs keep their place ahead of this one
            engine.recover()
        run_id = engine.trigger(config.pipeline_id, revision)
        console.print(f"[bold]Queued[/bold] {run_id} for {config.pipeline_id}@{revision}")
        if not wait:
            return

        engine.run_until_idle()
        renderer = RunRenderer(console=console)
        renderer.print_snapshot(engine.projection.snapshot(run_id, config.stages))
        run = engine.status(run_id)

    if run.status.value != "succeeded":
        raise typer.Exit(code=1)
