"""``shipyard validate``: load a pipeline config and show its stage graph."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from shipyard.cli.common import DEFAULT_CONFIG, fail, pipeline_config
from shipyard.core.errors import ConfigurationError
from shipyard.core.stage_graph import StageGraph

console = Console()


def validate_cmd(
    path: Path = typer.Option(
        DEFAULT_CONFIG, "--config", "-c", help="Pipeline config to validate."
    ),
) -> None:
    """Validate a pipeline config: schema, predecessors, cycles."""
    config = pipeline_config(path)
    try:
        graph = StageGraph(config.stages)
    except ConfigurationError as exc:
        raise fail(f"{type(exc).__name__}: {exc}") from exc

    table = Table(title=f"Pipeline {config.pipeline_id}", header_style="bold cyan")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Stage", style="cyan")
    table.add_column("Action")
    table.add_column("After")
    table.add_column("Timeout", justify="right")
    table.add_column("Retries", justify="right")

    for i, name in enumerate(graph.names):
        definition = graph.get(name)
        table.add_row(
            str(i),
            definition.label,
            definition.action.kind,
            ", ".join(definition.predecessors) or "[dim]-[/dim]",
            f"{definition.timeout:g}s",
            str(definition.retries),
        )

    console.print(table)
    if config.checkout_stage and config.checkout_stage not in graph:
        console.print(
            f"[yellow]No stage named {config.checkout_stage!r}; "
            "runs enter 'running' as soon as they are admitted.[/yellow]"
        )
    console.print(f"[green]{path} is valid ({len(graph)} stages).[/green]")
