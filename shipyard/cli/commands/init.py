"""``shipyard init``: write a starter ``shipyard.toml``."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from shipyard.cli.common import DEFAULT_CONFIG, settings

console = Console()

SAMPLE_CONFIG = """\
# Shipyard pipeline definition.
pipeline_id = "{pipeline_id}"
image_repository = "{image_repository}"
workdir = "."

[registry]
backend = "local"

[manifest]
backend = "git"
path = "../deploy-manifests"
branch = "main"
remote = "origin"

# Without [[stages]] the default chain is used:
#   checkout -> test -> build -> push -> update-manifest
#
# [[stages]]
# name = "test"
# predecessors = ["checkout"]
# timeout = 900
# action = {{ kind = "command", command = ["python", "-m", "pytest", "-q"] }}
"""


def init_cmd(
    path: Path = typer.Option(
        DEFAULT_CONFIG, "--config", "-c", help="Where to write the pipeline config."
    ),
    pipeline_id: str = typer.Option("app", "--pipeline", "-p", help="Pipeline identifier."),
    image_repository: str = typer.Option(
        "example/app", "--image", "-i", help="Image repository to publish to."
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file."),
) -> None:
    """Write a starter pipeline config and create the state directory."""
    if path.exists() and not force:
        console.print(f"[bold red]{path} already exists.[/bold red] Use --force to overwrite.")
        raise typer.Exit(code=1)

    path.write_text(
        SAMPLE_CONFIG.format(pipeline_id=pipeline_id, image_repository=image_repository),
        encoding="utf-8",
    )
    state_dir = settings().state_dir
    state_dir.mkdir(parents=True, exist_ok=True)

    console.print(
        Panel(
            "\n".join([
                "[bold green]Pipeline config written.[/bold green]",
                "",
                f"[bold]Config:[/bold]     {path}",
                f"[bold]Pipeline:[/bold]   {pipeline_id}",
                f"[bold]Image:[/bold]      {image_repository}",
                f"[bold]State dir:[/bold]  {state_dir}",
                "",
                f"[dim]Next: shipyard validate -c {path}[/dim]",
            ]),
            title="[bold]Shipyard[/bold]",
            border_style="green",
            padding=(1, 2),
        )
    )
