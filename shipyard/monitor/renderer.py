"""Rich terminal renderer for run status.

Color scheme
------------
- green     : succeeded
- red       : failed
- yellow    : running
- magenta   : aborted
- dim       : pending / not started
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from shipyard.models.runs import PipelineRun

if TYPE_CHECKING:
    from shipyard.monitor.projection import RunProjection, RunSnapshot
    from shipyard.models.stages import StageDefinition


# ---------------------------------------------------------------------------
# Status colours
# ---------------------------------------------------------------------------

_STATE_STYLES: dict[str, str] = {
    "succeeded": "bold green",
    "failed": "bold red",
    "running": "bold yellow",
    "aborted": "bold magenta",
    "pending": "dim",
    "not_started": "dim",
}

_STATE_LABELS: dict[str, str] = {
    "succeeded": "[green]SUCCEEDED[/green]",
    "failed": "[bold red]FAILED[/bold red]",
    "running": "[yellow]RUNNING[/yellow]",
    "aborted": "[magenta]ABORTED[/magenta]",
    "pending": "[dim]PENDING[/dim]",
    "not_started": "[dim]NOT STARTED[/dim]",
}


def state_label(state: str) -> str:
    return _STATE_LABELS.get(state, state.upper())


class RunRenderer:
    """Renders run snapshots and run lists as Rich renderables.

    Parameters
    ----------
    console:
        Where output goes; defaults to a fresh ``Console()``.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Single run
    # ------------------------------------------------------------------

    def render_snapshot(self, snapshot: RunSnapshot) -> Panel:
        """A Panel with the stage table and a one-line summary."""
        run = snapshot.run
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Stage", min_width=20)
        table.add_column("State", min_width=12, justify="center")
        table.add_column("Attempts", justify="right", width=9)
        table.add_column("Duration", justify="right", width=10)
        table.add_column("Details", min_width=20)

        for i, stage in enumerate(snapshot.stages):
            style = _STATE_STYLES.get(stage.state, "")
            duration = (
                f"{stage.duration_seconds:.1f}s" if stage.duration_seconds is not None else "-"
            )
            table.add_row(
                str(i),
                f"[{style}]{stage.display_name}[/{style}]" if style else stage.display_name,
                state_label(stage.state),
                str(stage.attempts) if stage.attempts else "[dim]0[/dim]",
                duration,
                f"[red]{stage.error}[/red]" if stage.error else "[dim]-[/dim]",
            )

        chain = "[green]valid[/green]" if snapshot.chain_valid else "[bold red]BROKEN[/bold red]"
        summary_parts = [
            f"[bold]Run:[/bold] {run.run_id}",
            f"[bold]Pipeline:[/bold] {run.pipeline_id}",
            f"[bold]Revision:[/bold] {run.revision[:12]}",
            f"[bold]Status:[/bold] {state_label(run.status.value)}",
            f"[bold]Progress:[/bold] {snapshot.completed_count}/{snapshot.total_stages}",
            f"[bold]Chain:[/bold] {chain}",
        ]
        if run.failed_stage:
            summary_parts.append(f"[bold red]Failed at:[/bold red] {run.failed_stage}")

        return Panel(
            Group(table, Text(""), Text.from_markup("  |  ".join(summary_parts))),
            title="[bold]Shipyard Run[/bold]",
            subtitle=f"Last updated: {snapshot.last_updated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="blue",
            padding=(1, 2),
        )

    def print_snapshot(self, snapshot: RunSnapshot) -> None:
        self.console.print(self.render_snapshot(snapshot))

    def render_live(
        self,
        run_id: str,
        projection: RunProjection,
        stage_definitions: list[StageDefinition] | None = None,
        *,
        refresh_hz: float = 2.0,
    ) -> None:
        """Re-render until the run is terminal or Ctrl+C."""
        interval = 1.0 / max(refresh_hz, 0.1)
        with Live(console=self.console, refresh_per_second=refresh_hz) as live:
            try:
                while True:
                    snapshot = projection.snapshot(run_id, stage_definitions)
                    live.update(self.render_snapshot(snapshot))
                    if snapshot.run.is_terminal:
                        return
                    time.sleep(interval)
            except KeyboardInterrupt:
                live.update(self.render_snapshot(projection.snapshot(run_id, stage_definitions)))

    # ------------------------------------------------------------------
    # Run list
    # ------------------------------------------------------------------

    def render_runs(self, runs: list[PipelineRun]) -> Table:
        table = Table(title="Pipeline Runs", header_style="bold cyan")
        table.add_column("Run", style="cyan")
        table.add_column("Pipeline")
        table.add_column("Revision")
        table.add_column("Status", justify="center")
        table.add_column("Stages", justify="right")
        table.add_column("Created")
        for run in runs:
            table.add_row(
                run.run_id,
                run.pipeline_id,
                run.revision[:12],
                state_label(run.status.value),
                str(len(run.succeeded_stages)),
                run.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
        return table

    def print_chain_verification(self, run_id: str, valid: bool) -> None:
        if valid:
            self.console.print(f"[green]Hash chain for run {run_id} is valid.[/green]")
        else:
            self.console.print(f"[bold red]Hash chain for run {run_id} is BROKEN![/bold red]")
