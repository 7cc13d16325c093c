"""``shipyard abort RUN_ID``: cancel a pending or running run."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from shipyard.cli.common import existing_ledger, fail
from shipyard.core.errors import InvalidTransitionError, RunNotFoundError
from shipyard.core.run_machine import RunStateMachine
from shipyard.models.runs import RunStatus

console = Console()


def abort_cmd(
    run_id: str = typer.Argument(..., help="The run to abort."),
    reason: str = typer.Option(
        "aborted by operator", "--reason", "-r", help="Recorded with the transition."
    ),
    ledger_db: Path = typer.Option(
        None, "--ledger", "-l", help="Ledger database (defaults to settings)."
    ),
) -> None:
    """Abort a run.

    The process executing the run sees the transition before it schedules
    its next stage; in-flight stages get the abort grace period.
    """
    machine = RunStateMachine(existing_ledger(ledger_db))
    try:
        machine.transition(run_id, RunStatus.ABORTED, {"reason": reason})
    except (RunNotFoundError, InvalidTransitionError) as exc:
        raise fail(str(exc)) from exc
    console.print(f"[magenta]Run {run_id} aborted.[/magenta]")
