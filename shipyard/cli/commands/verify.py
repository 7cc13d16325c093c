"""``shipyard verify [RUN_ID]``: check ledger hash chains."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from shipyard.cli.common import existing_ledger, fail
from shipyard.core.errors import LedgerIntegrityError
from shipyard.monitor.renderer import RunRenderer

console = Console()


def verify_cmd(
    run_id: str = typer.Argument(None, help="One run; all runs when omitted."),
    ledger_db: Path = typer.Option(
        None, "--ledger", "-l", help="Ledger database (defaults to settings)."
    ),
) -> None:
    """Verify the hash chain of one run or of every run in the ledger."""
    ledger = existing_ledger(ledger_db)
    renderer = RunRenderer(console=console)
    if run_id and ledger.get_run_record(run_id) is None:
        raise fail(f"Unknown run: {run_id}")
    run_ids = [run_id] if run_id else [r.run_id for r in ledger.list_run_records()]

    broken = 0
    for rid in run_ids:
        try:
            valid = ledger.verify_chain(rid)
        except LedgerIntegrityError as exc:
            console.print(f"[red]{exc}[/red]")
            valid = False
        renderer.print_chain_verification(rid, valid)
        broken += not valid

    if broken:
        raise typer.Exit(code=1)
