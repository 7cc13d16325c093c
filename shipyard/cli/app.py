"""Main Typer application: imports and registers all CLI commands.

Entry point: ``shipyard`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from shipyard.cli.commands.abort import abort_cmd
from shipyard.cli.commands.init import init_cmd
from shipyard.cli.commands.resume import resume_cmd
from shipyard.cli.commands.status import runs_cmd, status_cmd
from shipyard.cli.commands.trigger import trigger_cmd
from shipyard.cli.commands.validate import validate_cmd
from shipyard.cli.commands.verify import verify_cmd
from shipyard.cli.common import configure_logging, settings

app = typer.Typer(
    name="shipyard",
    help="Shipyard: build, publish and deploy pipelines with an auditable run ledger.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None, "--log-level", help="Override SHIPYARD_LOG_LEVEL for this invocation."
    ),
) -> None:
    """Shipyard pipeline runner."""
    configure_logging(log_level or settings().log_level)


# Register subcommands
app.command(name="init", help="Write a starter shipyard.toml.")(init_cmd)
app.command(name="validate", help="Validate a pipeline config.")(validate_cmd)
app.command(name="trigger", help="Trigger a run for a revision.")(trigger_cmd)
app.command(name="status", help="Show a run's status.")(status_cmd)
app.command(name="runs", help="List recorded runs.")(runs_cmd)
app.command(name="abort", help="Abort a pending or running run.")(abort_cmd)
app.command(name="resume", help="Resume interrupted runs and drain the queue.")(resume_cmd)
app.command(name="verify", help="Verify ledger hash chains.")(verify_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
