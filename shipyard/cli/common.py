"""Helpers shared by the CLI commands: logging, settings, config loading."""

from __future__ import annotations

import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from shipyard.config import ShipyardSettings, load_settings
from shipyard.core.coordinator import RunCoordinator
from shipyard.core.errors import ConfigurationError
from shipyard.core.run_ledger import RunLedger
from shipyard.models.config import PipelineConfig, load_pipeline_config

DEFAULT_CONFIG = Path("shipyard.toml")

err_console = Console(stderr=True)


def configure_logging(level: str) -> None:
    """Route stdlib logging through Rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def fail(message: str) -> typer.Exit:
    """Print an error and return the Exit to raise."""
    err_console.print(f"[bold red]Error:[/bold red] {message}")
    return typer.Exit(code=1)


def settings() -> ShipyardSettings:
    try:
        return load_settings()
    except ValueError as exc:
        raise fail(f"Invalid settings: {exc}") from exc


def pipeline_config(path: Path) -> PipelineConfig:
    try:
        return load_pipeline_config(path)
    except ConfigurationError as exc:
        raise fail(str(exc)) from exc


def coordinator(path: Path) -> tuple[RunCoordinator, PipelineConfig]:
    """Load *path* and build a coordinator serving that one pipeline."""
    config = pipeline_config(path)
    try:
        return RunCoordinator([config], settings()), config
    except ConfigurationError as exc:
        raise fail(str(exc)) from exc


def existing_ledger(ledger_path: Path | None = None) -> RunLedger:
    """Open the ledger for read-mostly commands; it must already exist."""
    path = ledger_path or settings().resolved_ledger_path
    if not path.exists():
        err_console.print(f"[bold red]Ledger not found:[/bold red] {path}")
        err_console.print("[dim]Trigger a run first with: shipyard trigger REVISION[/dim]")
        raise typer.Exit(code=1)
    return RunLedger(path)


def stage_definitions(path: Path):
    """Stage definitions for display, or None when no config is available."""
    if not path.exists():
        return None
    try:
        return load_pipeline_config(path).stages
    except ConfigurationError:
        return None
