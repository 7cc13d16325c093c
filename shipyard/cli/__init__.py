"""Shipyard CLI: Typer-based command-line interface.

Provides the ``shipyard`` command with subcommands for writing and
validating pipeline configs, triggering, inspecting, aborting and
resuming runs, and verifying the run ledger.

All output uses Rich for formatted terminal display.
"""
