"""Shipyard run status: read-only projection over the Run Ledger.

Modules
-------
projection
    ``RunProjection`` replays ledger entries into ``PipelineRun`` views and
    ``RunSnapshot`` display models.
renderer
    ``RunRenderer`` turns snapshots and run lists into Rich renderables,
    including continuous ``Rich.Live`` mode.
"""
