"""Shipyard: pipeline execution core for build, publish and deploy.

A run moves a source revision through a graph of stages (checkout, test,
build, push, update-manifest by default):
  - Stage Executor runs one stage with timeout, retries and secret redaction
  - Stage Graph validates the DAG and offers ready stages
  - Run Coordinator admits one run per pipeline and records every
    transition in a hash-chained SQLite ledger
  - Artifact Publisher pushes content-addressed images, then moves tags
  - Manifest Mutator rewrites one image reference and pushes it once
"""

__version__ = "0.1.0"
__description__ = "Pipeline execution core: stage graph, run ledger, publish and deploy"

from shipyard.core.coordinator import RunCoordinator
from shipyard.monitor.projection import RunProjection
from shipyard.cli.app import app as cli

__all__ = ["RunCoordinator", "RunProjection", "cli", "__version__"]
