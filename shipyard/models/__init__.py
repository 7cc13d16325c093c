"""Shipyard data models: all Pydantic v2, frozen where archived or static."""

from shipyard.models.artifacts import ArtifactReference, BuildOutput, ManifestUpdate
from shipyard.models.config import (
    ManifestRepoConfig,
    PipelineConfig,
    RegistryConfig,
    load_pipeline_config,
)
from shipyard.models.ledger import EntryKind, LedgerEntry, RunRecord
from shipyard.models.runs import (
    TERMINAL_RUN_STATUSES,
    VALID_RUN_TRANSITIONS,
    PipelineRun,
    RunStatus,
    StageResult,
)
from shipyard.models.stages import (
    DEFAULT_STAGE_DEFINITIONS,
    CommandSpec,
    FailureKind,
    HandlerSpec,
    ManifestSpec,
    PublishSpec,
    StageDefinition,
    StageStatus,
)

__all__ = [
    # stages
    "StageStatus",
    "FailureKind",
    "CommandSpec",
    "HandlerSpec",
    "PublishSpec",
    "ManifestSpec",
    "StageDefinition",
    "DEFAULT_STAGE_DEFINITIONS",
    # runs
    "RunStatus",
    "TERMINAL_RUN_STATUSES",
    "VALID_RUN_TRANSITIONS",
    "StageResult",
    "PipelineRun",
    # artifacts
    "BuildOutput",
    "ArtifactReference",
    "ManifestUpdate",
    # ledger
    "EntryKind",
    "LedgerEntry",
    "RunRecord",
    # config
    "ManifestRepoConfig",
    "RegistryConfig",
    "PipelineConfig",
    "load_pipeline_config",
]
