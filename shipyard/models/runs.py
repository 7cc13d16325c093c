"""Pipeline run models: one execution attempt and the results it produced."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from shipyard.models.stages import FailureKind, StageStatus


class RunStatus(str, Enum):
    """Strict status model for a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


TERMINAL_RUN_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED}
)

# Valid status transitions, enforced by RunStateMachine.
# Terminal statuses have no outgoing transitions.
VALID_RUN_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.ABORTED},
    RunStatus.RUNNING: {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED},
    RunStatus.SUCCEEDED: set(),
    RunStatus.FAILED: set(),
    RunStatus.ABORTED: set(),
}


class StageResult(BaseModel):
    """Outcome of one stage within one run.  Written once, never updated."""

    model_config = ConfigDict(frozen=True)

    stage: str
    status: StageStatus
    exit_code: int | None = None
    failure_kind: FailureKind | None = None
    error: str | None = None
    attempts: int = 1
    output_log: str = ""  # path of the append-only output log
    outputs: dict[str, Any] = {}  # visible downstream only once SUCCEEDED
    started_at: datetime
    finished_at: datetime

    @property
    def succeeded(self) -> bool:
        return self.status == StageStatus.SUCCEEDED

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


class PipelineRun(BaseModel):
    """A point-in-time view of a run, rebuilt from the ledger.

    Only the RunCoordinator mutates a run (by appending to the ledger);
    this model is never persisted directly.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    pipeline_id: str
    revision: str
    sequence: int
    status: RunStatus = RunStatus.PENDING
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    stage_results: list[StageResult] = []
    failed_stage: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def succeeded_stages(self) -> set[str]:
        return {r.stage for r in self.stage_results if r.succeeded}

    def result_for(self, stage: str) -> StageResult | None:
        for result in self.stage_results:
            if result.stage == stage:
                return result
        return None
