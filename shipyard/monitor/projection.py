"""RunProjection: pure read-only view over the RunLedger.

Run status is a PROJECTION of the Run Ledger.  Every call re-reads from
the ledger; RunProjection never maintains its own state.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from shipyard.core.errors import LedgerIntegrityError, RunNotFoundError
from shipyard.core.run_ledger import RunLedger
from shipyard.models.ledger import EntryKind, LedgerEntry
from shipyard.models.runs import PipelineRun, RunStatus, StageResult
from shipyard.models.stages import StageDefinition

NOT_STARTED = "not_started"


class StageRow(BaseModel):
    """Point-in-time status of one stage of a run, for display."""

    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    state: str = NOT_STARTED  # a StageStatus value or "not_started"
    attempts: int = 0
    duration_seconds: float | None = None
    error: str | None = None


class RunSnapshot(BaseModel):
    """A frozen snapshot of one run plus its per-stage rows."""

    model_config = ConfigDict(frozen=True)

    run: PipelineRun
    stages: list[StageRow] = []
    chain_valid: bool = True
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.stages if s.state == "succeeded")

    @property
    def total_stages(self) -> int:
        return len(self.stages)


class RunProjection:
    """Rebuilds PipelineRun views from the ledger.

    Parameters
    ----------
    ledger:
        The RunLedger to project from.
    """

    def __init__(self, ledger: RunLedger) -> None:
        self._ledger = ledger

    def load(self, run_id: str) -> PipelineRun:
        """Replay a run's ledger entries into a PipelineRun."""
        record = self._ledger.get_run_record(run_id)
        if record is None:
            raise RunNotFoundError(f"Unknown run: {run_id}")
        return self._replay(record, self._ledger.get_run_entries(run_id))

    def list_runs(self, pipeline_id: str | None = None) -> list[PipelineRun]:
        """All runs in trigger order, optionally for one pipeline."""
        return [
            self._replay(record, self._ledger.get_run_entries(record.run_id))
            for record in self._ledger.list_run_records(pipeline_id)
        ]

    def snapshot(
        self,
        run_id: str,
        stage_definitions: list[StageDefinition] | None = None,
    ) -> RunSnapshot:
        """A run plus one row per stage, including stages not yet started.

        Without *stage_definitions* only stages that have a result are listed.
        """
        run = self.load(run_id)
        rows: list[StageRow] = []
        seen: set[str] = set()
        for definition in stage_definitions or []:
            rows.append(self._row(definition.name, definition.label, run.result_for(definition.name)))
            seen.add(definition.name)
        for result in run.stage_results:
            if result.stage not in seen:
                rows.append(self._row(result.stage, result.stage, result))

        try:
            chain_valid = self._ledger.verify_chain(run_id)
        except LedgerIntegrityError:
            chain_valid = False

        return RunSnapshot(run=run, stages=rows, chain_valid=chain_valid)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row(name: str, display_name: str, result: StageResult | None) -> StageRow:
        if result is None:
            return StageRow(name=name, display_name=display_name)
        return StageRow(
            name=name,
            display_name=display_name,
            state=result.status.value,
            attempts=result.attempts,
            duration_seconds=result.duration_seconds,
            error=result.error,
        )

    @staticmethod
    def _replay(record, entries: list[LedgerEntry]) -> PipelineRun:
        status = RunStatus.PENDING
        started_at = finished_at = None
        failed_stage = error = None
        results: list[StageResult] = []

        for entry in entries:
            if entry.kind == EntryKind.STAGE_RESULT:
                results.append(StageResult.model_validate(entry.payload))
                continue
            if "->" not in entry.transition:
                continue
            status = RunStatus(entry.transition.split("->", 1)[1])
            if status == RunStatus.RUNNING:
                started_at = entry.timestamp_utc
            elif status.is_terminal:
                finished_at = entry.timestamp_utc
                failed_stage = entry.payload.get("failed_stage")
                error = entry.payload.get("error") or entry.payload.get("reason")

        return PipelineRun(
            run_id=record.run_id,
            pipeline_id=record.pipeline_id,
            revision=record.revision,
            sequence=record.sequence,
            status=status,
            created_at=record.created_at,
            started_at=started_at,
            finished_at=finished_at,
            stage_results=results,
            failed_stage=failed_stage,
            error=error,
        )
