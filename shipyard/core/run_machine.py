"""Deterministic run status machine.

Enforces:
- Valid status transitions only (VALID_RUN_TRANSITIONS table)
- Every transition and every stage result recorded in the Run Ledger
- Current status is always re-read from the ledger, so a transition made
  by another process (for example an operator abort) is observed
- The status check and the append happen in one ledger transaction, so two
  processes can never both record a move out of the same status
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from shipyard.core.errors import InvalidTransitionError, RunNotFoundError, StaleStatusError
from shipyard.core.run_ledger import RunLedger
from shipyard.models.ledger import EntryKind, LedgerEntry, RunRecord
from shipyard.models.runs import VALID_RUN_TRANSITIONS, RunStatus, StageResult

logger = logging.getLogger(__name__)

_CREATED = "new"

_STALE_RETRIES = 3


class RunStateMachine:
    """Records run lifecycle events in the ledger.

    Parameters
    ----------
    ledger:
        The Run Ledger to record transitions into.
    """

    def __init__(self, ledger: RunLedger) -> None:
        self._ledger = ledger
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, pipeline_id: str, revision: str) -> RunRecord:
        """Register a new run and record it as PENDING."""
        record = self._ledger.register_run(pipeline_id, revision)
        self._ledger.append(
            LedgerEntry(
                run_id=record.run_id,
                transition=f"{_CREATED}->{RunStatus.PENDING.value}",
                payload={"pipeline_id": pipeline_id, "revision": revision},
            )
        )
        logger.info("Run %s created for %s@%s", record.run_id, pipeline_id, revision)
        return record

    def current_status(self, run_id: str) -> RunStatus:
        """Return the latest recorded status of a run."""
        status: RunStatus | None = None
        for entry in self._ledger.get_run_entries(run_id):
            if entry.kind == EntryKind.TRANSITION and "->" in entry.transition:
                status = RunStatus(entry.transition.split("->", 1)[1])
        if status is None:
            raise RunNotFoundError(f"Unknown run: {run_id}")
        return status

    def transition(
        self,
        run_id: str,
        target: RunStatus,
        payload: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Move a run to *target*, recording the transition in the ledger.

        Raises ``InvalidTransitionError`` if the move is not allowed from
        the run's current status.
        """
        with self._lock:
            for _ in range(_STALE_RETRIES):
                current = self.current_status(run_id)
                allowed = VALID_RUN_TRANSITIONS.get(current, set())
                if target not in allowed:
                    raise InvalidTransitionError(
                        f"Cannot transition {run_id} from {current.value} to {target.value}. "
                        f"Allowed: {sorted(s.value for s in allowed)}"
                    )
                try:
                    entry = self._ledger.append(
                        LedgerEntry(
                            run_id=run_id,
                            transition=f"{current.value}->{target.value}",
                            payload=payload or {},
                        ),
                        expect_status=current.value,
                    )
                except StaleStatusError:
                    # Another process moved the run; re-check against the new status
                    continue
                break
            else:
                raise StaleStatusError(f"{run_id} kept changing status; gave up on {target.value}")
        logger.info("Run %s: %s -> %s", run_id, current.value, target.value)
        return entry

    def try_transition(
        self,
        run_id: str,
        target: RunStatus,
        payload: dict[str, Any] | None = None,
    ) -> bool:
        """Like ``transition`` but returns False instead of raising.

        Used where a concurrent abort may already have ended the run.
        """
        try:
            self.transition(run_id, target, payload)
        except InvalidTransitionError as exc:
            logger.info("Run %s: skipped transition to %s (%s)", run_id, target.value, exc)
            return False
        return True

    def record_stage_result(self, run_id: str, result: StageResult) -> LedgerEntry:
        """Append a stage result.  A stage is recorded at most once per run."""
        return self._ledger.append(
            LedgerEntry(
                run_id=run_id,
                subject=result.stage,
                kind=EntryKind.STAGE_RESULT,
                payload=result.model_dump(mode="json"),
            )
        )
