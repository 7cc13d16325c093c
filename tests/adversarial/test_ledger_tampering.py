"""Adversarial tests: ledger tampering and chain integrity.

These tests verify that the Run Ledger detects:
1. Edited payloads (tampered content)
2. Corrupted entry hashes
3. Deleted entries (broken chain links)
4. Retroactive rewrites that keep each row self-consistent
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone

import pytest

from shipyard.core.errors import LedgerIntegrityError
from shipyard.core.hasher import compute_entry_hash
from shipyard.core.run_ledger import RunLedger
from shipyard.core.run_machine import RunStateMachine
from shipyard.models.runs import RunStatus, StageResult
from shipyard.models.stages import StageStatus


def _sql(ledger: RunLedger, statement: str, params: tuple = ()) -> list[tuple]:
    conn = sqlite3.connect(str(ledger.path))
    try:
        rows = conn.execute(statement, params).fetchall()
        conn.commit()
    finally:
        conn.close()
    return rows


class TestLedgerTamperDetection:
    """Direct SQLite manipulation to simulate an attacker with DB access."""

    @pytest.fixture
    def seeded(self, ledger: RunLedger) -> tuple[RunLedger, str]:
        """A run with four entries: created, running, one failed stage, failed."""
        machine = RunStateMachine(ledger)
        run_id = machine.create("web", "abc123").run_id
        machine.transition(run_id, RunStatus.RUNNING)
        now = datetime.now(timezone.utc)
        machine.record_stage_result(
            run_id,
            StageResult(
                stage="test", status=StageStatus.FAILED, error="1 test failed",
                started_at=now, finished_at=now,
            ),
        )
        machine.transition(run_id, RunStatus.FAILED, {"failed_stage": "test"})
        return ledger, run_id

    def test_untampered_chain_is_valid(self, seeded):
        ledger, run_id = seeded
        assert ledger.verify_chain(run_id) is True

    def test_rewritten_stage_outcome_detected(self, seeded):
        """Flip a failed stage to succeeded in place."""
        ledger, run_id = seeded
        (payload_json,) = _sql(
            ledger,
            "SELECT payload_json FROM run_ledger WHERE run_id = ? AND kind = 'stage_result'",
            (run_id,),
        )[0]
        payload = json.loads(payload_json)
        payload["status"] = "succeeded"
        payload["error"] = None
        _sql(
            ledger,
            "UPDATE run_ledger SET payload_json = ? WHERE run_id = ? AND kind = 'stage_result'",
            (json.dumps(payload), run_id),
        )
        with pytest.raises(LedgerIntegrityError, match="was modified"):
            ledger.verify_chain(run_id)

    def test_corrupted_entry_hash_detected(self, seeded):
        ledger, run_id = seeded
        _sql(
            ledger,
            "UPDATE run_ledger SET entry_hash = ? WHERE run_id = ? AND transition = ?",
            ("f" * 64, run_id, "pending->running"),
        )
        with pytest.raises(LedgerIntegrityError):
            ledger.verify_chain(run_id)

    def test_deleted_entry_detected(self, seeded):
        """Erase the failure transition's predecessor to hide the failed stage."""
        ledger, run_id = seeded
        _sql(
            ledger,
            "DELETE FROM run_ledger WHERE run_id = ? AND kind = 'stage_result'",
            (run_id,),
        )
        with pytest.raises(LedgerIntegrityError, match="does not follow"):
            ledger.verify_chain(run_id)

    def test_self_consistent_row_rewrite_breaks_successor(self, seeded):
        """Recompute the tampered row's own hash; the next link still breaks."""
        ledger, run_id = seeded
        entry = next(e for e in ledger.get_run_entries(run_id) if e.subject == "test")
        forged = entry.model_copy(update={"payload": {**entry.payload, "status": "succeeded"}})
        forged_hash = compute_entry_hash(forged.model_dump(mode="json"))
        _sql(
            ledger,
            "UPDATE run_ledger SET payload_json = ?, entry_hash = ? WHERE entry_id = ?",
            (json.dumps(forged.model_dump(mode="json")["payload"]), forged_hash, entry.entry_id),
        )
        with pytest.raises(LedgerIntegrityError, match="does not follow"):
            ledger.verify_chain(run_id)

    def test_tampering_is_scoped_to_one_run(self, seeded):
        ledger, run_id = seeded
        other = RunStateMachine(ledger).create("web", "def456").run_id
        _sql(ledger, "UPDATE run_ledger SET payload_json = '{}' WHERE run_id = ?", (run_id,))
        assert ledger.verify_chain(other) is True
