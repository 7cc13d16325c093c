"""SQLite store for run history: every entry links to the one before it.

The Run Ledger is the durable state of every run.  Status queries and
crash recovery are projections of this ledger; leases only say who is
driving a run right now.

Design:
- Append-only: only ``append()`` writes entries; no update, no delete.
- Hash-chained: each entry includes SHA-256 of the previous entry of its run.
- Write-once stage results: a partial UNIQUE index rejects a second
  result for the same (run, stage).
- Run identifiers come from an AUTOINCREMENT registry, so they are unique
  and monotonically assigned even across restarts.
- WAL mode so status readers never block the writer.
- Run leases: the one mutable table, outside the chain.  A coordinator
  holds a time-limited lease on every run it drives, so a second process
  only takes over runs whose holder stopped renewing.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from shipyard.core.errors import LedgerIntegrityError, StaleStatusError
from shipyard.core.hasher import compute_entry_hash
from shipyard.models.ledger import EntryKind, LedgerEntry, RunRecord

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_REGISTRY = """
CREATE TABLE IF NOT EXISTS run_registry (
    sequence     INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id       TEXT NOT NULL UNIQUE,
    pipeline_id  TEXT NOT NULL,
    revision     TEXT NOT NULL,
    created_at   TEXT NOT NULL
);
"""

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS run_ledger (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id              TEXT NOT NULL UNIQUE,
    run_id                TEXT NOT NULL,
    subject               TEXT NOT NULL,
    kind                  TEXT NOT NULL,
    transition            TEXT NOT NULL DEFAULT '',
    payload_json          TEXT NOT NULL DEFAULT '{}',
    timestamp_utc         TEXT NOT NULL,
    previous_entry_hash   TEXT NOT NULL DEFAULT '',
    entry_hash            TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_RUN = """
CREATE INDEX IF NOT EXISTS idx_run_id ON run_ledger(run_id, id);
"""

_CREATE_IDX_STAGE_ONCE = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_stage_result_once
    ON run_ledger(run_id, subject) WHERE kind = 'stage_result';
"""

_CREATE_LEASES = """
CREATE TABLE IF NOT EXISTS run_lease (
    run_id       TEXT PRIMARY KEY,
    owner        TEXT NOT NULL,
    expires_at   REAL NOT NULL
);
"""


def format_run_id(sequence: int) -> str:
    return f"run-{sequence:06d}"


class RunLedger:
    """Durable, per-run hash-chained log of transitions and stage results.

    Parameters
    ----------
    db_path:
        SQLite file holding the ledger; parent directories are created.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False, timeout=30.0,
            isolation_level=None,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        conn = self._connect()
        try:
            conn.execute(_CREATE_REGISTRY)
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_RUN)
            conn.execute(_CREATE_IDX_STAGE_ONCE)
            conn.execute(_CREATE_LEASES)
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Run registry
    # ------------------------------------------------------------------

    @contextmanager
    def _immediate(self) -> Iterator[sqlite3.Connection]:
        """A write transaction that holds the database lock from the start."""
        with self._write_lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()

    def register_run(self, pipeline_id: str, revision: str) -> RunRecord:
        """Assign the next run identifier and record the run's identity."""
        created_at = datetime.now(timezone.utc)
        with self._immediate() as conn:
            cur = conn.execute(
                "INSERT INTO run_registry (run_id, pipeline_id, revision, created_at) "
                "VALUES ('', ?, ?, ?)",
                (pipeline_id, revision, created_at.isoformat()),
            )
            sequence = cur.lastrowid
            run_id = format_run_id(sequence)
            conn.execute(
                "UPDATE run_registry SET run_id = ? WHERE sequence = ?",
                (run_id, sequence),
            )
        logger.debug("Registered %s for %s@%s", run_id, pipeline_id, revision)
        return RunRecord(
            sequence=sequence,
            run_id=run_id,
            pipeline_id=pipeline_id,
            revision=revision,
            created_at=created_at,
        )

    def get_run_record(self, run_id: str) -> RunRecord | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT sequence, run_id, pipeline_id, revision, created_at "
                "FROM run_registry WHERE run_id = ?",
                (run_id,),
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_record(row) if row else None

    def list_run_records(self, pipeline_id: str | None = None) -> list[RunRecord]:
        """Return run records in sequence (trigger) order."""
        query = "SELECT sequence, run_id, pipeline_id, revision, created_at FROM run_registry"
        params: tuple = ()
        if pipeline_id is not None:
            query += " WHERE pipeline_id = ?"
            params = (pipeline_id,)
        query += " ORDER BY sequence ASC"
        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [self._row_to_record(row) for row in rows]

    # ------------------------------------------------------------------
    # Run leases
    # ------------------------------------------------------------------

    def claim_run(self, run_id: str, owner: str, ttl: float) -> bool:
        """Take the lease on *run_id* for *ttl* seconds.

        Succeeds if the run has no lease, the lease already belongs to
        *owner*, or the holder let it expire.
        """
        now = time.time()
        with self._immediate() as conn:
            row = conn.execute(
                "SELECT owner, expires_at FROM run_lease WHERE run_id = ?", (run_id,)
            ).fetchone()
            if row is not None and row[0] != owner and row[1] > now:
                return False
            conn.execute(
                "INSERT OR REPLACE INTO run_lease (run_id, owner, expires_at) VALUES (?, ?, ?)",
                (run_id, owner, now + ttl),
            )
        if row is not None and row[0] != owner:
            logger.warning("Run %s: lease of %s expired, taken over by %s", run_id, row[0], owner)
        return True

    def renew_run(self, run_id: str, owner: str, ttl: float) -> bool:
        """Extend *owner*'s lease; False if it no longer holds it."""
        with self._immediate() as conn:
            cur = conn.execute(
                "UPDATE run_lease SET expires_at = ? WHERE run_id = ? AND owner = ?",
                (time.time() + ttl, run_id, owner),
            )
        return cur.rowcount == 1

    def release_run(self, run_id: str, owner: str) -> None:
        with self._immediate() as conn:
            conn.execute(
                "DELETE FROM run_lease WHERE run_id = ? AND owner = ?", (run_id, owner)
            )

    def lease_holder(self, run_id: str) -> str | None:
        """The owner of an unexpired lease on *run_id*, if any."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT owner FROM run_lease WHERE run_id = ? AND expires_at > ?",
                (run_id, time.time()),
            ).fetchone()
        finally:
            conn.close()
        return row[0] if row else None

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry, *, expect_status: str | None = None) -> LedgerEntry:
        """Append an entry, computing its hash chain link.

        Returns the sealed entry.  This is the ONLY entry write method.
        Raises ``LedgerIntegrityError`` if a stage result for the same
        (run, stage) already exists.  With *expect_status*, the run's latest
        recorded status is re-read inside the same transaction and
        ``StaleStatusError`` is raised if it differs.
        """
        try:
            with self._immediate() as conn:
                if expect_status is not None:
                    current = self._latest_status(conn, entry.run_id)
                    if current != expect_status:
                        raise StaleStatusError(
                            f"{entry.run_id} is {current or 'unknown'}, "
                            f"not {expect_status}"
                        )
                row = conn.execute(
                    "SELECT entry_hash FROM run_ledger WHERE run_id = ? "
                    "ORDER BY id DESC LIMIT 1",
                    (entry.run_id,),
                ).fetchone()
                previous_hash = row[0] if row else ""

                fields = entry.model_dump(mode="json")
                fields["previous_entry_hash"] = previous_hash
                sealed = entry.model_copy(
                    update={
                        "previous_entry_hash": previous_hash,
                        "entry_hash": compute_entry_hash(fields),
                    }
                )
                self._insert(conn, sealed)
        except sqlite3.IntegrityError as exc:
            raise LedgerIntegrityError(
                f"Rejected write for {entry.run_id}/{entry.subject}: {exc}"
            ) from exc
        return sealed

    @staticmethod
    def _latest_status(conn: sqlite3.Connection, run_id: str) -> str | None:
        row = conn.execute(
            "SELECT transition FROM run_ledger "
            "WHERE run_id = ? AND kind = ? AND transition LIKE '%->%' "
            "ORDER BY id DESC LIMIT 1",
            (run_id, EntryKind.TRANSITION.value),
        ).fetchone()
        return row[0].split("->", 1)[1] if row else None

    @staticmethod
    def _insert(conn: sqlite3.Connection, entry: LedgerEntry) -> None:
        conn.execute(
            """
            INSERT INTO run_ledger
                (entry_id, run_id, subject, kind, transition, payload_json,
                 timestamp_utc, previous_entry_hash, entry_hash)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id,
                entry.run_id,
                entry.subject,
                entry.kind.value,
                entry.transition,
                json.dumps(entry.model_dump(mode="json")["payload"]),
                entry.timestamp_utc.isoformat(),
                entry.previous_entry_hash,
                entry.entry_hash,
            ),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_run_entries(self, run_id: str) -> list[LedgerEntry]:
        """Entries of *run_id* in the order they were appended."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM run_ledger WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_entry(row) for row in rows]

    def get_stage_results(self, run_id: str) -> list[LedgerEntry]:
        """Return the stage-result entries of a run in recording order."""
        return [
            e for e in self.get_run_entries(run_id)
            if e.kind == EntryKind.STAGE_RESULT
        ]

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, run_id: str) -> bool:
        """Recompute every link of *run_id* and compare with what is stored.

        Returns True for an intact chain; the first bad link raises
        ``LedgerIntegrityError``.
        """
        link = ""
        for entry in self.get_run_entries(run_id):
            if entry.previous_entry_hash != link:
                raise LedgerIntegrityError(
                    f"{run_id}: entry {entry.entry_id} does not follow its predecessor "
                    f"(stored link {entry.previous_entry_hash!r}, "
                    f"actual {link!r})"
                )
            recomputed = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != recomputed:
                raise LedgerIntegrityError(
                    f"{run_id}: entry {entry.entry_id} was modified "
                    f"(stored {entry.entry_hash!r}, recomputed {recomputed!r})"
                )
            link = entry.entry_hash
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_record(row: tuple) -> RunRecord:
        sequence, run_id, pipeline_id, revision, created_at = row
        return RunRecord(
            sequence=sequence,
            run_id=run_id,
            pipeline_id=pipeline_id,
            revision=revision,
            created_at=created_at,
        )

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        (
            _id,
            entry_id,
            run_id,
            subject,
            kind,
            transition,
            payload_json,
            timestamp_utc,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            run_id=run_id,
            subject=subject,
            kind=EntryKind(kind),
            transition=transition,
            payload=json.loads(payload_json),
            timestamp_utc=timestamp_utc,
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
