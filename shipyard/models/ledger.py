"""Ledger entry and run registry models.

Every run is reconstructed from its ledger entries, which are:
- written once and never updated or deleted
- linked by hash to the previous entry of the same run
- one per run transition or stage result
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

RUN_SUBJECT = "run"


class EntryKind(str, Enum):
    TRANSITION = "transition"
    STAGE_RESULT = "stage_result"


class LedgerEntry(BaseModel):
    """One run transition or stage result, sealed by ``entry_hash``."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    subject: str = RUN_SUBJECT  # "run" or a stage name
    kind: EntryKind = EntryKind.TRANSITION
    transition: str = ""  # "from->to" for run transitions
    payload: dict[str, Any] = {}
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry


class RunRecord(BaseModel):
    """Row of the run registry: identity assigned when a run is triggered."""

    model_config = ConfigDict(frozen=True)

    sequence: int
    run_id: str
    pipeline_id: str
    revision: str
    created_at: datetime
