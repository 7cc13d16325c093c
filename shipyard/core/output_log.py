"""Durable, append-only stage output logs.

Layout: {base_path}/{run_id}/{stage}.log

Every attempt of a stage appends a header line followed by its captured
output, so retries stay visible after the fact.  Files are only ever
opened in append mode.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

from shipyard.core.redaction import SecretRedactor

logger = logging.getLogger(__name__)

ATTEMPT_HEADER = "=== attempt {attempt}/{max_attempts} ==="


class StageOutputLog:
    """Append-only log for one stage of one run.

    All text is passed through the redactor before it touches disk.
    """

    def __init__(self, path: Path, redactor: SecretRedactor | None = None) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._redactor = redactor or SecretRedactor()
        self._lock = threading.Lock()

    def write(self, text: str) -> None:
        if not text:
            return
        text = self._redactor.redact(text)
        if not text.endswith("\n"):
            text += "\n"
        with self._lock, self.path.open("a", encoding="utf-8") as fh:
            fh.write(text)

    def begin_attempt(self, attempt: int, max_attempts: int) -> None:
        stamp = datetime.now(timezone.utc).isoformat()
        self.write(
            ATTEMPT_HEADER.format(attempt=attempt, max_attempts=max_attempts) + f" {stamp}"
        )

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")


class OutputLogStore:
    """Hands out per-stage logs under a base directory.

    Parameters
    ----------
    base_path:
        Root directory for stage logs.  Defaults to ``.shipyard/logs``.
    """

    def __init__(self, base_path: Path | str | None = None) -> None:
        self._base = Path(base_path) if base_path else Path(".shipyard/logs")
        self._base.mkdir(parents=True, exist_ok=True)

    def path_for(self, run_id: str, stage: str) -> Path:
        return self._base / run_id / f"{stage}.log"

    def open(self, run_id: str, stage: str, redactor: SecretRedactor | None = None) -> StageOutputLog:
        log = StageOutputLog(self.path_for(run_id, stage), redactor)
        logger.debug("Output log for %s/%s at %s", run_id, stage, log.path)
        return log

    def read(self, run_id: str, stage: str) -> str:
        path = self.path_for(run_id, stage)
        return path.read_text(encoding="utf-8") if path.exists() else ""

    def list_logs(self, run_id: str) -> list[Path]:
        run_dir = self._base / run_id
        if not run_dir.exists():
            return []
        return sorted(run_dir.glob("*.log"))
