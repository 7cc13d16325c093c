"""Stage Executor: runs one stage and always returns a StageResult.

Lifecycle of ``execute()``:

    build action -> load secrets -> attempt (retry transient with backoff)
        -> classify -> StageResult

Nothing raised while a stage executes crosses this boundary: callers only see
a StageResult.  Captured output goes to the stage's append-only log, with
every secret the stage loaded masked out.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any

from shipyard.core.actions import ActionFactory, RunContext, StageContext
from shipyard.core.errors import (
    ConfigurationError,
    StageAbortedError,
    StageError,
    StageTimeoutError,
)
from shipyard.core.hasher import canonical_json_bytes
from shipyard.core.output_log import OutputLogStore
from shipyard.core.redaction import SecretRedactor
from shipyard.models.runs import StageResult
from shipyard.models.stages import FailureKind, StageDefinition, StageStatus

logger = logging.getLogger(__name__)

# (cancel_event, delay) -> True if cancelled while waiting
Waiter = Callable[[threading.Event, float], bool]


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Delay before retry number *attempt* (1-based): base * 2**(attempt-1), capped."""
    return min(base * (2 ** (attempt - 1)), cap)


def _event_wait(event: threading.Event, delay: float) -> bool:
    return event.wait(delay)


class _Failure:
    def __init__(self, kind: FailureKind, error: str, exit_code: int | None = None) -> None:
        self.kind = kind
        self.error = error
        self.exit_code = exit_code


class StageExecutor:
    """Executes stage definitions against a run context.

    Parameters
    ----------
    actions:
        Resolves a definition's action spec into a runnable action.
    logs:
        Where per-stage output logs are written.
    backoff_base, backoff_cap:
        Exponential backoff for transient failures, in seconds.
    wait:
        Sleeps between retries; returns True if the run was cancelled
        meanwhile.  Defaults to waiting on the run's cancel event.
    """

    def __init__(
        self,
        actions: ActionFactory,
        logs: OutputLogStore,
        *,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
        wait: Waiter | None = None,
    ) -> None:
        self._actions = actions
        self._logs = logs
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._wait = wait or _event_wait

    def execute(
        self,
        definition: StageDefinition,
        run_context: RunContext,
        inputs: Mapping[str, dict[str, Any]] | None = None,
    ) -> StageResult:
        started_at = datetime.now(timezone.utc)
        redactor = SecretRedactor()
        try:
            return self._execute(definition, run_context, inputs, redactor, started_at)
        except Exception as exc:
            # Log I/O or another failure outside any attempt
            failure = self._classify(exc, redactor)
            logger.error(
                "Stage %s [%s]: %s", definition.label, run_context.run_id, failure.error
            )
            return StageResult(
                stage=definition.name,
                status=StageStatus.FAILED,
                exit_code=failure.exit_code,
                failure_kind=FailureKind.PERMANENT,
                error=failure.error,
                attempts=0,
                output_log=str(self._logs.path_for(run_context.run_id, definition.name)),
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
            )

    def _execute(
        self,
        definition: StageDefinition,
        run_context: RunContext,
        inputs: Mapping[str, dict[str, Any]] | None,
        redactor: SecretRedactor,
        started_at: datetime,
    ) -> StageResult:
        log = self._logs.open(run_context.run_id, definition.name, redactor)
        context = StageContext(
            run_context, definition, inputs=inputs or {}, log=log, redactor=redactor
        )

        def _result(
            status: StageStatus,
            attempts: int,
            *,
            exit_code: int | None = None,
            failure: _Failure | None = None,
            outputs: dict[str, Any] | None = None,
        ) -> StageResult:
            return StageResult(
                stage=definition.name,
                status=status,
                exit_code=failure.exit_code if failure else exit_code,
                failure_kind=failure.kind if failure else None,
                error=failure.error if failure else None,
                attempts=attempts,
                output_log=str(log.path),
                outputs=outputs or {},
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
            )

        try:
            action = self._actions.build(definition)
            for name in action.secrets:
                context.load_secret(name)
        except ConfigurationError as exc:
            failure = _Failure(FailureKind.CONFIGURATION, redactor.redact(str(exc)))
            log.write(f"configuration error: {failure.error}")
            logger.error("Stage %s [%s]: %s", definition.label, run_context.run_id, failure.error)
            return _result(StageStatus.FAILED, 0, failure=failure)
        except Exception as exc:
            classified = self._classify(exc, redactor)
            failure = _Failure(FailureKind.PERMANENT, classified.error, classified.exit_code)
            log.write(f"error: {failure.error}")
            logger.error("Stage %s [%s]: %s", definition.label, run_context.run_id, failure.error)
            return _result(StageStatus.FAILED, 0, failure=failure)

        max_attempts = definition.max_attempts
        attempt = 0
        while True:
            attempt += 1
            if context.cancelled:
                log.write("run aborted before attempt started")
                return _result(
                    StageStatus.ABORTED, attempt - 1,
                    failure=_Failure(FailureKind.ABORTED, "run aborted"),
                )

            log.begin_attempt(attempt, max_attempts)
            logger.info(
                "Stage %s [%s] attempt %d/%d",
                definition.label, run_context.run_id, attempt, max_attempts,
            )
            try:
                outcome = action.run(context, definition.timeout)
                canonical_json_bytes(outcome.outputs)
            except Exception as exc:
                failure = self._classify(exc, redactor)
            else:
                log.write(f"succeeded (exit {outcome.exit_code})")
                logger.info("Stage %s [%s] succeeded", definition.label, run_context.run_id)
                return _result(
                    StageStatus.SUCCEEDED, attempt,
                    exit_code=outcome.exit_code, outputs=outcome.outputs,
                )

            log.write(f"{failure.kind.value} failure: {failure.error}")
            if failure.kind == FailureKind.ABORTED:
                logger.warning("Stage %s [%s] aborted", definition.label, run_context.run_id)
                return _result(StageStatus.ABORTED, attempt, failure=failure)

            if failure.kind != FailureKind.TRANSIENT or attempt >= max_attempts:
                logger.warning(
                    "Stage %s [%s] failed after %d attempt(s): %s",
                    definition.label, run_context.run_id, attempt, failure.error,
                )
                return _result(StageStatus.FAILED, attempt, failure=failure)

            delay = backoff_delay(attempt, self._backoff_base, self._backoff_cap)
            log.write(f"retrying in {delay:g}s")
            logger.info(
                "Stage %s [%s] transient failure, retrying in %gs: %s",
                definition.label, run_context.run_id, delay, failure.error,
            )
            if self._wait(run_context.cancel_event, delay):
                log.write("run aborted during backoff")
                return _result(
                    StageStatus.ABORTED, attempt,
                    failure=_Failure(FailureKind.ABORTED, "run aborted during backoff"),
                )

    @staticmethod
    def _classify(exc: Exception, redactor: SecretRedactor) -> _Failure:
        message = redactor.redact(str(exc) or type(exc).__name__)
        exit_code = getattr(exc, "exit_code", None)
        if isinstance(exc, StageTimeoutError):
            return _Failure(FailureKind.TIMEOUT, message, exit_code)
        if isinstance(exc, StageAbortedError):
            return _Failure(FailureKind.ABORTED, message, exit_code)
        if isinstance(exc, ConfigurationError):
            return _Failure(FailureKind.CONFIGURATION, message)
        if isinstance(exc, StageError) and exc.transient:
            return _Failure(FailureKind.TRANSIENT, message, exit_code)
        if isinstance(exc, StageError):
            return _Failure(FailureKind.PERMANENT, message, exit_code)
        # anything else, including non-serializable outputs (TypeError)
        return _Failure(FailureKind.PERMANENT, f"{type(exc).__name__}: {message}")
