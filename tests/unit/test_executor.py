"""Tests for the StageExecutor: always a StageResult, retries, redaction."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from shipyard.core.actions import ActionFactory, RunContext
from shipyard.core.errors import PermanentStageError, TransientStageError
from shipyard.core.executor import StageExecutor, backoff_delay
from shipyard.core.output_log import OutputLogStore
from shipyard.core.redaction import REDACTED
from shipyard.models.stages import FailureKind, HandlerSpec, StageStatus


@pytest.fixture
def actions() -> ActionFactory:
    return ActionFactory()


@pytest.fixture
def executor(actions, log_store, waiter) -> StageExecutor:
    return StageExecutor(actions, log_store, wait=waiter)


@pytest.fixture
def run_context(tmp_dir: Path, credentials) -> RunContext:
    return RunContext("run-000001", "app", "abc123", workdir=tmp_dir, credentials=credentials)


class TestOutcomes:
    def test_success(self, executor, actions, run_context, make_stage):
        actions.register_handler("build", lambda ctx: {"image": "app.tar"})
        result = executor.execute(make_stage("build"), run_context)
        assert result.status == StageStatus.SUCCEEDED
        assert result.attempts == 1
        assert result.outputs == {"image": "app.tar"}
        assert result.failure_kind is None
        assert result.finished_at >= result.started_at

    def test_handler_returning_none(self, executor, actions, run_context, make_stage):
        actions.register_handler("test", lambda ctx: None)
        result = executor.execute(make_stage("test"), run_context)
        assert result.succeeded
        assert result.outputs == {}

    def test_inputs_are_passed(self, executor, actions, run_context, make_stage):
        actions.register_handler("push", lambda ctx: {"seen": ctx.input("build")["image"]})
        result = executor.execute(
            make_stage("push"), run_context, inputs={"build": {"image": "app.tar"}}
        )
        assert result.outputs == {"seen": "app.tar"}

    def test_missing_input_is_permanent(self, executor, actions, run_context, make_stage):
        actions.register_handler("push", lambda ctx: ctx.input("build"))
        result = executor.execute(make_stage("push", retries=3), run_context)
        assert result.failure_kind == FailureKind.PERMANENT
        assert result.attempts == 1

    def test_unexpected_exception_is_classified(self, executor, actions, run_context, make_stage):
        def _boom(ctx):
            raise ValueError("bad value")

        actions.register_handler("test", _boom)
        result = executor.execute(make_stage("test", retries=2), run_context)
        assert result.status == StageStatus.FAILED
        assert result.failure_kind == FailureKind.PERMANENT
        assert result.error == "ValueError: bad value"
        assert result.attempts == 1

    def test_non_serializable_outputs_fail(self, executor, actions, run_context, make_stage):
        actions.register_handler("build", lambda ctx: {"obj": object()})
        result = executor.execute(make_stage("build"), run_context)
        assert result.status == StageStatus.FAILED
        assert result.failure_kind == FailureKind.PERMANENT

    def test_unregistered_handler_is_configuration(self, executor, run_context, make_stage):
        result = executor.execute(make_stage("ghost"), run_context)
        assert result.status == StageStatus.FAILED
        assert result.failure_kind == FailureKind.CONFIGURATION
        assert result.attempts == 0

    def test_timeout(self, executor, actions, run_context, make_stage):
        actions.register_handler("test", lambda ctx: time.sleep(2))
        result = executor.execute(make_stage("test", timeout=0.2, retries=2), run_context)
        assert result.status == StageStatus.FAILED
        assert result.failure_kind == FailureKind.TIMEOUT
        assert result.attempts == 1


class TestRetries:
    def test_transient_then_success(self, executor, actions, run_context, make_stage, log_store):
        calls = {"n": 0}

        def _flaky(ctx):
            calls["n"] += 1
            if calls["n"] < 3:
                raise TransientStageError("registry throttled")
            return {"ok": True}

        actions.register_handler("push", _flaky)
        result = executor.execute(make_stage("push", retries=3), run_context)
        assert result.succeeded
        assert result.attempts == 3

        log = log_store.read("run-000001", "push")
        assert "=== attempt 1/4 ===" in log
        assert "=== attempt 3/4 ===" in log
        assert "=== attempt 4/4 ===" not in log
        assert log.count("registry throttled") == 2

    def test_transient_exhausted(self, executor, actions, run_context, make_stage):
        def _down(ctx):
            raise TransientStageError("registry down")

        actions.register_handler("push", _down)
        result = executor.execute(make_stage("push", retries=2), run_context)
        assert result.status == StageStatus.FAILED
        assert result.failure_kind == FailureKind.TRANSIENT
        assert result.attempts == 3

    def test_permanent_not_retried(self, executor, actions, run_context, make_stage):
        calls = {"n": 0}

        def _broken(ctx):
            calls["n"] += 1
            raise PermanentStageError("3 tests failed", exit_code=1)

        actions.register_handler("test", _broken)
        result = executor.execute(make_stage("test", retries=3), run_context)
        assert calls["n"] == 1
        assert result.failure_kind == FailureKind.PERMANENT
        assert result.exit_code == 1

    def test_backoff_delays_requested(self, actions, log_store, run_context, make_stage):
        delays: list[float] = []

        def _record(event: threading.Event, delay: float) -> bool:
            delays.append(delay)
            return False

        def _down(ctx):
            raise TransientStageError("flaky")

        actions.register_handler("push", _down)
        executor = StageExecutor(actions, log_store, backoff_base=1.0, backoff_cap=30.0, wait=_record)
        executor.execute(make_stage("push", retries=3), run_context)
        assert delays == [1.0, 2.0, 4.0]

    def test_abort_during_backoff(self, actions, log_store, run_context, make_stage):
        def _down(ctx):
            raise TransientStageError("flaky")

        actions.register_handler("push", _down)
        executor = StageExecutor(actions, log_store, wait=lambda event, delay: True)
        result = executor.execute(make_stage("push", retries=3), run_context)
        assert result.status == StageStatus.ABORTED
        assert result.attempts == 1

    def test_cancelled_before_start(self, executor, actions, run_context, make_stage):
        actions.register_handler("test", lambda ctx: None)
        run_context.cancel_event.set()
        result = executor.execute(make_stage("test"), run_context)
        assert result.status == StageStatus.ABORTED
        assert result.attempts == 0


class TestBackoffDelay:
    @pytest.mark.parametrize(
        "attempt, expected",
        [(1, 1.0), (2, 2.0), (3, 4.0), (5, 16.0), (6, 30.0), (10, 30.0)],
    )
    def test_exponential_with_cap(self, attempt, expected):
        assert backoff_delay(attempt) == expected

    def test_custom_base(self):
        assert backoff_delay(3, base=0.5, cap=10) == 2.0


class TestSecrets:
    def test_secret_never_reaches_log_or_result(
        self, executor, actions, run_context, make_stage, log_store, secret
    ):
        def _leaky(ctx):
            token = ctx.secrets["registry-token"]
            ctx.emit(f"logging in with {token}")
            raise PermanentStageError(f"auth rejected for token {token}")

        actions.register_handler("push", _leaky)
        stage = make_stage("push", action=HandlerSpec(handler="push", secrets=["registry-token"]))
        result = executor.execute(stage, run_context)

        log = log_store.read("run-000001", "push")
        assert secret not in log
        assert REDACTED in log
        assert secret not in result.error
        assert REDACTED in result.error

    def test_missing_secret_fails_without_attempt(
        self, executor, actions, run_context, make_stage
    ):
        actions.register_handler("push", lambda ctx: None)
        stage = make_stage("push", action=HandlerSpec(handler="push", secrets=["nope"]))
        result = executor.execute(stage, run_context)
        assert result.status == StageStatus.FAILED
        assert result.failure_kind == FailureKind.PERMANENT
        assert result.attempts == 0
        assert "nope" in result.error

    def test_provider_raising_anything_is_a_stage_failure(
        self, executor, actions, tmp_dir, make_stage
    ):
        class _Vault:
            def get(self, name: str) -> str:
                raise KeyError(name)

        context = RunContext("run-000001", "app", "abc123", workdir=tmp_dir, credentials=_Vault())
        actions.register_handler("push", lambda ctx: None)
        stage = make_stage("push", action=HandlerSpec(handler="push", secrets=["registry-token"]))
        result = executor.execute(stage, context)

        assert result.status == StageStatus.FAILED
        assert result.failure_kind == FailureKind.PERMANENT
        assert result.attempts == 0
        assert result.error.startswith("KeyError")


class TestInfrastructureFailures:
    def test_unwritable_log_directory(self, actions, tmp_dir, run_context, make_stage):
        class _ReadOnlyLogs(OutputLogStore):
            def open(self, run_id, stage, redactor=None):
                raise OSError("read-only file system")

        executor = StageExecutor(actions, _ReadOnlyLogs(tmp_dir / "logs"))
        actions.register_handler("build", lambda ctx: {"image": "app.tar"})
        result = executor.execute(make_stage("build"), run_context)

        assert result.status == StageStatus.FAILED
        assert result.failure_kind == FailureKind.PERMANENT
        assert "read-only file system" in result.error
        assert result.output_log.endswith("build.log")
