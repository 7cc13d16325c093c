"""End-to-end integration tests: checkout -> test -> build -> push -> update-manifest.

These tests exercise the RunCoordinator, StageExecutor, RunLedger,
ArtifactPublisher and ManifestMutator working together against a local
registry and a local manifest repository.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from shipyard.core.coordinator import RunCoordinator
from shipyard.core.errors import PermanentStageError, RegistryUnavailableError
from shipyard.core.manifest_repo import LocalManifestRepository
from shipyard.core.registry import LocalRegistry
from shipyard.models.config import PipelineConfig
from shipyard.models.runs import RunStatus, StageResult
from shipyard.models.stages import (
    FailureKind,
    HandlerSpec,
    ManifestSpec,
    PublishSpec,
    StageDefinition,
    StageStatus,
)


class FlakyRegistry(LocalRegistry):
    """Fails the first *failures* uploads as if the registry were unreachable."""

    def __init__(self, base_path: Path, failures: int) -> None:
        super().__init__(base_path)
        self.failures = failures
        self.uploads = 0

    def push_digest(self, repository: str, digest: str, source: Path) -> None:
        self.uploads += 1
        if self.failures > 0:
            self.failures -= 1
            raise RegistryUnavailableError("registry.example: connection reset")
        super().push_digest(repository, digest, source)


class SlowRepository(LocalManifestRepository):
    """Delays ``sync`` or ``commit_and_push`` to outlast the stage deadline."""

    def __init__(self, root: Path, *, sync_delay: float = 0.0, push_delay: float = 0.0) -> None:
        super().__init__(root)
        self.sync_delay = sync_delay
        self.push_delay = push_delay

    def sync(self) -> str:
        time.sleep(self.sync_delay)
        return super().sync()

    def commit_and_push(self, path, content, message, base):
        time.sleep(self.push_delay)
        return super().commit_and_push(path, content, message, base)


def _stages() -> list[StageDefinition]:
    return [
        StageDefinition(name="checkout", action=HandlerSpec(handler="checkout"), timeout=10),
        StageDefinition(
            name="test", action=HandlerSpec(handler="test"), timeout=10,
            predecessors=["checkout"],
        ),
        StageDefinition(
            name="build", action=HandlerSpec(handler="build"), timeout=10,
            predecessors=["test"],
        ),
        StageDefinition(
            name="push", action=PublishSpec(artifact="image.tar", tag="{revision}"),
            timeout=10, retries=3, predecessors=["build"],
        ),
        StageDefinition(
            name="update-manifest", action=ManifestSpec(path="deployment.yaml"),
            timeout=10, predecessors=["push"],
        ),
    ]


class Handlers:
    """Records every handler call; the build writes a revision-specific image."""

    def __init__(self, workdir: Path) -> None:
        self.workdir = workdir
        self.calls: list[tuple[str, str]] = []
        self.fail_tests = False

    def checkout(self, ctx):
        self.calls.append(("checkout", ctx.run.revision))
        return {"revision": ctx.run.revision}

    def test(self, ctx):
        self.calls.append(("test", ctx.run.revision))
        if self.fail_tests:
            raise PermanentStageError("1 test failed")
        return {"passed": 12}

    def build(self, ctx):
        self.calls.append(("build", ctx.run.revision))
        (self.workdir / "image.tar").write_bytes(f"image@{ctx.run.revision}".encode())
        return {"artifact_path": "image.tar"}

    def register(self, coordinator: RunCoordinator) -> None:
        for name in ("checkout", "test", "build"):
            coordinator.register_handler(name, getattr(self, name))

    def stages_called(self, revision: str) -> list[str]:
        return [stage for stage, rev in self.calls if rev == revision]


@pytest.fixture
def workdir(tmp_dir: Path) -> Path:
    path = tmp_dir / "workdir"
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def config(workdir: Path) -> PipelineConfig:
    return PipelineConfig(
        pipeline_id="app",
        image_repository="example/app",
        workdir=workdir,
        stages=_stages(),
    )


@pytest.fixture
def handlers(workdir: Path) -> Handlers:
    return Handlers(workdir)


@pytest.fixture
def engine_factory(config, settings, ledger, credentials, registry, manifest_repo, waiter, handlers):
    built: list[RunCoordinator] = []

    def _factory(registry_override=None, stages=None, repository=None) -> RunCoordinator:
        pipeline = config if stages is None else config.model_copy(update={"stages": stages})
        coordinator = RunCoordinator(
            [pipeline],
            settings,
            credentials=credentials,
            ledger=ledger,
            registry=registry_override or registry,
            manifest_repository=repository or manifest_repo,
            wait=waiter,
        )
        handlers.register(coordinator)
        built.append(coordinator)
        return coordinator

    yield _factory
    for coordinator in built:
        coordinator.close()


class TestFullPipeline:
    def test_successful_run_deploys_pinned_image(
        self, engine_factory, manifest_repo, registry, manifest_text, ledger
    ):
        engine = engine_factory()
        run_id = engine.trigger("app", "abc123")
        engine.run_until_idle()

        run = engine.status(run_id)
        assert run.status == RunStatus.SUCCEEDED
        assert [r.stage for r in run.stage_results] == [
            "checkout", "test", "build", "push", "update-manifest",
        ]

        artifact = run.result_for("push").outputs["artifact"]
        pinned = f"example/app:sha256-{artifact['digest'].removeprefix('sha256:')}"
        assert registry.resolve_tag("example/app", "abc123") == artifact["digest"]

        # Only the image line changed
        assert manifest_repo.read("deployment.yaml") == manifest_text.replace(
            "example/app:v1", pinned
        )
        history = manifest_repo.history()
        assert len(history) == 1
        assert run_id in history[0]["message"]
        assert "abc123" in history[0]["message"]

        update = run.result_for("update-manifest").outputs["manifest_update"]
        assert update["commit"] == history[0]["commit"]
        assert ledger.verify_chain(run_id) is True

    def test_failed_tests_publish_nothing(
        self, engine_factory, handlers, manifest_repo, registry, manifest_text
    ):
        handlers.fail_tests = True
        engine = engine_factory()
        run_id = engine.trigger("app", "abc123")
        engine.run_until_idle()

        run = engine.status(run_id)
        assert run.status == RunStatus.FAILED
        assert run.failed_stage == "test"
        assert [r.stage for r in run.stage_results] == ["checkout", "test"]
        assert handlers.stages_called("abc123") == ["checkout", "test"]
        assert registry.resolve_tag("example/app", "abc123") is None
        assert manifest_repo.history() == []
        assert manifest_repo.read("deployment.yaml") == manifest_text

    def test_transient_push_failures_are_retried(self, engine_factory, tmp_dir):
        flaky = FlakyRegistry(tmp_dir / "flaky-registry", failures=2)
        engine = engine_factory(flaky)
        run_id = engine.trigger("app", "abc123")
        engine.run_until_idle()

        run = engine.status(run_id)
        assert run.status == RunStatus.SUCCEEDED
        assert run.result_for("push").attempts == 3
        assert flaky.uploads == 3

        log = Path(run.result_for("push").output_log).read_text()
        assert "=== attempt 1/4 ===" in log
        assert "=== attempt 3/4 ===" in log
        assert "connection reset" in log

    def test_queued_runs_deploy_in_trigger_order(self, engine_factory, manifest_repo):
        engine = engine_factory()
        first = engine.trigger("app", "rev-1")
        second = engine.trigger("app", "rev-2")
        assert engine.run_until_idle() == [first, second]

        first_ref = engine.status(first).result_for("update-manifest").outputs["manifest_update"]
        second_ref = engine.status(second).result_for("update-manifest").outputs["manifest_update"]
        assert first_ref["old_value"] == "example/app:v1"
        assert second_ref["old_value"] == first_ref["new_value"]
        assert second_ref["new_value"] != first_ref["new_value"]

        history = manifest_repo.history()
        assert [c["commit"] for c in history] == [first_ref["commit"], second_ref["commit"]]

    def test_manifest_reads_artifact_from_further_upstream(
        self, engine_factory, handlers, manifest_repo
    ):
        stages = _stages()
        smoke = StageDefinition(
            name="smoke", action=HandlerSpec(handler="smoke"), timeout=10,
            predecessors=["push"],
        )
        deploy = stages[-1].model_copy(update={"predecessors": ["smoke"]})
        engine = engine_factory(stages=[*stages[:-1], smoke, deploy])
        engine.register_handler("smoke", lambda ctx: {"healthy": True})

        run_id = engine.trigger("app", "abc123")
        engine.run_until_idle()

        run = engine.status(run_id)
        assert run.status == RunStatus.SUCCEEDED
        digest = run.result_for("push").outputs["artifact"]["digest"]
        update = run.result_for("update-manifest").outputs["manifest_update"]
        assert update["new_value"].endswith(digest.removeprefix("sha256:"))
        assert len(manifest_repo.history()) == 1

    def test_push_in_progress_is_not_cut_off_by_the_deadline(self, engine_factory, tmp_dir):
        repo = SlowRepository(tmp_dir / "manifests", push_delay=1.0)
        stages = _stages()
        stages[-1] = stages[-1].model_copy(update={"timeout": 0.3})
        engine = engine_factory(stages=stages, repository=repo)

        run_id = engine.trigger("app", "abc123")
        engine.run_until_idle()

        run = engine.status(run_id)
        assert run.status == RunStatus.SUCCEEDED
        update = run.result_for("update-manifest").outputs["manifest_update"]
        assert [c["commit"] for c in repo.history()] == [update["commit"]]

    def test_deadline_before_commit_leaves_repository_untouched(
        self, engine_factory, tmp_dir, manifest_text
    ):
        repo = SlowRepository(tmp_dir / "manifests", sync_delay=0.5)
        stages = _stages()
        stages[-1] = stages[-1].model_copy(update={"timeout": 0.3})
        engine = engine_factory(stages=stages, repository=repo)

        run_id = engine.trigger("app", "abc123")
        engine.run_until_idle()

        run = engine.status(run_id)
        assert run.status == RunStatus.FAILED
        assert run.failed_stage == "update-manifest"
        assert run.result_for("update-manifest").failure_kind == FailureKind.TIMEOUT
        assert repo.history() == []
        assert repo.read("deployment.yaml") == manifest_text

    def test_resume_skips_succeeded_stages(self, engine_factory, handlers, machine):
        # A previous process checked out and tested, then crashed
        record = machine.create("app", "abc123")
        now = datetime.now(timezone.utc)
        for stage in ("checkout", "test"):
            machine.record_stage_result(
                record.run_id,
                StageResult(
                    stage=stage, status=StageStatus.SUCCEEDED,
                    outputs={"from": "previous process"}, started_at=now, finished_at=now,
                ),
            )
        machine.transition(record.run_id, RunStatus.RUNNING)

        engine = engine_factory()
        assert engine.recover() == [record.run_id]
        engine.run_until_idle()

        run = engine.status(record.run_id)
        assert run.status == RunStatus.SUCCEEDED
        assert handlers.stages_called("abc123") == ["build"]
        assert run.result_for("checkout").outputs == {"from": "previous process"}

    def test_resume_of_failed_stage_closes_run(self, engine_factory, handlers, machine):
        record = machine.create("app", "abc123")
        now = datetime.now(timezone.utc)
        machine.record_stage_result(
            record.run_id,
            StageResult(
                stage="checkout", status=StageStatus.FAILED, error="disk full",
                started_at=now, finished_at=now,
            ),
        )

        engine = engine_factory()
        engine.recover()
        engine.run_until_idle()

        run = engine.status(record.run_id)
        assert run.status == RunStatus.FAILED
        assert run.failed_stage == "checkout"
        assert handlers.calls == []

    def test_abort_during_build_publishes_nothing(
        self, engine_factory, handlers, registry, manifest_repo
    ):
        engine = engine_factory()
        building = threading.Event()

        def _slow_build(ctx):
            building.set()
            while not ctx.cancelled:
                threading.Event().wait(0.05)
            raise PermanentStageError("build interrupted")

        engine.register_handler("build", _slow_build)
        engine.start()
        run_id = engine.trigger("app", "abc123")
        assert building.wait(5)

        engine.abort(run_id, reason="bad commit")
        run = engine.wait(run_id, timeout=10)
        engine.stop(timeout=10)

        assert run.status == RunStatus.ABORTED
        assert run.error == "bad commit"
        assert engine.status(run_id).result_for("push") is None
        assert registry.resolve_tag("example/app", "abc123") is None
        assert manifest_repo.history() == []
