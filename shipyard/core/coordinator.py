"""Run Coordinator: the only component that moves a run through its states.

The RunCoordinator wires the RunLedger, RunStateMachine, StageGraph,
StageExecutor, ArtifactPublisher and ManifestMutator into one pipeline
execution engine.

Guarantees:
- At most one run per pipeline is admitted at a time; later triggers wait
  in FIFO order as ``pending``.  Different pipelines run in parallel.
- Stages of a run execute on a bounded thread pool in dependency order.
- A stage's outputs are handed to downstream stages only after its
  StageResult has been recorded as ``succeeded``.
- The run status is re-read from the ledger before each stage is
  scheduled, so an abort (from this or another process) stops scheduling.
- Every run being driven is leased in the ledger and the lease is renewed
  while it runs.  ``recover()`` re-queues only non-terminal runs whose
  lease is free or expired, so a run another process is still driving is
  left alone.  A resumed run never re-executes a stage whose result is
  already ``succeeded``.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
import uuid
from collections import deque
from collections.abc import Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any

from shipyard.config import ShipyardSettings
from shipyard.core.actions import ActionFactory, Handler, RunContext
from shipyard.core.credentials import CredentialProvider, EnvCredentialProvider
from shipyard.core.errors import ConfigurationError, RunNotFoundError
from shipyard.core.executor import StageExecutor, Waiter
from shipyard.core.manifest_repo import (
    GitManifestRepository,
    LocalManifestRepository,
    ManifestRepository,
)
from shipyard.core.mutator import ManifestMutator
from shipyard.core.output_log import OutputLogStore
from shipyard.core.production_guard import enforce_production_constraints
from shipyard.core.publisher import ArtifactPublisher
from shipyard.core.registry import DockerRegistry, ImageRegistry, LocalRegistry
from shipyard.core.run_ledger import RunLedger
from shipyard.core.run_machine import RunStateMachine
from shipyard.core.stage_graph import StageGraph
from shipyard.models.config import ManifestRepoConfig, PipelineConfig, RegistryConfig
from shipyard.models.ledger import EntryKind
from shipyard.models.runs import PipelineRun, RunStatus, StageResult
from shipyard.models.stages import StageStatus
from shipyard.monitor.projection import RunProjection

logger = logging.getLogger(__name__)

# How often an active run re-reads its status from the ledger while
# stages are in flight.
_STATUS_POLL_SECONDS = 0.2


class _Pipeline:
    """Wiring and queue state of one pipeline (queue guarded by the coordinator)."""

    def __init__(
        self,
        config: PipelineConfig,
        graph: StageGraph,
        actions: ActionFactory,
        executor: StageExecutor,
    ) -> None:
        self.config = config
        self.graph = graph
        self.actions = actions
        self.executor = executor
        self.queue: deque[str] = deque()
        self.active: str | None = None
        checkout = config.checkout_stage
        self.gate: str | None = checkout if checkout and checkout in graph else None


class RunCoordinator:
    """Central pipeline run coordinator.

    Parameters
    ----------
    pipelines:
        The pipelines this coordinator serves, keyed by ``pipeline_id``.
    settings:
        Engine settings.  Uses the environment if not provided.
    credentials:
        Secret source for stages.  Defaults to ``SHIPYARD_SECRET_*`` env vars.
    ledger:
        Run ledger; defaults to ``settings.resolved_ledger_path``.
    registry, manifest_repository:
        Override the backends named in each pipeline's config (tests).
    wait:
        Backoff sleeper handed to every StageExecutor (tests).
    """

    def __init__(
        self,
        pipelines: Iterable[PipelineConfig],
        settings: ShipyardSettings | None = None,
        *,
        credentials: CredentialProvider | None = None,
        ledger: RunLedger | None = None,
        registry: ImageRegistry | None = None,
        manifest_repository: ManifestRepository | None = None,
        wait: Waiter | None = None,
    ) -> None:
        self.settings = settings or ShipyardSettings()

        # Fails hard if production constraints are violated
        enforce_production_constraints(self.settings)

        # Core subsystems
        self.ledger = ledger or RunLedger(self.settings.resolved_ledger_path)
        self.machine = RunStateMachine(self.ledger)
        self.logs = OutputLogStore(self.settings.resolved_log_dir)
        self._credentials = credentials or EnvCredentialProvider()

        self.projection = RunProjection(self.ledger)

        self._pipelines: dict[str, _Pipeline] = {}
        for config in pipelines:
            if config.pipeline_id in self._pipelines:
                raise ConfigurationError(f"Duplicate pipeline id: {config.pipeline_id!r}")
            self._pipelines[config.pipeline_id] = self._wire(
                config, registry, manifest_repository, wait
            )

        # Run state
        self._cond = threading.Condition()
        self._cancel: dict[str, threading.Event] = {}
        self._pool = ThreadPoolExecutor(
            max_workers=self.settings.max_workers, thread_name_prefix="shipyard-stage"
        )
        self._dispatchers: list[threading.Thread] = []
        self._stopping = threading.Event()
        self._owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _wire(
        self,
        config: PipelineConfig,
        registry: ImageRegistry | None,
        manifest_repository: ManifestRepository | None,
        wait: Waiter | None,
    ) -> _Pipeline:
        stages = [
            d if "timeout" in d.model_fields_set
            else d.model_copy(update={"timeout": self.settings.default_stage_timeout})
            for d in config.stages
        ]
        graph = StageGraph(stages)

        publisher = ArtifactPublisher(registry or self._build_registry(config.registry))
        repository = manifest_repository
        if repository is None and config.manifest is not None:
            repository = self._build_manifest_repository(config.manifest)
        mutator = ManifestMutator(repository, publisher) if repository is not None else None

        actions = ActionFactory(
            image_repository=config.image_repository,
            publisher=publisher,
            mutator=mutator,
        )
        executor = StageExecutor(
            actions,
            self.logs,
            backoff_base=self.settings.backoff_base_seconds,
            backoff_cap=self.settings.backoff_cap_seconds,
            wait=wait,
        )
        return _Pipeline(config, graph, actions, executor)

    def _build_registry(self, config: RegistryConfig) -> ImageRegistry:
        if config.backend == "docker":
            return DockerRegistry()
        return LocalRegistry(config.path or self.settings.resolved_registry_path)

    @staticmethod
    def _build_manifest_repository(config: ManifestRepoConfig) -> ManifestRepository:
        if config.backend == "local":
            return LocalManifestRepository(config.path, config.branch)
        return GitManifestRepository(
            config.path,
            config.branch,
            config.remote,
            author_name=config.author_name,
            author_email=config.author_email,
        )

    def _pipeline(self, pipeline_id: str) -> _Pipeline:
        try:
            return self._pipelines[pipeline_id]
        except KeyError:
            raise ConfigurationError(f"Unknown pipeline: {pipeline_id!r}") from None

    @property
    def pipeline_ids(self) -> list[str]:
        return list(self._pipelines)

    def register_handler(
        self, name: str, fn: Handler, *, pipeline_id: str | None = None
    ) -> None:
        """Register an in-process action for ``handler`` stages."""
        targets = [self._pipeline(pipeline_id)] if pipeline_id else self._pipelines.values()
        for pipeline in targets:
            pipeline.actions.register_handler(name, fn)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def trigger(self, pipeline_id: str, revision: str) -> str:
        """Persist a new ``pending`` run and queue it.  Returns immediately."""
        pipeline = self._pipeline(pipeline_id)
        record = self.machine.create(pipeline_id, revision)
        with self._cond:
            pipeline.queue.append(record.run_id)
            self._cond.notify_all()
        return record.run_id

    def status(self, run_id: str) -> PipelineRun:
        """Read-only view of a run, rebuilt from the ledger."""
        return self.projection.load(run_id)

    def list_runs(self, pipeline_id: str | None = None) -> list[PipelineRun]:
        return self.projection.list_runs(pipeline_id)

    def abort(self, run_id: str, reason: str = "aborted by operator") -> PipelineRun:
        """Move a run to ``aborted``.

        A queued run leaves its queue; an active run stops scheduling and
        its in-flight stages get the abort grace period.  Raises
        ``InvalidTransitionError`` if the run is already terminal.
        """
        self.machine.transition(run_id, RunStatus.ABORTED, {"reason": reason})
        with self._cond:
            for pipeline in self._pipelines.values():
                if run_id in pipeline.queue:
                    pipeline.queue.remove(run_id)
            event = self._cancel.get(run_id)
            if event is not None:
                event.set()
            self._cond.notify_all()
        return self.status(run_id)

    def recover(self) -> list[str]:
        """Re-queue every non-terminal run that no live coordinator holds.

        Runs that were ``running`` go first, then ``pending`` runs, each
        group in run-id order.  Runs leased by another coordinator are
        skipped until that lease expires.  Returns the re-queued run ids.
        """
        running: list[str] = []
        pending: list[str] = []
        for record in self.ledger.list_run_records():
            if record.pipeline_id not in self._pipelines:
                continue
            holder = self.ledger.lease_holder(record.run_id)
            if holder is not None and holder != self._owner:
                logger.info("Run %s is being driven by %s; not recovering", record.run_id, holder)
                continue
            status = self.machine.current_status(record.run_id)
            if status == RunStatus.RUNNING:
                running.append(record.run_id)
            elif status == RunStatus.PENDING:
                pending.append(record.run_id)

        recovered = running + pending
        with self._cond:
            for run_id in recovered:
                record = self.ledger.get_run_record(run_id)
                pipeline = self._pipelines[record.pipeline_id]
                if run_id != pipeline.active and run_id not in pipeline.queue:
                    pipeline.queue.append(run_id)
            self._cond.notify_all()
        if recovered:
            logger.info("Recovered %d run(s): %s", len(recovered), ", ".join(recovered))
        return recovered

    # ------------------------------------------------------------------
    # Execution modes
    # ------------------------------------------------------------------

    def run_until_idle(self) -> list[str]:
        """Drain every queue in the calling thread.  Returns the runs executed."""
        executed: list[str] = []
        progressed = True
        while progressed:
            progressed = False
            for pipeline in self._pipelines.values():
                run_id = self._admit(pipeline)
                if run_id is None:
                    continue
                self._drive(pipeline, run_id)
                executed.append(run_id)
                progressed = True
        return executed

    def start(self) -> None:
        """Start one dispatcher thread per pipeline."""
        if self._dispatchers:
            return
        self._stopping.clear()
        for pipeline in self._pipelines.values():
            thread = threading.Thread(
                target=self._dispatch_loop,
                args=(pipeline,),
                name=f"shipyard-dispatch-{pipeline.config.pipeline_id}",
                daemon=True,
            )
            thread.start()
            self._dispatchers.append(thread)

    def stop(self, timeout: float | None = None) -> None:
        """Stop dispatching; the run in progress on each pipeline finishes first."""
        self._stopping.set()
        with self._cond:
            self._cond.notify_all()
        for thread in self._dispatchers:
            thread.join(timeout)
        self._dispatchers.clear()

    def wait(self, run_id: str, timeout: float | None = None) -> PipelineRun:
        """Block until *run_id* is terminal (or *timeout* elapses); return its view."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            run = self.status(run_id)
            if run.is_terminal:
                return run
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return run
            with self._cond:
                self._cond.wait(
                    _STATUS_POLL_SECONDS if remaining is None
                    else min(_STATUS_POLL_SECONDS, remaining)
                )

    def close(self) -> None:
        self.stop()
        self._pool.shutdown(wait=True)

    def __enter__(self) -> RunCoordinator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _admit(self, pipeline: _Pipeline) -> str | None:
        """Pop the next non-terminal queued run, lease it and mark it active.

        A run another coordinator holds is dropped from this queue; it is
        picked up again by ``recover()`` once that lease expires.
        """
        with self._cond:
            if pipeline.active is not None:
                return None
            while pipeline.queue:
                run_id = pipeline.queue.popleft()
                if self.machine.current_status(run_id).is_terminal:
                    continue
                if not self.ledger.claim_run(run_id, self._owner, self.settings.lease_seconds):
                    logger.info("Run %s is leased by another coordinator; skipped", run_id)
                    continue
                pipeline.active = run_id
                self._cancel.setdefault(run_id, threading.Event())
                return run_id
        return None

    def _release(self, pipeline: _Pipeline) -> None:
        with self._cond:
            if pipeline.active is not None:
                self._cancel.pop(pipeline.active, None)
                self.ledger.release_run(pipeline.active, self._owner)
            pipeline.active = None
            self._cond.notify_all()

    def _dispatch_loop(self, pipeline: _Pipeline) -> None:
        while not self._stopping.is_set():
            with self._cond:
                while not self._stopping.is_set() and not (
                    pipeline.queue and pipeline.active is None
                ):
                    self._cond.wait(_STATUS_POLL_SECONDS)
            if self._stopping.is_set():
                return
            run_id = self._admit(pipeline)
            if run_id is None:
                continue
            self._drive(pipeline, run_id)

    def _drive(self, pipeline: _Pipeline, run_id: str) -> None:
        """Execute an admitted run; an engine error fails the run, not the caller."""
        try:
            self._execute(pipeline, run_id)
        except Exception:
            logger.exception("Run %s: coordinator error", run_id)
            self.machine.try_transition(
                run_id, RunStatus.FAILED, {"error": "internal coordinator error"}
            )
        finally:
            self._release(pipeline)

    # ------------------------------------------------------------------
    # Run execution
    # ------------------------------------------------------------------

    def _restore(self, run_id: str) -> list[StageResult]:
        return [
            StageResult.model_validate(entry.payload)
            for entry in self.ledger.get_run_entries(run_id)
            if entry.kind == EntryKind.STAGE_RESULT
        ]

    def _fail(self, run_id: str, result: StageResult) -> None:
        self.machine.try_transition(
            run_id,
            RunStatus.FAILED,
            {"failed_stage": result.stage, "error": result.error or result.status.value},
        )

    def _execute(self, pipeline: _Pipeline, run_id: str) -> None:
        record = self.ledger.get_run_record(run_id)
        if record is None:
            raise RunNotFoundError(f"Unknown run: {run_id}")
        cancel = self._cancel.setdefault(run_id, threading.Event())
        graph = pipeline.graph

        # Resume from the last recorded boundary
        outputs: dict[str, dict[str, Any]] = {}
        for result in self._restore(run_id):
            if result.succeeded:
                outputs[result.stage] = result.outputs
            elif result.status == StageStatus.FAILED:
                logger.info("Run %s: %s already failed, closing the run", run_id, result.stage)
                self._fail(run_id, result)
                return
            else:
                self.machine.try_transition(
                    run_id, RunStatus.ABORTED, {"reason": result.error or "aborted"}
                )
                return
        if outputs:
            logger.info("Run %s: resuming after %s", run_id, ", ".join(sorted(outputs)))

        if self.machine.current_status(run_id) == RunStatus.PENDING and (
            pipeline.gate is None or pipeline.gate in outputs
        ):
            self.machine.try_transition(run_id, RunStatus.RUNNING)

        context = RunContext(
            run_id,
            record.pipeline_id,
            record.revision,
            workdir=pipeline.config.workdir,
            credentials=self._credentials,
            env=pipeline.config.env,
            placeholders={"image_repository": pipeline.config.image_repository},
            abort_grace_seconds=self.settings.abort_grace_seconds,
            cancel_event=cancel,
        )

        lease = self.settings.lease_seconds
        renew_at = time.monotonic() + lease / 3
        in_flight: dict[Future[StageResult], str] = {}
        started: set[str] = set(outputs)
        halted = False
        lease_lost = False

        while True:
            if not lease_lost and time.monotonic() >= renew_at:
                renew_at = time.monotonic() + lease / 3
                if not self.ledger.renew_run(run_id, self._owner, lease):
                    logger.warning("Run %s: lease taken over by another coordinator", run_id)
                    lease_lost = halted = True
                    cancel.set()

            if not halted and (cancel.is_set() or self.machine.current_status(run_id).is_terminal):
                halted = True
                cancel.set()
                logger.info("Run %s: stopped scheduling", run_id)

            if not halted:
                ready = graph.next_ready(outputs, started)
                for name in (n for n in graph.names if n in ready):
                    definition = graph.get(name)
                    inputs = {a: outputs[a] for a in graph.ancestors(name)}
                    future = self._pool.submit(
                        pipeline.executor.execute, definition, context, inputs
                    )
                    in_flight[future] = name
                    started.add(name)

            if not in_flight:
                break

            done, _ = wait_futures(
                in_flight, timeout=_STATUS_POLL_SECONDS, return_when=FIRST_COMPLETED
            )
            for future in done:
                name = in_flight.pop(future)
                result = future.result()
                if lease_lost:
                    logger.warning("Run %s: %s result dropped, run is no longer ours", run_id, name)
                    continue
                self.machine.record_stage_result(run_id, result)
                if result.succeeded:
                    # Recorded first; only now visible downstream
                    outputs[name] = result.outputs
                    if name == pipeline.gate:
                        self.machine.try_transition(run_id, RunStatus.RUNNING)
                elif not halted:
                    halted = True
                    if result.status == StageStatus.ABORTED:
                        self.machine.try_transition(
                            run_id, RunStatus.ABORTED, {"reason": result.error or "aborted"}
                        )
                    else:
                        self._fail(run_id, result)

        if not halted and graph.is_complete(outputs):
            self.machine.try_transition(run_id, RunStatus.SUCCEEDED)

        with self._cond:
            self._cond.notify_all()
        logger.info("Run %s finished as %s", run_id, self.machine.current_status(run_id).value)
