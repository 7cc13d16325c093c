"""Stage actions: the opaque units of work a stage runs.

An action is anything with ``run(context, timeout) -> ActionOutcome`` that
raises a ``StageError`` subclass on failure.  The executor only interprets
the outcome's exit code and outputs, and the class of the error.

Backends:
1. ``CommandAction``: an external command (git, docker, kubectl, ...).
2. ``HandlerAction``: an in-process callable registered by name.
3. ``PublishAction``: build output -> ArtifactPublisher.
4. ``ManifestAction``: upstream ArtifactReference -> ManifestMutator.
"""

from __future__ import annotations

import abc
import logging
import os
import re
import subprocess
import threading
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import ValidationError

from shipyard.core.credentials import CredentialProvider
from shipyard.core.errors import (
    ConfigurationError,
    PermanentStageError,
    StageAbortedError,
    StageTimeoutError,
    TransientStageError,
)
from shipyard.core.output_log import StageOutputLog
from shipyard.core.redaction import SecretRedactor
from shipyard.models.artifacts import ArtifactReference, BuildOutput
from shipyard.models.stages import (
    CommandSpec,
    HandlerSpec,
    ManifestSpec,
    PublishSpec,
    StageDefinition,
)

if TYPE_CHECKING:
    from shipyard.core.mutator import ManifestMutator
    from shipyard.core.publisher import ArtifactPublisher

logger = logging.getLogger(__name__)

# How often a waiting action re-checks its deadline and the cancel flag.
_POLL_SECONDS = 0.1


# ---------------------------------------------------------------------------
# Contexts
# ---------------------------------------------------------------------------


class RunContext:
    """Run-wide environment handed to every stage of one run.

    Parameters
    ----------
    run_id, pipeline_id, revision:
        Identity of the run.
    workdir:
        Working directory for command actions.
    env:
        Base environment for command actions (never logged).
    credentials:
        Where stages fetch their declared secrets.
    placeholders:
        Extra ``{name}`` values for command and path templates.
    abort_grace_seconds:
        How long an in-flight action may keep running after an abort.
    """

    def __init__(
        self,
        run_id: str,
        pipeline_id: str,
        revision: str,
        *,
        workdir: Path,
        credentials: CredentialProvider,
        env: Mapping[str, str] | None = None,
        placeholders: Mapping[str, str] | None = None,
        abort_grace_seconds: float = 10.0,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.run_id = run_id
        self.pipeline_id = pipeline_id
        self.revision = revision
        self.workdir = Path(workdir)
        self.credentials = credentials
        self.env = dict(env or {})
        self.abort_grace_seconds = abort_grace_seconds
        self.cancel_event = cancel_event or threading.Event()
        self.placeholders: dict[str, str] = {
            "run_id": run_id,
            "pipeline_id": pipeline_id,
            "revision": revision,
            "workdir": str(self.workdir),
            **dict(placeholders or {}),
        }

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def expand(self, template: str) -> str:
        """Fill ``{placeholders}``; unknown names are a configuration error."""
        try:
            return template.format_map(self.placeholders)
        except (KeyError, IndexError, ValueError) as exc:
            raise ConfigurationError(f"Cannot expand {template!r}: {exc}") from exc


class StageContext:
    """What one stage execution sees: the run, its inputs, its log."""

    def __init__(
        self,
        run: RunContext,
        definition: StageDefinition,
        *,
        inputs: Mapping[str, dict[str, Any]],
        log: StageOutputLog,
        redactor: SecretRedactor,
    ) -> None:
        self.run = run
        self.definition = definition
        self.inputs = dict(inputs)
        self.log = log
        self.redactor = redactor
        self.secrets: dict[str, str] = {}

    @property
    def stage(self) -> str:
        return self.definition.name

    @property
    def cancelled(self) -> bool:
        return self.run.cancelled

    def load_secret(self, name: str) -> str:
        """Fetch a secret for this stage and register it for redaction."""
        value = self.run.credentials.get(name)
        self.redactor.add(value)
        self.secrets[name] = value
        return value

    def input(self, stage: str) -> dict[str, Any]:
        """Outputs of a succeeded upstream stage."""
        try:
            return self.inputs[stage]
        except KeyError:
            raise PermanentStageError(
                f"Stage {self.stage!r} has no succeeded input from {stage!r}"
            ) from None

    def emit(self, text: str) -> None:
        """Append text to this stage's output log (redacted)."""
        self.log.write(text)


# ---------------------------------------------------------------------------
# Action protocol
# ---------------------------------------------------------------------------


class ActionOutcome:
    """Successful result of an action."""

    def __init__(self, exit_code: int = 0, outputs: dict[str, Any] | None = None) -> None:
        self.exit_code = exit_code
        self.outputs = outputs or {}


@runtime_checkable
class StageAction(Protocol):
    """Protocol every stage action satisfies."""

    secrets: list[str]

    def run(self, context: StageContext, timeout: float) -> ActionOutcome:
        ...


# ---------------------------------------------------------------------------
# Command actions
# ---------------------------------------------------------------------------


class CommandAction:
    """Runs an external command with a deadline and abort grace period."""

    def __init__(self, spec: CommandSpec) -> None:
        self.spec = spec
        self.secrets = list(spec.secrets)
        self._patterns = [re.compile(p) for p in spec.transient_patterns]

    def _environment(self, context: StageContext) -> dict[str, str]:
        env = {**os.environ, **context.run.env}
        env.update({k: context.run.expand(v) for k, v in self.spec.env.items()})
        missing = [key for key in self.spec.required_env if not env.get(key)]
        if missing:
            raise ConfigurationError(
                f"Stage {context.stage!r} requires environment keys: {', '.join(missing)}"
            )
        for name, value in context.secrets.items():
            env[_secret_env_key(name)] = value
        return env

    def run(self, context: StageContext, timeout: float) -> ActionOutcome:
        argv = [context.run.expand(part) for part in self.spec.command]
        env = self._environment(context)
        context.emit("$ " + " ".join(argv))

        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(context.run.workdir),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as exc:
            raise PermanentStageError(f"Cannot start {argv[0]!r}: {exc}") from exc

        output, ended_by = _wait_process(proc, context, timeout)
        context.emit(output)

        if ended_by == "timeout":
            raise StageTimeoutError(f"Timed out after {timeout:g}s", exit_code=proc.returncode)
        if ended_by == "aborted":
            raise StageAbortedError("Killed after abort grace period", exit_code=proc.returncode)

        code = proc.returncode
        if code == 0:
            return ActionOutcome(exit_code=0)

        message = f"{argv[0]} exited with status {code}"
        if code in self.spec.transient_exit_codes or any(
            p.search(output) for p in self._patterns
        ):
            raise TransientStageError(message, exit_code=code)
        raise PermanentStageError(message, exit_code=code)


def _secret_env_key(name: str) -> str:
    return name.upper().replace("-", "_").replace(".", "_")


def _wait_process(
    proc: subprocess.Popen, context: StageContext, timeout: float
) -> tuple[str, str]:
    """Wait for *proc*, enforcing the deadline and abort grace period.

    Returns (captured output, "exited" | "timeout" | "aborted").
    ``communicate`` may be retried after ``TimeoutExpired`` without losing
    output, which is what lets this loop poll.
    """
    deadline = time.monotonic() + timeout
    cancel_seen: float | None = None
    while True:
        try:
            output, _ = proc.communicate(timeout=_POLL_SECONDS)
            return output or "", "exited"
        except subprocess.TimeoutExpired:
            pass

        now = time.monotonic()
        ended_by = ""
        if now >= deadline:
            ended_by = "timeout"
        elif context.cancelled:
            if cancel_seen is None:
                cancel_seen = now
                context.emit(
                    f"abort requested; allowing {context.run.abort_grace_seconds:g}s to finish"
                )
            elif now - cancel_seen >= context.run.abort_grace_seconds:
                ended_by = "aborted"

        if ended_by:
            proc.kill()
            output, _ = proc.communicate()
            return output or "", ended_by


# ---------------------------------------------------------------------------
# In-process actions
# ---------------------------------------------------------------------------


class CallableAction(abc.ABC):
    """Base for actions implemented in Python.

    ``call`` runs on a helper thread so the stage deadline and the abort
    grace period can be enforced.  A callable that overruns is abandoned,
    not interrupted: long handlers should poll ``context.cancelled``.
    """

    secrets: list[str] = []

    @abc.abstractmethod
    def call(self, context: StageContext) -> dict[str, Any] | None:
        ...

    def run(self, context: StageContext, timeout: float) -> ActionOutcome:
        box: dict[str, Any] = {}

        def _target() -> None:
            try:
                box["outputs"] = self.call(context)
            except BaseException as exc:  # re-raised on the executor thread
                box["error"] = exc

        worker = threading.Thread(
            target=_target, name=f"stage-{context.run.run_id}-{context.stage}", daemon=True
        )
        worker.start()

        deadline = time.monotonic() + timeout
        cancel_seen: float | None = None
        while worker.is_alive():
            worker.join(_POLL_SECONDS)
            if not worker.is_alive():
                break
            now = time.monotonic()
            if now >= deadline:
                raise StageTimeoutError(f"Timed out after {timeout:g}s")
            if context.cancelled:
                if cancel_seen is None:
                    cancel_seen = now
                elif now - cancel_seen >= context.run.abort_grace_seconds:
                    raise StageAbortedError("Abandoned after abort grace period")

        if "error" in box:
            raise box["error"]
        return ActionOutcome(exit_code=0, outputs=box.get("outputs") or {})


Handler = Callable[[StageContext], "dict[str, Any] | None"]


class HandlerAction(CallableAction):
    """Wraps a registered handler ``fn(context) -> dict | None``."""

    def __init__(self, spec: HandlerSpec, fn: Handler) -> None:
        self.spec = spec
        self.secrets = list(spec.secrets)
        self._fn = fn

    def call(self, context: StageContext) -> dict[str, Any] | None:
        return self._fn(context)


class PublishAction(CallableAction):
    """Publishes the build output and exposes the reference downstream."""

    def __init__(self, spec: PublishSpec, publisher: ArtifactPublisher, repository: str) -> None:
        self.spec = spec
        self._publisher = publisher
        self._repository = spec.repository or repository

    def call(self, context: StageContext) -> dict[str, Any]:
        path = context.run.workdir / context.run.expand(self.spec.artifact)
        if not path.exists():
            raise PermanentStageError(f"Build output not found: {path}")
        reference = self._publisher.publish(
            BuildOutput(repository=self._repository, path=path),
            tag=context.run.expand(self.spec.tag),
        )
        context.emit(f"published {reference.pinned_ref} (tag {reference.tag})")
        return {"artifact": reference.model_dump(mode="json")}


class ManifestAction:
    """Rewrites a manifest to reference the image published upstream.

    Runs on the executor thread instead of a helper thread, so a push that
    has started is always waited for and the stage result matches what the
    repository holds.  The deadline and the cancel flag are checked under
    the branch lock just before the commit; after that, the repository
    backend's own timeout bounds the push.
    """

    secrets: list[str] = []

    def __init__(self, spec: ManifestSpec, mutator: ManifestMutator) -> None:
        self.spec = spec
        self._mutator = mutator

    def run(self, context: StageContext, timeout: float) -> ActionOutcome:
        deadline = time.monotonic() + timeout

        def _before_commit() -> None:
            if context.cancelled:
                raise StageAbortedError("Run aborted before the manifest commit")
            if time.monotonic() >= deadline:
                raise StageTimeoutError(f"Timed out after {timeout:g}s before the manifest commit")

        return ActionOutcome(exit_code=0, outputs=self._update(context, _before_commit))

    def _update(self, context: StageContext, before_commit: Callable[[], None]) -> dict[str, Any]:
        raw = context.input(self.spec.source_stage).get("artifact")
        if raw is None:
            raise PermanentStageError(
                f"Stage {self.spec.source_stage!r} did not publish an artifact"
            )
        try:
            reference = ArtifactReference.model_validate(raw)
        except ValidationError as exc:
            raise PermanentStageError(f"Malformed artifact reference: {exc}") from exc

        new_ref = reference.pinned_ref if self.spec.ref_style == "pinned" else reference.tagged_ref
        message = self.spec.message.format(
            ref=new_ref, run_id=context.run.run_id, revision=context.run.revision
        )
        update = self._mutator.apply_reference(
            self.spec.path,
            reference,
            new_ref=new_ref,
            old_ref=self.spec.old_ref,
            message=message,
            before_commit=before_commit,
        )
        context.emit(
            f"{update.path}: {update.old_value} -> {update.new_value} @ {update.commit}"
        )
        return {"manifest_update": update.model_dump(mode="json")}


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class ActionFactory:
    """Builds the action for a stage definition from its spec.

    Parameters
    ----------
    image_repository:
        Default repository for publish actions.
    publisher, mutator:
        Collaborators for ``publish`` and ``update-manifest`` stages.  A
        pipeline that uses one of those kinds without the collaborator is
        a configuration error.
    """

    def __init__(
        self,
        *,
        image_repository: str = "",
        publisher: ArtifactPublisher | None = None,
        mutator: ManifestMutator | None = None,
    ) -> None:
        self._image_repository = image_repository
        self._publisher = publisher
        self._mutator = mutator
        self._handlers: dict[str, Handler] = {}

    def register_handler(self, name: str, fn: Handler) -> None:
        self._handlers[name] = fn

    def build(self, definition: StageDefinition) -> StageAction:
        spec = definition.action
        if isinstance(spec, CommandSpec):
            return CommandAction(spec)
        if isinstance(spec, HandlerSpec):
            fn = self._handlers.get(spec.handler)
            if fn is None:
                raise ConfigurationError(
                    f"Stage {definition.name!r}: no handler registered as {spec.handler!r}"
                )
            return HandlerAction(spec, fn)
        if isinstance(spec, PublishSpec):
            if self._publisher is None:
                raise ConfigurationError(f"Stage {definition.name!r}: no publisher configured")
            return PublishAction(spec, self._publisher, self._image_repository)
        if isinstance(spec, ManifestSpec):
            if self._mutator is None:
                raise ConfigurationError(
                    f"Stage {definition.name!r}: no manifest repository configured"
                )
            return ManifestAction(spec, self._mutator)
        raise ConfigurationError(f"Stage {definition.name!r}: unsupported action {spec!r}")
