"""Error taxonomy for the pipeline engine.

Stage-level errors are *classified*, not just raised: the executor turns
them into a ``FailureKind`` on the StageResult, and only transient ones are
retried.  Nothing in this module is caught and ignored; every failure ends
up attached to exactly one StageResult or surfaces at load time.
"""

from __future__ import annotations


class ShipyardError(Exception):
    """Root of every error raised by shipyard."""


# ---------------------------------------------------------------------------
# Configuration (fails fast, before any run starts)
# ---------------------------------------------------------------------------


class ConfigurationError(ShipyardError):
    """Raised when a pipeline definition or settings value is invalid."""


class CyclicDependency(ConfigurationError):
    """Raised when a stage's predecessor chain reaches the stage itself."""


class UnknownPredecessor(ConfigurationError):
    """Raised when a stage names a predecessor that is not in the graph."""


class ProductionConfigError(ConfigurationError):
    """Raised when production constraints are violated at startup."""


# ---------------------------------------------------------------------------
# Stage execution
# ---------------------------------------------------------------------------


class StageError(ShipyardError):
    """Base for failures raised from inside a stage action."""

    transient: bool = False

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class TransientStageError(StageError):
    """Network blip, registry throttling: retried with backoff."""

    transient = True


class PermanentStageError(StageError):
    """Test failure, bad credentials: never retried, fails the run."""


class StageTimeoutError(StageError):
    """The action outlived its stage timeout and was stopped."""


class StageAbortedError(StageError):
    """The run was aborted and the action was stopped after its grace period."""


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


class PublishError(ShipyardError):
    """Raised when an artifact cannot be published."""


class RegistryUnavailableError(PublishError, TransientStageError):
    """Registry throttled or unreachable; safe to retry."""

    def __init__(self, message: str) -> None:
        TransientStageError.__init__(self, message)


class ArtifactIntegrityError(PublishError):
    """Stored content does not match its address."""


# ---------------------------------------------------------------------------
# Manifest mutation
# ---------------------------------------------------------------------------


class MutationError(ShipyardError):
    """Raised when a manifest cannot be updated."""


class ReferenceNotFound(MutationError):
    """The reference to replace does not occur in the manifest."""


class AmbiguousReference(MutationError):
    """The substitution target is not uniquely determined."""


class PushRejectedError(MutationError):
    """The remote refused a push (for example, non-fast-forward)."""


class ConflictError(MutationError):
    """A manifest push still collided after one re-fetch and retry."""


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


class InvalidTransitionError(ShipyardError):
    """Raised when a requested run status transition is not valid."""


class StaleStatusError(InvalidTransitionError):
    """The run's status changed between reading it and recording a transition."""


class LedgerIntegrityError(ShipyardError):
    """Raised when the hash chain is broken or a write-once rule is violated."""


class RunNotFoundError(ShipyardError):
    """Raised when a run identifier is not known to the ledger."""


# ---------------------------------------------------------------------------
# Remote collaborators
# ---------------------------------------------------------------------------


class RemoteUnavailableError(MutationError, TransientStageError):
    """A git remote could not be reached; safe to retry."""

    def __init__(self, message: str) -> None:
        TransientStageError.__init__(self, message)
