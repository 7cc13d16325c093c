"""Manifest Mutator: exact image-reference substitution, committed once.

``apply()`` guarantees:
- Only the target reference changes; the rest of the manifest is
  byte-identical.
- The old reference must occur exactly once.  Zero occurrences (including
  a re-apply of a change that already landed) is ``ReferenceNotFound``;
  more than one is ``AmbiguousReference``.  Nothing is committed in
  either case.
- Pushes to one (repository, branch) are serialized.  A rejected push is
  re-fetched and retried once; a second rejection is ``ConflictError``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable

from shipyard.core.errors import (
    AmbiguousReference,
    ConflictError,
    MutationError,
    PushRejectedError,
    ReferenceNotFound,
)
from shipyard.core.locks import BranchLocks, branch_locks
from shipyard.core.manifest_repo import ManifestRepository
from shipyard.core.publisher import ArtifactPublisher
from shipyard.models.artifacts import ArtifactReference, ManifestUpdate

logger = logging.getLogger(__name__)

_MAX_PUSH_ATTEMPTS = 2


def substitute(content: str, old_ref: str, new_ref: str) -> str:
    """Replace the single occurrence of *old_ref* in *content* with *new_ref*."""
    if not old_ref:
        raise AmbiguousReference("Old reference is empty")
    if old_ref == new_ref:
        raise AmbiguousReference(f"Old and new reference are both {old_ref!r}")
    count = content.count(old_ref)
    if count == 0:
        raise ReferenceNotFound(f"{old_ref!r} does not occur in the manifest")
    if count > 1:
        raise AmbiguousReference(f"{old_ref!r} occurs {count} times in the manifest")
    return content.replace(old_ref, new_ref, 1)


def discover_reference(content: str, repository: str) -> str:
    """Find the one reference to *repository* (``repo:tag`` or ``repo@digest``)."""
    pattern = re.compile(r"(?<![\w./-])" + re.escape(repository) + r"[:@][^\s\"',]+")
    found = sorted(set(pattern.findall(content)))
    if not found:
        raise ReferenceNotFound(f"No reference to {repository!r} in the manifest")
    if len(found) > 1:
        raise AmbiguousReference(
            f"Several references to {repository!r} in the manifest: {', '.join(found)}"
        )
    return found[0]


class ManifestMutator:
    """Rewrites image references in a manifest repository.

    Parameters
    ----------
    repository:
        Any ``ManifestRepository`` backend.
    publisher:
        Used to confirm a reference is actually published before it is
        written anywhere.
    locks:
        Push mutex registry; the process-wide one by default.
    """

    def __init__(
        self,
        repository: ManifestRepository,
        publisher: ArtifactPublisher,
        locks: BranchLocks = branch_locks,
    ) -> None:
        self.repository = repository
        self._publisher = publisher
        self._locks = locks

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def apply(
        self,
        manifest_path: str,
        old_ref: str,
        new_ref: ArtifactReference,
        *,
        message: str | None = None,
    ) -> ManifestUpdate:
        """Replace *old_ref* with *new_ref*'s digest-pinned form and push."""
        return self.apply_reference(
            manifest_path,
            new_ref,
            new_ref=new_ref.pinned_ref,
            old_ref=old_ref,
            message=message,
        )

    def apply_reference(
        self,
        manifest_path: str,
        reference: ArtifactReference,
        *,
        new_ref: str,
        old_ref: str | None = None,
        message: str | None = None,
        before_commit: Callable[[], None] | None = None,
    ) -> ManifestUpdate:
        """Write *new_ref* (a rendering of *reference*) into the manifest.

        When *old_ref* is ``None`` the current reference to
        ``reference.repository`` is discovered after each sync.
        *before_commit* runs under the branch lock right before each push
        attempt; raising from it leaves the repository untouched.
        """
        if not self._publisher.is_published(reference):
            raise MutationError(f"{reference.pinned_ref} is not published")
        if old_ref is not None:
            # Fail before touching the repository.
            substitute(old_ref, old_ref, new_ref)

        message = message or f"Deploy {new_ref}"
        repo = self.repository
        with self._locks.hold(repo.key, repo.branch):
            for attempt in range(1, _MAX_PUSH_ATTEMPTS + 1):
                base = repo.sync()
                content = repo.read(manifest_path)
                current = old_ref
                if current is None:
                    current = discover_reference(content, reference.repository)
                    if current == new_ref:
                        raise ReferenceNotFound(
                            f"{manifest_path} already references {new_ref}"
                        )
                updated = substitute(content, current, new_ref)
                if before_commit is not None:
                    before_commit()
                try:
                    commit = repo.commit_and_push(manifest_path, updated, message, base)
                except PushRejectedError as exc:
                    if attempt == _MAX_PUSH_ATTEMPTS:
                        raise ConflictError(
                            f"{manifest_path}: push still rejected after re-fetch: {exc}"
                        ) from exc
                    logger.warning(
                        "Mutator: push of %s rejected, re-fetching and retrying", manifest_path
                    )
                    continue

                logger.info("Mutator: %s %s -> %s @ %s", manifest_path, current, new_ref, commit)
                return ManifestUpdate(
                    path=manifest_path,
                    old_value=current,
                    new_value=new_ref,
                    commit=commit,
                    branch=repo.branch,
                )

        raise AssertionError("unreachable")  # pragma: no cover

    def discover_reference(self, manifest_path: str, repository: str) -> str:
        """The current reference to *repository* in *manifest_path* at the branch tip."""
        self.repository.sync()
        return discover_reference(self.repository.read(manifest_path), repository)
