"""Artifact Publisher: digest-addressed push, then tag.

``publish()`` guarantees:
- The digest is derived from the build output's content, so identical
  output always yields the same ArtifactReference.
- A digest already in the registry is not uploaded again.
- The human tag is moved only after the digest-addressed push succeeded,
  so a mutable tag never points at a half-pushed image.
"""

from __future__ import annotations

import logging

from shipyard.core.errors import PublishError
from shipyard.core.hasher import content_digest
from shipyard.core.registry import ImageRegistry
from shipyard.models.artifacts import ArtifactReference, BuildOutput

logger = logging.getLogger(__name__)


class ArtifactPublisher:
    """Publishes build outputs to an image registry.

    Parameters
    ----------
    registry:
        Any ``ImageRegistry`` backend.
    """

    def __init__(self, registry: ImageRegistry) -> None:
        self.registry = registry

    def publish(self, build_output: BuildOutput, tag: str = "latest") -> ArtifactReference:
        """Publish *build_output* and point *tag* at it.

        Raises ``PublishError`` (``RegistryUnavailableError`` when the
        failure is worth retrying).
        """
        if not build_output.path.exists():
            raise PublishError(f"Build output not found: {build_output.path}")

        digest = content_digest(build_output.path)
        reference = ArtifactReference(
            repository=build_output.repository, digest=digest, tag=tag
        )

        if self.registry.has_digest(reference.repository, digest):
            logger.info("Publisher: %s already present, skipping upload", reference.pinned_ref)
        else:
            self.registry.push_digest(reference.repository, digest, build_output.path)
            if not self.registry.has_digest(reference.repository, digest):
                raise PublishError(f"Registry does not report {reference.pinned_ref} after push")

        self.registry.set_tag(reference.repository, digest, tag)
        logger.info("Publisher: %s -> %s", reference.tagged_ref, reference.pinned_ref)
        return reference

    def is_published(self, reference: ArtifactReference) -> bool:
        """Whether the registry holds the reference's digest."""
        return self.registry.has_digest(reference.repository, reference.digest)
