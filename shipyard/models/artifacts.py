"""Published artifact and manifest update models."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BuildOutput(BaseModel):
    """What a build stage left on disk, ready to be published."""

    model_config = ConfigDict(frozen=True)

    repository: str
    path: Path  # a file (e.g. an image tarball) or a directory tree


class ArtifactReference(BaseModel):
    """A published image: repository, content digest, human tag.

    The digest is content-derived, so identical build output always maps to
    the same reference.  A reference is only valid once the stage that
    published it has succeeded.
    """

    model_config = ConfigDict(frozen=True)

    repository: str
    digest: str  # "sha256:<hex>"
    tag: str = "latest"

    @field_validator("digest")
    @classmethod
    def _sha256_prefixed(cls, value: str) -> str:
        if not value.startswith("sha256:") or len(value) != len("sha256:") + 64:
            raise ValueError(f"digest must be sha256:<64 hex chars>, got {value!r}")
        return value

    @property
    def hex_digest(self) -> str:
        return self.digest.removeprefix("sha256:")

    @property
    def digest_tag(self) -> str:
        """Registry tag that addresses the content (``sha256-<hex>``)."""
        return f"sha256-{self.hex_digest}"

    @property
    def pinned_ref(self) -> str:
        return f"{self.repository}:{self.digest_tag}"

    @property
    def tagged_ref(self) -> str:
        return f"{self.repository}:{self.tag}"


class ManifestUpdate(BaseModel):
    """A committed change to a deployment descriptor."""

    model_config = ConfigDict(frozen=True)

    path: str
    old_value: str
    new_value: str
    commit: str
    branch: str
    committed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
