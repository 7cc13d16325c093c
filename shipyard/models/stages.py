"""Stage definition models: static configuration, loaded once, never mutated."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StageStatus(str, Enum):
    """Outcome recorded on a StageResult."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


class FailureKind(str, Enum):
    """Why a stage did not succeed.  Only TRANSIENT is ever retried."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    CONFIGURATION = "configuration"


# ---------------------------------------------------------------------------
# Action specs: what a stage runs.  Discriminated on ``kind``.
# ---------------------------------------------------------------------------


class CommandSpec(BaseModel):
    """An external command; only its exit status and output are interpreted."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["command"] = "command"
    command: list[str]
    env: dict[str, str] = {}
    required_env: list[str] = []
    secrets: list[str] = []  # credential names, injected as env vars
    transient_exit_codes: list[int] = []
    transient_patterns: list[str] = []  # regexes over captured output

    @field_validator("command")
    @classmethod
    def _non_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("command must not be empty")
        return value


class HandlerSpec(BaseModel):
    """An in-process callable registered on the coordinator by name."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["handler"] = "handler"
    handler: str
    secrets: list[str] = []


class PublishSpec(BaseModel):
    """Publish a build output under a content-derived digest, then tag it."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["publish"] = "publish"
    artifact: str  # path template, relative to the workdir
    tag: str = "latest"  # template; "{revision}" etc. are expanded
    repository: str | None = None  # defaults to PipelineConfig.image_repository


class ManifestSpec(BaseModel):
    """Point a deployment descriptor at the image published upstream."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["update-manifest"] = "update-manifest"
    path: str
    source_stage: str = "push"
    old_ref: str | None = None
    ref_style: Literal["pinned", "tagged"] = "pinned"
    message: str = "Deploy {ref} (run {run_id}, revision {revision})"


ActionSpec = Annotated[
    Union[CommandSpec, HandlerSpec, PublishSpec, ManifestSpec],
    Field(discriminator="kind"),
]


class StageDefinition(BaseModel):
    """Defines a pipeline stage and its predecessors.

    The predecessor list encodes the DAG: a stage is only offered for
    execution once every predecessor has succeeded.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str = ""
    action: ActionSpec
    timeout: float = Field(default=600.0, gt=0)  # seconds
    retries: int = Field(default=0, ge=0)
    predecessors: list[str] = []

    @property
    def label(self) -> str:
        return self.display_name or self.name

    @property
    def max_attempts(self) -> int:
        return self.retries + 1


# The tutorial's flow: checkout -> test -> build -> push -> update-manifest.
DEFAULT_STAGE_DEFINITIONS: list[StageDefinition] = [
    StageDefinition(
        name="checkout",
        display_name="Checkout",
        action=CommandSpec(
            command=["git", "checkout", "--force", "{revision}"],
            transient_patterns=[r"Could not resolve host", r"Connection timed out"],
        ),
        timeout=120,
        retries=2,
    ),
    StageDefinition(
        name="test",
        display_name="Test",
        action=CommandSpec(command=["python", "-m", "pytest", "-q"]),
        timeout=900,
        predecessors=["checkout"],
    ),
    StageDefinition(
        name="build",
        display_name="Build Image",
        action=CommandSpec(
            command=[
                "sh", "-c",
                "mkdir -p .shipyard && "
                "docker build -t {image_repository}:build-{revision} . && "
                "docker save -o .shipyard/image.tar {image_repository}:build-{revision}",
            ],
        ),
        timeout=1800,
        predecessors=["test"],
    ),
    StageDefinition(
        name="push",
        display_name="Publish Image",
        action=PublishSpec(artifact=".shipyard/image.tar"),
        timeout=900,
        retries=3,
        predecessors=["build"],
    ),
    StageDefinition(
        name="update-manifest",
        display_name="Update Manifest",
        action=ManifestSpec(path="deployment.yaml"),
        timeout=300,
        retries=1,
        predecessors=["push"],
    ),
]
