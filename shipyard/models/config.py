"""Pipeline configuration models and the ``shipyard.toml`` loader."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shipyard.core.errors import ConfigurationError
from shipyard.models.stages import DEFAULT_STAGE_DEFINITIONS, StageDefinition


class ManifestRepoConfig(BaseModel):
    """Where the deployment descriptors live."""

    model_config = ConfigDict(frozen=True)

    backend: Literal["git", "local"] = "git"
    path: Path = Path("manifests")  # working clone (git) or directory (local)
    branch: str = "main"
    remote: str = "origin"
    author_name: str = "shipyard"
    author_email: str = "shipyard@localhost"


class RegistryConfig(BaseModel):
    """Where published images go."""

    model_config = ConfigDict(frozen=True)

    backend: Literal["local", "docker"] = "local"
    path: Path | None = None  # local backend only; defaults to settings


class PipelineConfig(BaseModel):
    """One pipeline: its stage graph plus the collaborators it talks to.

    Loaded from ``shipyard.toml``.
    """

    model_config = ConfigDict(frozen=True)

    pipeline_id: str = "default"
    image_repository: str = "example/app"
    workdir: Path = Path(".")
    checkout_stage: str | None = "checkout"
    env: dict[str, str] = {}
    registry: RegistryConfig = RegistryConfig()
    manifest: ManifestRepoConfig | None = None
    stages: list[StageDefinition] = Field(
        default_factory=lambda: list(DEFAULT_STAGE_DEFINITIONS)
    )


def _resolve_relative(data: dict[str, Any], base: Path) -> dict[str, Any]:
    """Anchor relative paths in the raw TOML data at the config file's directory."""
    data = dict(data)
    if "workdir" in data:
        data["workdir"] = base / data["workdir"]
    for section in ("manifest", "registry"):
        table = data.get(section)
        if isinstance(table, dict) and table.get("path"):
            data[section] = {**table, "path": base / table["path"]}
    return data


def parse_pipeline_config(data: dict[str, Any], *, source: str = "<dict>") -> PipelineConfig:
    """Validate raw config data, raising ConfigurationError on any problem."""
    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid pipeline config {source}: {exc}") from exc


def load_pipeline_config(path: Path | str) -> PipelineConfig:
    """Load and validate a ``shipyard.toml`` pipeline definition."""
    path = Path(path)
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Pipeline config not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Malformed TOML in {path}: {exc}") from exc

    data = _resolve_relative(raw, path.resolve().parent)
    return parse_pipeline_config(data, source=str(path))
