"""Runtime settings: env-driven, one instance per process.

Centralized config using pydantic-settings. Reads from a .env file and
SHIPYARD_* environment variables. Pipeline *definitions* live in
``shipyard.toml`` (see ``shipyard.models.config``); this module only holds
how the engine itself runs.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ShipyardSettings(BaseSettings):
    """Engine settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export SHIPYARD_ENVIRONMENT=production
        export SHIPYARD_STATE_DIR=/var/lib/shipyard
        export SHIPYARD_MAX_WORKERS=8

    Or via .env file::

        SHIPYARD_LOG_LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SHIPYARD_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths; the others default to children of state_dir
    state_dir: Path = Path(".shipyard")
    ledger_path: Path | None = None
    log_dir: Path | None = None
    registry_path: Path | None = None

    # Scheduling
    max_workers: int = Field(default=4, ge=1)
    abort_grace_seconds: float = Field(default=10.0, ge=0)
    default_stage_timeout: float = Field(default=600.0, gt=0)
    # How long a run stays claimed by a coordinator that stopped renewing
    lease_seconds: float = Field(default=30.0, gt=0)

    # Retry backoff for transient stage failures
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    backoff_cap_seconds: float = Field(default=30.0, ge=0)

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"

    @property
    def resolved_ledger_path(self) -> Path:
        return self.ledger_path or self.state_dir / "ledger.db"

    @property
    def resolved_log_dir(self) -> Path:
        return self.log_dir or self.state_dir / "logs"

    @property
    def resolved_registry_path(self) -> Path:
        return self.registry_path or self.state_dir / "registry"


def load_settings(**overrides: object) -> ShipyardSettings:
    """Build settings from the environment, with explicit overrides on top."""
    return ShipyardSettings(**overrides)
