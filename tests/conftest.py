"""Shared test fixtures for Shipyard."""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from shipyard.config import ShipyardSettings
from shipyard.core.credentials import StaticCredentialProvider
from shipyard.core.manifest_repo import LocalManifestRepository
from shipyard.core.output_log import OutputLogStore
from shipyard.core.publisher import ArtifactPublisher
from shipyard.core.registry import LocalRegistry
from shipyard.core.run_ledger import RunLedger
from shipyard.core.run_machine import RunStateMachine
from shipyard.core.stage_graph import StageGraph
from shipyard.models.stages import DEFAULT_STAGE_DEFINITIONS, HandlerSpec, StageDefinition

SECRET = "s3cr3t-registry-token"

MANIFEST = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: app
spec:
  template:
    spec:
      containers:
        - name: app
          image: example/app:v1
          ports:
            - containerPort: 8080
"""


def no_wait(event: threading.Event, delay: float) -> bool:
    """Backoff sleeper that never sleeps; reports a pending cancel."""
    return event.is_set()


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def ledger(tmp_dir: Path) -> RunLedger:
    """Provide a fresh RunLedger backed by a temp SQLite database."""
    return RunLedger(tmp_dir / "test_ledger.db")


@pytest.fixture
def machine(ledger: RunLedger) -> RunStateMachine:
    """Provide a RunStateMachine wired to the test ledger."""
    return RunStateMachine(ledger)


@pytest.fixture
def graph() -> StageGraph:
    """Provide a StageGraph with the default pipeline stages."""
    return StageGraph(DEFAULT_STAGE_DEFINITIONS)


@pytest.fixture
def settings(tmp_dir: Path) -> ShipyardSettings:
    """Settings rooted in the temp dir, with instant retries and a short grace."""
    return ShipyardSettings(
        state_dir=tmp_dir / "state",
        backoff_base_seconds=0,
        backoff_cap_seconds=0,
        abort_grace_seconds=0.5,
        max_workers=4,
    )


@pytest.fixture
def credentials() -> StaticCredentialProvider:
    return StaticCredentialProvider({"registry-token": SECRET})


@pytest.fixture
def log_store(tmp_dir: Path) -> OutputLogStore:
    return OutputLogStore(tmp_dir / "logs")


@pytest.fixture
def registry(tmp_dir: Path) -> LocalRegistry:
    return LocalRegistry(tmp_dir / "registry")


@pytest.fixture
def publisher(registry: LocalRegistry) -> ArtifactPublisher:
    return ArtifactPublisher(registry)


@pytest.fixture
def manifest_repo(tmp_dir: Path) -> LocalManifestRepository:
    """A local manifest repository holding one deployment referencing example/app:v1."""
    root = tmp_dir / "manifests"
    root.mkdir()
    (root / "deployment.yaml").write_text(MANIFEST, encoding="utf-8")
    return LocalManifestRepository(root)


@pytest.fixture
def build_output(tmp_dir: Path) -> Path:
    """A fake image tarball."""
    path = tmp_dir / "workdir" / "image.tar"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"layer-1\x00layer-2\x00config")
    return path


@pytest.fixture
def make_stage() -> Callable[..., StageDefinition]:
    """Factory fixture: a handler stage whose handler name is the stage name."""

    def _factory(
        name: str,
        predecessors: list[str] | None = None,
        **overrides: Any,
    ) -> StageDefinition:
        defaults: dict[str, Any] = {
            "name": name,
            "action": HandlerSpec(handler=name),
            "predecessors": predecessors or [],
            "timeout": 10,
        }
        defaults.update(overrides)
        return StageDefinition(**defaults)

    return _factory


@pytest.fixture
def waiter() -> Callable[[threading.Event, float], bool]:
    return no_wait


@pytest.fixture
def secret() -> str:
    return SECRET


@pytest.fixture
def manifest_text() -> str:
    return MANIFEST
