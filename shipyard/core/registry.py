"""Image registry backends used by the ArtifactPublisher.

Every registry addresses content by digest first and treats tags as
mutable pointers onto digests that are already present.

Backends:
1. ``LocalRegistry``: blobs in a ContentAddressedStore, tags in a small
   JSON index.  Default for local runs and tests.
2. ``DockerRegistry``: the docker CLI (load, tag, push, manifest inspect).
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Protocol, runtime_checkable
from urllib.parse import quote

from shipyard.core.artifact_store import ContentAddressedStore
from shipyard.core.errors import PublishError, RegistryUnavailableError

logger = logging.getLogger(__name__)


def digest_tag(digest: str) -> str:
    """``sha256:<hex>`` -> ``sha256-<hex>`` (a valid registry tag)."""
    return digest.replace(":", "-", 1)


@runtime_checkable
class ImageRegistry(Protocol):
    """Protocol for registry backends."""

    def has_digest(self, repository: str, digest: str) -> bool:
        ...

    def push_digest(self, repository: str, digest: str, source: Path) -> None:
        ...

    def set_tag(self, repository: str, digest: str, tag: str) -> None:
        ...

    def resolve_tag(self, repository: str, tag: str) -> str | None:
        ...


# ---------------------------------------------------------------------------
# Local registry
# ---------------------------------------------------------------------------


class LocalRegistry:
    """Filesystem registry: content-addressed blobs plus per-repository index.

    Parameters
    ----------
    base_path:
        Root directory; blobs live under ``blobs/``, indexes under ``repositories/``.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._blobs = ContentAddressedStore(self._base / "blobs")
        self._index_dir = self._base / "repositories"
        self._index_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _index_path(self, repository: str) -> Path:
        return self._index_dir / f"{quote(repository, safe='')}.json"

    def _read_index(self, repository: str) -> dict:
        path = self._index_path(repository)
        if not path.exists():
            return {"digests": [], "tags": {}}
        return json.loads(path.read_text(encoding="utf-8"))

    def _write_index(self, repository: str, index: dict) -> None:
        path = self._index_path(repository)
        staging = path.with_suffix(".json.partial")
        staging.write_text(json.dumps(index, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(staging, path)

    def has_digest(self, repository: str, digest: str) -> bool:
        with self._lock:
            listed = digest in self._read_index(repository)["digests"]
        return listed and self._blobs.exists(digest)

    def push_digest(self, repository: str, digest: str, source: Path) -> None:
        address = self._blobs.store(source)
        if address != digest:
            raise PublishError(
                f"Content of {source} hashes to {address}, not the announced {digest}"
            )
        with self._lock:
            index = self._read_index(repository)
            if digest not in index["digests"]:
                index["digests"].append(digest)
                self._write_index(repository, index)
        logger.info("LocalRegistry: pushed %s@%s", repository, digest)

    def set_tag(self, repository: str, digest: str, tag: str) -> None:
        with self._lock:
            index = self._read_index(repository)
            if digest not in index["digests"]:
                raise PublishError(f"Cannot tag {repository}:{tag}; {digest} was never pushed")
            index["tags"][tag] = digest
            self._write_index(repository, index)
        logger.info("LocalRegistry: %s:%s -> %s", repository, tag, digest)

    def resolve_tag(self, repository: str, tag: str) -> str | None:
        with self._lock:
            return self._read_index(repository)["tags"].get(tag)


# ---------------------------------------------------------------------------
# Docker CLI registry
# ---------------------------------------------------------------------------

_UNAVAILABLE_PATTERNS = re.compile(
    r"toomanyrequests|429 Too Many Requests|i/o timeout|TLS handshake timeout|"
    r"connection refused|connection reset|no such host|503 Service Unavailable",
    re.IGNORECASE,
)

_LOADED = re.compile(r"Loaded image(?: ID)?: (\S+)")

Runner = Callable[..., subprocess.CompletedProcess]


class DockerRegistry:
    """Publishes ``docker save`` tarballs through the docker CLI.

    Parameters
    ----------
    docker:
        Name or path of the docker binary.
    run:
        Replaceable ``subprocess.run`` (for tests).
    timeout:
        Per-command timeout in seconds.
    """

    def __init__(
        self,
        docker: str = "docker",
        *,
        run: Runner = subprocess.run,
        timeout: float = 600.0,
    ) -> None:
        self._docker = docker
        self._run = run
        self._timeout = timeout

    def _exec(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        argv = [self._docker, *args]
        try:
            proc = self._run(
                argv, capture_output=True, text=True, timeout=self._timeout, check=False
            )
        except subprocess.TimeoutExpired as exc:
            raise RegistryUnavailableError(f"{' '.join(argv)} timed out") from exc
        except OSError as exc:
            raise PublishError(f"Cannot run {self._docker!r}: {exc}") from exc

        if check and proc.returncode != 0:
            output = f"{proc.stdout or ''}{proc.stderr or ''}".strip()
            message = f"{' '.join(argv)} failed ({proc.returncode}): {output}"
            if _UNAVAILABLE_PATTERNS.search(output):
                raise RegistryUnavailableError(message)
            raise PublishError(message)
        return proc

    def has_digest(self, repository: str, digest: str) -> bool:
        proc = self._exec(
            "manifest", "inspect", f"{repository}:{digest_tag(digest)}", check=False
        )
        return proc.returncode == 0

    def push_digest(self, repository: str, digest: str, source: Path) -> None:
        loaded = self._exec("load", "--input", str(source))
        matches = _LOADED.findall(loaded.stdout or "")
        if not matches:
            raise PublishError(f"docker load reported no image for {source}")
        target = f"{repository}:{digest_tag(digest)}"
        self._exec("tag", matches[-1], target)
        self._exec("push", target)
        logger.info("DockerRegistry: pushed %s", target)

    def set_tag(self, repository: str, digest: str, tag: str) -> None:
        source = f"{repository}:{digest_tag(digest)}"
        target = f"{repository}:{tag}"
        self._exec("tag", source, target)
        self._exec("push", target)
        logger.info("DockerRegistry: %s -> %s", target, source)

    def resolve_tag(self, repository: str, tag: str) -> str | None:
        proc = self._exec(
            "image", "inspect", "--format", "{{json .RepoTags}}", f"{repository}:{tag}",
            check=False,
        )
        if proc.returncode != 0:
            return None
        prefix = f"{repository}:sha256-"
        for ref in json.loads(proc.stdout or "[]"):
            if ref.startswith(prefix):
                return "sha256:" + ref[len(prefix):]
        return None
