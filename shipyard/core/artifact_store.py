"""Content-addressed, immutable blob store backing the local registry.

Storage layout: {base_path}/{sha256[0:2]}/{sha256[2:4]}/{sha256}.dat
(directory build outputs are stored as a tree at ``{sha256}.tree/``).
No delete method: blobs are immutable once stored.  Writes land in a
temporary sibling first and are renamed into place, so a reader never
observes a half-written blob.
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from pathlib import Path

from shipyard.core.errors import ArtifactIntegrityError
from shipyard.core.hasher import content_digest

logger = logging.getLogger(__name__)


class ContentAddressedStore:
    """SHA-256 keyed, immutable blob store.

    Storing the same content twice is a no-op (idempotent).

    Parameters
    ----------
    base_path:
        Root directory for blob storage.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _extract_digest(address: str) -> str:
        """Strip the ``sha256:`` prefix from a content address, if present."""
        return address.removeprefix("sha256:")

    def _blob_dir(self, digest: str) -> Path:
        return self._base / digest[:2] / digest[2:4]

    def _locate(self, address: str) -> Path | None:
        digest = self._extract_digest(address)
        for candidate in (
            self._blob_dir(digest) / f"{digest}.dat",
            self._blob_dir(digest) / f"{digest}.tree",
        ):
            if candidate.exists():
                return candidate
        return None

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def store(self, source: Path) -> str:
        """Store a file or directory and return its ``sha256:<hex>`` address.

        If the content already exists, verifies it and returns the
        existing address without rewriting.
        """
        source = Path(source)
        address = content_digest(source)
        if self.exists(address):
            if not self.verify(address):
                raise ArtifactIntegrityError(f"Existing blob {address} failed integrity check")
            return address

        digest = self._extract_digest(address)
        target_dir = self._blob_dir(digest)
        target_dir.mkdir(parents=True, exist_ok=True)
        suffix = ".tree" if source.is_dir() else ".dat"
        final = target_dir / f"{digest}{suffix}"
        staging = target_dir / f".{digest}.{uuid.uuid4().hex}.partial"

        try:
            if source.is_dir():
                shutil.copytree(source, staging)
            else:
                shutil.copyfile(source, staging)
            os.replace(staging, final)
        finally:
            if staging.is_dir():
                shutil.rmtree(staging, ignore_errors=True)
            elif staging.exists():
                staging.unlink()

        logger.debug("Stored %s at %s", address, final)
        return address

    # ------------------------------------------------------------------
    # Check and verify
    # ------------------------------------------------------------------

    def exists(self, address: str) -> bool:
        return self._locate(address) is not None

    def path_of(self, address: str) -> Path:
        path = self._locate(address)
        if path is None:
            raise FileNotFoundError(f"Blob not found: {address}")
        return path

    def verify(self, address: str) -> bool:
        """Re-hash stored content and compare against its address."""
        path = self._locate(address)
        if path is None:
            return False
        return content_digest(path) == f"sha256:{self._extract_digest(address)}"
