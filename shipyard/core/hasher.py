"""Canonical hashing helpers for the ledger chain and content addressing."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

_CHUNK = 1024 * 1024


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize *obj* to stable JSON bytes.

    Keys are sorted, separators carry no whitespace and output is ASCII, so
    equal values always serialize to the same bytes.
    """
    text = json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return text.encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Hex SHA-256 of *data*."""
    return hashlib.sha256(data).hexdigest()


def file_sha256_hex(path: Path) -> str:
    """SHA-256 of a file's bytes, streamed."""
    h = hashlib.sha256()
    with Path(path).open("rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def tree_sha256_hex(root: Path) -> str:
    """SHA-256 over a directory tree: sorted relative paths plus file digests.

    Timestamps and permissions are ignored, so identical content in a
    different checkout hashes the same.
    """
    root = Path(root)
    listing = [
        [p.relative_to(root).as_posix(), file_sha256_hex(p)]
        for p in sorted(root.rglob("*"))
        if p.is_file()
    ]
    return sha256_hex(canonical_json_bytes(listing))


def content_digest(path: Path) -> str:
    """Content address of a build output: ``sha256:<hex>``."""
    path = Path(path)
    if path.is_dir():
        return f"sha256:{tree_sha256_hex(path)}"
    return f"sha256:{file_sha256_hex(path)}"


def compute_entry_hash(fields: dict[str, Any]) -> str:
    """Seal a ledger entry: the hash of every field except ``entry_hash``."""
    body = {key: value for key, value in fields.items() if key != "entry_hash"}
    return sha256_hex(canonical_json_bytes(body))
