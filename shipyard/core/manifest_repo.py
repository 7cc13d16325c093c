"""Manifest repository backends: where deployment descriptors are committed.

Contract shared by every backend:
- ``sync()`` brings the working copy to the branch tip and returns its id.
- ``read(path, revision=None)`` returns file content.
- ``commit_and_push(path, content, message, base)`` publishes one change on
  top of *base* and returns the new commit id.  On any failure the working
  copy is reset to *base* and nothing is visible to other readers; a
  moved branch tip raises ``PushRejectedError``.  Never force-pushes.

Backends:
1. ``GitManifestRepository``: git CLI over a working clone.
2. ``LocalManifestRepository``: plain directory plus an append-only
   commit journal, for offline runs and tests.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from shipyard.core.errors import MutationError, PushRejectedError, RemoteUnavailableError
from shipyard.core.hasher import canonical_json_bytes, sha256_hex

logger = logging.getLogger(__name__)


@runtime_checkable
class ManifestRepository(Protocol):
    """Protocol for manifest repository backends."""

    @property
    def key(self) -> str:
        """Identity of the repository, used to scope the push mutex."""
        ...

    @property
    def branch(self) -> str:
        ...

    def sync(self) -> str:
        ...

    def read(self, path: str, revision: str | None = None) -> str:
        ...

    def commit_and_push(self, path: str, content: str, message: str, base: str) -> str:
        ...


# ---------------------------------------------------------------------------
# Local (directory + journal)
# ---------------------------------------------------------------------------

_JOURNAL = ".shipyard-commits.jsonl"


class LocalManifestRepository:
    """A directory of manifests with an append-only commit journal.

    Every commit appends one JSON line holding the full new content of the
    changed file, so any revision can be read back.

    Parameters
    ----------
    root:
        Directory holding the manifests.
    branch:
        Branch name recorded on each commit (informational).
    """

    def __init__(self, root: Path, branch: str = "main") -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._branch = branch
        self._journal = self._root / _JOURNAL
        self._lock = threading.Lock()

    @property
    def key(self) -> str:
        return str(self._root.resolve())

    @property
    def branch(self) -> str:
        return self._branch

    def history(self) -> list[dict]:
        if not self._journal.exists():
            return []
        return [
            json.loads(line)
            for line in self._journal.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]

    def head(self) -> str:
        commits = self.history()
        return commits[-1]["commit"] if commits else ""

    def sync(self) -> str:
        return self.head()

    def _file(self, path: str) -> Path:
        target = (self._root / path).resolve()
        if self._root.resolve() not in target.parents:
            raise MutationError(f"Manifest path escapes the repository: {path}")
        return target

    def read(self, path: str, revision: str | None = None) -> str:
        if revision is None:
            target = self._file(path)
            if not target.exists():
                raise MutationError(f"Manifest not found: {path}")
            return target.read_text(encoding="utf-8")

        content: str | None = None
        for commit in self.history():
            if commit["path"] == path:
                content = commit["content"]
            if commit["commit"] == revision:
                if content is None:
                    raise MutationError(f"{path} has no recorded content at {revision}")
                return content
        raise MutationError(f"Unknown revision: {revision}")

    def commit_and_push(self, path: str, content: str, message: str, base: str) -> str:
        target = self._file(path)
        with self._lock:
            if self.head() != base:
                raise PushRejectedError(
                    f"Branch {self._branch} moved from {base or '<root>'} to {self.head()}"
                )
            record = {
                "parent": base,
                "path": path,
                "content": content,
                "message": message,
                "branch": self._branch,
                "timestamp_utc": datetime.now(timezone.utc).isoformat(),
            }
            record["commit"] = sha256_hex(canonical_json_bytes(record))[:40]

            previous = target.read_bytes() if target.exists() else None
            staging = target.with_name(f".{target.name}.{uuid.uuid4().hex}.partial")
            staging.write_text(content, encoding="utf-8")
            os.replace(staging, target)
            try:
                with self._journal.open("a", encoding="utf-8") as fh:
                    fh.write(json.dumps(record, sort_keys=True) + "\n")
            except OSError as exc:
                if previous is None:
                    target.unlink()
                else:
                    target.write_bytes(previous)
                raise MutationError(f"Could not record commit for {path}: {exc}") from exc

        logger.info("LocalManifestRepository: %s committed as %s", path, record["commit"])
        return record["commit"]


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------

_REJECTED = re.compile(r"\[rejected\]|non-fast-forward|fetch first|failed to push some refs")
_UNREACHABLE = re.compile(
    r"Could not resolve host|Connection timed out|Connection refused|"
    r"unable to access|Could not read from remote repository",
    re.IGNORECASE,
)

Runner = Callable[..., subprocess.CompletedProcess]


class GitManifestRepository:
    """Commits manifests through the git CLI in a dedicated working clone.

    Parameters
    ----------
    path:
        The working clone.  It is reset to the remote branch on every
        ``sync()``, so it must not be shared with a human checkout.
    branch, remote:
        Target branch and remote name.
    author_name, author_email:
        Identity used for commits.
    run:
        Replaceable ``subprocess.run`` (for tests).
    """

    def __init__(
        self,
        path: Path,
        branch: str = "main",
        remote: str = "origin",
        *,
        author_name: str = "shipyard",
        author_email: str = "shipyard@localhost",
        run: Runner = subprocess.run,
        timeout: float = 120.0,
    ) -> None:
        self._path = Path(path)
        self._branch = branch
        self._remote = remote
        self._author = (author_name, author_email)
        self._run = run
        self._timeout = timeout
        self._key: str | None = None

    @property
    def key(self) -> str:
        if self._key is None:
            proc = self._git("remote", "get-url", self._remote, check=False)
            url = proc.stdout.strip() if proc.returncode == 0 else ""
            self._key = url or str(self._path.resolve())
        return self._key

    @property
    def branch(self) -> str:
        return self._branch

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        argv = [
            "git", "-C", str(self._path),
            "-c", f"user.name={self._author[0]}",
            "-c", f"user.email={self._author[1]}",
            *args,
        ]
        try:
            proc = self._run(
                argv, capture_output=True, text=True, timeout=self._timeout, check=False
            )
        except subprocess.TimeoutExpired as exc:
            raise RemoteUnavailableError(f"git {' '.join(args)} timed out") from exc
        except OSError as exc:
            raise MutationError(f"Cannot run git: {exc}") from exc
        if check and proc.returncode != 0:
            output = f"{proc.stdout or ''}{proc.stderr or ''}".strip()
            message = f"git {' '.join(args)} failed ({proc.returncode}): {output}"
            if _UNREACHABLE.search(output):
                raise RemoteUnavailableError(message)
            raise MutationError(message)
        return proc

    def sync(self) -> str:
        upstream = f"{self._remote}/{self._branch}"
        self._git("fetch", self._remote, self._branch)
        self._git("checkout", "--force", "-B", self._branch, upstream)
        self._git("reset", "--hard", upstream)
        return self._git("rev-parse", "HEAD").stdout.strip()

    def read(self, path: str, revision: str | None = None) -> str:
        if revision is not None:
            return self._git("show", f"{revision}:{path}").stdout
        target = self._path / path
        if not target.exists():
            raise MutationError(f"Manifest not found: {path}")
        return target.read_text(encoding="utf-8")

    def _rollback(self, base: str) -> None:
        self._git("reset", "--hard", base, check=False)

    def commit_and_push(self, path: str, content: str, message: str, base: str) -> str:
        (self._path / path).write_text(content, encoding="utf-8")
        try:
            self._git("add", "--", path)
            self._git("commit", "-m", message)
        except MutationError:
            self._rollback(base)
            raise

        push = self._git("push", self._remote, f"HEAD:{self._branch}", check=False)
        if push.returncode != 0:
            self._rollback(base)
            output = f"{push.stdout or ''}{push.stderr or ''}".strip()
            if _REJECTED.search(output):
                raise PushRejectedError(f"Push to {self._branch} rejected: {output}")
            if _UNREACHABLE.search(output):
                raise RemoteUnavailableError(f"Push to {self._branch} failed: {output}")
            raise MutationError(f"Push to {self._branch} failed: {output}")

        commit = self._git("rev-parse", "HEAD").stdout.strip()
        logger.info("GitManifestRepository: pushed %s to %s/%s", commit, self._remote, self._branch)
        return commit
