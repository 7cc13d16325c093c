"""Mutexes scoped to (repository, branch) for serialized pushes."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class BranchLocks:
    """One lock per (repository, branch); at most one push in flight per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.Lock] = {}

    def lock_for(self, repository: str, branch: str) -> threading.Lock:
        key = (repository, branch)
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    @contextmanager
    def hold(self, repository: str, branch: str) -> Iterator[None]:
        lock = self.lock_for(repository, branch)
        if not lock.acquire(blocking=False):
            logger.info("Waiting for push lock on %s@%s", repository, branch)
            lock.acquire()
        try:
            yield
        finally:
            lock.release()


# Process-wide registry; every mutator shares it unless given its own.
branch_locks = BranchLocks()
