from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from threading import Lock, RLock
from typing import Iterator


class RepositoryLocks:
    """One re-entrant lock per resolved repository path.

    Runs and verification attempts against the same working tree are serialized;
    different repositories proceed independently.
    """

    def __init__(self):
        self._guard = Lock()
        self._locks: dict[str, RLock] = {}

    @staticmethod
    def _key(repo_path: str | Path) -> str:
        return str(Path(repo_path).resolve(strict=False))

    def for_path(self, repo_path: str | Path) -> RLock:
        key = self._key(repo_path)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, repo_path: str | Path) -> Iterator[None]:
        lock = self.for_path(repo_path)
        with lock:
            yield


REPOSITORY_LOCKS = RepositoryLocks()
