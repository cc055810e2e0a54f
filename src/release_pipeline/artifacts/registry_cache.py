"""
Shared toolchain registry cache.

One directory per cache key is mounted into every container that resolves to that
key. Reads take no lock; writers hold a per-key lock that is exclusive both across
threads of this process and across processes sharing the cache root.
"""

from __future__ import annotations

import fcntl
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_LOCK_DIRNAME = ".locks"


class RegistryCache:
    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._guard = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}

    @property
    def root(self) -> Path:
        return self._root

    def directory_for(self, key: str) -> Path:
        _validate_key(key)
        return self._root / key

    def ensure(self, key: str) -> Path:
        directory = self.directory_for(key)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    @contextmanager
    def write_lock(self, key: str) -> Iterator[Path]:
        """Hold the exclusive writer lock for ``key`` and yield its directory."""

        directory = self.ensure(key)
        lock_dir = self._root / _LOCK_DIRNAME
        lock_dir.mkdir(exist_ok=True)
        with self._thread_lock(key):
            with (lock_dir / f"{key}.lock").open("a") as handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield directory
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _thread_lock(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock


def _validate_key(key: str) -> None:
    if not isinstance(key, str) or not _KEY_RE.fullmatch(key):
        raise ValueError(f"invalid cache key {key!r}")


__all__ = ["RegistryCache"]
