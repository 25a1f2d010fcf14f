"""Verrous exclusifs par clé (process-local).

Sérialise les écrivains concurrents d'une même clé (ex: content_id) au sein d'un
process. Entre process, la sérialisation repose sur le `SELECT ... FOR UPDATE` et les
contraintes d'unicité de la base.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class KeyedLock:
    """Registre de verrous indexés par clé, purgés quand plus personne ne les tient."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str, timeout: float = -1) -> Iterator[None]:
        """Acquiert le verrou de `key`; lève TimeoutError si `timeout` est dépassé."""
        with self._guard:
            lock, users = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, users + 1)
        acquired = lock.acquire(timeout=timeout)
        try:
            if not acquired:
                raise TimeoutError(f"lock timeout for {key}")
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                lock, users = self._locks[key]
                if users <= 1:
                    self._locks.pop(key, None)
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
