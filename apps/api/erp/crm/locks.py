from __future__ import annotations

import threading
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from erp.crm.errors import ConcurrencyError


class StageLockRegistry:
    """Process-local mutual exclusion for position-changing work on a stage.

    Row locks taken through ``SELECT ... FOR UPDATE`` cover multi-process
    deployments on PostgreSQL. SQLite ignores ``FOR UPDATE``, so writers in one
    process additionally serialize here. Locks are always acquired in sorted id
    order so two moves between the same pair of stages cannot deadlock.
    """

    def __init__(self, timeout_seconds: float = 10.0) -> None:
        self._timeout = timeout_seconds
        self._guard = threading.Lock()
        self._locks: dict[uuid.UUID, threading.Lock] = {}

    def _lock_for(self, stage_id: uuid.UUID) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(stage_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[stage_id] = lock
            return lock

    @contextmanager
    def hold(self, stage_ids: Iterable[uuid.UUID | None], *, operation: str) -> Iterator[None]:
        ordered = sorted({stage_id for stage_id in stage_ids if stage_id is not None}, key=str)
        acquired: list[threading.Lock] = []
        try:
            for stage_id in ordered:
                lock = self._lock_for(stage_id)
                if not lock.acquire(timeout=self._timeout):
                    raise ConcurrencyError(f"timed out waiting for stage {stage_id}", operation=operation)
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
