from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from .errors import ConcurrentModification


class FlowLockManager:
    """Per-flow try-locks. A second caller on a busy flow fails fast instead of queueing."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._holders: dict[str, int] = {}

    @contextmanager
    def hold(self, flow_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(flow_id, threading.Lock())
            self._holders[flow_id] = self._holders.get(flow_id, 0) + 1
        acquired = lock.acquire(blocking=False)
        try:
            if not acquired:
                raise ConcurrentModification(f"Flow {flow_id} is being modified by another request.", flow_id=flow_id)
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                self._holders[flow_id] -= 1
                if self._holders[flow_id] == 0:
                    del self._holders[flow_id]
                    del self._locks[flow_id]

    def is_locked(self, flow_id: str) -> bool:
        with self._guard:
            lock = self._locks.get(flow_id)
            return bool(lock and lock.locked())
