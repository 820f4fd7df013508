"""Bounded, time-windowed buffer of observed evidence.

Inserts evict the oldest record once the pool is full; reads drop records
older than the window against an injectable clock.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Callable, Deque, Iterable, List, Optional

from . import config
from .evidence import Evidence


class EvidencePool:
    """Recent evidence, bounded by count and by age.

    ``insert`` evicts oldest-first past ``capacity``. Age is enforced lazily:
    reads only return entries with ``now - observed_at_ms <= ttl_ms`` and drop
    the stale ones they find. Every method runs to completion without
    yielding, so callbacks sharing the event loop never see a torn pool.
    """

    def __init__(
        self,
        capacity: Optional[int] = None,
        ttl_ms: Optional[int] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.capacity = max(1, int(capacity if capacity is not None else config.POOL_CAPACITY))
        self.ttl_ms = max(1, int(ttl_ms if ttl_ms is not None else config.POOL_TTL_MS))
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._items: Deque[Evidence] = deque(maxlen=self.capacity)

    def insert(self, evidence: Evidence) -> None:
        # deque(maxlen) drops from the left, i.e. the oldest insertion.
        self._items.append(evidence)

    def insert_many(self, items: Iterable[Evidence]) -> int:
        count = 0
        for evidence in items:
            self.insert(evidence)
            count += 1
        return count

    def query_alive(self, now_ms: Optional[int] = None) -> List[Evidence]:
        now = self._clock() if now_ms is None else int(now_ms)
        alive = [e for e in self._items if now - e.observed_at_ms <= self.ttl_ms]
        if len(alive) != len(self._items):
            self._items = deque(alive, maxlen=self.capacity)
        return list(alive)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


__all__ = ["EvidencePool"]
