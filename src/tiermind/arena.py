"""Foreign tier: bounded RAM-only arena of ephemeral identities.

A dict for lookup plus a min-heap on (first_seen, seq) so the oldest entry
is found in O(log n). Heap entries for removed ids are skipped lazily.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, Iterator

from tiermind.models import Identity, Tier

logger = logging.getLogger(__name__)


class ForeignArena:
    def __init__(self, capacity: int = 100, max_age: float = 30 * 60,
                 clock: Callable[[], float] = time.time) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.max_age = max_age
        self._clock = clock
        self._items: dict[str, Identity] = {}
        self._heap: list[tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._lock = threading.RLock()
        self.evicted = 0

    def get(self, identity_id: str) -> Identity | None:
        with self._lock:
            item = self._items.get(identity_id)
            return item.copy() if item is not None else None

    def put(self, identity: Identity) -> list[str]:
        """Insert or replace. Returns ids evicted to stay within capacity."""
        if identity.tier is not Tier.FOREIGN:
            raise ValueError(f"arena only holds foreign identities, got {identity.tier.value}")
        with self._lock:
            is_new = identity.id not in self._items
            self._items[identity.id] = identity.copy()
            if is_new:
                heapq.heappush(self._heap, (identity.first_seen, next(self._seq), identity.id))
            evicted = []
            while len(self._items) > self.capacity:
                oldest = self._pop_oldest(keep=identity.id)
                if oldest is None:
                    break
                evicted.append(oldest)
            self.evicted += len(evicted)
            return evicted

    def remove(self, identity_id: str) -> bool:
        with self._lock:
            return self._items.pop(identity_id, None) is not None

    def evict(self, now: float | None = None) -> list[str]:
        """Drop entries older than max_age, then the oldest ones beyond capacity."""
        with self._lock:
            now = self._clock() if now is None else now
            evicted = []
            while self._heap:
                first_seen, _, identity_id = self._heap[0]
                if identity_id not in self._items or self._items[identity_id].first_seen != first_seen:
                    heapq.heappop(self._heap)
                    continue
                if now - first_seen <= self.max_age:
                    break
                heapq.heappop(self._heap)
                del self._items[identity_id]
                evicted.append(identity_id)
            while len(self._items) > self.capacity:
                oldest = self._pop_oldest()
                if oldest is None:
                    break
                evicted.append(oldest)
            self.evicted += len(evicted)
            if evicted:
                logger.info("evicted %d foreign identities, %d remain",
                            len(evicted), len(self._items))
            return evicted

    def _pop_oldest(self, keep: str | None = None) -> str | None:
        skipped = []
        found = None
        while self._heap:
            item = heapq.heappop(self._heap)
            identity_id = item[2]
            live = self._items.get(identity_id)
            if live is None or live.first_seen != item[0]:
                continue
            if identity_id == keep:
                skipped.append(item)
                continue
            del self._items[identity_id]
            found = identity_id
            break
        for item in skipped:
            heapq.heappush(self._heap, item)
        return found

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def snapshot(self) -> list[Identity]:
        with self._lock:
            return [item.copy() for item in self._items.values()]

    def __contains__(self, identity_id: str) -> bool:
        with self._lock:
            return identity_id in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self.ids())
