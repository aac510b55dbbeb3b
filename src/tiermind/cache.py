"""In-memory TTL cache with independently sized namespaces.

Eviction is insertion-order FIFO: when a namespace is full, the oldest
inserted entry goes first. Expired entries are dropped on read and by sweep().
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from tiermind.config import EngineConfig
from tiermind.errors import CacheFault
from tiermind.models import Identity, Tier
from tiermind.similarity import text_hash

logger = logging.getLogger(__name__)

PROFILES = "profiles"
SIMILARITIES = "similarities"
CONTEXTS = "contexts"
TRUST = "trust"
NAMESPACES = (PROFILES, SIMILARITIES, CONTEXTS, TRUST)


class _Miss:
    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Miss()


@dataclass
class CacheEntry:
    key: str
    value: Any
    expires_at: float
    created_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


@contextmanager
def _guard(operation: str) -> Iterator[None]:
    try:
        yield
    except CacheFault:
        raise
    except Exception as exc:
        raise CacheFault(f"cache {operation} failed: {exc}") from exc


class CacheNamespace:
    """One bounded FIFO+TTL map."""

    def __init__(self, name: str, max_size: int, default_ttl: float,
                 clock: Callable[[], float] = time.time) -> None:
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.name = name
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    def get(self, key: str) -> Any:
        with self._lock, _guard("get"):
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return MISS
            if entry.expired(self._clock()):
                del self._entries[key]
                self.expirations += 1
                self.misses += 1
                return MISS
            self.hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        with self._lock, _guard("set"):
            now = self._clock()
            ttl = self.default_ttl if ttl is None else ttl
            # Re-insert so a rewritten key counts as newest.
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(key, value, now + ttl, now)
            while len(self._entries) > self.max_size:
                oldest, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug("cache %s evicted %s", self.name, oldest)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_pattern(self, prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def sweep(self, now: float | None = None) -> int:
        with self._lock:
            now = self._clock() if now is None else now
            expired = [k for k, e in self._entries.items() if e.expired(now)]
            for key in expired:
                del self._entries[key]
            self.expirations += len(expired)
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def metrics(self) -> dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": self.hits / total if total else 0.0,
                "size": len(self._entries),
                "max_size": self.max_size,
                "evictions": self.evictions,
                "expirations": self.expirations,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.expired(self._clock())


class CacheLayer:
    """Profile, similarity, context and trust caches in front of the store."""

    def __init__(self, config: EngineConfig | None = None,
                 clock: Callable[[], float] = time.time) -> None:
        cfg = config or EngineConfig()
        self.foreign_ttl = cfg.foreign_ttl
        sizes = {
            PROFILES: cfg.profile_cache_size,
            SIMILARITIES: cfg.similarity_cache_size,
            CONTEXTS: cfg.context_cache_size,
            TRUST: cfg.trust_cache_size,
        }
        self._namespaces = {
            name: CacheNamespace(name, size, cfg.default_ttl, clock)
            for name, size in sizes.items()
        }

    def namespace(self, name: str) -> CacheNamespace:
        try:
            return self._namespaces[name]
        except KeyError:
            raise CacheFault(f"unknown cache namespace: {name!r}") from None

    # ── profiles ───────────────────────────────────────────────────────

    def get_profile(self, identity_id: str) -> Identity | None:
        value = self.namespace(PROFILES).get(identity_id)
        return None if value is MISS else value.copy()

    def set_profile(self, identity: Identity) -> None:
        ttl = self.foreign_ttl if identity.tier is Tier.FOREIGN else None
        self.namespace(PROFILES).set(identity.id, identity.copy(), ttl)

    # ── similarities ───────────────────────────────────────────────────

    @staticmethod
    def similarity_key(text: str, identity_id: str) -> str:
        return f"{identity_id}:{text_hash(text)}"

    def get_similarity(self, text: str, identity_id: str) -> float | None:
        value = self.namespace(SIMILARITIES).get(self.similarity_key(text, identity_id))
        return None if value is MISS else value

    def set_similarity(self, text: str, identity_id: str, score: float) -> None:
        self.namespace(SIMILARITIES).set(self.similarity_key(text, identity_id), score)

    # ── contexts ───────────────────────────────────────────────────────

    def get_context(self, identity_id: str, kind: str) -> dict | None:
        """Derived per-identity views (analytics and the like)."""
        value = self.namespace(CONTEXTS).get(f"{identity_id}:{kind}")
        return None if value is MISS else dict(value)

    def set_context(self, identity_id: str, kind: str, context: dict) -> None:
        self.namespace(CONTEXTS).set(f"{identity_id}:{kind}", dict(context))

    # ── trust ──────────────────────────────────────────────────────────

    def get_trust(self, identity_id: str, relationship: str | None) -> list | None:
        value = self.namespace(TRUST).get(f"{identity_id}:{relationship or '*'}")
        return None if value is MISS else list(value)

    def set_trust(self, identity_id: str, relationship: str | None, links: list) -> None:
        self.namespace(TRUST).set(f"{identity_id}:{relationship or '*'}", list(links))

    # ── invalidation / maintenance ─────────────────────────────────────

    def invalidate_identity(self, identity_id: str) -> None:
        """Drop everything derived from one identity's record."""
        self.namespace(PROFILES).invalidate(identity_id)
        self.namespace(SIMILARITIES).invalidate_pattern(f"{identity_id}:")
        self.namespace(CONTEXTS).invalidate_pattern(f"{identity_id}:")
        self.namespace(TRUST).invalidate_pattern(f"{identity_id}:")

    def sweep(self) -> int:
        return sum(ns.sweep() for ns in self._namespaces.values())

    def clear(self, namespace: str | None = None) -> None:
        if namespace is None:
            for ns in self._namespaces.values():
                ns.clear()
        else:
            self.namespace(namespace).clear()

    def metrics(self) -> dict[str, Any]:
        per_ns = {name: ns.metrics() for name, ns in self._namespaces.items()}
        hits = sum(m["hits"] for m in per_ns.values())
        misses = sum(m["misses"] for m in per_ns.values())
        return {
            "hits": hits,
            "misses": misses,
            "hit_rate": hits / (hits + misses) if hits + misses else 0.0,
            "size": sum(m["size"] for m in per_ns.values()),
            "evictions": sum(m["evictions"] for m in per_ns.values()),
            "namespaces": per_ns,
        }
