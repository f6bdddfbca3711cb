"""
In-process TTL cache for store reads.

Keys are built from the operation name plus its serialized parameters, e.g.
``slots.available:{"from_date": "2026-10-19", "limit": 50, "page": 1}``.
Invalidation is by tag: a mutation of slots sweeps every key containing
``slot``. One instance is built at startup and shared by the engine services.
"""

import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class CacheEntry:
    key: str
    value: Any
    inserted_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.inserted_at < self.ttl


def make_cache_key(operation: str, params: dict[str, Any] | None = None) -> str:
    return f"{operation}:{json.dumps(params or {}, sort_keys=True, default=str)}"


class CacheService:
    """Thread-safe TTL key/value cache with substring-tag invalidation."""

    def __init__(self, default_ttl: float = 300, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_fresh(self._clock()):
                self.hits += 1
                return entry.value
            if entry is not None:
                del self._entries[key]
            self.misses += 1
            return default

    def lookup(self, key: str) -> tuple[bool, Any]:
        """Like get() but distinguishes a cached None from a miss."""
        value = self.get(key, _MISSING)
        if value is _MISSING:
            return False, None
        return True, value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        entry = CacheEntry(
            key=key,
            value=value,
            inserted_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl,
        )
        with self._lock:
            self._entries[key] = entry

    def invalidate(self, tags: Iterable[str]) -> int:
        """Drop every key containing any of the tags. Returns number of dropped keys."""
        tags = [t for t in tags if t]
        if not tags:
            return 0
        with self._lock:
            doomed = [k for k in self._entries if any(t in k for t in tags)]
            for k in doomed:
                del self._entries[k]
        if doomed:
            logger.debug("Cache invalidated %d key(s) for tags %s", len(doomed), tags)
        return len(doomed)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if not e.is_fresh(now)]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("Cache cleared")

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "keys": sorted(self._entries),
            }
