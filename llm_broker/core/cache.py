"""
Content-addressed response cache.

Entries are keyed by (call type, normalized prompt hash), expire lazily
by per-call-type TTL, and are evicted least-recently-used beyond capacity.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Tuple

from .types import CallType, Response, ResponseSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Cached response with its expiry data."""
    response: Response
    created_at: float
    ttl_seconds: float
    tokens: int = 0
    cost_usd: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl_seconds


@dataclass
class CacheStats:
    """Counters for hit-rate reporting."""
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    cost_saved_usd: float = 0.0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class ResponseCache:
    """Thread-safe TTL + LRU cache of successful responses."""

    def __init__(
        self,
        capacity: int,
        ttl_seconds: Dict[CallType, float],
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        missing = set(CallType) - set(ttl_seconds)
        if missing:
            raise ValueError(f"Missing TTL for call types: {sorted(c.value for c in missing)}")

        self.capacity = capacity
        self.ttl_seconds = dict(ttl_seconds)
        self.enabled = enabled
        self._clock = clock
        self._entries: "OrderedDict[Tuple[CallType, str], CacheEntry]" = OrderedDict()
        self._stats = CacheStats()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def lookup(self, prompt_hash: str, call_type: CallType) -> Optional[Response]:
        """Return a cached response, or None on a miss.

        A hit is returned as a zero-token, zero-cost response tagged
        ``source=cache``. Entries past their TTL are dropped and count as misses.
        """
        key = (call_type, prompt_hash)
        with self._lock:
            if not self.enabled:
                self._stats.misses += 1
                return None

            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._stats.expirations += 1
                self._stats.misses += 1
                return None

            self._entries.move_to_end(key)
            self._stats.hits += 1
            self._stats.cost_saved_usd += entry.cost_usd

        logger.debug("Cache hit for %s %s", call_type.value, prompt_hash[:12])
        return replace(
            entry.response,
            input_tokens=0,
            completion_tokens=0,
            cost_usd=0.0,
            duration_ms=0,
            source=ResponseSource.CACHE,
            attempts=0,
        )

    def insert(
        self,
        prompt_hash: str,
        call_type: CallType,
        response: Response,
        tokens: int = 0,
        cost_usd: float = 0.0
    ) -> None:
        """Store a response under the call type's TTL, evicting LRU entries past capacity."""
        key = (call_type, prompt_hash)
        with self._lock:
            if not self.enabled:
                return
            self._entries[key] = CacheEntry(
                response=response,
                created_at=self._clock(),
                ttl_seconds=self.ttl_seconds[call_type],
                tokens=tokens,
                cost_usd=cost_usd,
            )
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                evicted_key, _ = self._entries.popitem(last=False)
                self._stats.evictions += 1
                logger.debug("Evicted LRU cache entry %s %s", evicted_key[0].value, evicted_key[1][:12])

    def invalidate(self, prompt_hash: str, call_type: CallType) -> bool:
        with self._lock:
            return self._entries.pop((call_type, prompt_hash), None) is not None

    def evict_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._stats.expirations += len(expired)
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._stats = CacheStats()

    def stats(self) -> CacheStats:
        with self._lock:
            return replace(self._stats)
