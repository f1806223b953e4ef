"""In-process TTL cache for retrieval results."""
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from kb_engine.models.retrieval import RetrievalResult
from kb_engine.utils.text_cleaner import normalize_query


CacheKey = Tuple[str, str, int, bool]


@dataclass(frozen=True)
class CacheEntry:
    result: RetrievalResult
    created_at: float
    ttl_seconds: float

    def expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl_seconds


class RetrievalCache:
    """
    Short-lived cache keyed by (tenant, normalized query, k, rerank flag).

    Entries are immutable and replaced wholesale, so concurrent requests in
    one process only rely on atomic dict operations.
    """

    def __init__(
        self,
        ttl_seconds: float = 180.0,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize cache.

        Args:
            ttl_seconds: Entry lifetime (default: 3 minutes)
            max_entries: Upper bound on live entries; the oldest are evicted first
            clock: Monotonic time source, injectable for tests
        """
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}

    @staticmethod
    def make_key(tenant_id: str, query: str, k: int, rerank: bool) -> CacheKey:
        return (tenant_id, normalize_query(query), int(k), bool(rerank))

    def get(self, key: CacheKey) -> Optional[RetrievalResult]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            self._entries.pop(key, None)
            return None
        return entry.result

    def set(self, key: CacheKey, result: RetrievalResult) -> None:
        now = self._clock()
        self._sweep(now)
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_entries:
            oldest = next(iter(self._entries))
            self._entries.pop(oldest, None)
        self._entries[key] = CacheEntry(result=result, created_at=now, ttl_seconds=self.ttl_seconds)

    def _sweep(self, now: float) -> None:
        """Drop expired entries. Insertion order equals creation order, so stop at the first live one."""
        for key in list(self._entries):
            entry = self._entries.get(key)
            if entry is None:
                continue
            if not entry.expired(now):
                break
            self._entries.pop(key, None)

    def invalidate_tenant(self, tenant_id: str) -> int:
        """Drop every entry of one tenant; returns how many were removed."""
        keys = [key for key in list(self._entries) if key[0] == tenant_id]
        for key in keys:
            self._entries.pop(key, None)
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
