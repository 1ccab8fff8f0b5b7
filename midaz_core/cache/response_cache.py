"""
Response Cache
==============
Short-TTL, bounded in-memory cache for successful GET responses.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional, Tuple

import structlog

from midaz_core.metrics import record_cache_event

logger = structlog.get_logger(__name__)


@dataclass
class CacheConfig:
    """Response cache settings. ``ttl`` is in seconds."""
    enabled: bool = True
    ttl: float = 60.0
    max_entries: int = 100
    use_lru: bool = True


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class ResponseCache:
    """
    In-memory response cache with per-entry expiry.

    When full, ``set`` on a new key evicts the least recently used entry
    (``use_lru=True``) or the oldest inserted one. Expired entries are
    dropped lazily when read.
    """

    def __init__(
        self,
        ttl: float = 60.0,
        max_entries: int = 100,
        use_lru: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.ttl = ttl
        self.max_entries = max_entries
        self.use_lru = use_lru
        self._clock = clock
        # Insertion order, or recency order in LRU mode (most recent at the end)
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

    @classmethod
    def from_config(
        cls,
        config: CacheConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> "ResponseCache":
        return cls(
            ttl=config.ttl,
            max_entries=config.max_entries,
            use_lru=config.use_lru,
            clock=clock,
        )

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            record_cache_event("miss")
            return default

        if self._clock() >= entry.expires_at:
            del self._entries[key]
            record_cache_event("expired")
            return default

        if self.use_lru:
            self._entries.move_to_end(key)
        record_cache_event("hit")
        return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store ``value`` for ``ttl`` seconds (the cache default when omitted)."""
        expires_at = self._clock() + (self.ttl if ttl is None else ttl)

        if key in self._entries:
            self._entries[key] = CacheEntry(value, expires_at)
            if self.use_lru:
                self._entries.move_to_end(key)
            return

        if len(self._entries) >= self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            record_cache_event("eviction")
            logger.debug("cache_evicted", key=evicted)

        self._entries[key] = CacheEntry(value, expires_at)

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def has(self, key: str) -> bool:
        """True if ``key`` holds a live entry. Does not touch recency."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return False
        return True

    def peek(self, key: str, default: Any = None) -> Any:
        """Live value for ``key`` without touching recency or hit counters."""
        if not self.has(key):
            return default
        return self._entries[key].value

    def keys(self) -> List[str]:
        self._purge_expired()
        return list(self._entries)

    def values(self) -> List[Any]:
        self._purge_expired()
        return [entry.value for entry in self._entries.values()]

    def items(self) -> List[Tuple[str, Any]]:
        self._purge_expired()
        return [(key, entry.value) for key, entry in self._entries.items()]

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now >= e.expires_at]
        for key in expired:
            del self._entries[key]

    def __len__(self) -> int:
        self._purge_expired()
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())
