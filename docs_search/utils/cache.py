"""Process-local TTL cache with an injectable clock"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional

from .logger import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Immutable cache value with its expiry timestamp"""

    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class TTLCache:
    """
    Key-value cache where each entry expires after a fixed TTL

    Writes go through a lock. Expired entries are never mutated: they stay
    inert until they are replaced by a new write or dropped on read.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic, name: str = "cache"):
        """
        Args:
            ttl: Default time-to-live in seconds
            clock: Monotonic clock returning seconds (injected in tests)
            name: Label used in log messages and statistics
        """
        self.ttl = ttl
        self.clock = clock
        self.name = name
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value, or None when absent or expired"""
        entry = self._entries.get(key)
        if entry is None or entry.is_expired(self.clock()):
            with self._lock:
                self.misses += 1
                if entry is not None and self._entries.get(key) is entry:
                    del self._entries[key]
            return None

        with self._lock:
            self.hits += 1
        return entry.value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        """Store value under key, replacing any previous entry"""
        entry = CacheEntry(value=value, expires_at=self.clock() + (self.ttl if ttl is None else ttl))
        with self._lock:
            self._entries[key] = entry

    def __contains__(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self.clock())

    def __len__(self) -> int:
        return len(self._entries)

    def purge_expired(self) -> int:
        """Drop expired entries, returning how many were removed"""
        now = self.clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"{self.name}: purged {len(expired)} expired entries")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0
        logger.debug(f"{self.name} cleared")

    def stats(self) -> Dict[str, Any]:
        """Size and hit/miss counters"""
        lookups = self.hits + self.misses
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
            "ttl": self.ttl,
        }
