"""
Process-local template cache.

Holds one entry per template identifier with an absolute expiration time.
Expired entries are removed when a lookup observes them; there is no
background sweeper.
"""

import time
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..shared.logging_config import get_logger


@dataclass(frozen=True)
class CacheEntry:
    """Cached template body with its absolute expiration (epoch seconds)."""
    template: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        """An entry expiring exactly now is already stale."""
        return self.expires_at <= now


class LocalTemplateCache:
    """Thread-safe in-memory template cache with per-entry TTL."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.cache: Dict[str, CacheEntry] = {}
        self.lock = threading.RLock()
        self.logger = get_logger(__name__, 'local_cache')
        self.stats = {
            'hits': 0,
            'misses': 0,
            'expirations': 0,
            'writes': 0,
        }

    def get(self, key: str) -> Optional[str]:
        """Return the cached template, or None when absent or expired."""
        with self.lock:
            entry = self.cache.get(key)
            if entry is None:
                self.stats['misses'] += 1
                return None

            if entry.is_expired(self.clock()):
                del self.cache[key]
                self.stats['expirations'] += 1
                self.stats['misses'] += 1
                self.logger.debug(
                    "Local cache entry is too old, removing",
                    operation="get",
                    key=key,
                    expires_at=entry.expires_at,
                )
                return None

            self.stats['hits'] += 1
            self.logger.debug(
                "Local cache still valid",
                operation="get",
                key=key,
                expires_at=entry.expires_at,
            )
            return entry.template

    def put(self, key: str, template: str, ttl: float) -> str:
        """Store `template` for `ttl` seconds and hand it back unchanged."""
        with self.lock:
            expires_at = self.clock() + ttl
            self.cache[key] = CacheEntry(template=template, expires_at=expires_at)
            self.stats['writes'] += 1

        self.logger.debug(
            f"Caching template locally for {ttl} seconds",
            operation="put",
            key=key,
            expires_at=expires_at,
        )
        return template

    def entry(self, key: str) -> Optional[CacheEntry]:
        """Return the raw entry for `key` without applying expiry."""
        with self.lock:
            return self.cache.get(key)

    def clear(self) -> None:
        """Clear all cache entries."""
        with self.lock:
            self.cache.clear()

    def __len__(self) -> int:
        with self.lock:
            return len(self.cache)

    def __contains__(self, key: str) -> bool:
        with self.lock:
            return key in self.cache

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self.lock:
            total_requests = self.stats['hits'] + self.stats['misses']
            hit_rate = self.stats['hits'] / total_requests if total_requests > 0 else 0

            return {
                **self.stats,
                'size': len(self.cache),
                'hit_rate': hit_rate,
                'total_requests': total_requests
            }
