"""
TTL cache for geolocation results, keyed by client address.
"""

import threading
import time
from typing import Callable, Dict, Optional, Tuple

import structlog

from fingerprinting.core.models.visits import GeoResponse
from fingerprinting.core.utils.metrics import GEO_CACHE_HITS, GEO_CACHE_MISSES, GEO_CACHE_SIZE

logger = structlog.get_logger(__name__)


class GeoCache:
    """Lock-guarded address -> GeoResponse cache with a fixed entry lifetime."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[GeoResponse, float]] = {}
        self._lock = threading.Lock()

    def get(self, address: str) -> Optional[GeoResponse]:
        """Return a fresh entry; expired entries are dropped on read."""
        with self._lock:
            entry = self._entries.get(address)
            if entry is None:
                GEO_CACHE_MISSES.inc()
                return None

            response, stored_at = entry
            if self._clock() - stored_at < self.ttl_seconds:
                GEO_CACHE_HITS.inc()
                return response

            del self._entries[address]
            GEO_CACHE_SIZE.set(len(self._entries))
            GEO_CACHE_MISSES.inc()
            return None

    def put(self, address: str, response: GeoResponse) -> None:
        with self._lock:
            self._entries[address] = (response, self._clock())
            GEO_CACHE_SIZE.set(len(self._entries))

    def evict(self, address: str) -> bool:
        with self._lock:
            removed = self._entries.pop(address, None) is not None
            GEO_CACHE_SIZE.set(len(self._entries))
            return removed

    def purge_expired(self) -> int:
        """Remove every entry at or past its lifetime. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [
                address for address, (_, stored_at) in self._entries.items()
                if now - stored_at >= self.ttl_seconds
            ]
            for address in expired:
                del self._entries[address]
            GEO_CACHE_SIZE.set(len(self._entries))

        if expired:
            logger.debug("Purged expired geo cache entries", removed=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict[str, float]:
        return {"size": len(self), "ttl_seconds": self.ttl_seconds}
