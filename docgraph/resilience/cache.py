"""Content-addressed embedding cache with LRU eviction and TTL.

Process-local only. Concurrent requests for the same text share one
in-flight computation.
"""
import asyncio
import hashlib
import time
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from docgraph import config

logger = structlog.get_logger()

Vector = List[float]


def content_key(text: str) -> str:
    """SHA-256 hex digest of the exact text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class EmbeddingCache:
    """LRU + TTL cache of embedding vectors keyed by content hash."""

    def __init__(
        self,
        max_items: int = None,
        ttl_seconds: float = None,
        enabled: bool = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the cache.

        Args:
            max_items: Maximum number of cached vectors (default from config)
            ttl_seconds: Entry time-to-live in seconds (default from config)
            enabled: Disable to always compute (default from config)
            clock: Monotonic time source
        """
        self.max_items = max_items or config.EMBEDDING_CACHE_MAX_ITEMS
        self.ttl_seconds = ttl_seconds or config.EMBEDDING_CACHE_TTL
        self.enabled = config.EMBEDDING_CACHE_ENABLED if enabled is None else enabled
        self._clock = clock

        self._entries: "OrderedDict[str, Tuple[Vector, float]]" = OrderedDict()
        self._in_flight: Dict[str, asyncio.Future] = {}

        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, text: str) -> Optional[Vector]:
        """Return the cached vector for ``text``, or None if absent or expired."""
        if not self.enabled:
            return None

        key = content_key(text)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None

        vector, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            self.misses += 1
            return None

        self._entries.move_to_end(key)
        self.hits += 1
        return vector

    def set(self, text: str, vector: Vector) -> None:
        if not self.enabled:
            return

        key = content_key(text)
        self._entries[key] = (list(vector), self._clock() + self.ttl_seconds)
        self._entries.move_to_end(key)

        while len(self._entries) > self.max_items:
            evicted_key, _ = self._entries.popitem(last=False)
            self.evictions += 1
            logger.debug("embedding_cache_evicted", key=evicted_key[:12])

    def invalidate(self, text: str) -> bool:
        return self._entries.pop(content_key(text), None) is not None

    def clear(self) -> None:
        self._entries.clear()

    async def get_or_compute(
        self, text: str, compute: Callable[[str], Awaitable[Vector]]
    ) -> Vector:
        """Return a cached vector or compute it once.

        Concurrent callers for the same text wait on the single in-flight
        computation instead of calling ``compute`` again. A failure is
        propagated to every waiter and nothing is cached.
        """
        if not self.enabled:
            return await compute(text)

        while True:
            cached = self.get(text)
            if cached is not None:
                return cached

            key = content_key(text)
            pending = self._in_flight.get(key)
            if pending is None:
                break

            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if pending.cancelled():
                    # Owner was cancelled; try again ourselves
                    continue
                raise

        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            vector = await compute(text)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unobserved failure is not reported
            future.exception()
            raise
        finally:
            self._in_flight.pop(key, None)

        self.set(text, vector)
        future.set_result(vector)
        return vector

    def stats(self) -> Dict[str, float]:
        lookups = self.hits + self.misses
        return {
            "enabled": self.enabled,
            "size": len(self._entries),
            "max_items": self.max_items,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "hit_rate": self.hits / lookups if lookups else 0.0,
        }
