"""
ingestion/rpc/cache.py

RpcCache — bounded in-memory TTL cache for read-only RPC responses.
"""
import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


# Per-method TTL policy (milliseconds). Methods not listed are not cached.
DEFAULT_METHOD_TTLS_MS: Dict[str, int] = {
    "eth_chainId": 24 * 60 * 60 * 1000,  # 24 hours, identity never changes
    "eth_blockNumber": 1500,             # ~ one block
    "eth_getCode": 60_000,
    "eth_call": 10_000,
    "eth_getLogs": 10_000,
    "eth_getBalance": 2000,
}


def make_key(method: str, params: Any, namespace: str = "") -> str:
    """Stable cache key: method + sha256 of canonical JSON params."""
    payload = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]
    prefix = f"{namespace}:" if namespace else ""
    return f"{prefix}{method}:{digest}"


@dataclass
class CacheEntry:
    """Represents a cached value with TTL."""
    value: Any
    expires_at: float  # monotonic seconds


class RpcCache:
    """
    In-memory TTL cache for RPC responses.

    Features:
    - TTL-based expiration, per-method TTL policy
    - Bounded: oldest entries pruned past max_entries
    - In-flight de-duplication: concurrent misses for one key share a fetch
    - Failed fetches are never cached

    Runs on a single event loop; no locking.
    """

    DEFAULT_MAX_ENTRIES = 500

    def __init__(
        self,
        default_ttl_ms: int = 10_000,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        method_ttls_ms: Optional[Dict[str, int]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize RpcCache.

        Args:
            default_ttl_ms: TTL used by set() when none is given
            max_entries: Upper bound on stored entries
            method_ttls_ms: Per-method TTLs; overrides DEFAULT_METHOD_TTLS_MS
            clock: Monotonic clock in seconds (injectable for tests)
        """
        self._default_ttl_ms = default_ttl_ms
        self._max_entries = max_entries
        self._method_ttls_ms = dict(DEFAULT_METHOD_TTLS_MS)
        if method_ttls_ms:
            self._method_ttls_ms.update(method_ttls_ms)
        self._clock = clock

        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._inflight: Dict[str, asyncio.Future] = {}

        # Metrics
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._deduped = 0

    @property
    def default_ttl_ms(self) -> int:
        return self._default_ttl_ms

    def ttl_for(self, method: str) -> Optional[int]:
        """TTL for a method, or None when the method is not cacheable."""
        return self._method_ttls_ms.get(method)

    def get(self, key: str) -> Optional[Any]:
        """
        Get a value from cache.

        Args:
            key: Cache key

        Returns:
            Cached value or None if not found/expired
        """
        entry = self._cache.get(key)
        if entry is None:
            self._misses += 1
            return None

        if self._clock() > entry.expires_at:
            del self._cache[key]
            self._evictions += 1
            self._misses += 1
            return None

        self._hits += 1
        return entry.value

    def set(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> None:
        """
        Set a value in cache.

        Args:
            key: Cache key
            value: Value to cache
            ttl_ms: TTL in milliseconds (uses default if not provided)
        """
        effective_ttl = ttl_ms if ttl_ms is not None else self._default_ttl_ms
        self._cache[key] = CacheEntry(value=value, expires_at=self._clock() + effective_ttl / 1000.0)
        self._cache.move_to_end(key)
        self._prune()

    def _prune(self) -> None:
        if len(self._cache) <= self._max_entries:
            return
        self.cleanup_expired()
        while len(self._cache) > self._max_entries:
            self._cache.popitem(last=False)
            self._evictions += 1

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        ttl_ms: Optional[int] = None,
    ) -> Any:
        """
        Return the cached value, or run fetch() once for all concurrent callers.

        Exceptions from fetch propagate to every waiter and nothing is stored.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            self._deduped += 1
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await fetch()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # retrieved here so an unawaited future does not warn
            future.exception()
            raise
        else:
            if value is not None:
                self.set(key, value, ttl_ms)
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)

    async def get_or_fetch_method(
        self,
        method: str,
        params: Any,
        fetch: Callable[[], Awaitable[Any]],
        namespace: str = "",
    ) -> Any:
        """get_or_fetch keyed and TTL'd by RPC method; uncacheable methods pass through."""
        ttl_ms = self.ttl_for(method)
        if ttl_ms is None:
            return await fetch()
        return await self.get_or_fetch(make_key(method, params, namespace), fetch, ttl_ms)

    def delete(self, key: str) -> bool:
        """
        Delete a key from cache.

        Returns:
            True if key was deleted, False if not found
        """
        if key in self._cache:
            del self._cache[key]
            return True
        return False

    def clear(self) -> None:
        """Clear all cached values."""
        self._cache.clear()

    def cleanup_expired(self) -> int:
        """
        Remove all expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        to_remove = [key for key, entry in self._cache.items() if now > entry.expires_at]
        for key in to_remove:
            del self._cache[key]
        self._evictions += len(to_remove)
        return len(to_remove)

    def get_metrics(self) -> Dict[str, Any]:
        """Get cache metrics."""
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
            "deduped": self._deduped,
            "inflight": len(self._inflight),
            "size": len(self._cache),
            "max_entries": self._max_entries,
            "hit_rate": self._hits / total if total > 0 else 0.0,
        }

    def __contains__(self, key: str) -> bool:
        """Check if key exists (and is not expired)."""
        entry = self._cache.get(key)
        return entry is not None and self._clock() <= entry.expires_at

    def __len__(self) -> int:
        return len(self._cache)
