"""Read-through cache: Redis primary, in-memory fallback, explicit invalidation."""

import json
import logging
import time
from typing import Any, Callable, Coroutine, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "steward"

# Returned by _redis_call when there is no Redis or the call failed
_UNAVAILABLE = object()


class CacheService:
    """Namespaced JSON cache.

    Keys are built with :meth:`key` as ``{namespace}:{domain}:{operation}:{params}``.
    Values never go stale silently: callers that change the underlying rows are
    expected to call :meth:`invalidate` for their domain.
    """

    def __init__(self, redis_client=None, namespace: str = DEFAULT_NAMESPACE):
        self._redis = redis_client
        self.namespace = namespace
        self._local: Dict[str, Dict[str, Any]] = {}  # key -> {"data", "expires"}
        self.hits = 0
        self.misses = 0

    def key(self, domain: str, operation: str, *params: Any) -> str:
        parts = [self.namespace, domain, operation, *(str(p) for p in params)]
        return ":".join(parts)

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None on miss / expiry.

        When Redis answers, its answer is final: a key another process
        invalidated is a miss here too. The local map only answers while Redis
        is absent or failing.
        """
        raw = await self._redis_call("get", key)
        if raw is None:
            self._local.pop(key, None)
        elif raw is _UNAVAILABLE:
            raw = None
            entry = self._local.get(key)
            if entry is not None and entry["expires"] > time.monotonic():
                raw = entry["data"]
            elif entry is not None:
                del self._local[key]

        if raw is None:
            self.misses += 1
            return None
        self.hits += 1
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int = 3600) -> None:
        serialized = json.dumps(value, default=str)
        await self._redis_call("set", key, serialized, ex=ttl)
        self._local[key] = {"data": serialized, "expires": time.monotonic() + ttl}

    async def delete(self, key: str) -> None:
        await self._redis_call("delete", key)
        self._local.pop(key, None)

    async def invalidate(self, domain: str) -> None:
        """Drop every key under ``{namespace}:{domain}:``."""
        prefix = f"{self.namespace}:{domain}:"

        if self._redis is not None:
            try:
                cursor = 0
                while True:
                    cursor, keys = await self._redis.scan(
                        cursor=cursor, match=f"{prefix}*", count=100,
                    )
                    if keys:
                        await self._redis.delete(*keys)
                    if cursor == 0:
                        break
            except Exception as e:
                logger.debug(f"Redis invalidate failed for {prefix}: {e}")

        for k in [k for k in self._local if k.startswith(prefix)]:
            del self._local[k]
        logger.debug(f"Cache invalidated: {prefix}*")

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Coroutine[Any, Any, Any]],
        ttl: int = 3600,
    ) -> Any:
        """Read-through: return the cached value or compute, store and return it."""
        cached = await self.get(key)
        if cached is not None:
            return cached

        value = await factory()
        await self.set(key, value, ttl=ttl)
        return value

    async def _redis_call(self, method: str, *args, **kwargs) -> Any:
        # Redis is an optional tier; on failure the local map answers
        if self._redis is None:
            return _UNAVAILABLE
        try:
            return await getattr(self._redis, method)(*args, **kwargs)
        except Exception as e:
            logger.debug(f"Redis {method.upper()} failed for {args[0]}: {e}")
            return _UNAVAILABLE


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_cache_service: Optional[CacheService] = None


def init_cache_service(redis_client=None) -> CacheService:
    """Initialize the global CacheService (called during app startup)."""
    global _cache_service
    _cache_service = CacheService(redis_client=redis_client)
    logger.info(
        "CacheService initialized (%s)",
        "Redis + in-memory" if redis_client else "in-memory only",
    )
    return _cache_service


def get_cache_service() -> CacheService:
    """Return the global CacheService instance (lazy-init if needed)."""
    global _cache_service
    if _cache_service is None:
        _cache_service = CacheService()
        logger.warning("CacheService accessed before init, using in-memory only")
    return _cache_service
