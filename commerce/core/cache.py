"""
Cache-aside layer over Redis.

Keys look like `<prefix>:<namespace>:<id>` and hold JSON. Writers delete the
key after committing; readers repopulate it on the next miss. A Redis outage
degrades to reading through to the loader.
"""
import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog

from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Loader = Callable[[], Awaitable[Optional[Any]]]


class CacheLayer:
    """JSON cache-aside helper with per-key single-flight loading."""

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis],
        prefix: str = "commerce",
        default_ttl_seconds: int = 300,
    ):
        self.redis_client = redis_client
        self.prefix = prefix
        self.default_ttl_seconds = default_ttl_seconds
        # Loads in progress, by key
        self._inflight: Dict[str, "asyncio.Future[Optional[Any]]"] = {}

    def key(self, namespace: str, entity_id: Any) -> str:
        return f"{self.prefix}:{namespace}:{entity_id}"

    async def _read(self, key: str) -> Optional[Any]:
        if self.redis_client is None:
            return None
        try:
            raw = await self.redis_client.get(key)
        except Exception as e:
            logger.warning("cache_read_failed", key=key, error=str(e))
            return None
        return json.loads(raw) if raw is not None else None

    async def get(self, namespace: str, entity_id: Any) -> Optional[Any]:
        value = await self._read(self.key(namespace, entity_id))
        metrics.record_cache(namespace, "hit" if value is not None else "miss")
        return value

    async def set(
        self, namespace: str, entity_id: Any, value: Any, ttl_seconds: Optional[int] = None
    ) -> None:
        if self.redis_client is None:
            return
        key = self.key(namespace, entity_id)
        try:
            await self.redis_client.setex(
                key, ttl_seconds or self.default_ttl_seconds, json.dumps(value, default=str)
            )
        except Exception as e:
            logger.warning("cache_write_failed", key=key, error=str(e))

    async def delete(self, namespace: str, entity_id: Any) -> None:
        if self.redis_client is None:
            return
        key = self.key(namespace, entity_id)
        try:
            await self.redis_client.delete(key)
        except Exception as e:
            logger.warning("cache_delete_failed", key=key, error=str(e))
        else:
            logger.debug("cache_invalidated", key=key)

    async def get_or_load(
        self,
        namespace: str,
        entity_id: Any,
        loader: Loader,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[Any]:
        """
        Return the cached value or load, cache and return it.

        Concurrent misses for the same key in this process call `loader` once,
        with or without Redis. A loader result of None is not cached.
        """
        cached = await self.get(namespace, entity_id)
        if cached is not None:
            return cached

        key = self.key(namespace, entity_id)
        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future: "asyncio.Future[Optional[Any]]" = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            value = await loader()
            if value is not None:
                await self.set(namespace, entity_id, value, ttl_seconds)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # waiters re-raise it; mark it retrieved for when there are none
            future.exception()
            raise
        else:
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)
