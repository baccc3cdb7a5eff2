"""Distributed locks over Redis (Redlock)."""
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, List, Optional

import structlog
from redlock import Redlock

from commerce.core.errors import RequestInProgressError
from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class LockManager:
    """
    Async facade over the synchronous Redlock client.

    Redlock calls run in a worker thread so they never block the event loop.
    """

    def __init__(
        self,
        redis_urls: List[str],
        default_ttl_seconds: int = 30,
        redlock: Optional[Redlock] = None,
    ):
        self.redis_urls = redis_urls
        self.default_ttl_seconds = default_ttl_seconds
        self.redlock = redlock

    def _get_redlock(self) -> Redlock:
        """Get or create Redlock instance."""
        if self.redlock is None:
            self.redlock = Redlock(self.redis_urls, retry_count=3, retry_delay=0.2)
        return self.redlock

    @asynccontextmanager
    async def lock(self, resource: str, ttl_seconds: Optional[int] = None) -> AsyncIterator[Any]:
        """
        Hold `resource` for the duration of the block.

        Raises:
            RequestInProgressError: If another holder has the lock
        """
        redlock = self._get_redlock()
        ttl_ms = int((ttl_seconds or self.default_ttl_seconds) * 1000)
        acquired = await asyncio.to_thread(redlock.lock, resource, ttl_ms)

        if not acquired:
            metrics.record_distributed_lock("contended")
            logger.warning("lock_acquisition_failed", resource=resource)
            raise RequestInProgressError(
                "Another request is already working on this resource",
                details={"resource": resource},
            )

        metrics.record_distributed_lock("acquired")
        logger.debug("lock_acquired", resource=resource, ttl_ms=ttl_ms)
        try:
            yield acquired
        finally:
            await asyncio.to_thread(redlock.unlock, acquired)
            logger.debug("lock_released", resource=resource)
