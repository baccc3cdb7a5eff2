"""
Idempotency for client-retried requests.

Two tiers:
1. Redis cache for fast lookups of completed responses
2. Database records for durability and for the in-progress claim

Keys are scoped per operation and user: `<scope>:<user_id>:<client key>`.
A fingerprint of the request body is stored with the key, so reusing a key
for a different request is rejected instead of replaying the wrong response.
"""
import hashlib
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

import redis.asyncio as aioredis
import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.core.errors import (
    DomainValidationError,
    IdempotencyConflictError,
    RequestInProgressError,
)
from commerce.database.models import IdempotencyRecord
from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"


class IdempotencyManager:
    """Claims, completes and replays idempotency keys."""

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        ttl_seconds: int = 86400,
        in_progress_ttl_seconds: int = 300,
    ):
        """
        Initialize idempotency manager.

        Args:
            redis_client: Optional Redis client used as a read-through cache
            ttl_seconds: Lifetime of a completed record
            in_progress_ttl_seconds: After this an unfinished claim may be retaken
        """
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.in_progress_ttl_seconds = in_progress_ttl_seconds

    @staticmethod
    def build_key(scope: str, user_id: Union[str, uuid.UUID], client_key: str) -> str:
        client_key = (client_key or "").strip()
        if not client_key or len(client_key) > 200:
            raise DomainValidationError("Idempotency key must be 1-200 characters")
        return f"{scope}:{user_id}:{client_key}"

    @staticmethod
    def fingerprint(request: Dict[str, Any]) -> str:
        """SHA-256 of the request's canonical JSON."""
        canonical = json.dumps(request, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @staticmethod
    def _redis_key(key: str) -> str:
        return f"idempotency:{key}"

    async def _cache_get(self, key: str) -> Optional[Dict[str, Any]]:
        if self.redis_client is None:
            return None
        try:
            raw = await self.redis_client.get(self._redis_key(key))
        except Exception as e:
            logger.warning("redis_cache_error", error=str(e), idempotency_key=key)
            return None
        return json.loads(raw) if raw else None

    async def _cache_set(self, key: str, fingerprint: str, response: Dict[str, Any]) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.setex(
                self._redis_key(key),
                self.ttl_seconds,
                json.dumps({"fingerprint": fingerprint, "response": response}, default=str),
            )
        except Exception as e:
            logger.warning("redis_cache_set_error", error=str(e), idempotency_key=key)

    async def _cache_delete(self, key: str) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.delete(self._redis_key(key))
        except Exception as e:
            logger.warning("redis_cache_delete_error", error=str(e), idempotency_key=key)

    async def begin(
        self,
        db: AsyncSession,
        scope: str,
        user_id: Union[str, uuid.UUID],
        client_key: str,
        request: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """
        Claim an idempotency key, or replay its stored response.

        Returns:
            Optional[Dict[str, Any]]: The stored response of a completed
            identical request, or None when the caller now owns the key

        Raises:
            IdempotencyConflictError: Key reused with a different request
            RequestInProgressError: The identical request is still running
        """
        key = self.build_key(scope, user_id, client_key)
        fingerprint = self.fingerprint(request)

        cached = await self._cache_get(key)
        if cached is not None:
            if cached["fingerprint"] != fingerprint:
                raise IdempotencyConflictError(
                    "Idempotency key was already used with a different request",
                    details={"idempotency_key": client_key},
                )
            metrics.record_idempotency_hit("redis")
            logger.info("idempotency_cache_hit", idempotency_key=key, source="redis")
            return cached["response"]

        now = datetime.utcnow()
        record = await db.get(IdempotencyRecord, key)
        if record is not None and record.expires_at <= now:
            logger.info("idempotency_record_expired", idempotency_key=key, status=record.status)
            await db.delete(record)
            await db.flush()
            record = None

        if record is not None:
            if record.fingerprint != fingerprint:
                raise IdempotencyConflictError(
                    "Idempotency key was already used with a different request",
                    details={"idempotency_key": client_key},
                )
            if record.status == STATUS_COMPLETED:
                metrics.record_idempotency_hit("database")
                logger.info("idempotency_cache_hit", idempotency_key=key, source="database")
                await self._cache_set(key, fingerprint, record.response or {})
                return record.response
            raise RequestInProgressError(
                "A request with this idempotency key is still in progress",
                details={"idempotency_key": client_key},
            )

        db.add(
            IdempotencyRecord(
                key=key,
                fingerprint=fingerprint,
                status=STATUS_IN_PROGRESS,
                created_at=now,
                expires_at=now + timedelta(seconds=self.in_progress_ttl_seconds),
            )
        )
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise RequestInProgressError(
                "A request with this idempotency key is still in progress",
                details={"idempotency_key": client_key},
            )

        logger.info("idempotency_key_claimed", idempotency_key=key)
        return None

    async def complete(self, db: AsyncSession, key: str, response: Dict[str, Any]) -> None:
        """Store the response of a finished request under its key."""
        record = await db.get(IdempotencyRecord, key)
        if record is None:
            logger.warning("idempotency_record_missing", idempotency_key=key)
            return
        record.status = STATUS_COMPLETED
        record.response = response
        record.expires_at = datetime.utcnow() + timedelta(seconds=self.ttl_seconds)
        await db.commit()
        await self._cache_set(key, record.fingerprint, response)
        logger.info("idempotency_response_stored", idempotency_key=key)

    async def abandon(self, db: AsyncSession, key: str) -> None:
        """Release a claim so the client may retry after a failure."""
        record = await db.get(IdempotencyRecord, key)
        if record is not None:
            await db.delete(record)
            await db.commit()
        await self._cache_delete(key)
        logger.info("idempotency_key_released", idempotency_key=key)
