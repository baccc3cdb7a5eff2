"""
Transactional outbox pattern implementation.

Events are written to the database in the same transaction as domain changes,
then published asynchronously. Delivery is at-least-once; consumers drop
redeliveries by event id (see messaging.bus).
"""
import asyncio
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce.database.models import OutboxEvent
from commerce.messaging.envelope import EventEnvelope
from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PublisherFunc = Callable[[EventEnvelope], Awaitable[None]]


def write_outbox_event(
    db: AsyncSession,
    aggregate_type: str,
    aggregate_id: Any,
    event_type: str,
    payload: Dict[str, Any],
    correlation_id: Optional[str] = None,
) -> OutboxEvent:
    """
    Add an event to the caller's transaction.

    The event only becomes visible to the publisher when the caller commits.
    Without an explicit correlation id the request id bound to the logging
    context is used.
    """
    if correlation_id is None:
        correlation_id = structlog.contextvars.get_contextvars().get("request_id")

    event = OutboxEvent(
        aggregate_type=aggregate_type,
        aggregate_id=str(aggregate_id),
        event_type=event_type,
        payload=payload,
        correlation_id=correlation_id,
        created_at=datetime.utcnow(),
    )
    db.add(event)
    return event


class OutboxPublisher:
    """
    Publishes events from the outbox table.

    1. Reads unpublished, not dead-lettered events in insertion order
    2. Hands each one to `publisher_func`
    3. Marks successes as published; counts failures and dead-letters
       events that keep failing

    Once an event of an aggregate fails, later events of that aggregate are
    left for the next batch so consumers see them in order.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher_func: Optional[PublisherFunc] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        max_attempts: int = 10,
    ):
        """
        Initialize outbox publisher.

        Args:
            session_factory: Session factory for the outbox database
            publisher_func: Coroutine publishing one envelope (event bus, Kafka)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval when idle
            max_attempts: Failed deliveries before an event is dead-lettered
        """
        self.session_factory = session_factory
        self.publisher_func = publisher_func or self._default_publisher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
            max_attempts=max_attempts,
        )

    async def _default_publisher(self, envelope: EventEnvelope) -> None:
        """Default publisher that just logs events."""
        logger.info(
            "outbox_event_published_default",
            event_type=envelope.event_type,
            aggregate_id=envelope.aggregate_id,
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published == False)  # noqa: E712
            .where(OutboxEvent.dead_lettered == False)  # noqa: E712
            .order_by(OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> Optional[str]:
        """
        Publish a single event.

        Returns:
            Optional[str]: None on success, the error message otherwise
        """
        try:
            await self.publisher_func(EventEnvelope.from_outbox(event))
        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=str(event.event_id),
                event_type=event.event_type,
                attempts=event.attempts + 1,
                error=str(e),
            )
            return str(e) or e.__class__.__name__

        logger.info(
            "outbox_event_published",
            event_id=str(event.event_id),
            event_type=event.event_type,
            aggregate_id=event.aggregate_id,
        )
        return None

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        started = time.perf_counter()
        async with self.session_factory() as db:
            events = await self._fetch_unpublished_events(db)
            if not events:
                return 0

            logger.info("outbox_batch_processing_started", batch_size=len(events))

            blocked: Set[Tuple[str, str]] = set()
            published = 0
            deferred = 0
            for event in events:
                aggregate = (event.aggregate_type, event.aggregate_id)
                if aggregate in blocked:
                    deferred += 1
                    continue

                error = await self._publish_event(event)
                if error is None:
                    event.published = True
                    event.published_at = datetime.utcnow()
                    published += 1
                    metrics.record_outbox_event_published(event.event_type)
                    continue

                event.attempts += 1
                event.last_error = error[:2000]
                blocked.add(aggregate)
                if event.attempts >= self.max_attempts:
                    event.dead_lettered = True
                    metrics.record_outbox_dead_letter(event.event_type)
                    logger.error(
                        "outbox_event_dead_lettered",
                        event_id=str(event.event_id),
                        event_type=event.event_type,
                        attempts=event.attempts,
                    )

            await db.commit()

        metrics.record_outbox_batch(time.perf_counter() - started)
        logger.info(
            "outbox_batch_processed",
            total=len(events),
            published=published,
            failed=len(events) - published - deferred,
            deferred=deferred,
        )
        return published

    async def start(self) -> None:
        """
        Start the outbox publisher loop.

        Continuously polls for unpublished events and publishes them.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.pending_count())

                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        # Events were processed, check immediately for more
                        await asyncio.sleep(0.1)

                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def pending_count(self) -> int:
        """Count events still waiting to be published (dead letters excluded)."""
        async with self.session_factory() as db:
            stmt = (
                select(func.count())
                .select_from(OutboxEvent)
                .where(OutboxEvent.published == False)  # noqa: E712
                .where(OutboxEvent.dead_lettered == False)  # noqa: E712
            )
            return int((await db.execute(stmt)).scalar_one())

    async def drain(self, max_batches: int = 100) -> int:
        """Publish until the outbox is empty or nothing more can be published."""
        total = 0
        for _ in range(max_batches):
            published = await self.process_batch()
            if published == 0:
                break
            total += published
        return total
