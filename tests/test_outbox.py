"""Tests for the transactional outbox publisher."""
from typing import List

import pytest
import structlog
from sqlalchemy import select

from commerce.core.outbox import OutboxPublisher, write_outbox_event
from commerce.database.models import OutboxEvent
from commerce.messaging.envelope import EventEnvelope


async def _write(session_factory, events) -> None:
    async with session_factory() as db:
        for aggregate_id, event_type in events:
            write_outbox_event(db, "order", aggregate_id, event_type, {"order_id": aggregate_id})
        await db.commit()


@pytest.mark.unit
class TestOutboxPublisher:
    """Ordering, failure handling and dead-lettering."""

    @pytest.mark.asyncio
    async def test_events_published_in_insertion_order(self, session_factory):
        seen: List[EventEnvelope] = []

        async def publish(envelope: EventEnvelope) -> None:
            seen.append(envelope)

        await _write(session_factory, [("a", "order.created"), ("b", "order.created"), ("a", "order.paid")])
        publisher = OutboxPublisher(session_factory, publisher_func=publish)

        assert await publisher.process_batch() == 3
        assert [(e.aggregate_id, e.event_type) for e in seen] == [
            ("a", "order.created"),
            ("b", "order.created"),
            ("a", "order.paid"),
        ]
        assert seen[0].payload == {"order_id": "a"}
        assert await publisher.pending_count() == 0
        assert await publisher.process_batch() == 0

    @pytest.mark.asyncio
    async def test_failure_blocks_later_events_of_same_aggregate(self, session_factory):
        seen: List[str] = []

        async def publish(envelope: EventEnvelope) -> None:
            if envelope.event_type == "order.created" and envelope.aggregate_id == "a":
                raise ConnectionError("broker down")
            seen.append(f"{envelope.aggregate_id}:{envelope.event_type}")

        await _write(session_factory, [("a", "order.created"), ("b", "order.created"), ("a", "order.paid")])
        publisher = OutboxPublisher(session_factory, publisher_func=publish)

        assert await publisher.process_batch() == 1
        assert seen == ["b:order.created"]

        async with session_factory() as db:
            rows = (await db.execute(select(OutboxEvent).order_by(OutboxEvent.id))).scalars().all()
        assert [row.published for row in rows] == [False, True, False]
        assert rows[0].attempts == 1
        assert rows[0].last_error == "broker down"
        # the blocked event was never attempted
        assert rows[2].attempts == 0
        assert await publisher.pending_count() == 2

    @pytest.mark.asyncio
    async def test_event_dead_lettered_after_max_attempts(self, session_factory):
        async def publish(envelope: EventEnvelope) -> None:
            raise RuntimeError("poison")

        await _write(session_factory, [("a", "order.created")])
        publisher = OutboxPublisher(session_factory, publisher_func=publish, max_attempts=2)

        await publisher.process_batch()
        await publisher.process_batch()

        async with session_factory() as db:
            row = (await db.execute(select(OutboxEvent))).scalar_one()
        assert row.dead_lettered is True
        assert row.attempts == 2
        assert await publisher.pending_count() == 0
        assert await publisher.process_batch() == 0

    @pytest.mark.asyncio
    async def test_drain_publishes_across_batches(self, session_factory):
        seen: List[str] = []

        async def publish(envelope: EventEnvelope) -> None:
            seen.append(envelope.aggregate_id)

        await _write(session_factory, [(str(i), "order.created") for i in range(5)])
        publisher = OutboxPublisher(session_factory, publisher_func=publish, batch_size=2)

        assert await publisher.drain() == 5
        assert seen == ["0", "1", "2", "3", "4"]

    @pytest.mark.asyncio
    async def test_correlation_id_taken_from_logging_context(self, session_factory):
        structlog.contextvars.bind_contextvars(request_id="req-123")
        try:
            async with session_factory() as db:
                event = write_outbox_event(db, "order", "x", "order.created", {})
                await db.commit()
        finally:
            structlog.contextvars.clear_contextvars()

        assert event.correlation_id == "req-123"
        envelope = EventEnvelope.from_outbox(event)
        assert envelope.correlation_id == "req-123"
        assert envelope.event_id == event.event_id
