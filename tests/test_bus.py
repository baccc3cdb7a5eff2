"""Tests for the in-process event bus and the Kafka publisher."""
from typing import List

import pytest
from sqlalchemy import func, select

from commerce.core.errors import TransientError
from commerce.database.models import ProcessedEvent
from commerce.messaging.bus import EventBus, EventDeliveryError
from commerce.messaging.envelope import EventEnvelope
from commerce.messaging.kafka import KafkaEventPublisher


def _envelope(event_type: str = "order.paid") -> EventEnvelope:
    return EventEnvelope(
        event_type=event_type,
        aggregate_type="order",
        aggregate_id="order-1",
        payload={"total_cents": 2000},
    )


@pytest.mark.unit
class TestEventBus:
    """Routing, de-duplication and failure reporting."""

    @pytest.mark.asyncio
    async def test_routes_by_event_type_and_wildcard(self, session_factory):
        bus = EventBus(session_factory)
        received: List[str] = []

        async def on_paid(db, envelope):
            received.append(f"paid:{envelope.payload['total_cents']}")

        async def on_any(db, envelope):
            received.append(f"any:{envelope.event_type}")

        async def on_shipped(db, envelope):
            received.append("shipped")

        bus.subscribe("order.paid", "billing", on_paid)
        bus.subscribe("*", "audit", on_any)
        bus.subscribe("order.shipped", "mailer", on_shipped)

        await bus.publish(_envelope())

        assert received == ["paid:2000", "any:order.paid"]

    @pytest.mark.asyncio
    async def test_redelivery_is_applied_once_per_consumer(self, session_factory):
        bus = EventBus(session_factory)
        counts = {"a": 0, "b": 0}

        async def handler_a(db, envelope):
            counts["a"] += 1

        async def handler_b(db, envelope):
            counts["b"] += 1

        bus.subscribe("order.paid", "consumer-a", handler_a)
        bus.subscribe("order.paid", "consumer-b", handler_b)

        envelope = _envelope()
        await bus.publish(envelope)
        await bus.publish(envelope)

        assert counts == {"a": 1, "b": 1}
        async with session_factory() as db:
            processed = (
                await db.execute(select(func.count()).select_from(ProcessedEvent))
            ).scalar_one()
        assert processed == 2

    @pytest.mark.asyncio
    async def test_failing_consumer_does_not_stop_others(self, session_factory):
        bus = EventBus(session_factory)
        handled: List[str] = []
        fail = {"enabled": True}

        async def flaky(db, envelope):
            if fail["enabled"]:
                raise RuntimeError("mailer down")
            handled.append("flaky")

        async def steady(db, envelope):
            handled.append("steady")

        bus.subscribe("order.paid", "mailer", flaky)
        bus.subscribe("order.paid", "ledger", steady)

        envelope = _envelope()
        with pytest.raises(EventDeliveryError) as exc_info:
            await bus.publish(envelope)

        assert exc_info.value.failures == {"mailer": "mailer down"}
        assert handled == ["steady"]

        # redelivery only reaches the consumer that failed
        fail["enabled"] = False
        await bus.publish(envelope)
        assert handled == ["steady", "flaky"]

    @pytest.mark.asyncio
    async def test_handler_failure_rolls_back_its_writes(self, session_factory):
        bus = EventBus(session_factory)

        async def half_done(db, envelope):
            db.add(ProcessedEvent(consumer="side-effect", event_id=envelope.event_id))
            await db.flush()
            raise ValueError("later step failed")

        bus.subscribe("order.paid", "worker", half_done)

        with pytest.raises(EventDeliveryError):
            await bus.publish(_envelope())

        async with session_factory() as db:
            processed = (
                await db.execute(select(func.count()).select_from(ProcessedEvent))
            ).scalar_one()
        assert processed == 0

    def test_envelope_serializes_to_json_bytes(self):
        message = _envelope().to_message()

        assert isinstance(message, bytes)
        restored = EventEnvelope.model_validate_json(message)
        assert restored.event_type == "order.paid"
        assert restored.payload == {"total_cents": 2000}


class FakeProducer:
    """Records produced messages; `fail_with` is reported through the delivery callback."""

    def __init__(self, fail_with=None, stuck: int = 0):
        self.messages = []
        self.fail_with = fail_with
        self.stuck = stuck
        self._callbacks = []

    def produce(self, topic, key, value, headers, callback):
        self.messages.append({"topic": topic, "key": key, "value": value, "headers": headers})
        self._callbacks.append(callback)

    def flush(self, timeout):
        for callback in self._callbacks:
            callback(self.fail_with, None)
        self._callbacks = []
        return self.stuck


@pytest.mark.unit
class TestKafkaEventPublisher:
    """Topic routing and delivery confirmation."""

    @pytest.mark.asyncio
    async def test_publish_routes_by_aggregate_type(self):
        producer = FakeProducer()
        publisher = KafkaEventPublisher("localhost:9092", topic_prefix="shop", producer=producer)
        envelope = _envelope()

        await publisher.publish(envelope)

        message = producer.messages[0]
        assert message["topic"] == "shop.order"
        assert message["key"] == b"order-1"
        assert message["headers"]["event_type"] == "order.paid"
        assert EventEnvelope.model_validate_json(message["value"]).event_id == envelope.event_id

    @pytest.mark.asyncio
    async def test_broker_error_is_transient(self):
        publisher = KafkaEventPublisher("localhost:9092", producer=FakeProducer(fail_with="broker down"))

        with pytest.raises(TransientError):
            await publisher.publish(_envelope())

    @pytest.mark.asyncio
    async def test_unflushed_message_is_transient(self):
        publisher = KafkaEventPublisher("localhost:9092", producer=FakeProducer(stuck=1))

        with pytest.raises(TransientError):
            await publisher.publish(_envelope())
