"""
Kafka publisher for domain events.

Topic per aggregate type (`<prefix>.order`, `<prefix>.payment`, ...), keyed by
aggregate id so a partition preserves per-aggregate order.
"""
import asyncio
from typing import Any, List, Optional

import structlog
from confluent_kafka import KafkaError, Producer

from commerce.core.errors import TransientError
from commerce.messaging.envelope import EventEnvelope

logger = structlog.get_logger(__name__)


class KafkaEventPublisher:
    """Publishes envelopes to Kafka and waits for broker acknowledgement."""

    def __init__(
        self,
        bootstrap_servers: str,
        topic_prefix: str = "commerce",
        flush_timeout_seconds: float = 10.0,
        producer: Optional[Any] = None,
    ):
        self.topic_prefix = topic_prefix
        self.flush_timeout_seconds = flush_timeout_seconds
        self.producer = producer or Producer(
            {
                "bootstrap.servers": bootstrap_servers,
                "compression.type": "snappy",
                "linger.ms": 5,
                "acks": "all",
                "enable.idempotence": True,
                "retries": 3,
            }
        )
        logger.info(
            "kafka_publisher_initialized",
            bootstrap_servers=bootstrap_servers,
            topic_prefix=topic_prefix,
        )

    def topic_for(self, envelope: EventEnvelope) -> str:
        return f"{self.topic_prefix}.{envelope.aggregate_type}"

    async def publish(self, envelope: EventEnvelope) -> None:
        """
        Produce one event and wait until it is delivered.

        Raises:
            TransientError: If the broker did not acknowledge the message
        """
        errors: List[KafkaError] = []

        def _delivery_callback(err: Optional[KafkaError], msg: Any) -> None:
            if err is not None:
                errors.append(err)

        self.producer.produce(
            topic=self.topic_for(envelope),
            key=envelope.aggregate_id.encode("utf-8"),
            value=envelope.to_message(),
            headers={
                "event_type": envelope.event_type,
                "event_id": str(envelope.event_id),
            },
            callback=_delivery_callback,
        )
        remaining = await self.flush()

        if errors or remaining:
            error = str(errors[0]) if errors else f"{remaining} message(s) not delivered"
            logger.error(
                "kafka_delivery_failed",
                event_id=str(envelope.event_id),
                topic=self.topic_for(envelope),
                error=error,
            )
            raise TransientError(f"Kafka delivery failed: {error}")

    async def flush(self) -> int:
        """Wait for outstanding messages; returns how many are still queued."""
        return await asyncio.to_thread(self.producer.flush, self.flush_timeout_seconds)

    async def close(self) -> None:
        remaining = await self.flush()
        if remaining:
            logger.warning("kafka_publisher_closed_with_pending", remaining=remaining)
        logger.info("kafka_publisher_closed")
