"""
In-process event bus.

Each subscriber (consumer) gets its own transaction per event. The handler's
writes and a ProcessedEvent row commit together, so an event redelivered by
the outbox is applied at most once per consumer.
"""
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce.database.models import ProcessedEvent
from commerce.messaging.envelope import EventEnvelope

logger = structlog.get_logger(__name__)

Handler = Callable[[AsyncSession, EventEnvelope], Awaitable[None]]

WILDCARD = "*"


class EventDeliveryError(Exception):
    """Raised when one or more consumers failed to handle an event."""

    def __init__(self, event_type: str, failures: Dict[str, str]):
        super().__init__(
            f"{len(failures)} consumer(s) failed on {event_type}: "
            + ", ".join(f"{name}: {error}" for name, error in failures.items())
        )
        self.event_type = event_type
        self.failures = failures


@dataclass(frozen=True)
class Subscription:
    event_type: str
    consumer: str
    handler: Handler


class EventBus:
    """Routes envelopes to subscribed handlers."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._subscriptions: List[Subscription] = []

    def subscribe(self, event_type: str, consumer: str, handler: Handler) -> None:
        """
        Register a handler.

        Args:
            event_type: Event type to receive, or "*" for every event
            consumer: Stable consumer name, part of the de-duplication key
            handler: Coroutine called with (session, envelope)
        """
        self._subscriptions.append(Subscription(event_type, consumer, handler))
        logger.debug("event_bus_subscribed", event_type=event_type, consumer=consumer)

    def subscriptions_for(self, event_type: str) -> List[Subscription]:
        return [
            sub for sub in self._subscriptions if sub.event_type in (event_type, WILDCARD)
        ]

    async def publish(self, envelope: EventEnvelope) -> None:
        """
        Deliver an event to every matching subscriber.

        Every subscriber is attempted. Raises EventDeliveryError afterwards if
        any of them failed, so the outbox keeps the event for redelivery.
        """
        failures: Dict[str, str] = {}
        for sub in self.subscriptions_for(envelope.event_type):
            try:
                await self._deliver(sub, envelope)
            except Exception as e:
                failures[sub.consumer] = str(e) or e.__class__.__name__

        if failures:
            raise EventDeliveryError(envelope.event_type, failures)

    async def _deliver(self, sub: Subscription, envelope: EventEnvelope) -> None:
        async with self.session_factory() as db:
            already = await db.get(ProcessedEvent, (sub.consumer, envelope.event_id))
            if already is not None:
                logger.info(
                    "event_duplicate_skipped",
                    consumer=sub.consumer,
                    event_id=str(envelope.event_id),
                    event_type=envelope.event_type,
                )
                return

            try:
                await sub.handler(db, envelope)
                db.add(ProcessedEvent(consumer=sub.consumer, event_id=envelope.event_id))
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error(
                    "event_handler_failed",
                    consumer=sub.consumer,
                    event_id=str(envelope.event_id),
                    event_type=envelope.event_type,
                    error=str(e),
                )
                raise

        logger.debug(
            "event_handled",
            consumer=sub.consumer,
            event_id=str(envelope.event_id),
            event_type=envelope.event_type,
        )
