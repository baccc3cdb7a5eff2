"""
Service container: builds and wires every service from settings.

The API, workers and CLI all start from `build_container()`; tests build one
directly with a SQLite session factory and fakes for Redis, locks and the
payment gateway.
"""
from typing import List, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from commerce.config import Settings, get_settings
from commerce.core.cache import CacheLayer
from commerce.core.idempotency import IdempotencyManager
from commerce.core.locking import LockManager
from commerce.core.outbox import OutboxPublisher
from commerce.core.saga import SagaOrchestrator, SqlSagaStore
from commerce.database.connection import get_session_factory
from commerce.integrations.stripe_gateway import StripeGateway
from commerce.messaging.bus import EventBus
from commerce.messaging.envelope import EventEnvelope
from commerce.messaging.kafka import KafkaEventPublisher
from commerce.monitoring.health import HealthCheck
from commerce.services.cart import CartService
from commerce.services.catalog import CACHE_NAMESPACE, CatalogService
from commerce.services.checkout import CheckoutService
from commerce.services.inventory import InventoryService
from commerce.services.notifications import (
    LogNotificationSender,
    NotificationSender,
    NotificationService,
    WebhookNotificationSender,
)
from commerce.services.orders import OrderService
from commerce.services.payments import PaymentService
from commerce.services.reviews import ReviewService
from commerce.services.search import SearchService
from commerce.services.shipping import ShippingService
from commerce.services.users import UserService

logger = structlog.get_logger(__name__)

CATALOG_CACHE_CONSUMER = "catalog-cache"


def redis_urls(settings: Settings) -> List[str]:
    """Redlock quorum members; `redis_url` may list several comma-separated nodes."""
    return [url.strip() for url in settings.redis_url.split(",") if url.strip()]


class ServiceContainer:
    """Holds the wired services for one process."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: Optional[aioredis.Redis] = None,
        locks: Optional[LockManager] = None,
        gateway: Optional[StripeGateway] = None,
        notification_sender: Optional[NotificationSender] = None,
        kafka: Optional[KafkaEventPublisher] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.redis_client = redis_client
        self.kafka = kafka

        self.locks = locks or LockManager(
            redis_urls(settings), default_ttl_seconds=settings.redis_lock_timeout
        )
        self.gateway = gateway or StripeGateway(settings)
        self.cache = CacheLayer(
            redis_client,
            prefix=settings.cache_key_prefix,
            default_ttl_seconds=settings.cache_ttl_seconds,
        )
        self.idempotency = IdempotencyManager(redis_client, ttl_seconds=settings.idempotency_ttl_seconds)
        self.orchestrator = SagaOrchestrator(store=SqlSagaStore(session_factory))
        self.bus = EventBus(session_factory)
        self.health = HealthCheck(session_factory, redis_client)

        self.users = UserService(settings)
        self.inventory = InventoryService(settings)
        self.catalog = CatalogService(self.cache, self.inventory, settings)
        self.cart = CartService(self.catalog, settings)
        self.shipping = ShippingService(settings)
        self.payments = PaymentService(self.gateway)
        self.orders = OrderService(self.inventory, self.payments, self.shipping)
        self.checkout = CheckoutService(
            session_factory,
            self.orchestrator,
            self.idempotency,
            self.locks,
            self.cart,
            self.orders,
            self.inventory,
            self.payments,
            self.shipping,
            settings,
        )
        self.reviews = ReviewService(self.catalog, self.orders)
        self.notifications = NotificationService(notification_sender or LogNotificationSender())
        self.search = SearchService()

        self._register_consumers()
        self.outbox = OutboxPublisher(
            session_factory,
            publisher_func=self.publish,
            batch_size=settings.outbox_batch_size,
            poll_interval_seconds=settings.outbox_poll_interval_seconds,
            max_attempts=settings.outbox_max_attempts,
        )

    def _register_consumers(self) -> None:
        self.notifications.register(self.bus)
        self.search.register(self.bus)
        for event_type in ("product.updated", "product.deactivated"):
            self.bus.subscribe(event_type, CATALOG_CACHE_CONSUMER, self._invalidate_product)

    async def _invalidate_product(self, db: AsyncSession, envelope: EventEnvelope) -> None:
        # Other processes may still hold the product in their cache
        await self.cache.delete(CACHE_NAMESPACE, envelope.aggregate_id)

    async def publish(self, envelope: EventEnvelope) -> None:
        """Outbox publisher function: Kafka first (when enabled), then the in-process bus."""
        if self.kafka is not None:
            await self.kafka.publish(envelope)
        await self.bus.publish(envelope)

    async def close(self) -> None:
        if self.kafka is not None:
            await self.kafka.close()
        close_sender = getattr(self.notifications.sender, "close", None)
        if close_sender is not None:
            await close_sender()
        if self.redis_client is not None:
            await self.redis_client.aclose()


def build_container(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> ServiceContainer:
    """Build a container from settings, connecting to Redis, Kafka and the webhook sender."""
    settings = settings or get_settings()
    redis_client = aioredis.from_url(redis_urls(settings)[0], decode_responses=True)

    kafka = None
    if settings.kafka_enabled:
        kafka = KafkaEventPublisher(settings.kafka_bootstrap_servers, topic_prefix=settings.kafka_topic_prefix)

    sender: NotificationSender = LogNotificationSender()
    if settings.notification_webhook_url:
        sender = WebhookNotificationSender(settings.notification_webhook_url)

    logger.info(
        "service_container_built",
        kafka_enabled=kafka is not None,
        notification_channel=sender.channel,
    )
    return ServiceContainer(
        settings,
        session_factory or get_session_factory(),
        redis_client=redis_client,
        notification_sender=sender,
        kafka=kafka,
    )
