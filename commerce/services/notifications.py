"""
Notification service: turns order and payment events into customer messages.

Messages are stored first and then handed to a sender. A sender failure marks
the notification FAILED; it never fails the event delivery.
"""
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple, Union

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.core.errors import NotFoundError
from commerce.database.models import Notification
from commerce.messaging.bus import EventBus
from commerce.messaging.envelope import EventEnvelope
from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CONSUMER = "notifications"

# event type -> (template, subject)
TEMPLATES: Dict[str, Tuple[str, str]] = {
    "order.paid": ("order_confirmation", "Your order is confirmed"),
    "order.shipped": ("order_shipped", "Your order is on its way"),
    "order.delivered": ("order_delivered", "Your order was delivered"),
    "order.cancelled": ("order_cancelled", "Your order was cancelled"),
    "order.refunded": ("order_refunded", "Your refund is on its way"),
    "payment.failed": ("payment_failed", "We could not process your payment"),
}

IdLike = Union[str, uuid.UUID]


class NotificationSender(Protocol):
    channel: str

    async def send(self, notification: Notification) -> None:
        ...


class LogNotificationSender:
    """Writes notifications to the log (development default)."""

    channel = "log"

    async def send(self, notification: Notification) -> None:
        logger.info(
            "notification_sent",
            notification_id=str(notification.id),
            user_id=str(notification.user_id),
            template=notification.template,
            subject=notification.payload.get("subject"),
        )


class WebhookNotificationSender:
    """POSTs notifications as JSON to a delivery service."""

    channel = "webhook"

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None, timeout_seconds: float = 5.0):
        self.url = url
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def send(self, notification: Notification) -> None:
        response = await self.client.post(
            self.url,
            json={
                "id": str(notification.id),
                "user_id": str(notification.user_id),
                "template": notification.template,
                "payload": notification.payload,
            },
        )
        response.raise_for_status()

    async def close(self) -> None:
        await self.client.aclose()


class NotificationService:
    """Creates, sends and lists notifications."""

    def __init__(self, sender: Optional[NotificationSender] = None):
        self.sender = sender or LogNotificationSender()

    def register(self, bus: EventBus) -> None:
        for event_type in TEMPLATES:
            bus.subscribe(event_type, CONSUMER, self.handle_event)

    async def handle_event(self, db: AsyncSession, envelope: EventEnvelope) -> Optional[Notification]:
        """Event bus handler; runs inside the bus's transaction."""
        template = TEMPLATES.get(envelope.event_type)
        user_id = envelope.payload.get("user_id")
        if template is None or not user_id:
            return None

        name, subject = template
        notification = Notification(
            id=uuid.uuid4(),
            user_id=uuid.UUID(str(user_id)),
            channel=self.sender.channel,
            template=name,
            payload={**envelope.payload, "subject": subject, "event_id": str(envelope.event_id)},
            status="pending",
            read=False,
            created_at=datetime.utcnow(),
        )
        db.add(notification)
        await db.flush()

        try:
            await self.sender.send(notification)
        except Exception as e:
            notification.status = "failed"
            notification.error_message = str(e)[:1000]
            metrics.record_notification(self.sender.channel, "failed")
            logger.warning(
                "notification_send_failed",
                notification_id=str(notification.id),
                template=name,
                error=str(e),
            )
        else:
            notification.status = "sent"
            notification.sent_at = datetime.utcnow()
            metrics.record_notification(self.sender.channel, "sent")
        return notification

    async def list_notifications(
        self, db: AsyncSession, user_id: IdLike, unread_only: bool = False, limit: int = 50
    ) -> List[Notification]:
        stmt = select(Notification).where(Notification.user_id == uuid.UUID(str(user_id)))
        if unread_only:
            stmt = stmt.where(Notification.read == False)  # noqa: E712
        stmt = stmt.order_by(Notification.created_at.desc()).limit(min(limit, 200))
        return list((await db.execute(stmt)).scalars().all())

    async def mark_read(self, db: AsyncSession, user_id: IdLike, notification_id: IdLike) -> Notification:
        notification = await db.get(Notification, uuid.UUID(str(notification_id)))
        if notification is None or str(notification.user_id) != str(user_id):
            raise NotFoundError("Notification not found", details={"notification_id": str(notification_id)})
        notification.read = True
        await db.commit()
        return notification
