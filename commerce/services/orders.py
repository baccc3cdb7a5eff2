"""
Order service: order records, status history and post-checkout lifecycle.

Every status change goes through `_transition`, which validates it against
core.order_state, appends an OrderStatusChange row and writes an
`order.<status>` outbox event in the same transaction.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.core.errors import NotFoundError
from commerce.core.order_state import OrderStatus, ensure_transition
from commerce.core.outbox import write_outbox_event
from commerce.database.models import Order, OrderItem, OrderStatusChange
from commerce.monitoring.metrics import metrics
from commerce.services.inventory import InventoryService
from commerce.services.payments import PaymentService
from commerce.services.shipping import ShippingService

logger = structlog.get_logger(__name__)

IdLike = Union[str, uuid.UUID]


def order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "id": str(order.id),
        "user_id": str(order.user_id),
        "status": order.status,
        "currency": order.currency,
        "subtotal_cents": order.subtotal_cents,
        "shipping_cents": order.shipping_cents,
        "total_cents": order.total_cents,
        "shipping_address": dict(order.shipping_address or {}),
        "payment_id": str(order.payment_id) if order.payment_id else None,
        "items": [
            {
                "product_id": str(item.product_id),
                "sku": item.sku,
                "name": item.name,
                "unit_price_cents": item.unit_price_cents,
                "quantity": item.quantity,
                "line_total_cents": item.line_total_cents,
            }
            for item in order.items
        ],
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
    }


class OrderService:
    """Order lifecycle management."""

    def __init__(
        self,
        inventory: InventoryService,
        payments: PaymentService,
        shipping: ShippingService,
    ):
        self.inventory = inventory
        self.payments = payments
        self.shipping = shipping

    # --- reads -------------------------------------------------------------

    async def _load(self, db: AsyncSession, order_id: IdLike) -> Order:
        try:
            key = uuid.UUID(str(order_id))
        except ValueError:
            raise NotFoundError("Order not found", details={"order_id": str(order_id)})
        order = await db.get(Order, key, populate_existing=True)
        if order is None:
            raise NotFoundError("Order not found", details={"order_id": str(order_id)})
        return order

    async def get_order(
        self,
        db: AsyncSession,
        order_id: IdLike,
        requester_id: Optional[IdLike] = None,
        is_admin: bool = True,
    ) -> Order:
        """
        Fetch an order.

        Customers only see their own orders; other orders look missing.
        """
        order = await self._load(db, order_id)
        if not is_admin and str(order.user_id) != str(requester_id):
            raise NotFoundError("Order not found", details={"order_id": str(order_id)})
        return order

    async def list_orders(
        self,
        db: AsyncSession,
        user_id: IdLike,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Order]:
        stmt = select(Order).where(Order.user_id == uuid.UUID(str(user_id)))
        if status:
            stmt = stmt.where(Order.status == OrderStatus(status).value)
        stmt = stmt.order_by(Order.created_at.desc()).limit(min(limit, 200)).offset(offset)
        return list((await db.execute(stmt)).scalars().all())

    async def status_history(self, db: AsyncSession, order_id: IdLike) -> List[OrderStatusChange]:
        stmt = (
            select(OrderStatusChange)
            .where(OrderStatusChange.order_id == uuid.UUID(str(order_id)))
            .order_by(OrderStatusChange.id)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def has_delivered_purchase(
        self, db: AsyncSession, user_id: IdLike, product_id: IdLike
    ) -> bool:
        """True if the user received an order containing the product."""
        stmt = (
            select(Order.id)
            .join(OrderItem, OrderItem.order_id == Order.id)
            .where(Order.user_id == uuid.UUID(str(user_id)))
            .where(OrderItem.product_id == uuid.UUID(str(product_id)))
            .where(Order.status.in_([OrderStatus.DELIVERED.value, OrderStatus.REFUNDED.value]))
            .limit(1)
        )
        return (await db.execute(stmt)).scalar_one_or_none() is not None

    # --- transitions ---------------------------------------------------------

    def _transition(
        self,
        db: AsyncSession,
        order: Order,
        target: OrderStatus,
        reason: Optional[str] = None,
        **event_fields: Any,
    ) -> None:
        ensure_transition(order.status, target)
        previous = order.status
        order.status = target.value
        order.updated_at = datetime.utcnow()
        db.add(
            OrderStatusChange(
                order_id=order.id,
                from_status=previous,
                to_status=target.value,
                reason=reason,
                created_at=datetime.utcnow(),
            )
        )
        write_outbox_event(
            db,
            aggregate_type="order",
            aggregate_id=order.id,
            event_type=f"order.{target.value}",
            payload={
                "order_id": str(order.id),
                "user_id": str(order.user_id),
                "status": target.value,
                "previous_status": previous,
                "total_cents": order.total_cents,
                "currency": order.currency,
                "reason": reason,
                **event_fields,
            },
        )
        metrics.record_order_status(target.value, order.total_cents)
        logger.info(
            "order_status_changed",
            order_id=str(order.id),
            from_status=previous,
            to_status=target.value,
            reason=reason,
        )

    async def create_pending_order(
        self,
        db: AsyncSession,
        order_id: IdLike,
        user_id: IdLike,
        lines: List[Dict[str, Any]],
        shipping_address: Dict[str, Any],
        shipping_cents: int,
        currency: str,
    ) -> Order:
        """Create a PENDING order from priced lines. Returns the existing one on retry."""
        order_uuid = uuid.UUID(str(order_id))
        existing = await db.get(Order, order_uuid)
        if existing is not None:
            return existing

        subtotal = sum(int(line["unit_price_cents"]) * int(line["quantity"]) for line in lines)
        now = datetime.utcnow()
        order = Order(
            id=order_uuid,
            user_id=uuid.UUID(str(user_id)),
            status=OrderStatus.PENDING.value,
            currency=currency,
            subtotal_cents=subtotal,
            shipping_cents=shipping_cents,
            total_cents=subtotal + shipping_cents,
            shipping_address=shipping_address,
            created_at=now,
            updated_at=now,
            items=[
                OrderItem(
                    product_id=uuid.UUID(str(line["product_id"])),
                    sku=line["sku"],
                    name=line["name"],
                    unit_price_cents=int(line["unit_price_cents"]),
                    quantity=int(line["quantity"]),
                    weight_grams=int(line.get("weight_grams", 0)),
                )
                for line in lines
            ],
        )
        db.add(order)
        db.add(
            OrderStatusChange(
                order_id=order.id,
                from_status=None,
                to_status=OrderStatus.PENDING.value,
                reason="checkout",
                created_at=now,
            )
        )
        write_outbox_event(
            db,
            aggregate_type="order",
            aggregate_id=order.id,
            event_type="order.created",
            payload=order_to_dict(order),
        )
        await db.commit()

        metrics.record_order_status(OrderStatus.PENDING.value, order.total_cents)
        logger.info("order_created", order_id=str(order.id), total_cents=order.total_cents)
        return order

    async def mark_paid(self, db: AsyncSession, order_id: IdLike, payment_id: IdLike) -> Order:
        order = await self._load(db, order_id)
        if order.status == OrderStatus.PAID.value:
            return order
        order.payment_id = uuid.UUID(str(payment_id))
        self._transition(db, order, OrderStatus.PAID, reason="payment captured", payment_id=str(payment_id))
        await db.commit()
        return order

    async def cancel_pending(self, db: AsyncSession, order_id: IdLike, reason: str) -> Optional[Order]:
        """Cancel a PENDING order (checkout compensation). No-op if absent or already cancelled."""
        try:
            order = await self._load(db, order_id)
        except NotFoundError:
            return None
        if order.status == OrderStatus.CANCELLED.value:
            return order
        self._transition(db, order, OrderStatus.CANCELLED, reason=reason)
        await db.commit()
        return order

    async def ship_order(self, db: AsyncSession, order_id: IdLike, carrier: str) -> Order:
        """PAID → SHIPPED, creating the shipment."""
        order = await self._load(db, order_id)
        ensure_transition(order.status, OrderStatus.SHIPPED)
        shipment = await self.shipping.create_shipment(
            db, order.id, carrier, dict(order.shipping_address), order.shipping_cents
        )
        self._transition(
            db,
            order,
            OrderStatus.SHIPPED,
            carrier=shipment.carrier,
            tracking_number=shipment.tracking_number,
        )
        await db.commit()
        return order

    async def deliver_order(self, db: AsyncSession, order_id: IdLike) -> Order:
        """SHIPPED → DELIVERED."""
        order = await self._load(db, order_id)
        ensure_transition(order.status, OrderStatus.DELIVERED)
        await self.shipping.mark_delivered(db, order.id)
        self._transition(db, order, OrderStatus.DELIVERED)
        await db.commit()
        return order

    async def cancel_order(
        self,
        db: AsyncSession,
        order_id: IdLike,
        requester_id: IdLike,
        is_admin: bool = False,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Cancel a PENDING or PAID order.

        PENDING orders release their reservations. PAID orders are refunded
        and their committed stock is put back.

        Raises:
            InvalidTransitionError: Order is already shipped or finished
        """
        order = await self.get_order(db, order_id, requester_id, is_admin)
        ensure_transition(order.status, OrderStatus.CANCELLED)
        reason = reason or ("cancelled by admin" if is_admin else "cancelled by customer")

        if order.status == OrderStatus.PAID.value:
            await self.payments.refund_order_payment(db, order.id, reason="requested_by_customer")
            await self.inventory.restock(db, order.id)
        else:
            await self.inventory.release(db, order.id)

        order = await self._load(db, order.id)
        self._transition(db, order, OrderStatus.CANCELLED, reason=reason)
        await db.commit()
        return order

    async def refund_order(
        self,
        db: AsyncSession,
        order_id: IdLike,
        reason: Optional[str] = None,
        restock: bool = False,
    ) -> Order:
        """DELIVERED → REFUNDED (returns handling, admin only)."""
        order = await self._load(db, order_id)
        ensure_transition(order.status, OrderStatus.REFUNDED)

        await self.payments.refund_order_payment(db, order.id, reason="requested_by_customer")
        if restock:
            await self.inventory.restock(db, order.id)

        order = await self._load(db, order.id)
        self._transition(db, order, OrderStatus.REFUNDED, reason=reason or "returned", restocked=restock)
        await db.commit()
        return order

    async def expire_stale_orders(self, db: AsyncSession) -> List[uuid.UUID]:
        """Release expired reservations and cancel the PENDING orders holding them."""
        cancelled = []
        for order_id in await self.inventory.expire_reservations(db):
            order = await db.get(Order, order_id, populate_existing=True)
            if order is None or order.status != OrderStatus.PENDING.value:
                continue
            self._transition(db, order, OrderStatus.CANCELLED, reason="reservation expired")
            await db.commit()
            cancelled.append(order_id)
        if cancelled:
            logger.info("stale_orders_cancelled", count=len(cancelled))
        return cancelled
