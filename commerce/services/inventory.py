"""
Inventory service: stock levels and per-order reservations.

Reservation lifecycle:
    ACTIVE ──► COMMITTED ──► RESTOCKED
       │
       └──► RELEASED (cancelled or expired)

Reserving and stock writes use optimistic concurrency on InventoryItem.version
with bounded retries. Releasing, committing and restocking claim each
reservation row with a conditional status update first, so running them
twice never moves stock twice.
"""
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.config import Settings, get_settings
from commerce.core.errors import (
    ConflictError,
    DomainValidationError,
    InsufficientStockError,
    NotFoundError,
    TransientError,
)
from commerce.core.outbox import write_outbox_event
from commerce.database.models import InventoryItem, InventoryReservation
from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ACTIVE = "active"
RELEASED = "released"
COMMITTED = "committed"
RESTOCKED = "restocked"

IdLike = Union[str, uuid.UUID]


def _uuid(value: IdLike) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class InventoryService:
    """Stock and reservation management."""

    def __init__(self, settings: Optional[Settings] = None, max_reserve_attempts: int = 5):
        self.settings = settings or get_settings()
        self.max_reserve_attempts = max_reserve_attempts

    # --- stock ------------------------------------------------------------

    async def create_item(self, db: AsyncSession, product_id: IdLike, on_hand: int = 0) -> InventoryItem:
        """Create the stock row for a new product in the caller's transaction."""
        if on_hand < 0:
            raise DomainValidationError("Stock cannot be negative")
        item = InventoryItem(
            product_id=_uuid(product_id),
            on_hand=on_hand,
            reserved=0,
            version=1,
            updated_at=datetime.utcnow(),
        )
        db.add(item)
        await db.flush()
        self._stock_changed(db, item)
        return item

    async def get_item(self, db: AsyncSession, product_id: IdLike) -> InventoryItem:
        stmt = (
            select(InventoryItem)
            .where(InventoryItem.product_id == _uuid(product_id))
            .execution_options(populate_existing=True)
        )
        item = (await db.execute(stmt)).scalar_one_or_none()
        if item is None:
            raise NotFoundError("Inventory item not found", details={"product_id": str(product_id)})
        return item

    async def get_availability(self, db: AsyncSession, product_id: IdLike) -> Dict[str, Any]:
        return self.item_to_dict(await self.get_item(db, product_id))

    async def get_availability_map(
        self, db: AsyncSession, product_ids: Iterable[IdLike]
    ) -> Dict[uuid.UUID, int]:
        ids = [_uuid(pid) for pid in product_ids]
        if not ids:
            return {}
        stmt = select(InventoryItem).where(InventoryItem.product_id.in_(ids))
        return {item.product_id: item.available for item in (await db.execute(stmt)).scalars()}

    async def set_stock(self, db: AsyncSession, product_id: IdLike, on_hand: int) -> InventoryItem:
        """
        Set the physical stock count.

        Raises:
            DomainValidationError: If on_hand is negative or below reserved units
            TransientError: Lost the optimistic-lock race too many times
        """
        item = await self._write_on_hand(db, product_id, lambda current: on_hand)
        logger.info("stock_set", product_id=str(item.product_id), on_hand=on_hand)
        return item

    async def adjust_stock(self, db: AsyncSession, product_id: IdLike, delta: int) -> InventoryItem:
        """Add (or remove, with a negative delta) physical units."""
        item = await self._write_on_hand(db, product_id, lambda current: current.on_hand + delta)
        logger.info("stock_adjusted", product_id=str(item.product_id), delta=delta)
        return item

    async def _write_on_hand(
        self, db: AsyncSession, product_id: IdLike, target: Callable[[InventoryItem], int]
    ) -> InventoryItem:
        """Compare-and-set on_hand against the version that was read."""
        for attempt in range(1, self.max_reserve_attempts + 1):
            item = await self.get_item(db, product_id)
            on_hand = target(item)
            self._check_on_hand(item, on_hand)
            result = await db.execute(
                update(InventoryItem)
                .where(InventoryItem.product_id == item.product_id)
                .where(InventoryItem.version == item.version)
                .where(InventoryItem.reserved <= on_hand)
                .values(on_hand=on_hand, version=InventoryItem.version + 1, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await self._emit_stock_changed(db, [item.product_id])
                await db.commit()
                return await self.get_item(db, item.product_id)

            await db.rollback()
            logger.warning("stock_version_conflict", product_id=str(item.product_id), attempt=attempt)

        raise TransientError(
            "Inventory is under heavy contention, try again",
            details={"product_id": str(product_id)},
        )

    @staticmethod
    def _check_on_hand(item: InventoryItem, on_hand: int) -> None:
        if on_hand < 0:
            raise DomainValidationError("Stock cannot be negative")
        if on_hand < item.reserved:
            raise DomainValidationError(
                "Stock cannot drop below reserved units",
                details={"reserved": item.reserved, "requested_on_hand": on_hand},
            )

    # --- reservations ---------------------------------------------------------

    async def get_reservations(
        self, db: AsyncSession, order_id: IdLike, status: Optional[str] = None
    ) -> List[InventoryReservation]:
        stmt = select(InventoryReservation).where(
            InventoryReservation.order_id == _uuid(order_id)
        )
        if status is not None:
            stmt = stmt.where(InventoryReservation.status == status)
        stmt = stmt.order_by(InventoryReservation.created_at).execution_options(
            populate_existing=True
        )
        return list((await db.execute(stmt)).scalars().all())

    @staticmethod
    def _merge_lines(lines: Iterable[Dict[str, Any]]) -> "OrderedDict[uuid.UUID, int]":
        merged: "OrderedDict[uuid.UUID, int]" = OrderedDict()
        for line in lines:
            quantity = int(line["quantity"])
            if quantity <= 0:
                raise DomainValidationError("Reservation quantity must be positive")
            product_id = _uuid(line["product_id"])
            merged[product_id] = merged.get(product_id, 0) + quantity
        if not merged:
            raise DomainValidationError("Nothing to reserve")
        return merged

    async def _load_items(
        self, db: AsyncSession, product_ids: Iterable[uuid.UUID]
    ) -> Dict[uuid.UUID, InventoryItem]:
        stmt = (
            select(InventoryItem)
            .where(InventoryItem.product_id.in_(list(product_ids)))
            .execution_options(populate_existing=True)
        )
        return {item.product_id: item for item in (await db.execute(stmt)).scalars()}

    async def reserve(
        self,
        db: AsyncSession,
        order_id: IdLike,
        lines: Iterable[Dict[str, Any]],
        ttl_seconds: Optional[int] = None,
    ) -> List[InventoryReservation]:
        """
        Reserve every line of an order, or nothing.

        Calling it again for the same order returns the existing reservations.

        Raises:
            InsufficientStockError: Lists each product that cannot be covered
            TransientError: Lost the optimistic-lock race too many times
        """
        order_uuid = _uuid(order_id)
        existing = await self.get_reservations(db, order_uuid)
        if existing:
            logger.info("reservation_already_exists", order_id=str(order_uuid))
            return [r for r in existing if r.status == ACTIVE]

        wanted = self._merge_lines(lines)
        ttl = ttl_seconds or self.settings.reservation_ttl_seconds

        for attempt in range(1, self.max_reserve_attempts + 1):
            items = await self._load_items(db, wanted)

            shortages = []
            for product_id, quantity in wanted.items():
                item = items.get(product_id)
                available = item.available if item is not None else 0
                if available < quantity:
                    shortages.append(
                        {
                            "product_id": str(product_id),
                            "requested": quantity,
                            "available": max(available, 0),
                        }
                    )
            if shortages:
                await db.rollback()
                metrics.record_reservation("insufficient")
                logger.info("reservation_insufficient_stock", order_id=str(order_uuid), shortages=shortages)
                raise InsufficientStockError(shortages)

            conflict = False
            for product_id, quantity in wanted.items():
                item = items[product_id]
                result = await db.execute(
                    update(InventoryItem)
                    .where(InventoryItem.product_id == product_id)
                    .where(InventoryItem.version == item.version)
                    .values(
                        reserved=InventoryItem.reserved + quantity,
                        version=InventoryItem.version + 1,
                        updated_at=datetime.utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    conflict = True
                    break

            if conflict:
                await db.rollback()
                metrics.record_reservation("conflict")
                logger.warning("reservation_version_conflict", order_id=str(order_uuid), attempt=attempt)
                continue

            expires_at = datetime.utcnow() + timedelta(seconds=ttl)
            reservations = [
                InventoryReservation(
                    id=uuid.uuid4(),
                    order_id=order_uuid,
                    product_id=product_id,
                    quantity=quantity,
                    status=ACTIVE,
                    expires_at=expires_at,
                    created_at=datetime.utcnow(),
                )
                for product_id, quantity in wanted.items()
            ]
            db.add_all(reservations)
            await self._emit_stock_changed(db, wanted.keys())
            await db.commit()

            metrics.record_reservation("reserved")
            logger.info(
                "inventory_reserved",
                order_id=str(order_uuid),
                lines=len(reservations),
                expires_at=expires_at.isoformat(),
            )
            return reservations

        raise TransientError(
            "Inventory is under heavy contention, try again",
            details={"order_id": str(order_uuid)},
        )

    async def _claim(
        self, db: AsyncSession, reservation: InventoryReservation, from_status: str, to_status: str
    ) -> bool:
        """Move one reservation between states; False if someone else already did."""
        result = await db.execute(
            update(InventoryReservation)
            .where(InventoryReservation.id == reservation.id)
            .where(InventoryReservation.status == from_status)
            .values(status=to_status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _transition(
        self,
        db: AsyncSession,
        order_id: IdLike,
        from_status: str,
        to_status: str,
        on_hand_sign: int,
        reserved_sign: int,
    ) -> int:
        touched = set()
        for reservation in await self.get_reservations(db, order_id, status=from_status):
            if not await self._claim(db, reservation, from_status, to_status):
                continue
            await db.execute(
                update(InventoryItem)
                .where(InventoryItem.product_id == reservation.product_id)
                .values(
                    on_hand=InventoryItem.on_hand + on_hand_sign * reservation.quantity,
                    reserved=InventoryItem.reserved + reserved_sign * reservation.quantity,
                    version=InventoryItem.version + 1,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            touched.add(reservation.product_id)

        if touched:
            await self._emit_stock_changed(db, touched)
        await db.commit()
        return len(touched)

    async def release(self, db: AsyncSession, order_id: IdLike) -> int:
        """Give ACTIVE reservations of an order back to available stock."""
        count = await self._transition(db, order_id, ACTIVE, RELEASED, 0, -1)
        if count:
            metrics.record_reservation("released")
            logger.info("inventory_released", order_id=str(order_id), products=count)
        return count

    async def commit(self, db: AsyncSession, order_id: IdLike) -> int:
        """
        Turn ACTIVE reservations into a stock deduction.

        Raises:
            ConflictError: The order holds neither active nor committed reservations
        """
        count = await self._transition(db, order_id, ACTIVE, COMMITTED, -1, -1)
        if count == 0 and not await self.get_reservations(db, order_id, status=COMMITTED):
            raise ConflictError(
                "Order has no active reservations to commit",
                details={"order_id": str(order_id)},
            )
        if count:
            metrics.record_reservation("committed")
            logger.info("inventory_committed", order_id=str(order_id), products=count)
        return count

    async def restock(self, db: AsyncSession, order_id: IdLike) -> int:
        """Return COMMITTED units of an order to the shelf."""
        count = await self._transition(db, order_id, COMMITTED, RESTOCKED, 1, 0)
        if count:
            metrics.record_reservation("restocked")
            logger.info("inventory_restocked", order_id=str(order_id), products=count)
        return count

    async def undo(self, db: AsyncSession, order_id: IdLike) -> int:
        """Release active and restock committed reservations of an order."""
        return await self.release(db, order_id) + await self.restock(db, order_id)

    async def expire_reservations(self, db: AsyncSession, now: Optional[datetime] = None) -> List[uuid.UUID]:
        """
        Release ACTIVE reservations past their expiry.

        Returns:
            List[uuid.UUID]: Orders that lost their reservations
        """
        now = now or datetime.utcnow()
        stmt = (
            select(InventoryReservation.order_id)
            .where(InventoryReservation.status == ACTIVE)
            .where(InventoryReservation.expires_at < now)
            .distinct()
        )
        order_ids = list((await db.execute(stmt)).scalars().all())
        expired = []
        for order_id in order_ids:
            if await self.release(db, order_id):
                expired.append(order_id)
        if expired:
            metrics.record_reservation("expired")
            logger.info("reservations_expired", orders=len(expired))
        return expired

    # --- events -----------------------------------------------------------------

    @staticmethod
    def item_to_dict(item: InventoryItem) -> Dict[str, Any]:
        return {
            "product_id": str(item.product_id),
            "on_hand": item.on_hand,
            "reserved": item.reserved,
            "available": item.available,
            "in_stock": item.available > 0,
        }

    def _stock_changed(self, db: AsyncSession, item: InventoryItem) -> None:
        write_outbox_event(
            db,
            aggregate_type="inventory",
            aggregate_id=item.product_id,
            event_type="inventory.stock_changed",
            payload=self.item_to_dict(item),
        )

    async def _emit_stock_changed(self, db: AsyncSession, product_ids: Iterable[uuid.UUID]) -> None:
        for item in (await self._load_items(db, product_ids)).values():
            self._stock_changed(db, item)
