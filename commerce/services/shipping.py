"""
Shipping service: rate quotes and shipments.

Rates are zone based. Domestic means the destination country equals the
warehouse country. Cost = base + per-kg rate * ceil(weight in kg); domestic
orders at or above the free-shipping threshold ship free.
"""
import math
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.config import Settings, get_settings
from commerce.core.errors import ConflictError, DomainValidationError, NotFoundError
from commerce.database.models import Shipment

logger = structlog.get_logger(__name__)

REQUIRED_ADDRESS_FIELDS = ("name", "line1", "city", "postal_code", "country")
CARRIERS = ("UPS", "FEDEX", "DHL", "USPS")

IdLike = Union[str, uuid.UUID]


def validate_address(address: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Normalise a shipping address.

    Raises:
        DomainValidationError: Missing required fields or a bad country code
    """
    if not isinstance(address, dict):
        raise DomainValidationError("Shipping address is required")
    missing = [f for f in REQUIRED_ADDRESS_FIELDS if not str(address.get(f) or "").strip()]
    if missing:
        raise DomainValidationError("Incomplete shipping address", details={"missing": missing})
    normalised = {k: str(v).strip() for k, v in address.items() if v is not None}
    normalised["country"] = normalised["country"].upper()
    if len(normalised["country"]) != 2 or not normalised["country"].isalpha():
        raise DomainValidationError(
            "Country must be a 2-letter ISO code", details={"country": address.get("country")}
        )
    return normalised


class ShippingService:
    """Quotes and shipment tracking."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def quote(self, lines: Iterable[Dict[str, Any]], address: Dict[str, Any]) -> Dict[str, Any]:
        """
        Price shipping for cart or order lines.

        Each line needs `quantity`, `unit_price_cents` and `weight_grams`.
        """
        address = validate_address(address)
        lines = list(lines)
        subtotal = sum(int(line["unit_price_cents"]) * int(line["quantity"]) for line in lines)
        grams = sum(int(line.get("weight_grams", 0)) * int(line["quantity"]) for line in lines)
        billable_kg = math.ceil(grams / 1000)

        domestic = address["country"] == self.settings.shipping_origin_country
        if domestic:
            base = self.settings.shipping_domestic_base_cents
            per_kg = self.settings.shipping_domestic_per_kg_cents
        else:
            base = self.settings.shipping_international_base_cents
            per_kg = self.settings.shipping_international_per_kg_cents

        free = domestic and subtotal >= self.settings.free_shipping_threshold_cents
        cost = 0 if free else base + per_kg * billable_kg

        return {
            "zone": "domestic" if domestic else "international",
            "billable_kg": billable_kg,
            "subtotal_cents": subtotal,
            "cost_cents": cost,
            "free_shipping": free,
            "currency": self.settings.currency,
        }

    async def get_for_order(self, db: AsyncSession, order_id: IdLike) -> Shipment:
        result = await db.execute(
            select(Shipment).where(Shipment.order_id == uuid.UUID(str(order_id)))
        )
        shipment = result.scalar_one_or_none()
        if shipment is None:
            raise NotFoundError("Shipment not found", details={"order_id": str(order_id)})
        return shipment

    async def create_shipment(
        self,
        db: AsyncSession,
        order_id: IdLike,
        carrier: str,
        address: Dict[str, Any],
        cost_cents: int,
    ) -> Shipment:
        """
        Create the order's shipment in the caller's transaction.

        Returns the existing shipment if the order already has one.
        """
        carrier = (carrier or "").strip().upper()
        if carrier not in CARRIERS:
            raise DomainValidationError(
                "Unsupported carrier", details={"carrier": carrier, "supported": list(CARRIERS)}
            )
        try:
            return await self.get_for_order(db, order_id)
        except NotFoundError:
            pass

        shipment = Shipment(
            id=uuid.uuid4(),
            order_id=uuid.UUID(str(order_id)),
            carrier=carrier,
            tracking_number=f"{carrier}-{uuid.uuid4().hex[:12].upper()}",
            status="shipped",
            cost_cents=cost_cents,
            address=address,
            shipped_at=datetime.utcnow(),
        )
        db.add(shipment)
        await db.flush()
        logger.info(
            "shipment_created",
            order_id=str(order_id),
            carrier=carrier,
            tracking_number=shipment.tracking_number,
        )
        return shipment

    async def mark_delivered(self, db: AsyncSession, order_id: IdLike) -> Shipment:
        """Mark the order's shipment delivered in the caller's transaction."""
        shipment = await self.get_for_order(db, order_id)
        if shipment.status == "delivered":
            return shipment
        if shipment.status != "shipped":
            raise ConflictError(
                "Shipment has not been shipped", details={"status": shipment.status}
            )
        shipment.status = "delivered"
        shipment.delivered_at = datetime.utcnow()
        await db.flush()
        logger.info("shipment_delivered", order_id=str(order_id))
        return shipment
