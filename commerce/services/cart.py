"""
Cart service: one cart per user, priced at read time from the catalog.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.config import Settings, get_settings
from commerce.core.errors import DomainValidationError, NotFoundError
from commerce.database.models import Cart, CartItem
from commerce.services.catalog import CatalogService

logger = structlog.get_logger(__name__)

IdLike = Union[str, uuid.UUID]


class CartService:
    """Shopping cart operations."""

    def __init__(self, catalog: CatalogService, settings: Optional[Settings] = None):
        self.catalog = catalog
        self.settings = settings or get_settings()

    async def _find_cart(self, db: AsyncSession, user_uuid: uuid.UUID) -> Optional[Cart]:
        result = await db.execute(select(Cart).where(Cart.user_id == user_uuid))
        return result.scalar_one_or_none()

    async def _get_or_create(self, db: AsyncSession, user_id: IdLike) -> Cart:
        user_uuid = uuid.UUID(str(user_id))
        cart = await self._find_cart(db, user_uuid)
        if cart is None:
            cart = Cart(id=uuid.uuid4(), user_id=user_uuid, updated_at=datetime.utcnow(), items=[])
            db.add(cart)
            try:
                await db.flush()
            except IntegrityError:
                # a concurrent request created the cart first
                await db.rollback()
                logger.info("cart_created_concurrently", user_id=str(user_uuid))
                cart = await self._find_cart(db, user_uuid)
                if cart is None:
                    raise
        return cart

    def _check_quantity(self, quantity: int) -> None:
        if quantity < 1 or quantity > self.settings.max_line_quantity:
            raise DomainValidationError(
                f"Quantity must be between 1 and {self.settings.max_line_quantity}",
                details={"quantity": quantity},
            )

    async def get_cart(self, db: AsyncSession, user_id: IdLike) -> Dict[str, Any]:
        """
        Cart view with current prices.

        Lines whose product was deactivated stay in the cart with
        `is_active` false and are excluded from the subtotal.
        """
        cart = await self._get_or_create(db, user_id)
        products = await self.catalog.get_products(db, [item.product_id for item in cart.items])

        lines = []
        subtotal = 0
        item_count = 0
        for item in cart.items:
            product = products.get(item.product_id)
            if product is None:
                continue
            line_total = product.price_cents * item.quantity
            lines.append(
                {
                    "product_id": str(product.id),
                    "sku": product.sku,
                    "name": product.name,
                    "unit_price_cents": product.price_cents,
                    "quantity": item.quantity,
                    "line_total_cents": line_total,
                    "weight_grams": product.weight_grams,
                    "is_active": product.is_active,
                }
            )
            if product.is_active:
                subtotal += line_total
                item_count += item.quantity

        return {
            "user_id": str(cart.user_id),
            "items": lines,
            "subtotal_cents": subtotal,
            "item_count": item_count,
            "currency": self.settings.currency,
        }

    async def add_item(
        self, db: AsyncSession, user_id: IdLike, product_id: IdLike, quantity: int = 1
    ) -> Dict[str, Any]:
        """
        Add units of a product, merging with an existing line.

        Raises:
            DomainValidationError: Quantity out of range (also after merging)
            NotFoundError: Unknown or inactive product
        """
        self._check_quantity(quantity)
        product = await self.catalog.get_product(db, product_id)
        product_uuid = uuid.UUID(product["id"])

        cart = await self._get_or_create(db, user_id)
        line = next((item for item in cart.items if item.product_id == product_uuid), None)
        if line is None:
            cart.items.append(
                CartItem(product_id=product_uuid, quantity=quantity, added_at=datetime.utcnow())
            )
        else:
            self._check_quantity(line.quantity + quantity)
            line.quantity += quantity
        cart.updated_at = datetime.utcnow()
        await db.commit()

        logger.info("cart_item_added", user_id=str(user_id), product_id=str(product_uuid), quantity=quantity)
        return await self.get_cart(db, user_id)

    async def update_item(
        self, db: AsyncSession, user_id: IdLike, product_id: IdLike, quantity: int
    ) -> Dict[str, Any]:
        """Set a line's quantity; 0 removes the line."""
        if quantity == 0:
            return await self.remove_item(db, user_id, product_id)
        self._check_quantity(quantity)

        cart = await self._get_or_create(db, user_id)
        line = self._find_line(cart, product_id)
        line.quantity = quantity
        cart.updated_at = datetime.utcnow()
        await db.commit()
        return await self.get_cart(db, user_id)

    async def remove_item(self, db: AsyncSession, user_id: IdLike, product_id: IdLike) -> Dict[str, Any]:
        cart = await self._get_or_create(db, user_id)
        cart.items.remove(self._find_line(cart, product_id))
        cart.updated_at = datetime.utcnow()
        await db.commit()
        return await self.get_cart(db, user_id)

    async def clear(
        self, db: AsyncSession, user_id: IdLike, product_ids: Optional[Iterable[IdLike]] = None
    ) -> None:
        """Empty the cart, or only the given products."""
        cart = await self._get_or_create(db, user_id)
        if product_ids is None:
            cart.items.clear()
        else:
            wanted = {uuid.UUID(str(pid)) for pid in product_ids}
            for item in [i for i in cart.items if i.product_id in wanted]:
                cart.items.remove(item)
        cart.updated_at = datetime.utcnow()
        await db.commit()
        logger.info("cart_cleared", user_id=str(user_id))

    @staticmethod
    def _find_line(cart: Cart, product_id: IdLike) -> CartItem:
        try:
            product_uuid = uuid.UUID(str(product_id))
        except ValueError:
            product_uuid = None
        for item in cart.items:
            if item.product_id == product_uuid:
                return item
        raise NotFoundError("Product is not in the cart", details={"product_id": str(product_id)})
