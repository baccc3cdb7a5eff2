"""
Catalog service: products and their cache-aside read path.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.config import Settings, get_settings
from commerce.core.cache import CacheLayer
from commerce.core.errors import ConflictError, DomainValidationError, NotFoundError
from commerce.core.outbox import write_outbox_event
from commerce.database.models import Product
from commerce.services.inventory import InventoryService

logger = structlog.get_logger(__name__)

CACHE_NAMESPACE = "product"
UPDATABLE_FIELDS = ("name", "description", "category", "price_cents", "weight_grams")

IdLike = Union[str, uuid.UUID]


def product_to_dict(product: Product) -> Dict[str, Any]:
    return {
        "id": str(product.id),
        "sku": product.sku,
        "name": product.name,
        "description": product.description,
        "category": product.category,
        "price_cents": product.price_cents,
        "currency": product.currency,
        "weight_grams": product.weight_grams,
        "is_active": product.is_active,
        "version": product.version,
        "created_at": product.created_at.isoformat() if product.created_at else None,
        "updated_at": product.updated_at.isoformat() if product.updated_at else None,
    }


class CatalogService:
    """Product management."""

    def __init__(
        self,
        cache: CacheLayer,
        inventory: InventoryService,
        settings: Optional[Settings] = None,
    ):
        self.cache = cache
        self.inventory = inventory
        self.settings = settings or get_settings()

    @staticmethod
    def _validate(fields: Dict[str, Any]) -> None:
        if "price_cents" in fields and int(fields["price_cents"]) <= 0:
            raise DomainValidationError("Price must be positive")
        if "weight_grams" in fields and int(fields["weight_grams"]) < 0:
            raise DomainValidationError("Weight cannot be negative")
        for name in ("name", "category"):
            if name in fields and not str(fields[name] or "").strip():
                raise DomainValidationError(f"Product {name} is required")

    async def create_product(
        self,
        db: AsyncSession,
        sku: str,
        name: str,
        category: str,
        price_cents: int,
        description: str = "",
        weight_grams: int = 0,
        initial_stock: int = 0,
    ) -> Product:
        """
        Create a product and its (possibly empty) stock row.

        Raises:
            DomainValidationError: Invalid price, weight, name or category
            ConflictError: SKU already exists
        """
        sku = (sku or "").strip().upper()
        if not sku:
            raise DomainValidationError("SKU is required")
        self._validate(
            {"name": name, "category": category, "price_cents": price_cents, "weight_grams": weight_grams}
        )

        existing = await db.execute(select(Product.id).where(Product.sku == sku))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError("SKU already exists", details={"sku": sku})

        now = datetime.utcnow()
        product = Product(
            id=uuid.uuid4(),
            sku=sku,
            name=name.strip(),
            description=description or "",
            category=category.strip().lower(),
            price_cents=price_cents,
            currency=self.settings.currency,
            weight_grams=weight_grams,
            is_active=True,
            version=1,
            created_at=now,
            updated_at=now,
        )
        db.add(product)

        write_outbox_event(
            db,
            aggregate_type="product",
            aggregate_id=product.id,
            event_type="product.created",
            payload={**product_to_dict(product), "in_stock": initial_stock > 0},
        )
        try:
            await self.inventory.create_item(db, product.id, on_hand=initial_stock)
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("SKU already exists", details={"sku": sku})

        logger.info("product_created", product_id=str(product.id), sku=sku)
        return product

    async def _get_row(self, db: AsyncSession, product_id: IdLike) -> Product:
        product = await db.get(Product, uuid.UUID(str(product_id)))
        if product is None:
            raise NotFoundError("Product not found", details={"product_id": str(product_id)})
        return product

    async def update_product(self, db: AsyncSession, product_id: IdLike, **changes: Any) -> Product:
        """Apply a partial update; unknown fields are rejected."""
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise DomainValidationError(
                "Unknown product fields", details={"fields": sorted(unknown)}
            )
        changes = {k: v for k, v in changes.items() if v is not None}
        self._validate(changes)

        product = await self._get_row(db, product_id)
        if not changes:
            return product

        for field_name, value in changes.items():
            if field_name == "category":
                value = value.strip().lower()
            setattr(product, field_name, value)
        product.version += 1
        product.updated_at = datetime.utcnow()

        write_outbox_event(
            db,
            aggregate_type="product",
            aggregate_id=product.id,
            event_type="product.updated",
            payload={**product_to_dict(product), "changed": sorted(changes)},
        )
        await db.commit()
        await self.cache.delete(CACHE_NAMESPACE, product.id)

        logger.info("product_updated", product_id=str(product.id), fields=sorted(changes))
        return product

    async def deactivate_product(self, db: AsyncSession, product_id: IdLike) -> Product:
        product = await self._get_row(db, product_id)
        if not product.is_active:
            return product

        product.is_active = False
        product.version += 1
        product.updated_at = datetime.utcnow()
        write_outbox_event(
            db,
            aggregate_type="product",
            aggregate_id=product.id,
            event_type="product.deactivated",
            payload=product_to_dict(product),
        )
        await db.commit()
        await self.cache.delete(CACHE_NAMESPACE, product.id)

        logger.info("product_deactivated", product_id=str(product.id))
        return product

    async def get_product(
        self, db: AsyncSession, product_id: IdLike, include_inactive: bool = False
    ) -> Dict[str, Any]:
        """
        Read a product through the cache.

        Raises:
            NotFoundError: Unknown product, or inactive unless include_inactive
        """
        try:
            key = uuid.UUID(str(product_id))
        except ValueError:
            raise NotFoundError("Product not found", details={"product_id": str(product_id)})

        async def _load() -> Optional[Dict[str, Any]]:
            product = await db.get(Product, key)
            return product_to_dict(product) if product is not None else None

        data = await self.cache.get_or_load(CACHE_NAMESPACE, key, _load)
        if data is None or (not data["is_active"] and not include_inactive):
            raise NotFoundError("Product not found", details={"product_id": str(product_id)})
        return data

    async def list_products(
        self,
        db: AsyncSession,
        category: Optional[str] = None,
        include_inactive: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Product]:
        stmt = select(Product)
        if category:
            stmt = stmt.where(Product.category == category.strip().lower())
        if not include_inactive:
            stmt = stmt.where(Product.is_active == True)  # noqa: E712
        stmt = stmt.order_by(Product.name, Product.sku).limit(min(limit, 200)).offset(offset)
        return list((await db.execute(stmt)).scalars().all())

    async def get_products(
        self, db: AsyncSession, product_ids: Iterable[IdLike]
    ) -> Dict[uuid.UUID, Product]:
        """Bulk lookup for carts and checkout (bypasses the cache)."""
        ids = [uuid.UUID(str(pid)) for pid in product_ids]
        if not ids:
            return {}
        stmt = select(Product).where(Product.id.in_(ids))
        return {product.id: product for product in (await db.execute(stmt)).scalars()}
