"""
Search service: a product projection kept current from domain events.

Ranking per query token:
    name       exact 3.0, prefix 1.5
    category   exact 2.0, prefix 1.0
    description exact 1.0, prefix 0.5
Ties are broken by rating, then name.
"""
import re
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.database.models import InventoryItem, Product, Review, SearchDocument
from commerce.messaging.bus import EventBus
from commerce.messaging.envelope import EventEnvelope
from commerce.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CONSUMER = "search-indexer"
TOKEN_PATTERN = re.compile(r"[a-z0-9]+")

FIELD_WEIGHTS = (("name", 3.0), ("category", 2.0), ("description", 1.0))
PREFIX_FACTOR = 0.5


def tokenize(text: Optional[str]) -> List[str]:
    return TOKEN_PATTERN.findall((text or "").lower())


def _index_tokens(*texts: str) -> str:
    seen: Set[str] = set()
    ordered = []
    for text in texts:
        for token in tokenize(text):
            if token not in seen:
                seen.add(token)
                ordered.append(token)
    return " ".join(ordered)


def score_document(doc: SearchDocument, query_tokens: Iterable[str]) -> float:
    fields = {
        "name": set(tokenize(doc.name)) | set(tokenize(doc.sku)),
        "category": set(tokenize(doc.category)),
        "description": set(tokenize(doc.description)),
    }
    score = 0.0
    for query_token in query_tokens:
        for field_name, weight in FIELD_WEIGHTS:
            tokens = fields[field_name]
            if query_token in tokens:
                score += weight
            elif any(token.startswith(query_token) for token in tokens):
                score += weight * PREFIX_FACTOR
    return score


class SearchService:
    """Maintains and queries the search projection."""

    def register(self, bus: EventBus) -> None:
        for event_type in ("product.created", "product.updated"):
            bus.subscribe(event_type, CONSUMER, self.on_product_changed)
        bus.subscribe("product.deactivated", CONSUMER, self.on_product_deactivated)
        bus.subscribe("inventory.stock_changed", CONSUMER, self.on_stock_changed)
        for event_type in ("review.created", "review.deleted"):
            bus.subscribe(event_type, CONSUMER, self.on_review_changed)

    # --- projection handlers ----------------------------------------------------

    async def on_product_changed(self, db: AsyncSession, envelope: EventEnvelope) -> None:
        data = envelope.payload
        if not data.get("is_active", True):
            await self.on_product_deactivated(db, envelope)
            return

        product_id = uuid.UUID(data["id"])
        doc = await db.get(SearchDocument, product_id)
        if doc is None:
            doc = SearchDocument(
                product_id=product_id,
                in_stock=bool(data.get("in_stock", False)),
                rating_avg=0.0,
                rating_count=0,
            )
            db.add(doc)

        doc.sku = data["sku"]
        doc.name = data["name"]
        doc.description = data.get("description") or ""
        doc.category = data["category"]
        doc.price_cents = int(data["price_cents"])
        doc.tokens = _index_tokens(doc.name, doc.sku, doc.category, doc.description)
        doc.updated_at = datetime.utcnow()
        logger.debug("search_document_upserted", product_id=str(product_id))

    async def on_product_deactivated(self, db: AsyncSession, envelope: EventEnvelope) -> None:
        product_id = uuid.UUID(envelope.payload.get("id") or envelope.aggregate_id)
        await db.execute(delete(SearchDocument).where(SearchDocument.product_id == product_id))
        logger.debug("search_document_removed", product_id=str(product_id))

    async def on_stock_changed(self, db: AsyncSession, envelope: EventEnvelope) -> None:
        doc = await db.get(SearchDocument, uuid.UUID(envelope.payload["product_id"]))
        if doc is None:
            return
        doc.in_stock = bool(envelope.payload.get("in_stock"))
        doc.updated_at = datetime.utcnow()

    async def on_review_changed(self, db: AsyncSession, envelope: EventEnvelope) -> None:
        doc = await db.get(SearchDocument, uuid.UUID(envelope.payload["product_id"]))
        if doc is None:
            return
        doc.rating_avg = float(envelope.payload.get("rating_avg", 0.0))
        doc.rating_count = int(envelope.payload.get("rating_count", 0))
        doc.updated_at = datetime.utcnow()

    # --- queries ---------------------------------------------------------------

    async def search(
        self,
        db: AsyncSession,
        query: Optional[str] = None,
        category: Optional[str] = None,
        min_price: Optional[int] = None,
        max_price: Optional[int] = None,
        in_stock_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """
        Ranked product search.

        Returns:
            Dict with `total` matches and the requested page of `hits`
        """
        query_tokens = tokenize(query)
        stmt = select(SearchDocument)
        if category:
            stmt = stmt.where(SearchDocument.category == category.strip().lower())
        if min_price is not None:
            stmt = stmt.where(SearchDocument.price_cents >= min_price)
        if max_price is not None:
            stmt = stmt.where(SearchDocument.price_cents <= max_price)
        if in_stock_only:
            stmt = stmt.where(SearchDocument.in_stock == True)  # noqa: E712
        if query_tokens:
            stmt = stmt.where(
                or_(*[SearchDocument.tokens.contains(token) for token in query_tokens])
            )

        candidates = (await db.execute(stmt)).scalars().all()
        scored = []
        for doc in candidates:
            score = score_document(doc, query_tokens) if query_tokens else 0.0
            if query_tokens and score <= 0:
                continue
            scored.append((score, doc))

        scored.sort(key=lambda pair: (-pair[0], -pair[1].rating_avg, pair[1].name.lower()))
        page = scored[offset : offset + min(limit, 100)]
        metrics.record_search(bool(scored))

        return {
            "query": query or "",
            "total": len(scored),
            "hits": [
                {
                    "product_id": str(doc.product_id),
                    "sku": doc.sku,
                    "name": doc.name,
                    "category": doc.category,
                    "price_cents": doc.price_cents,
                    "in_stock": doc.in_stock,
                    "rating_avg": doc.rating_avg,
                    "rating_count": doc.rating_count,
                    "score": round(score, 3),
                }
                for score, doc in page
            ],
        }

    async def reindex_all(self, db: AsyncSession) -> int:
        """Rebuild the projection from catalog, inventory and review tables."""
        await db.execute(delete(SearchDocument))

        stock = {
            item.product_id: item.available > 0
            for item in (await db.execute(select(InventoryItem))).scalars()
        }
        ratings = {
            product_id: (float(avg or 0.0), int(count))
            for product_id, avg, count in (
                await db.execute(
                    select(Review.product_id, func.avg(Review.rating), func.count()).group_by(
                        Review.product_id
                    )
                )
            ).all()
        }

        count = 0
        products = (
            await db.execute(select(Product).where(Product.is_active == True))  # noqa: E712
        ).scalars()
        for product in products:
            rating_avg, rating_count = ratings.get(product.id, (0.0, 0))
            db.add(
                SearchDocument(
                    product_id=product.id,
                    sku=product.sku,
                    name=product.name,
                    description=product.description,
                    category=product.category,
                    price_cents=product.price_cents,
                    in_stock=stock.get(product.id, False),
                    rating_avg=round(rating_avg, 2),
                    rating_count=rating_count,
                    tokens=_index_tokens(product.name, product.sku, product.category, product.description),
                    updated_at=datetime.utcnow(),
                )
            )
            count += 1

        await db.commit()
        logger.info("search_reindexed", documents=count)
        return count
