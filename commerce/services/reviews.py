"""
Review service: verified-purchase product reviews and rating summaries.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Union

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.core.errors import (
    ConflictError,
    DomainValidationError,
    NotFoundError,
    PermissionDeniedError,
)
from commerce.core.outbox import write_outbox_event
from commerce.database.models import Review
from commerce.services.catalog import CatalogService
from commerce.services.orders import OrderService

logger = structlog.get_logger(__name__)

IdLike = Union[str, uuid.UUID]


class ReviewService:
    """Product reviews."""

    def __init__(self, catalog: CatalogService, orders: OrderService):
        self.catalog = catalog
        self.orders = orders

    async def add_review(
        self,
        db: AsyncSession,
        user_id: IdLike,
        product_id: IdLike,
        rating: int,
        title: str = "",
        body: str = "",
    ) -> Review:
        """
        Post a review.

        Raises:
            DomainValidationError: Rating outside 1..5
            NotFoundError: Unknown product
            PermissionDeniedError: The user never received this product
            ConflictError: The user already reviewed this product
        """
        if not 1 <= int(rating) <= 5:
            raise DomainValidationError("Rating must be between 1 and 5", details={"rating": rating})
        product = await self.catalog.get_product(db, product_id, include_inactive=True)
        product_uuid = uuid.UUID(product["id"])
        user_uuid = uuid.UUID(str(user_id))

        if not await self.orders.has_delivered_purchase(db, user_uuid, product_uuid):
            raise PermissionDeniedError(
                "Only customers who received this product can review it",
                details={"product_id": product["id"]},
            )

        existing = await db.execute(
            select(Review.id).where(Review.product_id == product_uuid).where(Review.user_id == user_uuid)
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError("You already reviewed this product", details={"product_id": product["id"]})

        review = Review(
            id=uuid.uuid4(),
            product_id=product_uuid,
            user_id=user_uuid,
            rating=int(rating),
            title=(title or "").strip(),
            body=(body or "").strip(),
            created_at=datetime.utcnow(),
        )
        db.add(review)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("You already reviewed this product", details={"product_id": product["id"]})

        await self._emit(db, "review.created", review)
        await db.commit()
        logger.info("review_created", review_id=str(review.id), product_id=product["id"], rating=review.rating)
        return review

    async def list_reviews(
        self, db: AsyncSession, product_id: IdLike, limit: int = 20, offset: int = 0
    ) -> List[Review]:
        stmt = (
            select(Review)
            .where(Review.product_id == uuid.UUID(str(product_id)))
            .order_by(Review.created_at.desc())
            .limit(min(limit, 100))
            .offset(offset)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def rating_summary(self, db: AsyncSession, product_id: IdLike) -> Dict[str, Any]:
        stmt = (
            select(Review.rating, func.count())
            .where(Review.product_id == uuid.UUID(str(product_id)))
            .group_by(Review.rating)
        )
        distribution = {str(star): 0 for star in range(1, 6)}
        for rating, count in (await db.execute(stmt)).all():
            distribution[str(rating)] = int(count)
        total = sum(distribution.values())
        average = (
            round(sum(int(star) * count for star, count in distribution.items()) / total, 2)
            if total
            else 0.0
        )
        return {
            "product_id": str(product_id),
            "average": average,
            "count": total,
            "distribution": distribution,
        }

    async def delete_review(
        self, db: AsyncSession, review_id: IdLike, requester_id: IdLike, is_admin: bool = False
    ) -> None:
        review = await db.get(Review, uuid.UUID(str(review_id)))
        if review is None:
            raise NotFoundError("Review not found", details={"review_id": str(review_id)})
        if not is_admin and str(review.user_id) != str(requester_id):
            raise PermissionDeniedError("You can only delete your own reviews")

        await db.delete(review)
        await db.flush()
        await self._emit(db, "review.deleted", review)
        await db.commit()
        logger.info("review_deleted", review_id=str(review_id), by_admin=is_admin)

    async def _emit(self, db: AsyncSession, event_type: str, review: Review) -> None:
        # Aggregate is the product so rating events for one product stay ordered
        summary = await self.rating_summary(db, review.product_id)
        write_outbox_event(
            db,
            aggregate_type="review",
            aggregate_id=review.product_id,
            event_type=event_type,
            payload={
                "review_id": str(review.id),
                "product_id": str(review.product_id),
                "user_id": str(review.user_id),
                "rating": review.rating,
                "rating_avg": summary["average"],
                "rating_count": summary["count"],
            },
        )
