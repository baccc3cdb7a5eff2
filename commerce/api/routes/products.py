"""
Catalog, inventory and review routes.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.api.dependencies import get_container, get_current_user, get_db, require_admin
from commerce.api.schemas import (
    AdjustStockRequest,
    CreateProductRequest,
    CreateReviewRequest,
    ProductResponse,
    RatingSummaryResponse,
    ReviewResponse,
    SetStockRequest,
    StockResponse,
    UpdateProductRequest,
)
from commerce.container import ServiceContainer
from commerce.database.models import Review, User
from commerce.services.catalog import product_to_dict

logger = structlog.get_logger(__name__)

product_router = APIRouter(prefix="/products", tags=["products"])
inventory_router = APIRouter(prefix="/inventory", tags=["inventory"])
review_router = APIRouter(tags=["reviews"])


@product_router.get("", response_model=List[ProductResponse], summary="Browse the catalog")
async def list_products(
    category: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    products = await container.catalog.list_products(db, category=category, limit=limit, offset=offset)
    return [product_to_dict(p) for p in products]


@product_router.get("/{product_id}", response_model=ProductResponse, summary="Get a product")
async def get_product(
    product_id: UUID,
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await container.catalog.get_product(db, product_id)


@product_router.post(
    "",
    response_model=ProductResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a product",
    description="Admin only. Creates the product and its stock row.",
)
async def create_product(
    request: CreateProductRequest,
    admin: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    product = await container.catalog.create_product(db, **request.model_dump())
    logger.info("api_product_created", product_id=str(product.id), admin_id=str(admin.id))
    return product_to_dict(product)


@product_router.patch("/{product_id}", response_model=ProductResponse, summary="Update a product")
async def update_product(
    product_id: UUID,
    request: UpdateProductRequest,
    admin: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    product = await container.catalog.update_product(
        db, product_id, **request.model_dump(exclude_unset=True)
    )
    return product_to_dict(product)


@product_router.delete("/{product_id}", response_model=ProductResponse, summary="Stop selling a product")
async def deactivate_product(
    product_id: UUID,
    admin: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return product_to_dict(await container.catalog.deactivate_product(db, product_id))


# --- inventory -------------------------------------------------------------------


@inventory_router.get("/{product_id}", response_model=StockResponse, summary="Stock level")
async def get_stock(
    product_id: UUID,
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await container.inventory.get_availability(db, product_id)


@inventory_router.put("/{product_id}", response_model=StockResponse, summary="Set on-hand stock")
async def set_stock(
    product_id: UUID,
    request: SetStockRequest,
    admin: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    item = await container.inventory.set_stock(db, product_id, request.on_hand)
    return container.inventory.item_to_dict(item)


@inventory_router.post("/{product_id}/adjust", response_model=StockResponse, summary="Adjust on-hand stock")
async def adjust_stock(
    product_id: UUID,
    request: AdjustStockRequest,
    admin: User = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    item = await container.inventory.adjust_stock(db, product_id, request.delta)
    return container.inventory.item_to_dict(item)


# --- reviews ---------------------------------------------------------------------


@review_router.get(
    "/products/{product_id}/reviews", response_model=List[ReviewResponse], summary="Product reviews"
)
async def list_reviews(
    product_id: UUID,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> List[Review]:
    return await container.reviews.list_reviews(db, product_id, limit=limit, offset=offset)


@review_router.get(
    "/products/{product_id}/reviews/summary",
    response_model=RatingSummaryResponse,
    summary="Rating summary",
)
async def rating_summary(
    product_id: UUID,
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await container.reviews.rating_summary(db, product_id)


@review_router.post(
    "/products/{product_id}/reviews",
    response_model=ReviewResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Review a product",
    description="Only customers who received the product may review it, once.",
)
async def add_review(
    product_id: UUID,
    request: CreateReviewRequest,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Review:
    return await container.reviews.add_review(
        db, user.id, product_id, request.rating, title=request.title, body=request.body
    )


@review_router.delete(
    "/reviews/{review_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a review"
)
async def delete_review(
    review_id: UUID,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await container.reviews.delete_review(db, review_id, user.id, is_admin=user.is_admin)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
