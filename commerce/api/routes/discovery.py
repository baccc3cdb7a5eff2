"""
Search and notification routes.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.api.dependencies import get_container, get_current_user, get_db
from commerce.api.schemas import NotificationResponse, SearchResponse
from commerce.container import ServiceContainer
from commerce.database.models import Notification, User

search_router = APIRouter(prefix="/search", tags=["search"])
notification_router = APIRouter(prefix="/notifications", tags=["notifications"])


@search_router.get("", response_model=SearchResponse, summary="Search products")
async def search(
    q: Optional[str] = Query(default=None, max_length=200, description="Free-text query"),
    category: Optional[str] = None,
    min_price: Optional[int] = Query(default=None, ge=0),
    max_price: Optional[int] = Query(default=None, ge=0),
    in_stock: bool = False,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await container.search.search(
        db,
        query=q,
        category=category,
        min_price=min_price,
        max_price=max_price,
        in_stock_only=in_stock,
        limit=limit,
        offset=offset,
    )


@notification_router.get("", response_model=List[NotificationResponse], summary="My notifications")
async def list_notifications(
    unread: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> List[Notification]:
    return await container.notifications.list_notifications(db, user.id, unread_only=unread, limit=limit)


@notification_router.post(
    "/{notification_id}/read", response_model=NotificationResponse, summary="Mark as read"
)
async def mark_read(
    notification_id: UUID,
    user: User = Depends(get_current_user),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Notification:
    return await container.notifications.mark_read(db, user.id, notification_id)
