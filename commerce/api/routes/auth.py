"""
Account routes: registration, login and the current user.
"""
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.api.dependencies import get_container, get_current_user, get_db
from commerce.api.schemas import LoginRequest, RegisterRequest, TokenResponse, UserResponse
from commerce.container import ServiceContainer
from commerce.database.models import User

logger = structlog.get_logger(__name__)

auth_router = APIRouter(prefix="/auth", tags=["auth"])
users_router = APIRouter(prefix="/users", tags=["users"])


@auth_router.post(
    "/register",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an account",
)
async def register(
    request: RegisterRequest,
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> User:
    return await container.users.register(db, request.email, request.password, request.full_name)


@auth_router.post("/login", response_model=TokenResponse, summary="Exchange credentials for a token")
async def login(
    request: LoginRequest,
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    user = await container.users.authenticate(db, request.email, request.password)
    return {
        "access_token": container.users.issue_token(user),
        "token_type": "bearer",
        "expires_in": container.settings.access_token_ttl_minutes * 60,
    }


@users_router.get("/me", response_model=UserResponse, summary="Current user")
async def me(user: User = Depends(get_current_user)) -> User:
    return user
