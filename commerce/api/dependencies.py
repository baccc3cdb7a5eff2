"""
FastAPI dependencies: container, database session and authentication.
"""
from collections.abc import AsyncGenerator
from typing import Any, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.container import ServiceContainer
from commerce.core.errors import AuthenticationError, NotFoundError, PermissionDeniedError
from commerce.database.models import User

bearer_scheme = HTTPBearer(auto_error=False)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


async def get_db(
    container: ServiceContainer = Depends(get_container),
) -> AsyncGenerator[AsyncSession, Any]:
    """
    Dependency for getting database session.

    Services commit their own work; anything left uncommitted is rolled back.
    """
    async with container.session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    container: ServiceContainer = Depends(get_container),
    db: AsyncSession = Depends(get_db),
) -> User:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Missing bearer token")
    claims = container.users.decode_token(credentials.credentials)
    try:
        user = await container.users.get_user(db, claims["sub"])
    except (NotFoundError, ValueError):
        raise AuthenticationError("Unknown user")
    if not user.is_active:
        raise AuthenticationError("Account is disabled")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise PermissionDeniedError("Admin access required")
    return user
