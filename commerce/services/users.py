"""
User service: registration, password authentication and JWT access tokens.
"""
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

import structlog
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from commerce.config import Settings, get_settings
from commerce.core.errors import (
    AuthenticationError,
    ConflictError,
    DomainValidationError,
    NotFoundError,
)
from commerce.database.models import User

logger = structlog.get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8


class UserService:
    """Service for user accounts and token management."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

    @staticmethod
    def normalize_email(email: str) -> str:
        return (email or "").strip().lower()

    def hash_password(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        """
        Verify a password against its hash.

        Returns:
            True if password matches, False otherwise (including malformed hashes)
        """
        try:
            return self.pwd_context.verify(plain_password, hashed_password)
        except ValueError as e:
            logger.error("password_verify_failed", error=str(e))
            return False

    async def register(
        self,
        db: AsyncSession,
        email: str,
        password: str,
        full_name: str,
        is_admin: bool = False,
    ) -> User:
        """
        Create a user account.

        Raises:
            DomainValidationError: Malformed email, short password or empty name
            ConflictError: Email already registered
        """
        email = self.normalize_email(email)
        if not EMAIL_PATTERN.match(email):
            raise DomainValidationError("Invalid email address", details={"email": email})
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise DomainValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        full_name = (full_name or "").strip()
        if not full_name:
            raise DomainValidationError("Full name is required")

        existing = await db.execute(select(User.id).where(User.email == email))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError("Email is already registered", details={"email": email})

        user = User(
            id=uuid.uuid4(),
            email=email,
            password_hash=self.hash_password(password),
            full_name=full_name,
            is_admin=is_admin,
            is_active=True,
            created_at=datetime.utcnow(),
        )
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError("Email is already registered", details={"email": email})

        logger.info("user_registered", user_id=str(user.id), is_admin=is_admin)
        return user

    async def authenticate(self, db: AsyncSession, email: str, password: str) -> User:
        """
        Check credentials.

        Raises:
            AuthenticationError: Unknown email, wrong password or inactive account
        """
        result = await db.execute(select(User).where(User.email == self.normalize_email(email)))
        user = result.scalar_one_or_none()
        if user is None or not self.verify_password(password, user.password_hash):
            logger.warning("authentication_failed", email=self.normalize_email(email))
            raise AuthenticationError("Invalid email or password")
        if not user.is_active:
            raise AuthenticationError("Account is disabled")
        return user

    def issue_token(self, user: User) -> str:
        expires = datetime.utcnow() + timedelta(minutes=self.settings.access_token_ttl_minutes)
        claims = {
            "sub": str(user.id),
            "admin": bool(user.is_admin),
            "exp": expires,
            "iat": datetime.utcnow(),
        }
        return jwt.encode(claims, self.settings.jwt_secret_key, algorithm=self.settings.jwt_algorithm)

    def decode_token(self, token: str) -> Dict[str, Any]:
        """
        Validate a token and return its claims.

        Raises:
            AuthenticationError: Bad signature, expired or malformed token
        """
        try:
            claims = jwt.decode(
                token, self.settings.jwt_secret_key, algorithms=[self.settings.jwt_algorithm]
            )
        except JWTError as e:
            raise AuthenticationError("Invalid or expired token") from e
        if "sub" not in claims:
            raise AuthenticationError("Token has no subject")
        return claims

    async def get_user(self, db: AsyncSession, user_id: Union[str, uuid.UUID]) -> User:
        user = await db.get(User, uuid.UUID(str(user_id)))
        if user is None:
            raise NotFoundError("User not found", details={"user_id": str(user_id)})
        return user

    async def promote_admin(self, db: AsyncSession, email: str) -> User:
        result = await db.execute(select(User).where(User.email == self.normalize_email(email)))
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFoundError("User not found", details={"email": email})
        user.is_admin = True
        await db.commit()
        logger.info("user_promoted_admin", user_id=str(user.id))
        return user
