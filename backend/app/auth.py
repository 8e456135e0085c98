"""Authentication and authorization utilities."""

from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
import logging

from app.config import settings
from app.database import get_db
from app.errors import AuthenticationError, AuthorizationError, PersistenceError
from app.models import User

logger = logging.getLogger(__name__)

# auto_error=False: a missing header must be a 401, not FastAPI's default 403
security = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token with specified expiration."""
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({
        "exp": expire,
        "iat": datetime.utcnow(),
        "type": "access"
    })

    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> str:
    """Return the token subject (user email) or raise AuthenticationError."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT validation failed: {e}")
        raise AuthenticationError("Invalid authentication")

    email = payload.get("sub")
    if not email or payload.get("type") != "access":
        raise AuthenticationError("Invalid authentication")
    return email


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Verify the bearer token and return the associated active user."""

    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Authentication required")

    email = decode_access_token(credentials.credentials)

    try:
        result = await db.execute(
            select(User).where(User.email == email, User.is_active == True)
        )
        user = result.scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error(f"User lookup failed for {email}: {e}", exc_info=True)
        raise PersistenceError("user lookup failed") from e

    if user is None:
        logger.warning(f"Token subject not found or inactive: {email}")
        raise AuthenticationError("Invalid authentication")

    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Verify current user has the admin role."""

    if current_user.role != settings.ADMIN_ROLE:
        logger.warning(f"Admin access denied for user: {current_user.email}")
        raise AuthorizationError("Admin access required")

    return current_user
