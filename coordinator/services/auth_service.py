"""Operator authentication: password hashing, JWT access tokens, token hashing."""

from __future__ import annotations

import hashlib
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import bcrypt
import jwt
from sqlalchemy import select

from coordinator.models.user import User
from coordinator.services.datetime_service import format_datetime, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from coordinator.config import Settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
_DUMMY_PASSWORD_HASH = bcrypt.hashpw(b"coordinator-dummy-password", bcrypt.gensalt()).decode(
    "utf-8"
)


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


def hash_token(token: str) -> str:
    """Hash a secret (SHA-256 hex) for storage and lookup."""
    return hashlib.sha256(token.encode()).hexdigest()


def create_access_token(data: dict[str, Any], secret_key: str, expires_minutes: int = 60) -> str:
    """Create a signed JWT access token."""
    to_encode = data.copy()
    to_encode.update({"exp": now_utc() + timedelta(minutes=expires_minutes), "type": "access"})
    return jwt.encode(to_encode, secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str, secret_key: str) -> dict[str, Any] | None:
    """Decode and validate a JWT access token. Returns None when invalid or expired."""
    try:
        payload: dict[str, Any] = jwt.decode(token, secret_key, algorithms=[ALGORITHM])
    except jwt.PyJWTError:
        logger.debug("Failed to decode access token", exc_info=True)
        return None
    if payload.get("type") != "access":
        return None
    return payload


async def authenticate_user(session: AsyncSession, username: str, password: str) -> User | None:
    """Authenticate an operator by username and password."""
    result = await session.execute(select(User).where(User.username == username))
    user = result.scalar_one_or_none()
    if user is None:
        # Run a dummy hash check to reduce username timing side channels.
        verify_password(password, _DUMMY_PASSWORD_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def create_user_token(user: User, settings: Settings) -> str:
    return create_access_token(
        {"sub": str(user.id), "username": user.username, "is_admin": user.is_admin},
        settings.secret_key,
        settings.access_token_expire_minutes,
    )


async def ensure_admin_user(session: AsyncSession, settings: Settings) -> None:
    """Create the bootstrap admin operator if it doesn't exist."""
    result = await session.execute(select(User).where(User.username == settings.admin_username))
    if result.scalar_one_or_none() is not None:
        return

    now = format_datetime(now_utc())
    session.add(
        User(
            username=settings.admin_username,
            password_hash=hash_password(settings.admin_password),
            is_admin=True,
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()
    logger.info("Created admin user %s", settings.admin_username)
