"""Operator authentication endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from coordinator.api.deps import get_session, get_settings
from coordinator.config import Settings
from coordinator.schemas.auth import LoginRequest, TokenResponse
from coordinator.services.auth_service import authenticate_user, create_user_token
from coordinator.services.rate_limit_service import InMemoryRateLimiter

router = APIRouter(prefix="/api/auth", tags=["auth"])


def get_client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",", maxsplit=1)[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def check_rate_limit(limiter: InMemoryRateLimiter, key: str, detail: str) -> None:
    """Raise 429 if the key is rate-limited."""
    retry_after = limiter.retry_after(key)
    if retry_after:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=detail,
            headers={"Retry-After": str(retry_after)},
        )


def record_failure_and_check(limiter: InMemoryRateLimiter, key: str, detail: str) -> None:
    """Record a failed attempt and raise 429 if now rate-limited."""
    limiter.add_failure(key)
    check_rate_limit(limiter, key, detail)


@router.post("/login", response_model=TokenResponse)
async def login(
    body: LoginRequest,
    request: Request,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> TokenResponse:
    """Login with username and password."""
    limiter: InMemoryRateLimiter = request.app.state.login_limiter
    client_key = f"login:{get_client_ip(request)}:{body.username.lower()}"
    check_rate_limit(limiter, client_key, "Too many failed login attempts")

    user = await authenticate_user(session, body.username, body.password)
    if user is None:
        record_failure_and_check(limiter, client_key, "Too many failed login attempts")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )

    limiter.clear(client_key)
    return TokenResponse(
        access_token=create_user_token(user, settings),
        expires_in=settings.access_token_expire_minutes * 60,
    )
