"""FastAPI dependency injection."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator

from catracker.config import get_settings
from catracker.database import get_session_factory
from catracker.models import User
from fastapi import Depends, Request
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import AuthenticationRequired


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def _extract_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        token = auth[7:].strip()
        return token or None
    return None


def _decode_token(raw_token: str) -> dict:
    settings = get_settings()
    try:
        return jwt.decode(raw_token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise AuthenticationRequired("Invalid token")


def create_access_token(user_id: uuid.UUID | str) -> str:
    settings = get_settings()
    return jwt.encode(
        {"sub": str(user_id), "type": "user"},
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )


async def get_current_user(request: Request, db: AsyncSession = Depends(get_db)) -> User:
    raw_token = _extract_bearer_token(request)
    if not raw_token:
        raise AuthenticationRequired("Authentication required")
    payload = _decode_token(raw_token)
    if payload.get("type") != "user":
        raise AuthenticationRequired("Invalid token type")
    try:
        user_id = uuid.UUID(str(payload.get("sub", "")))
    except ValueError:
        raise AuthenticationRequired("Invalid token")
    user = await db.get(User, user_id)
    if not user or not user.is_active:
        raise AuthenticationRequired("User not found")
    return user
