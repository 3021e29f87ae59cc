"""FastAPI dependency injection providers.

Usage in routers:
    async def endpoint(db: DB, actor: ResearchAdmin):
        ...
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from deid_export.config import settings
from deid_export.db.session import async_session_factory

# --- Database ---

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Provide an async database session."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# --- Redis ---

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    """Provide a connection to the Celery broker's Redis."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_pool


# --- Auth ---

security = HTTPBearer(auto_error=False)

ALGORITHM = "HS256"

RESEARCH_ROLES = frozenset({"admin", "platform_admin"})
PLATFORM_ROLES = frozenset({"platform_admin"})


@dataclass(frozen=True)
class Actor:
    """Authenticated caller with its organisation scope."""

    actor_id: uuid.UUID
    organisation_id: uuid.UUID
    role: str


def _decode_token(token: str) -> dict:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, settings.APP_SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Actor:
    """Extract the actor from the JWT bearer token (sub, org_id, role claims)."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = _decode_token(credentials.credentials)
    try:
        return Actor(
            actor_id=uuid.UUID(str(payload["sub"])),
            organisation_id=uuid.UUID(str(payload["org_id"])),
            role=str(payload.get("role", "")),
        )
    except (KeyError, ValueError) as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token is missing actor claims",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def require_roles(roles: frozenset[str]):
    """Build a dependency that admits only actors holding one of roles."""

    async def _check(actor: Actor = Depends(get_current_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
        return actor

    return _check


# Type aliases for cleaner router signatures
DB = Annotated[AsyncSession, Depends(get_db)]
Redis = Annotated[aioredis.Redis, Depends(get_redis)]
ResearchAdmin = Annotated[Actor, Depends(require_roles(RESEARCH_ROLES))]
PlatformAdmin = Annotated[Actor, Depends(require_roles(PLATFORM_ROLES))]
