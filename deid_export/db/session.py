"""Database engines and session factories.

The API uses the async engine; Celery workers run without an event loop
and get a sync engine built lazily from the same DATABASE_URL.
"""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy import Engine, create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from deid_export.config import settings

engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)

async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@lru_cache(maxsize=1)
def get_sync_engine() -> Engine:
    return create_engine(settings.sync_database_url, pool_pre_ping=True, pool_size=5)


def get_sync_session_factory() -> sessionmaker[Session]:
    """Session factory for worker processes."""
    return sessionmaker(get_sync_engine(), expire_on_commit=False)
