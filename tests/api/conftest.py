"""API test fixtures: async client over the app with get_db bound to test SQLite.

The async engine (aiosqlite) opens the same database file the sync
fixtures create, so rows seeded with db_session are visible to requests.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from deid_export.deps import get_db
from deid_export.main import app
from tests.factories import ORG_B, bearer, make_token


@pytest_asyncio.fixture
async def client(sync_engine, db_path):
    """Async test client with get_db overridden to the test database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    test_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with test_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


@pytest.fixture
def admin_headers():
    return bearer(make_token("admin"))


@pytest.fixture
def platform_headers():
    return bearer(make_token("platform_admin"))


@pytest.fixture
def other_org_headers():
    return bearer(make_token("admin", organisation_id=ORG_B))


@pytest.fixture
def clinician_headers():
    return bearer(make_token("clinician"))
