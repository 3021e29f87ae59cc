"""Shared test fixtures: a file-based SQLite database per test.

Export tables come from the ORM metadata; the clinical source tables are
created with plain DDL (see tests/factories.py).
"""

from __future__ import annotations

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

from deid_export.models import Base
from deid_export.services.deidentify import Pseudonymizer
from deid_export.services.storage import ArtifactStore
from tests.factories import FIXED_NOW, SOURCE_DDL, TEST_SECRET, StorageRecorder, make_store


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "exports.db"


@pytest.fixture
def sync_engine(db_path):
    engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    with engine.begin() as conn:
        for ddl in SOURCE_DDL:
            conn.execute(text(ddl))
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sync_engine) -> sessionmaker:
    return sessionmaker(sync_engine, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def pseudonymizer() -> Pseudonymizer:
    return Pseudonymizer(TEST_SECRET)


@pytest.fixture
def storage() -> StorageRecorder:
    return StorageRecorder()


@pytest.fixture
def store(storage) -> ArtifactStore:
    return make_store(storage)
