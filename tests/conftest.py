"""Shared fixtures for storage tests."""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from jobstore.config import Settings
from jobstore.storage.job_storage import JobStorage


def _settings_for(db_path, **overrides) -> Settings:
    values = {
        "STORE_DB_URL": f"sqlite+aiosqlite:///{db_path}",
        "SQLITE_BUSY_TIMEOUT_MS": 200,
        "PREPARE_SCHEMA_IF_NECESSARY": True,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "jobstore.db"


@pytest_asyncio.fixture
async def make_storage(db_path):
    """Factory for storages on the same DB file (one per simulated worker)."""
    created: list[JobStorage] = []

    async def _make(**overrides) -> JobStorage:
        st = JobStorage(_settings_for(db_path, **overrides))
        await st.initialize()
        created.append(st)
        return st

    yield _make

    for st in created:
        await st.close()


@pytest_asyncio.fixture
async def storage(make_storage):
    return await make_storage()


@pytest.fixture
def gateway(storage):
    return storage.gateway


@pytest.fixture
def fetch_all(gateway):
    """Run a SELECT and return every row."""

    async def _fetch(stmt):
        async with gateway.begin() as conn:
            result = await conn.execute(stmt)
            return result.all()

    return _fetch


@pytest.fixture
def count_rows(fetch_all):
    """Count rows of *model* matching the given column filters."""

    async def _count(model, **filters) -> int:
        stmt = select(func.count()).select_from(model)
        for column, value in filters.items():
            stmt = stmt.where(getattr(model, column) == value)
        rows = await fetch_all(stmt)
        return rows[0][0]

    return _count
