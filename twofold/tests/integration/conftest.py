from __future__ import annotations

import pytest
from sqlalchemy import text

from twofold.persistence.db import SessionLocal, engine
from twofold.persistence.migrations import SchemaRunner
from twofold.persistence.schema_steps import STEPS


_TABLES = ("media_items", "memory_collections", "invites", "memberships", "tenants")


@pytest.fixture(autouse=True)
async def migrated_schema() -> None:
    # The runner is idempotent, so applying it per test only costs the ledger check.
    await SchemaRunner(engine, STEPS).run()
    yield
    async with engine.begin() as conn:
        for table in _TABLES:
            await conn.execute(text(f"DELETE FROM {table}"))


@pytest.fixture
async def session():
    async with SessionLocal() as db_session:
        yield db_session
