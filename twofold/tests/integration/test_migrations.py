from __future__ import annotations

import pytest
import sqlalchemy as sa
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, create_async_engine

from twofold.core.errors import MigrationFailure
from twofold.persistence.migrations import MigrationStep, SchemaRunner
from twofold.persistence.schema_steps import STEPS
from twofold.services.resilience import RetryPolicy


FAST = RetryPolicy(timeout_ms=10000, max_attempts=3, backoff_ms=1)


@pytest.fixture
async def scratch_engine(tmp_path):
    # A private database so ledger state never mixes with the shared test schema.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'migrations.db'}")
    yield engine
    await engine.dispose()


async def _columns(engine, table: str) -> set[str]:
    async with engine.connect() as conn:
        return await conn.run_sync(
            lambda sync_conn: {column["name"] for column in sa.inspect(sync_conn).get_columns(table)}
        )


@pytest.mark.asyncio
async def test_runner_applies_every_step_once(scratch_engine) -> None:
    runner = SchemaRunner(scratch_engine, STEPS, policy=FAST)
    applied = await runner.run()
    assert applied == [step.name for step in STEPS]
    # Running again is a no-op: the ledger already records every step.
    assert await runner.run() == []
    assert await SchemaRunner(scratch_engine, STEPS, policy=FAST).run() == []

    columns = await _columns(scratch_engine, "memory_collections")
    assert {"is_locked", "lock_visibility", "unlock_at", "blur_strength", "task_completed"} <= columns
    assert "pinned_collection_id" in await _columns(scratch_engine, "tenants")


@pytest.mark.asyncio
async def test_status_reports_pending_and_applied(scratch_engine) -> None:
    runner = SchemaRunner(scratch_engine, STEPS[:2], policy=FAST)
    before = await runner.status()
    assert [step.executed for step in before] == [False, False]

    await runner.run()
    full = SchemaRunner(scratch_engine, STEPS, policy=FAST)
    status = await full.status()
    assert [step.executed for step in status] == [True, True, False, False, False]
    assert status[0].executed_at is not None

    assert await full.run() == [step.name for step in STEPS[2:]]


@pytest.mark.asyncio
async def test_column_adds_survive_a_half_applied_step(scratch_engine) -> None:
    # Columns already present (e.g. from a crashed earlier attempt) are skipped, not re-added.
    runner = SchemaRunner(scratch_engine, STEPS[:2], policy=FAST)
    await runner.run()
    async with scratch_engine.begin() as conn:
        await conn.execute(sa.text("ALTER TABLE memory_collections ADD COLUMN is_locked BOOLEAN DEFAULT 0 NOT NULL"))
    applied = await SchemaRunner(scratch_engine, STEPS, policy=FAST).run()
    assert "0003_collection_lock_config" in applied


@pytest.mark.asyncio
async def test_failing_step_aborts_with_migration_failure(scratch_engine) -> None:
    async def _broken(conn: AsyncConnection) -> None:
        await conn.execute(sa.text("CREATE TABLE broken ("))

    steps = (*STEPS[:1], MigrationStep("0099_broken", _broken))
    runner = SchemaRunner(scratch_engine, steps, policy=FAST)
    with pytest.raises(MigrationFailure):
        await runner.run()
    status = await runner.status()
    assert [step.executed for step in status] == [True, False]


@pytest.mark.asyncio
async def test_transient_failures_are_retried(scratch_engine) -> None:
    calls = {"count": 0}

    async def _flaky(conn: AsyncConnection) -> None:
        calls["count"] += 1
        if calls["count"] == 1:
            raise OperationalError("CREATE", {}, ConnectionError("connection reset"))
        await conn.execute(sa.text("CREATE TABLE IF NOT EXISTS flaky_marker (id INTEGER PRIMARY KEY)"))

    runner = SchemaRunner(scratch_engine, (MigrationStep("0001_flaky", _flaky),), policy=FAST)
    assert await runner.run() == ["0001_flaky"]
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_exhausted_retries_are_fatal(scratch_engine) -> None:
    async def _down(conn: AsyncConnection) -> None:
        raise OperationalError("CREATE", {}, ConnectionError("connection refused"))

    runner = SchemaRunner(scratch_engine, (MigrationStep("0001_down", _down),), policy=FAST)
    with pytest.raises(MigrationFailure):
        await runner.run()


@pytest.mark.asyncio
async def test_step_names_must_be_unique(scratch_engine) -> None:
    with pytest.raises(ValueError):
        SchemaRunner(scratch_engine, (STEPS[0], STEPS[0]), policy=FAST)
