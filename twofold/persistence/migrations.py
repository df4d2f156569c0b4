"""Ledger-driven schema evolution.

Each step is recorded in ``schema_migrations`` once applied. A step is
skipped when its ledger row exists, so running the whole list on every
process start is safe. The runner is an explicit object created and invoked
by the entry point; nothing here tracks "already ran" in module state.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Awaitable, Callable, Sequence

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from twofold.core.errors import MigrationFailure
from twofold.domain.models import MigrationRecord
from twofold.services.resilience import RetryPolicy, default_migration_policy, retry_async


logger = logging.getLogger(__name__)

_ledger = MigrationRecord.__table__


@dataclass(frozen=True)
class MigrationStep:
    # Apply must be idempotent: guarded creates and inspector-checked column adds only.
    name: str
    apply: Callable[[AsyncConnection], Awaitable[None]]


@dataclass(frozen=True)
class StepStatus:
    name: str
    executed: bool
    executed_at: datetime | None


class SchemaRunner:
    def __init__(
        self,
        engine: AsyncEngine,
        steps: Sequence[MigrationStep],
        *,
        policy: RetryPolicy | None = None,
    ) -> None:
        names = [step.name for step in steps]
        if len(names) != len(set(names)):
            raise ValueError("Migration step names must be unique")
        self._engine = engine
        self._steps = list(steps)
        self._policy = policy or default_migration_policy()

    @property
    def steps(self) -> list[MigrationStep]:
        return list(self._steps)

    async def run(self) -> list[str]:
        """Apply every pending step in order and return the names applied."""
        await self._attempt("ledger", self._ensure_ledger)
        applied: list[str] = []
        for step in self._steps:

            async def _apply(step: MigrationStep = step) -> bool:
                return await self._apply_step(step)

            if await self._attempt(step.name, _apply):
                applied.append(step.name)
        logger.info("schema_migrations_complete applied=%s total=%s", len(applied), len(self._steps))
        return applied

    async def status(self) -> list[StepStatus]:
        async with self._engine.connect() as conn:
            has_ledger = await conn.run_sync(
                lambda sync_conn: sa.inspect(sync_conn).has_table(_ledger.name)
            )
            recorded: dict[str, datetime | None] = {}
            if has_ledger:
                result = await conn.execute(sa.select(_ledger.c.name, _ledger.c.executed_at))
                recorded = {name: executed_at for name, executed_at in result.all()}
        return [
            StepStatus(name=step.name, executed=step.name in recorded, executed_at=recorded.get(step.name))
            for step in self._steps
        ]

    async def _attempt(self, label: str, func: Callable[[], Awaitable[bool | None]]) -> bool | None:
        # Transient failures back off and retry; anything else, or exhaustion, is fatal.
        try:
            return await retry_async(func, policy=self._policy, label=f"migration:{label}")
        except Exception as exc:
            logger.error("schema_migration_failed step=%s error=%s", label, type(exc).__name__)
            raise MigrationFailure(f"Schema step {label} failed: {exc}") from exc

    async def _ensure_ledger(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(_ledger.create, checkfirst=True)

    async def _apply_step(self, step: MigrationStep) -> bool:
        try:
            async with self._engine.begin() as conn:
                recorded = await conn.execute(
                    sa.select(_ledger.c.name).where(_ledger.c.name == step.name)
                )
                if recorded.first() is not None:
                    return False
                await step.apply(conn)
                await conn.execute(
                    sa.insert(_ledger).values(name=step.name, executed_at=datetime.now(timezone.utc))
                )
        except IntegrityError:
            # Another process recorded the same step first; its work stands.
            logger.info("schema_step_recorded_concurrently step=%s", step.name)
            return False
        logger.info("schema_step_applied step=%s", step.name)
        return True
