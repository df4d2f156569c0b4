from __future__ import annotations

from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from twofold.domain.models import MemoryCollection
from twofold.domain.state import UnlockType
from twofold.persistence.guards import require_tenant_id, tenant_predicate


async def get_collection(
    session: AsyncSession, *, tenant_id: str, collection_id: str
) -> MemoryCollection | None:
    # Always reload from the store; lock state is never served from the identity map.
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(MemoryCollection)
        .where(MemoryCollection.id == collection_id, tenant_predicate(MemoryCollection, tenant_id))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_collections(session: AsyncSession, *, tenant_id: str) -> list[MemoryCollection]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(MemoryCollection)
        .where(tenant_predicate(MemoryCollection, tenant_id))
        .order_by(MemoryCollection.created_at.desc(), MemoryCollection.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def list_collection_ids(session: AsyncSession, *, tenant_id: str) -> list[str]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(MemoryCollection.id)
        .where(tenant_predicate(MemoryCollection, tenant_id))
        .order_by(MemoryCollection.created_at, MemoryCollection.id)
    )
    return [row[0] for row in result.all()]


async def update_collection_fields(
    session: AsyncSession, *, tenant_id: str, collection_id: str, values: dict[str, Any]
) -> int:
    # Single UPDATE statement so concurrent writers race at the row, never mid-field.
    require_tenant_id(tenant_id)
    if not values:
        return 0
    result = await session.execute(
        update(MemoryCollection)
        .where(MemoryCollection.id == collection_id, tenant_predicate(MemoryCollection, tenant_id))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def mark_task_completed(session: AsyncSession, *, tenant_id: str, collection_id: str) -> int:
    # Conditional on unlock_type so a scheduled collection is never touched.
    require_tenant_id(tenant_id)
    result = await session.execute(
        update(MemoryCollection)
        .where(
            MemoryCollection.id == collection_id,
            tenant_predicate(MemoryCollection, tenant_id),
            MemoryCollection.unlock_type == UnlockType.task_based.value,
        )
        .values(task_completed=True, is_locked=False)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def delete_collection(session: AsyncSession, *, tenant_id: str, collection_id: str) -> int:
    require_tenant_id(tenant_id)
    result = await session.execute(
        delete(MemoryCollection).where(
            MemoryCollection.id == collection_id,
            tenant_predicate(MemoryCollection, tenant_id),
        )
    )
    return int(result.rowcount or 0)
