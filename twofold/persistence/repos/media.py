from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from twofold.domain.models import MediaItem
from twofold.persistence.guards import require_tenant_id, tenant_predicate


async def get_media_item(session: AsyncSession, *, tenant_id: str, item_id: str) -> MediaItem | None:
    # A correct item id under the wrong tenant resolves to nothing.
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(MediaItem)
        .where(MediaItem.id == item_id, tenant_predicate(MediaItem, tenant_id))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_items_for_collections(
    session: AsyncSession, *, tenant_id: str, collection_ids: Iterable[str]
) -> dict[str, list[MediaItem]]:
    # Group items per collection in display order for the projector.
    require_tenant_id(tenant_id)
    ids = list(collection_ids)
    grouped: dict[str, list[MediaItem]] = {collection_id: [] for collection_id in ids}
    if not ids:
        return grouped
    result = await session.execute(
        select(MediaItem)
        .where(tenant_predicate(MediaItem, tenant_id), MediaItem.collection_id.in_(ids))
        .order_by(MediaItem.sort_order, MediaItem.created_at, MediaItem.id)
        .execution_options(populate_existing=True)
    )
    for item in result.scalars().all():
        grouped.setdefault(item.collection_id or "", []).append(item)
    return grouped


async def list_items(session: AsyncSession, *, tenant_id: str, collection_id: str) -> list[MediaItem]:
    grouped = await list_items_for_collections(
        session, tenant_id=tenant_id, collection_ids=[collection_id]
    )
    return grouped[collection_id]


async def next_sort_order(session: AsyncSession, *, tenant_id: str, collection_id: str) -> int:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(func.max(MediaItem.sort_order)).where(
            tenant_predicate(MediaItem, tenant_id),
            MediaItem.collection_id == collection_id,
        )
    )
    current = result.scalar()
    return 0 if current is None else int(current) + 1


async def update_media_fields(
    session: AsyncSession, *, tenant_id: str, item_id: str, values: dict[str, Any]
) -> int:
    require_tenant_id(tenant_id)
    if not values:
        return 0
    result = await session.execute(
        update(MediaItem)
        .where(MediaItem.id == item_id, tenant_predicate(MediaItem, tenant_id))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def delete_media_item(session: AsyncSession, *, tenant_id: str, item_id: str) -> int:
    require_tenant_id(tenant_id)
    result = await session.execute(
        delete(MediaItem).where(MediaItem.id == item_id, tenant_predicate(MediaItem, tenant_id))
    )
    return int(result.rowcount or 0)


async def delete_items_for_collection(
    session: AsyncSession, *, tenant_id: str, collection_id: str
) -> int:
    # No foreign key cascades; collection deletes clean up their items explicitly.
    require_tenant_id(tenant_id)
    result = await session.execute(
        delete(MediaItem).where(
            tenant_predicate(MediaItem, tenant_id),
            MediaItem.collection_id == collection_id,
        )
    )
    return int(result.rowcount or 0)
