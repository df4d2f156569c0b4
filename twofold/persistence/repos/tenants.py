from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from twofold.domain.models import Membership, Tenant
from twofold.persistence.guards import require_tenant_id, tenant_predicate


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    # The tenant row is its own boundary, so its id doubles as the predicate.
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(Tenant).where(Tenant.id == tenant_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def slug_taken(session: AsyncSession, slug: str) -> bool:
    result = await session.execute(select(Tenant.id).where(Tenant.slug == slug))
    return result.first() is not None


async def invite_code_taken(session: AsyncSession, invite_code: str) -> bool:
    result = await session.execute(select(Tenant.id).where(Tenant.invite_code == invite_code))
    return result.first() is not None


async def list_tenants_for_principal(session: AsyncSession, principal_id: str) -> list[Tenant]:
    # Only tenants with a membership row for this principal; no cross-tenant listing exists.
    result = await session.execute(
        select(Tenant)
        .join(Membership, Membership.tenant_id == Tenant.id)
        .where(Membership.principal_id == principal_id)
        .order_by(Tenant.created_at, Tenant.id)
    )
    return list(result.scalars().all())


async def get_membership_for_tenant(
    session: AsyncSession, *, tenant_id: str, principal_id: str
) -> tuple[Tenant, Membership] | None:
    # Resolve tenant and membership together so a non-member learns nothing about the tenant.
    result = await session.execute(
        select(Tenant, Membership)
        .join(Membership, Membership.tenant_id == Tenant.id)
        .where(tenant_predicate(Membership, tenant_id), Membership.principal_id == principal_id)
        .execution_options(populate_existing=True)
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def set_pinned_collection(
    session: AsyncSession, *, tenant_id: str, collection_id: str | None
) -> int:
    require_tenant_id(tenant_id)
    result = await session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id)
        .values(pinned_collection_id=collection_id)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def clear_pinned_collection(session: AsyncSession, *, tenant_id: str, collection_id: str) -> int:
    # Only clears the pin when it still points at the collection being removed.
    require_tenant_id(tenant_id)
    result = await session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id, Tenant.pinned_collection_id == collection_id)
        .values(pinned_collection_id=None)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
