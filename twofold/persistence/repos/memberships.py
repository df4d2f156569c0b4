from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from twofold.domain.models import Membership
from twofold.domain.state import Capabilities, Role
from twofold.persistence.guards import require_tenant_id, tenant_predicate


async def get_membership(
    session: AsyncSession, *, tenant_id: str, principal_id: str
) -> Membership | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(Membership)
        .where(
            tenant_predicate(Membership, tenant_id),
            Membership.principal_id == principal_id,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_members(session: AsyncSession, *, tenant_id: str) -> list[Membership]:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(Membership)
        .where(tenant_predicate(Membership, tenant_id))
        .order_by(Membership.joined_at, Membership.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def build_membership(
    *,
    tenant_id: str,
    principal_id: str,
    role: Role,
    capabilities: Capabilities,
    display_name: str | None = None,
    email: str | None = None,
    avatar_url: str | None = None,
) -> Membership:
    # Stamp the tenant explicitly; it is never inferred from a parent row later.
    require_tenant_id(tenant_id)
    membership = Membership(
        id=uuid4().hex,
        tenant_id=tenant_id,
        principal_id=principal_id,
        role=role.value,
        display_name=display_name,
        email=email,
        avatar_url=avatar_url,
    )
    membership.apply_capabilities(capabilities)
    return membership


async def delete_membership(session: AsyncSession, *, tenant_id: str, principal_id: str) -> int:
    require_tenant_id(tenant_id)
    result = await session.execute(
        delete(Membership).where(
            tenant_predicate(Membership, tenant_id),
            Membership.principal_id == principal_id,
        )
    )
    return int(result.rowcount or 0)


async def touch_last_active(
    session: AsyncSession, *, tenant_id: str, principal_id: str, now: datetime
) -> None:
    require_tenant_id(tenant_id)
    await session.execute(
        update(Membership)
        .where(tenant_predicate(Membership, tenant_id), Membership.principal_id == principal_id)
        .values(last_active_at=now)
    )
