from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from twofold.domain.models import Invite
from twofold.domain.state import InviteStatus
from twofold.persistence.guards import require_tenant_id, tenant_predicate


async def get_invite_by_token(session: AsyncSession, token: str) -> Invite | None:
    # Token lookup precedes tenant resolution; the token itself is the credential.
    result = await session.execute(
        select(Invite).where(Invite.token == token).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_invite(session: AsyncSession, *, tenant_id: str, invite_id: str) -> Invite | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(Invite)
        .where(Invite.id == invite_id, tenant_predicate(Invite, tenant_id))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_invites(
    session: AsyncSession, *, tenant_id: str, status: InviteStatus | None = None
) -> list[Invite]:
    require_tenant_id(tenant_id)
    stmt = select(Invite).where(tenant_predicate(Invite, tenant_id))
    if status is not None:
        stmt = stmt.where(Invite.status == status.value)
    result = await session.execute(
        stmt.order_by(Invite.created_at.desc(), Invite.id).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def find_pending_invite(session: AsyncSession, *, tenant_id: str, email: str) -> Invite | None:
    require_tenant_id(tenant_id)
    result = await session.execute(
        select(Invite).where(
            tenant_predicate(Invite, tenant_id),
            Invite.email == email,
            Invite.status == InviteStatus.pending.value,
        )
    )
    return result.scalars().first()


async def list_pending_for_email(session: AsyncSession, *, email: str, now: datetime) -> list[Invite]:
    # Cross-tenant: the invitee is not a member of any of these tenants yet.
    result = await session.execute(
        select(Invite)
        .where(
            Invite.email == email,
            Invite.status == InviteStatus.pending.value,
            Invite.expires_at > now,
        )
        .order_by(Invite.created_at.desc(), Invite.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def transition_status(
    session: AsyncSession,
    *,
    tenant_id: str,
    invite_id: str,
    new_status: InviteStatus,
    accepted_at: datetime | None = None,
    accepted_by_principal_id: str | None = None,
) -> int:
    # Only pending invites move; the rowcount tells the caller whether it won the race.
    require_tenant_id(tenant_id)
    values: dict[str, object] = {"status": new_status.value}
    if new_status == InviteStatus.accepted:
        values["accepted_at"] = accepted_at
        values["accepted_by_principal_id"] = accepted_by_principal_id
    result = await session.execute(
        update(Invite)
        .where(
            Invite.id == invite_id,
            tenant_predicate(Invite, tenant_id),
            Invite.status == InviteStatus.pending.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
