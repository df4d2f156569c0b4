from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import logging
import re
import secrets
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from twofold.core.config import get_settings
from twofold.core.errors import (
    AccessDenied,
    InviteAlreadyConsumed,
    InviteExpired,
    InvitePermissionError,
    NotFound,
    ValidationError,
)
from twofold.domain.models import Invite, Membership, Tenant
from twofold.domain.state import (
    UNSET,
    Capabilities,
    InviteStatus,
    Role,
    Unset,
    as_utc,
    parse_role,
)
from twofold.persistence.repos import invites as invites_repo
from twofold.persistence.repos import memberships as memberships_repo
from twofold.persistence.repos import tenants as tenants_repo
from twofold.services.resilience import store_transaction, with_store_retry


logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")
_SLUG_MAX_LEN = 80
_SLUG_ATTEMPTS = 5
_SCRYPT_N = 2**14
_SCRYPT_R = 8
_SCRYPT_P = 1


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def slugify(name: str) -> str:
    # Lower-case, hyphen-separated, ASCII only; empty names fall back to a generic stem.
    slug = _SLUG_STRIP_RE.sub("-", name.lower()).strip("-")
    return slug[:_SLUG_MAX_LEN].strip("-") or "tenant"


def normalize_email(email: str) -> str:
    value = (email or "").strip().lower()
    if not _EMAIL_RE.match(value):
        raise ValidationError("A valid email address is required")
    return value


def hash_access_password(password: str) -> str:
    # Salted scrypt; only this encoded form is persisted.
    salt = secrets.token_bytes(16)
    digest = hashlib.scrypt(password.encode("utf-8"), salt=salt, n=_SCRYPT_N, r=_SCRYPT_R, p=_SCRYPT_P)
    return f"scrypt${_SCRYPT_N}${_SCRYPT_R}${_SCRYPT_P}${salt.hex()}${digest.hex()}"


def verify_access_password(tenant: Tenant, password: str) -> bool:
    """Check a share-link password against the tenant's stored hash.

    Tenants without a password accept any input. Comparison is constant-time.
    """
    encoded = tenant.access_password_hash
    if not encoded:
        return True
    try:
        scheme, n, r, p, salt_hex, digest_hex = encoded.split("$")
    except ValueError:
        return False
    if scheme != "scrypt":
        return False
    candidate = hashlib.scrypt(
        password.encode("utf-8"), salt=bytes.fromhex(salt_hex), n=int(n), r=int(r), p=int(p)
    )
    return hmac.compare_digest(candidate.hex(), digest_hex)


def require_manage(membership: Membership) -> None:
    if not membership.capabilities.can_manage:
        raise AccessDenied("Manage capability required")


def _parse_role(value: str | Role) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return parse_role(value)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


async def resolve_membership(session: AsyncSession, *, tenant_id: str, principal_id: str) -> Membership:
    # Identical failure for "no such tenant" and "not a member"; existence is never confirmed.
    async def _op() -> Membership | None:
        return await memberships_repo.get_membership(
            session, tenant_id=tenant_id, principal_id=principal_id
        )

    membership = await with_store_retry(session, _op, label="resolve_membership")
    if membership is None:
        raise AccessDenied("Not a member of this tenant")
    return membership


async def list_tenants_for(session: AsyncSession, principal_id: str) -> list[Tenant]:
    async def _op() -> list[Tenant]:
        return await tenants_repo.list_tenants_for_principal(session, principal_id)

    return await with_store_retry(session, _op, label="list_tenants_for")


async def get_tenant(session: AsyncSession, *, tenant_id: str, principal_id: str) -> Tenant:
    async def _op() -> tuple[Tenant, Membership] | None:
        return await tenants_repo.get_membership_for_tenant(
            session, tenant_id=tenant_id, principal_id=principal_id
        )

    resolved = await with_store_retry(session, _op, label="get_tenant")
    if resolved is None:
        raise AccessDenied("Not a member of this tenant")
    return resolved[0]


async def _unique_slug(session: AsyncSession, name: str) -> str:
    base = slugify(name)
    candidate = base
    for _ in range(_SLUG_ATTEMPTS):
        if not await tenants_repo.slug_taken(session, candidate):
            return candidate
        candidate = f"{base}-{secrets.token_hex(3)}"
    return f"{base}-{uuid4().hex[:12]}"


async def _unique_invite_code(session: AsyncSession) -> str:
    while True:
        code = secrets.token_hex(8)
        if not await tenants_repo.invite_code_taken(session, code):
            return code


async def create_tenant(
    session: AsyncSession,
    *,
    principal_id: str,
    name: str,
    description: str | None = None,
    is_public: bool = False,
    access_password: str | None = None,
    anniversary_date: datetime | None = None,
    location_origin: str | None = None,
    cover_photo_url: str | None = None,
    display_name: str | None = None,
    email: str | None = None,
) -> Tenant:
    """Create a tenant and make its creator the first admin, in one commit."""
    clean_name = (name or "").strip()
    if not clean_name:
        raise ValidationError("Tenant name is required")
    owner_email = normalize_email(email) if email else None

    async def _op() -> Tenant:
        tenant = Tenant(
            id=uuid4().hex,
            name=clean_name,
            description=description,
            slug=await _unique_slug(session, clean_name),
            invite_code=await _unique_invite_code(session),
            is_public=is_public,
            access_password_hash=hash_access_password(access_password) if access_password else None,
            owner_principal_id=principal_id,
            anniversary_date=anniversary_date,
            location_origin=location_origin,
            cover_photo_url=cover_photo_url,
        )
        session.add(tenant)
        session.add(
            memberships_repo.build_membership(
                tenant_id=tenant.id,
                principal_id=principal_id,
                role=Role.admin,
                capabilities=Capabilities.for_role(Role.admin),
                display_name=display_name,
                email=owner_email,
            )
        )
        return tenant

    tenant = await store_transaction(session, _op, label="create_tenant")
    logger.info("tenant_created tenant_id=%s owner=%s", tenant.id, principal_id)
    return tenant


@dataclass(frozen=True)
class TenantPatch:
    name: str | Unset = UNSET
    description: str | None | Unset = UNSET
    is_public: bool | Unset = UNSET
    access_password: str | None | Unset = UNSET
    anniversary_date: datetime | None | Unset = UNSET
    location_origin: str | None | Unset = UNSET
    cover_photo_url: str | None | Unset = UNSET

    def present(self) -> dict[str, object]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not UNSET}


async def update_tenant(
    session: AsyncSession, *, tenant_id: str, principal_id: str, patch: TenantPatch
) -> Tenant:
    values = patch.present()
    if not values:
        raise ValidationError("No recognized fields to update")
    if "name" in values and not str(values["name"] or "").strip():
        raise ValidationError("Tenant name cannot be empty")

    async def _op() -> Tenant:
        resolved = await tenants_repo.get_membership_for_tenant(
            session, tenant_id=tenant_id, principal_id=principal_id
        )
        if resolved is None:
            raise AccessDenied("Not a member of this tenant")
        tenant, membership = resolved
        require_manage(membership)
        for key, value in values.items():
            if key == "access_password":
                tenant.access_password_hash = hash_access_password(value) if value else None
            elif key == "name":
                tenant.name = str(value).strip()
            else:
                setattr(tenant, key, value)
        return tenant

    return await store_transaction(session, _op, label="update_tenant")


async def create_invite(
    session: AsyncSession,
    *,
    tenant_id: str,
    inviter_id: str,
    email: str,
    role: str | Role = Role.participant,
    capabilities: Capabilities | None = None,
    message: str | None = None,
) -> Invite:
    invite_email = normalize_email(email)
    invite_role = _parse_role(role)
    invite_capabilities = capabilities or Capabilities.for_role(invite_role)
    ttl = timedelta(days=get_settings().invite_ttl_days)

    async def _op() -> Invite:
        inviter = await memberships_repo.get_membership(
            session, tenant_id=tenant_id, principal_id=inviter_id
        )
        if inviter is None:
            raise AccessDenied("Not a member of this tenant")
        if not inviter.capabilities.can_manage:
            raise InvitePermissionError("Only managers can invite new members")
        members = await memberships_repo.list_members(session, tenant_id=tenant_id)
        if any((member.email or "").lower() == invite_email for member in members):
            raise ValidationError("That person is already a member")
        if await invites_repo.find_pending_invite(session, tenant_id=tenant_id, email=invite_email):
            raise ValidationError("A pending invite already exists for this email")
        invite = Invite(
            id=uuid4().hex,
            tenant_id=tenant_id,
            email=invite_email,
            token=secrets.token_urlsafe(32),
            message=message,
            role=invite_role.value,
            can_upload=invite_capabilities.can_upload,
            can_edit_others=invite_capabilities.can_edit_others,
            can_manage=invite_capabilities.can_manage,
            status=InviteStatus.pending.value,
            invited_by_principal_id=inviter_id,
            expires_at=_utc_now() + ttl,
        )
        session.add(invite)
        return invite

    invite = await store_transaction(session, _op, label="create_invite")
    logger.info("invite_created tenant_id=%s invite_id=%s", tenant_id, invite.id)
    return invite


def _merge_capabilities(current: Capabilities, granted: Capabilities) -> Capabilities:
    # Accepting an invite never takes a capability away from an existing member.
    return Capabilities(
        can_upload=current.can_upload or granted.can_upload,
        can_edit_others=current.can_edit_others or granted.can_edit_others,
        can_manage=current.can_manage or granted.can_manage,
    )


async def accept_invite(
    session: AsyncSession,
    *,
    token: str,
    principal_id: str,
    email: str | None = None,
    display_name: str | None = None,
    avatar_url: str | None = None,
) -> Membership:
    """Accept an invite token for ``principal_id``.

    Membership upsert and the pending -> accepted flip commit together or not
    at all. The flip is conditional on the invite still being pending, so
    two concurrent accepts cannot both succeed.
    """

    async def _op() -> Membership:
        invite = await invites_repo.get_invite_by_token(session, token)
        if invite is None:
            raise NotFound("Invite not found")
        if invite.status in (InviteStatus.accepted.value, InviteStatus.revoked.value):
            raise InviteAlreadyConsumed("Invite has already been used")
        now = _utc_now()
        if invite.status == InviteStatus.expired.value or as_utc(invite.expires_at) <= now:
            if invite.status == InviteStatus.pending.value:
                await invites_repo.transition_status(
                    session,
                    tenant_id=invite.tenant_id,
                    invite_id=invite.id,
                    new_status=InviteStatus.expired,
                )
                await session.commit()
                logger.info("invite_expired tenant_id=%s invite_id=%s", invite.tenant_id, invite.id)
            raise InviteExpired("Invite has expired")
        if email is not None and email.strip().lower() != invite.email:
            raise AccessDenied("Invite was issued to a different email")

        membership = await memberships_repo.get_membership(
            session, tenant_id=invite.tenant_id, principal_id=principal_id
        )
        if membership is None:
            membership = memberships_repo.build_membership(
                tenant_id=invite.tenant_id,
                principal_id=principal_id,
                role=_parse_role(invite.role),
                capabilities=invite.capabilities,
                display_name=display_name,
                email=invite.email,
                avatar_url=avatar_url,
            )
            session.add(membership)
        else:
            if _parse_role(invite.role) == Role.admin:
                membership.role = Role.admin.value
            membership.apply_capabilities(_merge_capabilities(membership.capabilities, invite.capabilities))
            membership.last_active_at = now
        await session.flush()

        flipped = await invites_repo.transition_status(
            session,
            tenant_id=invite.tenant_id,
            invite_id=invite.id,
            new_status=InviteStatus.accepted,
            accepted_at=now,
            accepted_by_principal_id=principal_id,
        )
        if flipped != 1:
            raise InviteAlreadyConsumed("Invite has already been used")
        return membership

    try:
        membership = await store_transaction(session, _op, label="accept_invite")
    except IntegrityError as exc:
        # A concurrent accept created the same membership first.
        raise InviteAlreadyConsumed("Invite has already been used") from exc
    logger.info("invite_accepted tenant_id=%s principal=%s", membership.tenant_id, principal_id)
    return membership


async def revoke_invite(
    session: AsyncSession, *, tenant_id: str, invite_id: str, actor_id: str
) -> Invite:
    async def _op() -> Invite:
        actor = await memberships_repo.get_membership(session, tenant_id=tenant_id, principal_id=actor_id)
        if actor is None:
            raise AccessDenied("Not a member of this tenant")
        require_manage(actor)
        invite = await invites_repo.get_invite(session, tenant_id=tenant_id, invite_id=invite_id)
        if invite is None:
            raise NotFound("Invite not found")
        flipped = await invites_repo.transition_status(
            session, tenant_id=tenant_id, invite_id=invite_id, new_status=InviteStatus.revoked
        )
        if flipped != 1:
            raise InviteAlreadyConsumed("Only pending invites can be revoked")
        await session.refresh(invite)
        return invite

    invite = await store_transaction(session, _op, label="revoke_invite")
    logger.info("invite_revoked tenant_id=%s invite_id=%s", tenant_id, invite_id)
    return invite


async def list_invites(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    status: InviteStatus | None = None,
) -> list[Invite]:
    actor = await resolve_membership(session, tenant_id=tenant_id, principal_id=actor_id)
    require_manage(actor)

    async def _op() -> list[Invite]:
        return await invites_repo.list_invites(session, tenant_id=tenant_id, status=status)

    return await with_store_retry(session, _op, label="list_invites")


async def list_pending_invites_for_email(session: AsyncSession, *, email: str) -> list[Invite]:
    invite_email = normalize_email(email)

    async def _op() -> list[Invite]:
        return await invites_repo.list_pending_for_email(session, email=invite_email, now=_utc_now())

    return await with_store_retry(session, _op, label="list_pending_invites")


async def list_members(session: AsyncSession, *, tenant_id: str, principal_id: str) -> list[Membership]:
    await resolve_membership(session, tenant_id=tenant_id, principal_id=principal_id)

    async def _op() -> list[Membership]:
        return await memberships_repo.list_members(session, tenant_id=tenant_id)

    return await with_store_retry(session, _op, label="list_members")


async def update_member(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    principal_id: str,
    role: str | Role | None = None,
    capabilities: Capabilities | None = None,
) -> Membership:
    if role is None and capabilities is None:
        raise ValidationError("No recognized fields to update")
    new_role = _parse_role(role) if role is not None else None

    async def _op() -> Membership:
        resolved = await tenants_repo.get_membership_for_tenant(
            session, tenant_id=tenant_id, principal_id=actor_id
        )
        if resolved is None:
            raise AccessDenied("Not a member of this tenant")
        tenant, actor = resolved
        require_manage(actor)
        member = await memberships_repo.get_membership(
            session, tenant_id=tenant_id, principal_id=principal_id
        )
        if member is None:
            raise NotFound("Member not found")
        next_capabilities = capabilities
        if next_capabilities is None and new_role is not None:
            next_capabilities = Capabilities.for_role(new_role)
        if principal_id == tenant.owner_principal_id and next_capabilities and not next_capabilities.can_manage:
            raise ValidationError("The tenant owner must keep the manage capability")
        if new_role is not None:
            member.role = new_role.value
        if next_capabilities is not None:
            member.apply_capabilities(next_capabilities)
        return member

    member = await store_transaction(session, _op, label="update_member")
    logger.info("member_updated tenant_id=%s principal=%s by=%s", tenant_id, principal_id, actor_id)
    return member


async def remove_member(
    session: AsyncSession, *, tenant_id: str, actor_id: str, principal_id: str
) -> None:
    # Managers may remove anyone but the owner; any member may remove themselves.
    async def _op() -> None:
        resolved = await tenants_repo.get_membership_for_tenant(
            session, tenant_id=tenant_id, principal_id=actor_id
        )
        if resolved is None:
            raise AccessDenied("Not a member of this tenant")
        tenant, actor = resolved
        if actor_id != principal_id:
            require_manage(actor)
        if principal_id == tenant.owner_principal_id:
            raise ValidationError("The tenant owner cannot be removed")
        removed = await memberships_repo.delete_membership(
            session, tenant_id=tenant_id, principal_id=principal_id
        )
        if removed == 0:
            raise NotFound("Member not found")

    await store_transaction(session, _op, label="remove_member")
    logger.info("member_removed tenant_id=%s principal=%s by=%s", tenant_id, principal_id, actor_id)


async def touch_member_activity(session: AsyncSession, *, tenant_id: str, principal_id: str) -> None:
    async def _op() -> None:
        await memberships_repo.touch_last_active(
            session, tenant_id=tenant_id, principal_id=principal_id, now=_utc_now()
        )

    await store_transaction(session, _op, label="touch_member_activity")
