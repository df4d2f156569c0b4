from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from twofold.core.config import get_settings
from twofold.domain.models import MediaItem, MemoryCollection, Membership, Tenant
from twofold.domain.state import Capabilities, Role
from twofold.persistence.db import SessionLocal


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def seed_tenant(*, owner_id: str | None = None, name: str = "Test Tenant") -> tuple[str, str]:
    # Insert a tenant plus its owning admin directly, bypassing the directory service.
    tenant_id = uuid4().hex
    owner_id = owner_id or f"owner-{uuid4().hex[:8]}"
    async with SessionLocal() as session:
        session.add(
            Tenant(
                id=tenant_id,
                name=name,
                slug=f"t-{tenant_id[:12]}",
                invite_code=tenant_id[:16],
                owner_principal_id=owner_id,
            )
        )
        session.add(_membership(tenant_id, owner_id, Role.admin, email=f"{owner_id}@example.com"))
        await session.commit()
    return tenant_id, owner_id


def _membership(
    tenant_id: str,
    principal_id: str,
    role: Role,
    *,
    capabilities: Capabilities | None = None,
    email: str | None = None,
) -> Membership:
    capabilities = capabilities or Capabilities.for_role(role)
    return Membership(
        id=uuid4().hex,
        tenant_id=tenant_id,
        principal_id=principal_id,
        role=role.value,
        can_upload=capabilities.can_upload,
        can_edit_others=capabilities.can_edit_others,
        can_manage=capabilities.can_manage,
        email=email,
    )


async def add_member(
    tenant_id: str,
    *,
    principal_id: str | None = None,
    role: Role = Role.participant,
    capabilities: Capabilities | None = None,
    email: str | None = None,
) -> str:
    principal_id = principal_id or f"member-{uuid4().hex[:8]}"
    async with SessionLocal() as session:
        session.add(_membership(tenant_id, principal_id, role, capabilities=capabilities, email=email))
        await session.commit()
    return principal_id


async def seed_collection(tenant_id: str, *, created_by: str, **fields: Any) -> str:
    # Lock columns can be set freely here, including states the services would refuse to write.
    collection_id = uuid4().hex
    values: dict[str, Any] = {
        "title": "Beach weekend",
        "description": "Two days by the sea",
        "blur_strength": get_settings().default_blur_strength,
    }
    values.update(fields)
    async with SessionLocal() as session:
        session.add(
            MemoryCollection(
                id=collection_id,
                tenant_id=tenant_id,
                created_by_principal_id=created_by,
                **values,
            )
        )
        await session.commit()
    return collection_id


async def seed_media(
    tenant_id: str,
    collection_id: str,
    *,
    uploaded_by: str,
    sort_order: int = 0,
    name: str | None = None,
) -> str:
    item_id = uuid4().hex
    name = name or f"{item_id[:8]}.jpg"
    async with SessionLocal() as session:
        session.add(
            MediaItem(
                id=item_id,
                tenant_id=tenant_id,
                collection_id=collection_id,
                storage_key=f"uploads/{name}",
                storage_url=f"https://media.example.com/uploads/{name}",
                filename=name,
                original_name=name,
                content_type="image/jpeg",
                sort_order=sort_order,
                uploaded_by_principal_id=uploaded_by,
            )
        )
        await session.commit()
    return item_id


def principal_headers(principal_id: str, email: str | None = None) -> dict[str, str]:
    settings = get_settings()
    headers = {settings.auth_principal_header: principal_id}
    if email:
        headers[settings.auth_email_header] = email
    return headers
