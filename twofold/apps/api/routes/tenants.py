from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from twofold.apps.api.deps import Principal, get_current_principal, get_db
from twofold.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from twofold.apps.api.response import SuccessEnvelope
from twofold.core.errors import ValidationError
from twofold.domain.models import Membership, Tenant
from twofold.domain.state import Capabilities
from twofold.services import directory


router = APIRouter(prefix="/tenants", tags=["tenants"], responses=DEFAULT_ERROR_RESPONSES)
# Deprecated name for the same resource, kept as a thin adapter for old clients.
legacy_router = APIRouter(prefix="/lockets", tags=["legacy"], responses=DEFAULT_ERROR_RESPONSES)


class TenantResponse(BaseModel):
    id: str
    name: str
    description: str | None
    slug: str
    invite_code: str
    is_public: bool
    has_access_password: bool
    owner_principal_id: str
    anniversary_date: datetime | None
    location_origin: str | None
    cover_photo_url: str | None
    pinned_collection_id: str | None
    created_at: datetime | None


class TenantCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    is_public: bool = False
    access_password: str | None = Field(default=None, min_length=1)
    anniversary_date: datetime | None = None
    location_origin: str | None = None
    cover_photo_url: str | None = None

    model_config = ConfigDict(extra="forbid")


class TenantPatchRequest(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    description: str | None = None
    is_public: bool | None = None
    access_password: str | None = None
    anniversary_date: datetime | None = None
    location_origin: str | None = None
    cover_photo_url: str | None = None

    model_config = ConfigDict(extra="forbid")


class PasswordCheckRequest(BaseModel):
    password: str


class PasswordCheckResponse(BaseModel):
    valid: bool


class CapabilitiesPayload(BaseModel):
    can_upload: bool
    can_edit_others: bool
    can_manage: bool

    def to_capabilities(self) -> Capabilities:
        return Capabilities(
            can_upload=self.can_upload,
            can_edit_others=self.can_edit_others,
            can_manage=self.can_manage,
        )


class MemberResponse(BaseModel):
    principal_id: str
    tenant_id: str
    role: str
    capabilities: CapabilitiesPayload
    display_name: str | None
    email: str | None
    avatar_url: str | None
    joined_at: datetime | None
    last_active_at: datetime | None


class MemberPatchRequest(BaseModel):
    role: str | None = None
    capabilities: CapabilitiesPayload | None = None

    model_config = ConfigDict(extra="forbid")


def to_tenant_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        name=tenant.name,
        description=tenant.description,
        slug=tenant.slug,
        invite_code=tenant.invite_code,
        is_public=bool(tenant.is_public),
        has_access_password=tenant.access_password_hash is not None,
        owner_principal_id=tenant.owner_principal_id,
        anniversary_date=tenant.anniversary_date,
        location_origin=tenant.location_origin,
        cover_photo_url=tenant.cover_photo_url,
        pinned_collection_id=tenant.pinned_collection_id,
        created_at=tenant.created_at,
    )


def to_member_response(membership: Membership) -> MemberResponse:
    capabilities = membership.capabilities
    return MemberResponse(
        principal_id=membership.principal_id,
        tenant_id=membership.tenant_id,
        role=membership.role,
        capabilities=CapabilitiesPayload(
            can_upload=capabilities.can_upload,
            can_edit_others=capabilities.can_edit_others,
            can_manage=capabilities.can_manage,
        ),
        display_name=membership.display_name,
        email=membership.email,
        avatar_url=membership.avatar_url,
        joined_at=membership.joined_at,
        last_active_at=membership.last_active_at,
    )


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[TenantResponse] | TenantResponse,
)
async def create_tenant(
    payload: TenantCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> TenantResponse:
    tenant = await directory.create_tenant(
        db,
        principal_id=principal.principal_id,
        name=payload.name,
        description=payload.description,
        is_public=payload.is_public,
        access_password=payload.access_password,
        anniversary_date=payload.anniversary_date,
        location_origin=payload.location_origin,
        cover_photo_url=payload.cover_photo_url,
        display_name=principal.display_name,
        email=principal.email,
    )
    return to_tenant_response(tenant)


@router.get("", response_model=SuccessEnvelope[list[TenantResponse]] | list[TenantResponse])
async def list_tenants(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> list[TenantResponse]:
    # Only tenants the principal belongs to; there is no cross-tenant listing.
    tenants = await directory.list_tenants_for(db, principal.principal_id)
    return [to_tenant_response(tenant) for tenant in tenants]


@legacy_router.get("", response_model=list[TenantResponse], deprecated=True)
async def list_lockets(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> list[TenantResponse]:
    return await list_tenants(principal=principal, db=db)


@router.get("/{tenant_id}", response_model=SuccessEnvelope[TenantResponse] | TenantResponse)
async def get_tenant(
    tenant_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> TenantResponse:
    tenant = await directory.get_tenant(db, tenant_id=tenant_id, principal_id=principal.principal_id)
    # Feeds the "last seen" badge in the member list.
    await directory.touch_member_activity(db, tenant_id=tenant_id, principal_id=principal.principal_id)
    return to_tenant_response(tenant)


@router.patch("/{tenant_id}", response_model=SuccessEnvelope[TenantResponse] | TenantResponse)
async def patch_tenant(
    tenant_id: str,
    payload: TenantPatchRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> TenantResponse:
    sent = {name: getattr(payload, name) for name in payload.model_fields_set}
    if sent.get("is_public", False) is None:
        raise ValidationError("is_public cannot be null")
    tenant = await directory.update_tenant(
        db,
        tenant_id=tenant_id,
        principal_id=principal.principal_id,
        patch=directory.TenantPatch(**sent),
    )
    return to_tenant_response(tenant)


@router.post(
    "/{tenant_id}/verify-password",
    response_model=SuccessEnvelope[PasswordCheckResponse] | PasswordCheckResponse,
)
async def verify_password(
    tenant_id: str,
    payload: PasswordCheckRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> PasswordCheckResponse:
    tenant = await directory.get_tenant(db, tenant_id=tenant_id, principal_id=principal.principal_id)
    return PasswordCheckResponse(valid=directory.verify_access_password(tenant, payload.password))


@router.get("/{tenant_id}/members", response_model=SuccessEnvelope[list[MemberResponse]] | list[MemberResponse])
async def list_members(
    tenant_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> list[MemberResponse]:
    members = await directory.list_members(db, tenant_id=tenant_id, principal_id=principal.principal_id)
    return [to_member_response(member) for member in members]


@router.patch(
    "/{tenant_id}/members/{member_id}",
    response_model=SuccessEnvelope[MemberResponse] | MemberResponse,
)
async def patch_member(
    tenant_id: str,
    member_id: str,
    payload: MemberPatchRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> MemberResponse:
    member = await directory.update_member(
        db,
        tenant_id=tenant_id,
        actor_id=principal.principal_id,
        principal_id=member_id,
        role=payload.role,
        capabilities=payload.capabilities.to_capabilities() if payload.capabilities else None,
    )
    return to_member_response(member)


@router.delete("/{tenant_id}/members/{member_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_member(
    tenant_id: str,
    member_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await directory.remove_member(
        db, tenant_id=tenant_id, actor_id=principal.principal_id, principal_id=member_id
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
