from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from twofold.apps.api.deps import Principal, get_current_principal, get_db
from twofold.apps.api.openapi import INVITE_ERROR_RESPONSES
from twofold.apps.api.response import SuccessEnvelope
from twofold.apps.api.routes.tenants import CapabilitiesPayload, MemberResponse, to_member_response
from twofold.core.errors import ValidationError
from twofold.domain.models import Invite
from twofold.domain.state import InviteStatus
from twofold.services import directory


router = APIRouter(tags=["invites"], responses=INVITE_ERROR_RESPONSES)


class InviteCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    role: str = "participant"
    capabilities: CapabilitiesPayload | None = None
    message: str | None = Field(default=None, max_length=2000)

    model_config = ConfigDict(extra="forbid")


class InviteResponse(BaseModel):
    id: str
    tenant_id: str
    email: str
    role: str
    capabilities: CapabilitiesPayload
    status: str
    message: str | None
    invited_by_principal_id: str
    expires_at: datetime
    created_at: datetime | None
    accepted_at: datetime | None


class InviteCreatedResponse(InviteResponse):
    # The token is returned once, to the inviter, so it can be delivered out of band.
    token: str


class InviteAcceptRequest(BaseModel):
    token: str = Field(min_length=1)


def _invite_fields(invite: Invite) -> dict:
    capabilities = invite.capabilities
    return {
        "id": invite.id,
        "tenant_id": invite.tenant_id,
        "email": invite.email,
        "role": invite.role,
        "capabilities": CapabilitiesPayload(
            can_upload=capabilities.can_upload,
            can_edit_others=capabilities.can_edit_others,
            can_manage=capabilities.can_manage,
        ),
        "status": invite.status,
        "message": invite.message,
        "invited_by_principal_id": invite.invited_by_principal_id,
        "expires_at": invite.expires_at,
        "created_at": invite.created_at,
        "accepted_at": invite.accepted_at,
    }


@router.post(
    "/tenants/{tenant_id}/invites",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[InviteCreatedResponse] | InviteCreatedResponse,
)
async def create_invite(
    tenant_id: str,
    payload: InviteCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> InviteCreatedResponse:
    invite = await directory.create_invite(
        db,
        tenant_id=tenant_id,
        inviter_id=principal.principal_id,
        email=payload.email,
        role=payload.role,
        capabilities=payload.capabilities.to_capabilities() if payload.capabilities else None,
        message=payload.message,
    )
    return InviteCreatedResponse(token=invite.token, **_invite_fields(invite))


@router.get(
    "/tenants/{tenant_id}/invites",
    response_model=SuccessEnvelope[list[InviteResponse]] | list[InviteResponse],
)
async def list_invites(
    tenant_id: str,
    invite_status: InviteStatus | None = Query(default=None, alias="status"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> list[InviteResponse]:
    invites = await directory.list_invites(
        db, tenant_id=tenant_id, actor_id=principal.principal_id, status=invite_status
    )
    return [InviteResponse(**_invite_fields(invite)) for invite in invites]


@router.delete(
    "/tenants/{tenant_id}/invites/{invite_id}",
    response_model=SuccessEnvelope[InviteResponse] | InviteResponse,
)
async def revoke_invite(
    tenant_id: str,
    invite_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> InviteResponse:
    invite = await directory.revoke_invite(
        db, tenant_id=tenant_id, invite_id=invite_id, actor_id=principal.principal_id
    )
    return InviteResponse(**_invite_fields(invite))


@router.post("/invites/accept", response_model=SuccessEnvelope[MemberResponse] | MemberResponse)
async def accept_invite(
    payload: InviteAcceptRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> MemberResponse:
    membership = await directory.accept_invite(
        db,
        token=payload.token,
        principal_id=principal.principal_id,
        email=principal.email,
        display_name=principal.display_name,
    )
    return to_member_response(membership)


@router.get("/invites/pending", response_model=SuccessEnvelope[list[InviteResponse]] | list[InviteResponse])
async def list_pending_invites(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> list[InviteResponse]:
    if not principal.email:
        raise ValidationError("An email header is required to look up pending invites")
    invites = await directory.list_pending_invites_for_email(db, email=principal.email)
    return [InviteResponse(**_invite_fields(invite)) for invite in invites]
