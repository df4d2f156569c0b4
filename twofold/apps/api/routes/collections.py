from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from twofold.apps.api.deps import Principal, get_current_principal, get_db
from twofold.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from twofold.apps.api.response import SuccessEnvelope
from twofold.domain.state import LockVisibility, UnlockType
from twofold.services import gallery, unlock
from twofold.services.visibility import CollectionView


router = APIRouter(prefix="/tenants/{tenant_id}", tags=["collections"], responses=DEFAULT_ERROR_RESPONSES)


class MediaResponse(BaseModel):
    id: str
    collection_id: str | None
    locator: str
    content_type: str | None
    original_name: str
    size_bytes: int | None
    width: int | None
    height: int | None
    duration_s: int | None
    title: str | None
    note: str | None
    date_taken: datetime | None
    latitude: float | None
    longitude: float | None
    place_name: str | None
    sort_order: int
    uploaded_by_principal_id: str
    created_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class PreviewResponse(BaseModel):
    media_id: str
    locator: str
    content_type: str | None
    blur_strength: int

    model_config = ConfigDict(from_attributes=True)


class LockConfigResponse(BaseModel):
    is_locked: bool
    lock_visibility: str
    unlock_type: str
    unlock_at: datetime | None
    unlock_hint: str | None
    task_description: str | None
    task_completed: bool
    show_title: bool
    show_description: bool
    show_item_count: bool
    show_created_date: bool
    show_blurred_preview: bool
    blur_strength: int

    model_config = ConfigDict(from_attributes=True)


class CollectionResponse(BaseModel):
    id: str
    redacted: bool
    locked: bool
    unlock_type: str
    title: str | None
    description: str | None
    item_count: int | None
    created_at: datetime | None
    date_taken: datetime | None
    is_milestone: bool | None
    cover_media_id: str | None
    created_by_principal_id: str | None
    items: list[MediaResponse]
    preview: PreviewResponse | None
    unlock_at: datetime | None
    unlock_hint: str | None
    task_description: str | None
    lock: LockConfigResponse | None

    model_config = ConfigDict(from_attributes=True)


class CollectionCreateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=255)
    description: str | None = None
    date_taken: datetime | None = None
    is_milestone: bool = False
    is_locked: bool = False
    lock_visibility: LockVisibility = LockVisibility.private
    unlock_type: UnlockType = UnlockType.scheduled
    unlock_at: datetime | None = None
    unlock_hint: str | None = None
    task_description: str | None = None
    show_title: bool = False
    show_description: bool = False
    show_item_count: bool = False
    show_created_date: bool = False
    show_blurred_preview: bool = False
    blur_strength: int | None = None

    model_config = ConfigDict(extra="forbid")


class CollectionPatchRequest(BaseModel):
    # Omitted fields stay untouched; explicit nulls clear nullable fields.
    title: str | None = Field(default=None, max_length=255)
    description: str | None = None
    date_taken: datetime | None = None
    is_milestone: bool | None = None
    cover_media_id: str | None = None
    is_locked: bool | None = None
    lock_visibility: LockVisibility | None = None
    unlock_type: UnlockType | None = None
    unlock_at: datetime | None = None
    unlock_hint: str | None = None
    task_description: str | None = None
    show_title: bool | None = None
    show_description: bool | None = None
    show_item_count: bool | None = None
    show_created_date: bool | None = None
    show_blurred_preview: bool | None = None
    blur_strength: int | None = None

    model_config = ConfigDict(extra="forbid")


class LockRequest(BaseModel):
    locked: bool


class ScheduleRequest(BaseModel):
    unlock_at: datetime


class PinRequest(BaseModel):
    collection_id: str | None


class BulkLockResponse(BaseModel):
    updated: list[str]
    failed: list[str]


class PinnedResponse(BaseModel):
    collection: CollectionResponse | None


class SpotlightResponse(BaseModel):
    kind: str | None
    years_ago: int | None
    collection: CollectionResponse | None


def to_collection_response(view: CollectionView) -> CollectionResponse:
    return CollectionResponse.model_validate(view)


async def _project_for(
    db: AsyncSession, *, tenant_id: str, principal: Principal, collection_id: str
) -> CollectionResponse:
    view = await gallery.get_collection(
        db, tenant_id=tenant_id, principal_id=principal.principal_id, collection_id=collection_id
    )
    return to_collection_response(view)


@router.get(
    "/collections",
    response_model=SuccessEnvelope[list[CollectionResponse]] | list[CollectionResponse],
)
async def list_collections(
    tenant_id: str,
    include_locked: bool = Query(default=False),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> list[CollectionResponse]:
    views = await gallery.list_collections(
        db, tenant_id=tenant_id, principal_id=principal.principal_id, include_locked=include_locked
    )
    return [to_collection_response(view) for view in views]


@router.post(
    "/collections",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[CollectionResponse] | CollectionResponse,
)
async def create_collection(
    tenant_id: str,
    payload: CollectionCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> CollectionResponse:
    collection = await unlock.create_collection(
        db,
        tenant_id=tenant_id,
        actor_id=principal.principal_id,
        draft=unlock.NewCollection(**payload.model_dump()),
    )
    return await _project_for(db, tenant_id=tenant_id, principal=principal, collection_id=collection.id)


@router.post("/collections/bulk-lock", response_model=SuccessEnvelope[BulkLockResponse] | BulkLockResponse)
async def bulk_lock(
    tenant_id: str,
    payload: LockRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> BulkLockResponse:
    result = await unlock.set_lock_for_all(
        db, tenant_id=tenant_id, locked=payload.locked, actor_id=principal.principal_id
    )
    return BulkLockResponse(updated=result.updated, failed=result.failed)


@router.get(
    "/collections/{collection_id}",
    response_model=SuccessEnvelope[CollectionResponse] | CollectionResponse,
)
async def get_collection(
    tenant_id: str,
    collection_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> CollectionResponse:
    return await _project_for(db, tenant_id=tenant_id, principal=principal, collection_id=collection_id)


@router.patch(
    "/collections/{collection_id}",
    response_model=SuccessEnvelope[CollectionResponse] | CollectionResponse,
)
async def patch_collection(
    tenant_id: str,
    collection_id: str,
    payload: CollectionPatchRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> CollectionResponse:
    sent = {name: getattr(payload, name) for name in payload.model_fields_set}
    await unlock.update_collection(
        db,
        tenant_id=tenant_id,
        collection_id=collection_id,
        actor_id=principal.principal_id,
        patch=unlock.CollectionPatch(**sent),
    )
    return await _project_for(db, tenant_id=tenant_id, principal=principal, collection_id=collection_id)


@router.delete("/collections/{collection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_collection(
    tenant_id: str,
    collection_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await unlock.delete_collection(
        db, tenant_id=tenant_id, collection_id=collection_id, actor_id=principal.principal_id
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/collections/{collection_id}/lock",
    response_model=SuccessEnvelope[CollectionResponse] | CollectionResponse,
)
async def toggle_lock(
    tenant_id: str,
    collection_id: str,
    payload: LockRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> CollectionResponse:
    await unlock.toggle_lock(
        db,
        tenant_id=tenant_id,
        collection_id=collection_id,
        locked=payload.locked,
        actor_id=principal.principal_id,
    )
    return await _project_for(db, tenant_id=tenant_id, principal=principal, collection_id=collection_id)


@router.post(
    "/collections/{collection_id}/schedule",
    response_model=SuccessEnvelope[CollectionResponse] | CollectionResponse,
)
async def schedule_unlock(
    tenant_id: str,
    collection_id: str,
    payload: ScheduleRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> CollectionResponse:
    await unlock.schedule_unlock(
        db,
        tenant_id=tenant_id,
        collection_id=collection_id,
        unlock_at=payload.unlock_at,
        actor_id=principal.principal_id,
    )
    return await _project_for(db, tenant_id=tenant_id, principal=principal, collection_id=collection_id)


@router.post(
    "/collections/{collection_id}/complete-task",
    response_model=SuccessEnvelope[CollectionResponse] | CollectionResponse,
)
async def complete_task(
    tenant_id: str,
    collection_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> CollectionResponse:
    # Any member may satisfy the gate; it is the viewer's action, not an admin one.
    await unlock.complete_task(
        db, tenant_id=tenant_id, collection_id=collection_id, actor_id=principal.principal_id
    )
    return await _project_for(db, tenant_id=tenant_id, principal=principal, collection_id=collection_id)


@router.get("/pinned", response_model=SuccessEnvelope[PinnedResponse] | PinnedResponse)
async def get_pinned(
    tenant_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> PinnedResponse:
    view = await gallery.get_pinned_collection(db, tenant_id=tenant_id, principal_id=principal.principal_id)
    return PinnedResponse(collection=to_collection_response(view) if view is not None else None)


@router.put("/pinned", response_model=SuccessEnvelope[PinnedResponse] | PinnedResponse)
async def put_pinned(
    tenant_id: str,
    payload: PinRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> PinnedResponse:
    await gallery.pin_collection(
        db, tenant_id=tenant_id, actor_id=principal.principal_id, collection_id=payload.collection_id
    )
    return await get_pinned(tenant_id=tenant_id, principal=principal, db=db)


@router.get("/spotlight", response_model=SuccessEnvelope[SpotlightResponse] | SpotlightResponse)
async def get_spotlight(
    tenant_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> SpotlightResponse:
    spotlight = await gallery.get_spotlight(db, tenant_id=tenant_id, principal_id=principal.principal_id)
    if spotlight is None:
        return SpotlightResponse(kind=None, years_ago=None, collection=None)
    return SpotlightResponse(
        kind=spotlight.kind,
        years_ago=spotlight.years_ago,
        collection=to_collection_response(spotlight.collection),
    )
