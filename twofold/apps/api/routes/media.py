from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from twofold.apps.api.deps import Principal, get_current_principal, get_db
from twofold.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from twofold.apps.api.response import SuccessEnvelope
from twofold.apps.api.routes.collections import MediaResponse
from twofold.core.errors import ValidationError
from twofold.services import gallery
from twofold.services import media as media_service
from twofold.services.visibility import media_view


router = APIRouter(prefix="/tenants/{tenant_id}", tags=["media"], responses=DEFAULT_ERROR_RESPONSES)


class MediaCreateRequest(BaseModel):
    storage_key: str = Field(min_length=1, max_length=512)
    storage_url: str = Field(min_length=1)
    filename: str = Field(min_length=1, max_length=255)
    original_name: str = Field(min_length=1, max_length=255)
    content_type: str | None = Field(default=None, max_length=100)
    size_bytes: int | None = Field(default=None, ge=0)
    width: int | None = Field(default=None, ge=0)
    height: int | None = Field(default=None, ge=0)
    duration_s: int | None = Field(default=None, ge=0)
    title: str | None = Field(default=None, max_length=255)
    note: str | None = None
    date_taken: datetime | None = None
    latitude: float | None = None
    longitude: float | None = None
    place_name: str | None = Field(default=None, max_length=255)

    model_config = ConfigDict(extra="forbid")


class MediaPatchRequest(BaseModel):
    title: str | None = Field(default=None, max_length=255)
    note: str | None = None
    date_taken: datetime | None = None
    sort_order: int | None = None
    place_name: str | None = Field(default=None, max_length=255)
    latitude: float | None = None
    longitude: float | None = None

    model_config = ConfigDict(extra="forbid")


class ReorderRequest(BaseModel):
    item_ids: list[str]


@router.post(
    "/collections/{collection_id}/media",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[MediaResponse] | MediaResponse,
)
async def add_media_item(
    tenant_id: str,
    collection_id: str,
    payload: MediaCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> MediaResponse:
    item = await media_service.add_media_item(
        db,
        tenant_id=tenant_id,
        collection_id=collection_id,
        actor_id=principal.principal_id,
        item=media_service.NewMediaItem(**payload.model_dump()),
    )
    return MediaResponse.model_validate(media_view(item))


@router.put(
    "/collections/{collection_id}/media/order",
    response_model=SuccessEnvelope[list[MediaResponse]] | list[MediaResponse],
)
async def reorder_media(
    tenant_id: str,
    collection_id: str,
    payload: ReorderRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> list[MediaResponse]:
    items = await media_service.reorder_media(
        db,
        tenant_id=tenant_id,
        collection_id=collection_id,
        actor_id=principal.principal_id,
        item_ids=payload.item_ids,
    )
    return [MediaResponse.model_validate(media_view(item)) for item in items]


@router.get("/media/{item_id}", response_model=SuccessEnvelope[MediaResponse] | MediaResponse)
async def get_media_item(
    tenant_id: str,
    item_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> MediaResponse:
    view = await gallery.get_media_item(
        db, tenant_id=tenant_id, principal_id=principal.principal_id, item_id=item_id
    )
    return MediaResponse.model_validate(view)


@router.patch("/media/{item_id}", response_model=SuccessEnvelope[MediaResponse] | MediaResponse)
async def patch_media_item(
    tenant_id: str,
    item_id: str,
    payload: MediaPatchRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> MediaResponse:
    sent = {name: getattr(payload, name) for name in payload.model_fields_set}
    if sent.get("sort_order", 0) is None:
        raise ValidationError("sort_order cannot be null")
    item = await media_service.update_media_item(
        db,
        tenant_id=tenant_id,
        item_id=item_id,
        actor_id=principal.principal_id,
        patch=media_service.MediaPatch(**sent),
    )
    return MediaResponse.model_validate(media_view(item))


@router.delete("/media/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_media_item(
    tenant_id: str,
    item_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await media_service.delete_media_item(
        db, tenant_id=tenant_id, item_id=item_id, actor_id=principal.principal_id
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
