from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Iterator, Sequence
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from twofold.core.errors import AccessDenied, NotFound, ValidationError
from twofold.domain.models import MediaItem, MemoryCollection, Membership
from twofold.domain.state import UNSET, Unset, as_utc
from twofold.persistence.repos import collections as collections_repo
from twofold.persistence.repos import media as media_repo
from twofold.services.directory import resolve_membership
from twofold.services.resilience import store_transaction
from twofold.services.unlock import can_edit, collection_locked_effective, is_hidden_from


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NewMediaItem:
    # Upload metadata only; bytes live in external storage behind storage_url.
    storage_key: str
    storage_url: str
    filename: str
    original_name: str
    content_type: str | None = None
    size_bytes: int | None = None
    width: int | None = None
    height: int | None = None
    duration_s: int | None = None
    title: str | None = None
    note: str | None = None
    date_taken: datetime | None = None
    latitude: float | None = None
    longitude: float | None = None
    place_name: str | None = None


MEDIA_PATCH_FIELDS: tuple[str, ...] = (
    "title",
    "note",
    "date_taken",
    "sort_order",
    "place_name",
    "latitude",
    "longitude",
)


@dataclass(frozen=True)
class MediaPatch:
    title: str | None | Unset = UNSET
    note: str | None | Unset = UNSET
    date_taken: datetime | None | Unset = UNSET
    sort_order: int | Unset = UNSET
    place_name: str | None | Unset = UNSET
    latitude: float | None | Unset = UNSET
    longitude: float | None | Unset = UNSET

    def items(self) -> Iterator[tuple[str, Any]]:
        for name in MEDIA_PATCH_FIELDS:
            value = getattr(self, name)
            if value is not UNSET:
                yield name, value


def _check_coordinates(latitude: float | None, longitude: float | None) -> None:
    if latitude is not None and not -90.0 <= latitude <= 90.0:
        raise ValidationError("latitude must be between -90 and 90")
    if longitude is not None and not -180.0 <= longitude <= 180.0:
        raise ValidationError("longitude must be between -180 and 180")


def _can_edit_item(membership: Membership, item: MediaItem) -> bool:
    capabilities = membership.capabilities
    if capabilities.can_manage or capabilities.can_edit_others:
        return True
    return item.uploaded_by_principal_id == membership.principal_id


async def _load_collection_for_write(
    session: AsyncSession, *, tenant_id: str, collection_id: str, membership: Membership
) -> MemoryCollection:
    collection = await collections_repo.get_collection(
        session, tenant_id=tenant_id, collection_id=collection_id
    )
    can_manage = membership.capabilities.can_manage
    if collection is None or is_hidden_from(collection, now=_utc_now(), can_manage=can_manage):
        raise NotFound("Collection not found")
    if not can_manage and collection_locked_effective(collection, _utc_now()):
        raise AccessDenied("Collection is locked")
    return collection


async def _load_item_for_write(
    session: AsyncSession, *, tenant_id: str, item_id: str, membership: Membership
) -> MediaItem:
    item = await media_repo.get_media_item(session, tenant_id=tenant_id, item_id=item_id)
    if item is None:
        raise NotFound("Media item not found")
    if item.collection_id is not None and not membership.capabilities.can_manage:
        collection = await collections_repo.get_collection(
            session, tenant_id=tenant_id, collection_id=item.collection_id
        )
        now = _utc_now()
        if collection is not None and (
            is_hidden_from(collection, now=now, can_manage=False)
            or collection_locked_effective(collection, now)
        ):
            raise NotFound("Media item not found")
    if not _can_edit_item(membership, item):
        raise AccessDenied("Edit rights required")
    return item


async def add_media_item(
    session: AsyncSession,
    *,
    tenant_id: str,
    collection_id: str,
    actor_id: str,
    item: NewMediaItem,
) -> MediaItem:
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=actor_id)
    if not membership.capabilities.can_upload:
        raise AccessDenied("Upload capability required")
    if not item.storage_url or not item.storage_key:
        raise ValidationError("storage_key and storage_url are required")
    if item.date_taken is not None and item.date_taken.tzinfo is None:
        raise ValidationError("date_taken must include a timezone")
    _check_coordinates(item.latitude, item.longitude)

    async def _op() -> MediaItem:
        await _load_collection_for_write(
            session, tenant_id=tenant_id, collection_id=collection_id, membership=membership
        )
        # Stamp from the caller's tenant, which the collection lookup just confirmed.
        media_item = MediaItem(
            id=uuid4().hex,
            tenant_id=tenant_id,
            collection_id=collection_id,
            storage_key=item.storage_key,
            storage_url=item.storage_url,
            filename=item.filename,
            original_name=item.original_name,
            content_type=item.content_type,
            size_bytes=item.size_bytes,
            width=item.width,
            height=item.height,
            duration_s=item.duration_s,
            title=item.title,
            note=item.note,
            date_taken=as_utc(item.date_taken),
            latitude=item.latitude,
            longitude=item.longitude,
            place_name=item.place_name,
            sort_order=await media_repo.next_sort_order(
                session, tenant_id=tenant_id, collection_id=collection_id
            ),
            uploaded_by_principal_id=actor_id,
        )
        session.add(media_item)
        return media_item

    media_item = await store_transaction(session, _op, label="add_media_item")
    logger.info(
        "media_item_added tenant_id=%s collection_id=%s item_id=%s", tenant_id, collection_id, media_item.id
    )
    return media_item


async def update_media_item(
    session: AsyncSession, *, tenant_id: str, item_id: str, actor_id: str, patch: MediaPatch
) -> MediaItem:
    values = dict(patch.items())
    if not values:
        raise ValidationError("No recognized fields to update")
    if "sort_order" in values and (isinstance(values["sort_order"], bool) or not isinstance(values["sort_order"], int)):
        raise ValidationError("sort_order must be an integer")
    if isinstance(values.get("date_taken"), datetime) and values["date_taken"].tzinfo is None:
        raise ValidationError("date_taken must include a timezone")
    if "date_taken" in values:
        values["date_taken"] = as_utc(values["date_taken"])
    _check_coordinates(values.get("latitude"), values.get("longitude"))
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=actor_id)

    async def _op() -> MediaItem:
        await _load_item_for_write(session, tenant_id=tenant_id, item_id=item_id, membership=membership)
        await media_repo.update_media_fields(session, tenant_id=tenant_id, item_id=item_id, values=values)
        refreshed = await media_repo.get_media_item(session, tenant_id=tenant_id, item_id=item_id)
        if refreshed is None:
            raise NotFound("Media item not found")
        return refreshed

    return await store_transaction(session, _op, label="update_media_item")


async def reorder_media(
    session: AsyncSession,
    *,
    tenant_id: str,
    collection_id: str,
    actor_id: str,
    item_ids: Sequence[str],
) -> list[MediaItem]:
    """Rewrite sort_order from ``item_ids``, which must list the collection's items exactly once."""
    if len(set(item_ids)) != len(item_ids):
        raise ValidationError("item_ids must not repeat")
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=actor_id)

    async def _op() -> list[MediaItem]:
        collection = await _load_collection_for_write(
            session, tenant_id=tenant_id, collection_id=collection_id, membership=membership
        )
        if not can_edit(membership, collection):
            raise AccessDenied("Edit rights required")
        current = await media_repo.list_items(session, tenant_id=tenant_id, collection_id=collection_id)
        if {item.id for item in current} != set(item_ids):
            raise ValidationError("item_ids must match the collection's items exactly")
        for position, item_id in enumerate(item_ids):
            await media_repo.update_media_fields(
                session, tenant_id=tenant_id, item_id=item_id, values={"sort_order": position}
            )
        return await media_repo.list_items(session, tenant_id=tenant_id, collection_id=collection_id)

    items = await store_transaction(session, _op, label="reorder_media")
    logger.info("media_reordered tenant_id=%s collection_id=%s count=%s", tenant_id, collection_id, len(items))
    return items


async def delete_media_item(session: AsyncSession, *, tenant_id: str, item_id: str, actor_id: str) -> None:
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=actor_id)

    async def _op() -> None:
        item = await _load_item_for_write(session, tenant_id=tenant_id, item_id=item_id, membership=membership)
        if item.collection_id is not None:
            collection = await collections_repo.get_collection(
                session, tenant_id=tenant_id, collection_id=item.collection_id
            )
            if collection is not None and collection.cover_media_id == item.id:
                await collections_repo.update_collection_fields(
                    session,
                    tenant_id=tenant_id,
                    collection_id=collection.id,
                    values={"cover_media_id": None},
                )
        await media_repo.delete_media_item(session, tenant_id=tenant_id, item_id=item_id)

    await store_transaction(session, _op, label="delete_media_item")
    logger.info("media_item_deleted tenant_id=%s item_id=%s by=%s", tenant_id, item_id, actor_id)
