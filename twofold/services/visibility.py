from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from twofold.domain.models import MediaItem, MemoryCollection
from twofold.domain.state import Capabilities, UnlockType, as_utc
from twofold.services.unlock import collection_locked_effective, is_hidden_from


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class MediaView:
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


@dataclass(frozen=True)
class PreviewView:
    # blur_strength is the stored 0-100 percentage; the renderer maps it to its own unit.
    media_id: str
    locator: str
    content_type: str | None
    blur_strength: int


@dataclass(frozen=True)
class LockConfigView:
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


@dataclass(frozen=True)
class CollectionView:
    """What one viewer may see of a collection.

    ``redacted`` views never carry media items; at most a single preview.
    ``lock`` holds the stored lock configuration and is only filled for
    managers, who also get ``locked`` as a badge.
    """

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
    items: tuple[MediaView, ...]
    preview: PreviewView | None
    unlock_at: datetime | None
    unlock_hint: str | None
    task_description: str | None
    lock: LockConfigView | None


def media_view(item: MediaItem) -> MediaView:
    return MediaView(
        id=item.id,
        collection_id=item.collection_id,
        locator=item.storage_url,
        content_type=item.content_type,
        original_name=item.original_name,
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
        sort_order=item.sort_order,
        uploaded_by_principal_id=item.uploaded_by_principal_id,
        created_at=as_utc(item.created_at),
    )


def _lock_config(collection: MemoryCollection) -> LockConfigView:
    return LockConfigView(
        is_locked=bool(collection.is_locked),
        lock_visibility=collection.lock_visibility,
        unlock_type=collection.unlock_type,
        unlock_at=as_utc(collection.unlock_at),
        unlock_hint=collection.unlock_hint,
        task_description=collection.task_description,
        task_completed=bool(collection.task_completed),
        show_title=bool(collection.show_title),
        show_description=bool(collection.show_description),
        show_item_count=bool(collection.show_item_count),
        show_created_date=bool(collection.show_created_date),
        show_blurred_preview=bool(collection.show_blurred_preview),
        blur_strength=collection.blur_strength,
    )


def _ordered(items: Sequence[MediaItem]) -> list[MediaItem]:
    return sorted(items, key=lambda item: (item.sort_order, as_utc(item.created_at) or _EPOCH, item.id))


def _preview(collection: MemoryCollection, items: list[MediaItem]) -> PreviewView | None:
    # The cover wins when it is still part of the collection; otherwise the first item in order.
    if not collection.show_blurred_preview or not items:
        return None
    chosen = next((item for item in items if item.id == collection.cover_media_id), items[0])
    return PreviewView(
        media_id=chosen.id,
        locator=chosen.storage_url,
        content_type=chosen.content_type,
        blur_strength=collection.blur_strength,
    )


def _full_view(
    collection: MemoryCollection, items: list[MediaItem], *, locked: bool, manager: bool
) -> CollectionView:
    return CollectionView(
        id=collection.id,
        redacted=False,
        locked=locked,
        unlock_type=collection.unlock_type,
        title=collection.title,
        description=collection.description,
        item_count=len(items),
        created_at=as_utc(collection.created_at),
        date_taken=as_utc(collection.date_taken),
        is_milestone=bool(collection.is_milestone),
        cover_media_id=collection.cover_media_id,
        created_by_principal_id=collection.created_by_principal_id,
        items=tuple(media_view(item) for item in items),
        preview=None,
        unlock_at=as_utc(collection.unlock_at),
        unlock_hint=collection.unlock_hint,
        task_description=collection.task_description,
        lock=_lock_config(collection) if manager else None,
    )


def _partial_view(collection: MemoryCollection, items: list[MediaItem]) -> CollectionView:
    scheduled = collection.unlock_type == UnlockType.scheduled.value
    show_created = bool(collection.show_created_date)
    return CollectionView(
        id=collection.id,
        redacted=True,
        locked=True,
        unlock_type=collection.unlock_type,
        title=collection.title if collection.show_title else None,
        description=collection.description if collection.show_description else None,
        item_count=len(items) if collection.show_item_count else None,
        created_at=as_utc(collection.created_at) if show_created else None,
        date_taken=as_utc(collection.date_taken) if show_created else None,
        is_milestone=None,
        cover_media_id=None,
        created_by_principal_id=None,
        items=(),
        preview=_preview(collection, items),
        # Lock metadata is always disclosed; it describes the lock, not the content.
        unlock_at=as_utc(collection.unlock_at) if scheduled else None,
        unlock_hint=collection.unlock_hint,
        task_description=collection.task_description if not scheduled else None,
        lock=None,
    )


def project_collection(
    collection: MemoryCollection,
    items: Sequence[MediaItem],
    *,
    now: datetime,
    viewer: Capabilities,
) -> CollectionView | None:
    """Project ``collection`` for a viewer; ``None`` means the viewer must not see it at all."""
    ordered = _ordered(items)
    locked = collection_locked_effective(collection, now)
    if viewer.can_manage:
        return _full_view(collection, ordered, locked=locked, manager=True)
    if is_hidden_from(collection, now=now, can_manage=False):
        return None
    if not locked:
        return _full_view(collection, ordered, locked=False, manager=False)
    return _partial_view(collection, ordered)
