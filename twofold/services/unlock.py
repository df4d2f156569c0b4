"""Lock state for memory collections.

Three stored axes decide what a viewer sees: ``is_locked``, ``lock_visibility``
and ``unlock_at``. The stored flag is only cleared by explicit writes (manual
toggle, bulk action, task completion). A passed ``unlock_at`` vetoes the lock
at read time through :func:`is_locked_effective`; nothing rewrites the row
when the schedule passes, so no background job is involved.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Iterator
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from twofold.core.config import BLUR_STRENGTH_MAX, BLUR_STRENGTH_MIN, get_settings
from twofold.core.errors import AccessDenied, NotFound, TwofoldError, ValidationError
from twofold.domain.models import MemoryCollection, Membership
from twofold.domain.state import UNSET, LockVisibility, UnlockType, Unset, as_utc
from twofold.persistence.repos import collections as collections_repo
from twofold.persistence.repos import media as media_repo
from twofold.persistence.repos import tenants as tenants_repo
from twofold.services.directory import require_manage, resolve_membership
from twofold.services.resilience import store_transaction, with_store_retry


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_locked_effective(is_locked: bool, unlock_at: datetime | None, now: datetime) -> bool:
    # Pure: depends only on the stored flag, the schedule and the clock, never on the viewer.
    if not is_locked:
        return False
    unlock_at = as_utc(unlock_at)
    return unlock_at is None or unlock_at > as_utc(now)


def collection_locked_effective(collection: MemoryCollection, now: datetime) -> bool:
    return is_locked_effective(bool(collection.is_locked), collection.unlock_at, now)


def is_hidden_from(collection: MemoryCollection, *, now: datetime, can_manage: bool) -> bool:
    """Whether a viewer must not learn that ``collection`` exists.

    Managers always see everything. For everyone else a private lock hides
    the collection; by default a passed schedule does not lift a private lock.
    """
    if can_manage or not collection.is_locked:
        return False
    if collection.lock_visibility != LockVisibility.private.value:
        return False
    if get_settings().private_lock_ignores_schedule:
        return True
    return collection_locked_effective(collection, now)


def can_edit(membership: Membership, collection: MemoryCollection) -> bool:
    capabilities = membership.capabilities
    if capabilities.can_manage or capabilities.can_edit_others:
        return True
    return collection.created_by_principal_id == membership.principal_id


CONTENT_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "date_taken",
    "is_milestone",
    "cover_media_id",
)
LOCK_FIELDS: tuple[str, ...] = (
    "is_locked",
    "lock_visibility",
    "unlock_type",
    "unlock_at",
    "unlock_hint",
    "task_description",
    "show_title",
    "show_description",
    "show_item_count",
    "show_created_date",
    "show_blurred_preview",
    "blur_strength",
)
PATCH_FIELDS: tuple[str, ...] = CONTENT_FIELDS + LOCK_FIELDS
_NULLABLE_FIELDS = frozenset(
    {"title", "description", "date_taken", "cover_media_id", "unlock_at", "unlock_hint", "task_description"}
)


@dataclass(frozen=True)
class CollectionPatch:
    # Every field is either a value (None included) or UNSET when the caller did not send it.
    title: str | None | Unset = UNSET
    description: str | None | Unset = UNSET
    date_taken: datetime | None | Unset = UNSET
    is_milestone: bool | Unset = UNSET
    cover_media_id: str | None | Unset = UNSET
    is_locked: bool | Unset = UNSET
    lock_visibility: LockVisibility | str | Unset = UNSET
    unlock_type: UnlockType | str | Unset = UNSET
    unlock_at: datetime | None | Unset = UNSET
    unlock_hint: str | None | Unset = UNSET
    task_description: str | None | Unset = UNSET
    show_title: bool | Unset = UNSET
    show_description: bool | Unset = UNSET
    show_item_count: bool | Unset = UNSET
    show_created_date: bool | Unset = UNSET
    show_blurred_preview: bool | Unset = UNSET
    blur_strength: int | Unset = UNSET

    def items(self) -> Iterator[tuple[str, Any]]:
        for name in PATCH_FIELDS:
            value = getattr(self, name)
            if value is not UNSET:
                yield name, value

    def is_empty(self) -> bool:
        return next(self.items(), None) is None

    def touches_lock(self) -> bool:
        return any(name in LOCK_FIELDS for name, _ in self.items())

    def touches_content(self) -> bool:
        return any(name in CONTENT_FIELDS for name, _ in self.items())


@dataclass(frozen=True)
class NewCollection:
    title: str | None = None
    description: str | None = None
    date_taken: datetime | None = None
    is_milestone: bool = False
    is_locked: bool = False
    lock_visibility: LockVisibility | str = LockVisibility.private
    unlock_type: UnlockType | str = UnlockType.scheduled
    unlock_at: datetime | None = None
    unlock_hint: str | None = None
    task_description: str | None = None
    show_title: bool = False
    show_description: bool = False
    show_item_count: bool = False
    show_created_date: bool = False
    show_blurred_preview: bool = False
    blur_strength: int | None = None


@dataclass
class BulkLockResult:
    updated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def _enum_value(enum_cls: type, value: Any, label: str) -> str:
    try:
        return enum_cls(value.value if hasattr(value, "value") else value).value
    except ValueError as exc:
        raise ValidationError(f"Unsupported {label}: {value}") from exc


def _check_blur_strength(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("blur_strength must be an integer")
    if not BLUR_STRENGTH_MIN <= value <= BLUR_STRENGTH_MAX:
        raise ValidationError(
            f"blur_strength must be between {BLUR_STRENGTH_MIN} and {BLUR_STRENGTH_MAX}"
        )
    return value


def _check_aware(value: datetime | None, label: str) -> datetime | None:
    if value is not None and value.tzinfo is None:
        raise ValidationError(f"{label} must include a timezone")
    return as_utc(value)


def validate_lock_config(state: dict[str, Any]) -> None:
    """Reject lock configurations that cannot be satisfied."""
    if state["unlock_type"] == UnlockType.task_based.value:
        if state.get("unlock_at") is not None:
            raise ValidationError("A task-based unlock cannot also carry an unlock time")
        if state["is_locked"] and not (state.get("task_description") or "").strip():
            raise ValidationError("A locked task-based collection needs a task description")


def _normalize(name: str, value: Any) -> Any:
    if value is None and name not in _NULLABLE_FIELDS:
        raise ValidationError(f"{name} cannot be null")
    if name == "lock_visibility":
        return _enum_value(LockVisibility, value, "lock_visibility")
    if name == "unlock_type":
        return _enum_value(UnlockType, value, "unlock_type")
    if name == "blur_strength":
        return _check_blur_strength(value)
    if name in ("unlock_at", "date_taken"):
        return _check_aware(value, name)
    return value


def _lock_state(collection: MemoryCollection) -> dict[str, Any]:
    return {name: getattr(collection, name) for name in LOCK_FIELDS}


def _reconcile_schedule(values: dict[str, Any], *, currently_locked: bool) -> dict[str, Any]:
    """Keep ``is_locked`` and ``unlock_at`` consistent on every write path.

    A schedule implies a lock, and an unlock drops the schedule. An explicit
    unlock that also carries a schedule is contradictory and rejected.
    """
    unlock_at = values.get("unlock_at")
    if values.get("is_locked") is False:
        if unlock_at is not None:
            raise ValidationError("An unlocked collection cannot carry an unlock time")
        values["unlock_at"] = None
    elif unlock_at is not None:
        values["is_locked"] = True
    if values.get("is_locked") is True and not currently_locked:
        values["task_completed"] = False
    return values


def _toggle_values(collection: MemoryCollection, locked: bool, now: datetime) -> dict[str, Any]:
    # Unlocking is terminal for the schedule; locking re-arms a completed task.
    if not locked:
        return {"is_locked": False, "unlock_at": None}
    values: dict[str, Any] = {"is_locked": True, "task_completed": False}
    # Only a pending schedule on a row that is still locked survives a manual lock.
    if not collection_locked_effective(collection, now):
        values["unlock_at"] = None
    validate_lock_config({**_lock_state(collection), **values})
    return values


async def _load(session: AsyncSession, *, tenant_id: str, collection_id: str) -> MemoryCollection:
    collection = await collections_repo.get_collection(
        session, tenant_id=tenant_id, collection_id=collection_id
    )
    if collection is None:
        raise NotFound("Collection not found")
    return collection


async def _load_visible(
    session: AsyncSession, *, tenant_id: str, collection_id: str, membership: Membership
) -> MemoryCollection:
    # Hidden collections look exactly like missing ones to non-managers.
    collection = await _load(session, tenant_id=tenant_id, collection_id=collection_id)
    if is_hidden_from(collection, now=_utc_now(), can_manage=membership.capabilities.can_manage):
        raise NotFound("Collection not found")
    return collection


async def create_collection(
    session: AsyncSession, *, tenant_id: str, actor_id: str, draft: NewCollection
) -> MemoryCollection:
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=actor_id)
    if not membership.capabilities.can_upload:
        raise AccessDenied("Upload capability required")
    if draft.is_locked or draft.unlock_at is not None:
        require_manage(membership)
    blur_strength = draft.blur_strength
    if blur_strength is None:
        blur_strength = get_settings().default_blur_strength
    state = {
        "is_locked": draft.is_locked,
        "lock_visibility": _normalize("lock_visibility", draft.lock_visibility),
        "unlock_type": _normalize("unlock_type", draft.unlock_type),
        "unlock_at": _normalize("unlock_at", draft.unlock_at),
        "unlock_hint": draft.unlock_hint,
        "task_description": draft.task_description,
        "show_title": draft.show_title,
        "show_description": draft.show_description,
        "show_item_count": draft.show_item_count,
        "show_created_date": draft.show_created_date,
        "show_blurred_preview": draft.show_blurred_preview,
        "blur_strength": _check_blur_strength(blur_strength),
    }
    # A draft that carries a schedule is created locked.
    if state["unlock_at"] is not None:
        state["is_locked"] = True
    validate_lock_config(state)

    async def _op() -> MemoryCollection:
        collection = MemoryCollection(
            id=uuid4().hex,
            tenant_id=tenant_id,
            title=draft.title,
            description=draft.description,
            date_taken=_check_aware(draft.date_taken, "date_taken"),
            is_milestone=draft.is_milestone,
            created_by_principal_id=actor_id,
            task_completed=False,
            **state,
        )
        session.add(collection)
        return collection

    collection = await store_transaction(session, _op, label="create_collection")
    logger.info("collection_created tenant_id=%s collection_id=%s", tenant_id, collection.id)
    return collection


async def update_collection(
    session: AsyncSession,
    *,
    tenant_id: str,
    collection_id: str,
    actor_id: str,
    patch: CollectionPatch,
) -> MemoryCollection:
    if patch.is_empty():
        raise ValidationError("No recognized fields to update")
    values = {name: _normalize(name, value) for name, value in patch.items()}
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=actor_id)

    async def _op() -> MemoryCollection:
        collection = await _load_visible(
            session, tenant_id=tenant_id, collection_id=collection_id, membership=membership
        )
        if patch.touches_lock():
            require_manage(membership)
        if patch.touches_content() and not can_edit(membership, collection):
            raise AccessDenied("Edit rights required")
        changes = _reconcile_schedule(dict(values), currently_locked=bool(collection.is_locked))
        validate_lock_config({**_lock_state(collection), **changes})
        await collections_repo.update_collection_fields(
            session, tenant_id=tenant_id, collection_id=collection_id, values=changes
        )
        return await _load(session, tenant_id=tenant_id, collection_id=collection_id)

    collection = await store_transaction(session, _op, label="update_collection")
    logger.info(
        "collection_updated tenant_id=%s collection_id=%s fields=%s",
        tenant_id,
        collection_id,
        ",".join(name for name, _ in patch.items()),
    )
    return collection


async def toggle_lock(
    session: AsyncSession, *, tenant_id: str, collection_id: str, locked: bool, actor_id: str
) -> MemoryCollection:
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=actor_id)
    require_manage(membership)

    async def _op() -> MemoryCollection:
        collection = await _load(session, tenant_id=tenant_id, collection_id=collection_id)
        await collections_repo.update_collection_fields(
            session,
            tenant_id=tenant_id,
            collection_id=collection_id,
            values=_toggle_values(collection, locked, _utc_now()),
        )
        return await _load(session, tenant_id=tenant_id, collection_id=collection_id)

    collection = await store_transaction(session, _op, label="toggle_lock")
    logger.info("collection_lock_toggled tenant_id=%s collection_id=%s locked=%s", tenant_id, collection_id, locked)
    return collection


async def schedule_unlock(
    session: AsyncSession,
    *,
    tenant_id: str,
    collection_id: str,
    unlock_at: datetime,
    actor_id: str,
) -> MemoryCollection:
    if unlock_at is None or unlock_at.tzinfo is None:
        raise ValidationError("unlock_at must be a timezone-aware timestamp")
    if as_utc(unlock_at) <= _utc_now():
        raise ValidationError("unlock_at must be in the future")
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=actor_id)
    require_manage(membership)

    async def _op() -> MemoryCollection:
        collection = await _load(session, tenant_id=tenant_id, collection_id=collection_id)
        if collection.unlock_type == UnlockType.task_based.value:
            raise ValidationError("Task-based collections cannot be scheduled")
        # Scheduling always (re-)locks, whatever the prior flag was.
        await collections_repo.update_collection_fields(
            session,
            tenant_id=tenant_id,
            collection_id=collection_id,
            values={
                "is_locked": True,
                "unlock_type": UnlockType.scheduled.value,
                "unlock_at": as_utc(unlock_at),
            },
        )
        return await _load(session, tenant_id=tenant_id, collection_id=collection_id)

    collection = await store_transaction(session, _op, label="schedule_unlock")
    logger.info(
        "collection_unlock_scheduled tenant_id=%s collection_id=%s unlock_at=%s",
        tenant_id,
        collection_id,
        as_utc(unlock_at).isoformat(),
    )
    return collection


async def complete_task(
    session: AsyncSession, *, tenant_id: str, collection_id: str, actor_id: str
) -> MemoryCollection:
    """Mark the unlock task done; any member of the tenant may do this."""
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=actor_id)

    async def _op() -> MemoryCollection:
        collection = await _load_visible(
            session, tenant_id=tenant_id, collection_id=collection_id, membership=membership
        )
        if collection.unlock_type != UnlockType.task_based.value:
            raise ValidationError("Only task-based collections can be unlocked by completing a task")
        updated = await collections_repo.mark_task_completed(
            session, tenant_id=tenant_id, collection_id=collection_id
        )
        if updated != 1:
            raise ValidationError("Only task-based collections can be unlocked by completing a task")
        return await _load(session, tenant_id=tenant_id, collection_id=collection_id)

    collection = await store_transaction(session, _op, label="complete_task")
    logger.info("collection_task_completed tenant_id=%s collection_id=%s by=%s", tenant_id, collection_id, actor_id)
    return collection


async def set_lock_for_all(
    session: AsyncSession, *, tenant_id: str, locked: bool, actor_id: str
) -> BulkLockResult:
    """Apply the manual toggle to every collection, one independent commit each.

    Best-effort: rows that fail are reported in ``failed`` and earlier rows
    stay applied. Callers re-query to find stragglers.
    """
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=actor_id)
    require_manage(membership)

    async def _ids() -> list[str]:
        return await collections_repo.list_collection_ids(session, tenant_id=tenant_id)

    result = BulkLockResult()
    for collection_id in await with_store_retry(session, _ids, label="bulk_lock_ids"):

        async def _op(collection_id: str = collection_id) -> None:
            collection = await _load(session, tenant_id=tenant_id, collection_id=collection_id)
            await collections_repo.update_collection_fields(
                session,
                tenant_id=tenant_id,
                collection_id=collection_id,
                values=_toggle_values(collection, locked, _utc_now()),
            )

        try:
            await store_transaction(session, _op, label="bulk_lock")
        except (TwofoldError, SQLAlchemyError) as exc:
            logger.warning(
                "bulk_lock_row_failed tenant_id=%s collection_id=%s error=%s",
                tenant_id,
                collection_id,
                type(exc).__name__,
            )
            result.failed.append(collection_id)
        else:
            result.updated.append(collection_id)
    logger.info(
        "bulk_lock_applied tenant_id=%s locked=%s updated=%s failed=%s",
        tenant_id,
        locked,
        len(result.updated),
        len(result.failed),
    )
    return result


async def delete_collection(
    session: AsyncSession, *, tenant_id: str, collection_id: str, actor_id: str
) -> None:
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=actor_id)

    async def _op() -> None:
        collection = await _load_visible(
            session, tenant_id=tenant_id, collection_id=collection_id, membership=membership
        )
        if not can_edit(membership, collection):
            raise AccessDenied("Edit rights required")
        await media_repo.delete_items_for_collection(session, tenant_id=tenant_id, collection_id=collection_id)
        await tenants_repo.clear_pinned_collection(session, tenant_id=tenant_id, collection_id=collection_id)
        await collections_repo.delete_collection(session, tenant_id=tenant_id, collection_id=collection_id)

    await store_transaction(session, _op, label="delete_collection")
    logger.info("collection_deleted tenant_id=%s collection_id=%s by=%s", tenant_id, collection_id, actor_id)
