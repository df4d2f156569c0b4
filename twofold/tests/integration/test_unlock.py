from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging

import pytest

from twofold.core.errors import AccessDenied, NotFound, ValidationError
from twofold.domain.models import MemoryCollection
from twofold.persistence.db import SessionLocal
from twofold.services import gallery, unlock
from twofold.services.unlock import CollectionPatch, NewCollection
from twofold.tests.utils.fixtures import add_member, seed_collection, seed_tenant


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _stored(collection_id: str) -> MemoryCollection:
    async with SessionLocal() as session:
        collection = await session.get(MemoryCollection, collection_id)
        assert collection is not None
        return collection


@pytest.mark.asyncio
async def test_create_collection_defaults(session) -> None:
    tenant_id, owner = await seed_tenant()
    member = await add_member(tenant_id)
    collection = await unlock.create_collection(
        session, tenant_id=tenant_id, actor_id=member, draft=NewCollection(title="First date")
    )
    assert collection.tenant_id == tenant_id
    assert collection.is_locked is False
    assert collection.blur_strength == 80
    assert collection.created_by_principal_id == member

    # Members may create but not lock.
    with pytest.raises(AccessDenied):
        await unlock.create_collection(
            session, tenant_id=tenant_id, actor_id=member, draft=NewCollection(is_locked=True)
        )
    locked = await unlock.create_collection(
        session,
        tenant_id=tenant_id,
        actor_id=owner,
        draft=NewCollection(is_locked=True, lock_visibility="public", blur_strength=35),
    )
    assert locked.is_locked is True
    assert locked.lock_visibility == "public"
    assert locked.blur_strength == 35


@pytest.mark.asyncio
async def test_invalid_lock_configurations_rejected(session) -> None:
    tenant_id, owner = await seed_tenant()
    with pytest.raises(ValidationError):
        await unlock.create_collection(
            session,
            tenant_id=tenant_id,
            actor_id=owner,
            draft=NewCollection(is_locked=True, unlock_type="task_based"),
        )
    with pytest.raises(ValidationError):
        await unlock.create_collection(
            session, tenant_id=tenant_id, actor_id=owner, draft=NewCollection(blur_strength=101)
        )
    with pytest.raises(ValidationError):
        await unlock.create_collection(
            session, tenant_id=tenant_id, actor_id=owner, draft=NewCollection(lock_visibility="secret")
        )


@pytest.mark.asyncio
async def test_schedule_always_locks(session) -> None:
    tenant_id, owner = await seed_tenant()
    collection_id = await seed_collection(tenant_id, created_by=owner, is_locked=False)
    unlock_at = _utc_now() + timedelta(days=3)
    collection = await unlock.schedule_unlock(
        session, tenant_id=tenant_id, collection_id=collection_id, unlock_at=unlock_at, actor_id=owner
    )
    assert collection.is_locked is True
    stored = await _stored(collection_id)
    assert stored.is_locked is True
    assert stored.unlock_type == "scheduled"
    assert stored.unlock_at is not None


@pytest.mark.asyncio
async def test_schedule_rejects_past_naive_and_task_based(session) -> None:
    tenant_id, owner = await seed_tenant()
    collection_id = await seed_collection(tenant_id, created_by=owner)
    with pytest.raises(ValidationError):
        await unlock.schedule_unlock(
            session,
            tenant_id=tenant_id,
            collection_id=collection_id,
            unlock_at=_utc_now() - timedelta(minutes=1),
            actor_id=owner,
        )
    with pytest.raises(ValidationError):
        await unlock.schedule_unlock(
            session,
            tenant_id=tenant_id,
            collection_id=collection_id,
            unlock_at=datetime(2099, 1, 1),
            actor_id=owner,
        )
    task_id = await seed_collection(
        tenant_id, created_by=owner, unlock_type="task_based", task_description="Write a letter"
    )
    with pytest.raises(ValidationError):
        await unlock.schedule_unlock(
            session,
            tenant_id=tenant_id,
            collection_id=task_id,
            unlock_at=_utc_now() + timedelta(days=1),
            actor_id=owner,
        )


@pytest.mark.asyncio
async def test_schedule_and_toggle_require_manage(session) -> None:
    tenant_id, owner = await seed_tenant()
    member = await add_member(tenant_id)
    collection_id = await seed_collection(tenant_id, created_by=member)
    with pytest.raises(AccessDenied):
        await unlock.toggle_lock(
            session, tenant_id=tenant_id, collection_id=collection_id, locked=True, actor_id=member
        )
    with pytest.raises(AccessDenied):
        await unlock.schedule_unlock(
            session,
            tenant_id=tenant_id,
            collection_id=collection_id,
            unlock_at=_utc_now() + timedelta(days=1),
            actor_id=member,
        )


@pytest.mark.asyncio
async def test_manual_unlock_clears_schedule(session) -> None:
    tenant_id, owner = await seed_tenant()
    collection_id = await seed_collection(
        tenant_id, created_by=owner, is_locked=True, unlock_at=_utc_now() + timedelta(days=10)
    )
    collection = await unlock.toggle_lock(
        session, tenant_id=tenant_id, collection_id=collection_id, locked=False, actor_id=owner
    )
    assert collection.is_locked is False
    assert collection.unlock_at is None
    stored = await _stored(collection_id)
    assert stored.unlock_at is None

    # Re-locking does not resurrect the old timestamp.
    relocked = await unlock.toggle_lock(
        session, tenant_id=tenant_id, collection_id=collection_id, locked=True, actor_id=owner
    )
    assert relocked.is_locked is True
    assert relocked.unlock_at is None


@pytest.mark.asyncio
async def test_toggle_missing_collection_is_not_found(session) -> None:
    tenant_id, owner = await seed_tenant()
    with pytest.raises(NotFound):
        await unlock.toggle_lock(session, tenant_id=tenant_id, collection_id="nope", locked=True, actor_id=owner)


@pytest.mark.asyncio
async def test_complete_task_on_scheduled_collection_changes_nothing(session) -> None:
    tenant_id, owner = await seed_tenant()
    member = await add_member(tenant_id)
    unlock_at = _utc_now() + timedelta(days=2)
    collection_id = await seed_collection(
        tenant_id, created_by=owner, is_locked=True, lock_visibility="public", unlock_at=unlock_at
    )
    with pytest.raises(ValidationError):
        await unlock.complete_task(session, tenant_id=tenant_id, collection_id=collection_id, actor_id=member)
    stored = await _stored(collection_id)
    assert stored.is_locked is True
    assert stored.task_completed is False
    assert stored.unlock_type == "scheduled"
    assert stored.unlock_at is not None


@pytest.mark.asyncio
async def test_any_member_can_complete_task(session) -> None:
    tenant_id, owner = await seed_tenant()
    member = await add_member(tenant_id)
    collection_id = await seed_collection(
        tenant_id,
        created_by=owner,
        is_locked=True,
        lock_visibility="public",
        unlock_type="task_based",
        task_description="Find the hidden note",
    )
    collection = await unlock.complete_task(
        session, tenant_id=tenant_id, collection_id=collection_id, actor_id=member
    )
    assert collection.task_completed is True
    assert collection.is_locked is False

    # A new manual lock re-arms the task.
    relocked = await unlock.toggle_lock(
        session, tenant_id=tenant_id, collection_id=collection_id, locked=True, actor_id=owner
    )
    assert relocked.is_locked is True
    assert relocked.task_completed is False


@pytest.mark.asyncio
async def test_complete_task_on_hidden_collection_is_not_found(session) -> None:
    tenant_id, owner = await seed_tenant()
    member = await add_member(tenant_id)
    collection_id = await seed_collection(
        tenant_id,
        created_by=owner,
        is_locked=True,
        lock_visibility="private",
        unlock_type="task_based",
        task_description="Secret",
    )
    with pytest.raises(NotFound):
        await unlock.complete_task(session, tenant_id=tenant_id, collection_id=collection_id, actor_id=member)


@pytest.mark.asyncio
async def test_update_collection_patch_semantics(session) -> None:
    tenant_id, owner = await seed_tenant()
    collection_id = await seed_collection(
        tenant_id, created_by=owner, is_locked=True, unlock_at=_utc_now() + timedelta(days=1)
    )
    with pytest.raises(ValidationError):
        await unlock.update_collection(
            session, tenant_id=tenant_id, collection_id=collection_id, actor_id=owner, patch=CollectionPatch()
        )
    updated = await unlock.update_collection(
        session,
        tenant_id=tenant_id,
        collection_id=collection_id,
        actor_id=owner,
        patch=CollectionPatch(description=None, is_locked=False, show_title=True),
    )
    assert updated.description is None
    assert updated.title == "Beach weekend"
    assert updated.is_locked is False
    assert updated.unlock_at is None
    assert updated.show_title is True

    with pytest.raises(ValidationError):
        await unlock.update_collection(
            session,
            tenant_id=tenant_id,
            collection_id=collection_id,
            actor_id=owner,
            patch=CollectionPatch(is_milestone=None),
        )
    with pytest.raises(NotFound):
        await unlock.update_collection(
            session, tenant_id=tenant_id, collection_id="missing", actor_id=owner, patch=CollectionPatch(title="x")
        )


@pytest.mark.asyncio
async def test_patched_schedule_always_locks(session) -> None:
    tenant_id, owner = await seed_tenant()
    collection_id = await seed_collection(tenant_id, created_by=owner)
    unlock_at = _utc_now() + timedelta(days=1)
    updated = await unlock.update_collection(
        session,
        tenant_id=tenant_id,
        collection_id=collection_id,
        actor_id=owner,
        patch=CollectionPatch(unlock_at=unlock_at),
    )
    assert updated.is_locked is True
    assert updated.task_completed is False
    stored = await _stored(collection_id)
    assert stored.is_locked is True
    assert stored.unlock_at is not None


@pytest.mark.asyncio
async def test_patched_unlock_cannot_keep_a_schedule(session) -> None:
    tenant_id, owner = await seed_tenant()
    collection_id = await seed_collection(tenant_id, created_by=owner)
    with pytest.raises(ValidationError):
        await unlock.update_collection(
            session,
            tenant_id=tenant_id,
            collection_id=collection_id,
            actor_id=owner,
            patch=CollectionPatch(is_locked=False, unlock_at=_utc_now() + timedelta(days=1)),
        )
    stored = await _stored(collection_id)
    assert stored.is_locked is False
    assert stored.unlock_at is None

    # A later manual lock has no old timestamp to re-arm.
    relocked = await unlock.toggle_lock(
        session, tenant_id=tenant_id, collection_id=collection_id, locked=True, actor_id=owner
    )
    assert relocked.is_locked is True
    assert relocked.unlock_at is None


@pytest.mark.asyncio
async def test_scheduled_draft_is_created_locked(session) -> None:
    tenant_id, owner = await seed_tenant()
    collection = await unlock.create_collection(
        session,
        tenant_id=tenant_id,
        actor_id=owner,
        draft=NewCollection(is_locked=False, unlock_at=_utc_now() + timedelta(days=1)),
    )
    assert collection.is_locked is True
    assert collection.unlock_at is not None


@pytest.mark.asyncio
async def test_manual_lock_drops_a_passed_schedule(session) -> None:
    tenant_id, owner = await seed_tenant()
    collection_id = await seed_collection(
        tenant_id, created_by=owner, is_locked=True, unlock_at=_utc_now() - timedelta(days=1)
    )
    relocked = await unlock.toggle_lock(
        session, tenant_id=tenant_id, collection_id=collection_id, locked=True, actor_id=owner
    )
    assert relocked.unlock_at is None
    assert unlock.collection_locked_effective(relocked, _utc_now()) is True


@pytest.mark.asyncio
async def test_manual_lock_keeps_a_pending_schedule(session) -> None:
    tenant_id, owner = await seed_tenant()
    collection_id = await seed_collection(
        tenant_id, created_by=owner, is_locked=True, unlock_at=_utc_now() + timedelta(days=3)
    )
    relocked = await unlock.toggle_lock(
        session, tenant_id=tenant_id, collection_id=collection_id, locked=True, actor_id=owner
    )
    assert relocked.unlock_at is not None


@pytest.mark.asyncio
async def test_update_log_names_only_sent_fields(session, caplog: pytest.LogCaptureFixture) -> None:
    tenant_id, owner = await seed_tenant()
    collection_id = await seed_collection(
        tenant_id, created_by=owner, is_locked=True, unlock_at=_utc_now() + timedelta(days=1)
    )
    with caplog.at_level(logging.INFO, logger="twofold.services.unlock"):
        await unlock.update_collection(
            session,
            tenant_id=tenant_id,
            collection_id=collection_id,
            actor_id=owner,
            patch=CollectionPatch(is_locked=False),
        )
    messages = [record.getMessage() for record in caplog.records if "collection_updated" in record.getMessage()]
    assert len(messages) == 1
    assert messages[0].endswith("fields=is_locked")


@pytest.mark.asyncio
async def test_member_edits_own_content_but_not_lock(session) -> None:
    tenant_id, owner = await seed_tenant()
    member = await add_member(tenant_id)
    own = await seed_collection(tenant_id, created_by=member)
    other = await seed_collection(tenant_id, created_by=owner)
    updated = await unlock.update_collection(
        session, tenant_id=tenant_id, collection_id=own, actor_id=member, patch=CollectionPatch(title="Ours")
    )
    assert updated.title == "Ours"
    with pytest.raises(AccessDenied):
        await unlock.update_collection(
            session, tenant_id=tenant_id, collection_id=own, actor_id=member, patch=CollectionPatch(is_locked=True)
        )
    with pytest.raises(AccessDenied):
        await unlock.update_collection(
            session, tenant_id=tenant_id, collection_id=other, actor_id=member, patch=CollectionPatch(title="Mine")
        )


@pytest.mark.asyncio
async def test_concurrent_toggles_end_in_one_consistent_state() -> None:
    # Two sessions race on the same row; last write wins and no field is half-applied.
    tenant_id, owner = await seed_tenant()
    collection_id = await seed_collection(
        tenant_id, created_by=owner, is_locked=True, unlock_at=_utc_now() + timedelta(days=5)
    )

    async def _toggle(locked: bool) -> None:
        async with SessionLocal() as session:
            await unlock.toggle_lock(
                session, tenant_id=tenant_id, collection_id=collection_id, locked=locked, actor_id=owner
            )

    await asyncio.gather(_toggle(True), _toggle(False))
    stored = await _stored(collection_id)
    if stored.is_locked:
        # The lock write may have landed after the unlock cleared the schedule.
        assert stored.task_completed is False
    else:
        assert stored.unlock_at is None


@pytest.mark.asyncio
async def test_bulk_lock_is_per_row_best_effort(session) -> None:
    tenant_id, owner = await seed_tenant()
    first = await seed_collection(tenant_id, created_by=owner)
    second = await seed_collection(tenant_id, created_by=owner, lock_visibility="public")
    # Locking a task collection without a task description is invalid, so this row fails alone.
    broken = await seed_collection(tenant_id, created_by=owner, unlock_type="task_based", task_description=None)

    result = await unlock.set_lock_for_all(session, tenant_id=tenant_id, locked=True, actor_id=owner)
    assert set(result.updated) == {first, second}
    assert result.failed == [broken]
    assert (await _stored(first)).is_locked is True
    assert (await _stored(second)).is_locked is True
    assert (await _stored(broken)).is_locked is False

    result = await unlock.set_lock_for_all(session, tenant_id=tenant_id, locked=False, actor_id=owner)
    assert set(result.updated) == {first, second, broken}
    assert result.failed == []
    assert (await _stored(first)).is_locked is False


@pytest.mark.asyncio
async def test_bulk_lock_stays_inside_tenant(session) -> None:
    tenant_id, owner = await seed_tenant()
    other_tenant, other_owner = await seed_tenant()
    foreign = await seed_collection(other_tenant, created_by=other_owner)
    await seed_collection(tenant_id, created_by=owner)
    await unlock.set_lock_for_all(session, tenant_id=tenant_id, locked=True, actor_id=owner)
    assert (await _stored(foreign)).is_locked is False


@pytest.mark.asyncio
async def test_delete_collection_clears_pin(session) -> None:
    tenant_id, owner = await seed_tenant()
    collection_id = await seed_collection(tenant_id, created_by=owner)
    await gallery.pin_collection(session, tenant_id=tenant_id, actor_id=owner, collection_id=collection_id)
    await unlock.delete_collection(session, tenant_id=tenant_id, collection_id=collection_id, actor_id=owner)
    assert await gallery.get_pinned_collection(session, tenant_id=tenant_id, principal_id=owner) is None
    with pytest.raises(NotFound):
        await gallery.get_collection(
            session, tenant_id=tenant_id, principal_id=owner, collection_id=collection_id
        )
