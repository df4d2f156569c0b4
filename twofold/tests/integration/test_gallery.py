from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
import random

import pytest

from twofold.core.errors import AccessDenied, NotFound
from twofold.services import gallery
from twofold.tests.utils.fixtures import add_member, seed_collection, seed_media, seed_tenant


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.mark.asyncio
async def test_private_lock_hidden_from_members_and_badged_for_managers(session) -> None:
    tenant_id, owner = await seed_tenant()
    member = await add_member(tenant_id)
    open_id = await seed_collection(tenant_id, created_by=owner)
    hidden_id = await seed_collection(tenant_id, created_by=owner, is_locked=True, lock_visibility="private")

    member_view = await gallery.list_collections(session, tenant_id=tenant_id, principal_id=member)
    assert [view.id for view in member_view] == [open_id]
    with pytest.raises(NotFound):
        await gallery.get_collection(session, tenant_id=tenant_id, principal_id=member, collection_id=hidden_id)

    admin_view = await gallery.list_collections(
        session, tenant_id=tenant_id, principal_id=owner, include_locked=True
    )
    badges = {view.id: view.locked for view in admin_view}
    assert badges == {open_id: False, hidden_id: True}


@pytest.mark.asyncio
async def test_gallery_listing_omits_private_locks_even_for_managers(session) -> None:
    tenant_id, owner = await seed_tenant()
    open_id = await seed_collection(tenant_id, created_by=owner)
    await seed_collection(tenant_id, created_by=owner, is_locked=True, lock_visibility="private")
    views = await gallery.list_collections(session, tenant_id=tenant_id, principal_id=owner)
    assert [view.id for view in views] == [open_id]


@pytest.mark.asyncio
async def test_include_locked_does_not_widen_member_view(session) -> None:
    tenant_id, owner = await seed_tenant()
    member = await add_member(tenant_id)
    await seed_collection(tenant_id, created_by=owner, is_locked=True, lock_visibility="private")
    views = await gallery.list_collections(
        session, tenant_id=tenant_id, principal_id=member, include_locked=True
    )
    assert views == []


@pytest.mark.asyncio
async def test_passed_schedule_unlocks_public_collection_without_writing(session) -> None:
    tenant_id, owner = await seed_tenant()
    member = await add_member(tenant_id)
    collection_id = await seed_collection(
        tenant_id,
        created_by=owner,
        is_locked=True,
        lock_visibility="public",
        unlock_at=_utc_now() - timedelta(days=1),
    )
    item_id = await seed_media(tenant_id, collection_id, uploaded_by=owner)
    view = await gallery.get_collection(
        session, tenant_id=tenant_id, principal_id=member, collection_id=collection_id
    )
    assert view.redacted is False
    assert [item.id for item in view.items] == [item_id]

    admin_view = await gallery.get_collection(
        session, tenant_id=tenant_id, principal_id=owner, collection_id=collection_id
    )
    assert admin_view.lock is not None
    assert admin_view.lock.is_locked is True
    assert admin_view.locked is False


@pytest.mark.asyncio
async def test_public_lock_projects_partial_view(session) -> None:
    tenant_id, owner = await seed_tenant()
    member = await add_member(tenant_id)
    unlock_at = _utc_now() + timedelta(days=1)
    collection_id = await seed_collection(
        tenant_id,
        created_by=owner,
        is_locked=True,
        lock_visibility="public",
        unlock_at=unlock_at,
        show_title=True,
        show_description=False,
        show_blurred_preview=True,
        blur_strength=90,
    )
    first = await seed_media(tenant_id, collection_id, uploaded_by=owner, sort_order=0)
    await seed_media(tenant_id, collection_id, uploaded_by=owner, sort_order=1)

    view = await gallery.get_collection(
        session, tenant_id=tenant_id, principal_id=member, collection_id=collection_id
    )
    assert view.redacted is True
    assert view.title == "Beach weekend"
    assert view.description is None
    assert view.items == ()
    assert view.preview is not None
    assert view.preview.media_id == first
    assert view.preview.blur_strength == 90
    assert view.unlock_at is not None
    assert abs((view.unlock_at - unlock_at).total_seconds()) < 1


@pytest.mark.asyncio
async def test_media_never_leaks_across_tenants(session) -> None:
    tenant_id, owner = await seed_tenant()
    other_tenant, other_owner = await seed_tenant()
    await add_member(other_tenant, principal_id=owner)
    collection_id = await seed_collection(tenant_id, created_by=owner)
    item_id = await seed_media(tenant_id, collection_id, uploaded_by=owner)

    found = await gallery.get_media_item(session, tenant_id=tenant_id, principal_id=owner, item_id=item_id)
    assert found.id == item_id
    # The same principal, a correct item id, but the wrong tenant.
    with pytest.raises(NotFound):
        await gallery.get_media_item(session, tenant_id=other_tenant, principal_id=owner, item_id=item_id)
    with pytest.raises(AccessDenied):
        await gallery.get_media_item(session, tenant_id=tenant_id, principal_id=other_owner, item_id=item_id)


@pytest.mark.asyncio
async def test_media_in_locked_collection_is_not_found_for_members(session) -> None:
    tenant_id, owner = await seed_tenant()
    member = await add_member(tenant_id)
    collection_id = await seed_collection(tenant_id, created_by=owner, is_locked=True, lock_visibility="public")
    item_id = await seed_media(tenant_id, collection_id, uploaded_by=owner)
    with pytest.raises(NotFound):
        await gallery.get_media_item(session, tenant_id=tenant_id, principal_id=member, item_id=item_id)
    found = await gallery.get_media_item(session, tenant_id=tenant_id, principal_id=owner, item_id=item_id)
    assert found.id == item_id


@pytest.mark.asyncio
async def test_pinned_collection_is_projected_per_viewer(session) -> None:
    tenant_id, owner = await seed_tenant()
    member = await add_member(tenant_id)
    collection_id = await seed_collection(tenant_id, created_by=owner, is_locked=True, lock_visibility="private")
    with pytest.raises(AccessDenied):
        await gallery.pin_collection(session, tenant_id=tenant_id, actor_id=member, collection_id=collection_id)
    with pytest.raises(NotFound):
        await gallery.pin_collection(session, tenant_id=tenant_id, actor_id=owner, collection_id="missing")

    await gallery.pin_collection(session, tenant_id=tenant_id, actor_id=owner, collection_id=collection_id)
    pinned = await gallery.get_pinned_collection(session, tenant_id=tenant_id, principal_id=owner)
    assert pinned is not None
    assert pinned.id == collection_id
    assert await gallery.get_pinned_collection(session, tenant_id=tenant_id, principal_id=member) is None


@pytest.mark.asyncio
async def test_spotlight_prefers_the_oldest_anniversary(session) -> None:
    tenant_id, owner = await seed_tenant()
    member = await add_member(tenant_id)
    today = date(2026, 10, 18)
    await seed_collection(tenant_id, created_by=owner, date_taken=datetime(2025, 3, 1, tzinfo=timezone.utc))
    recent = await seed_collection(
        tenant_id, created_by=owner, date_taken=datetime(2024, 10, 18, 12, tzinfo=timezone.utc)
    )
    oldest = await seed_collection(
        tenant_id, created_by=owner, date_taken=datetime(2021, 10, 18, 9, tzinfo=timezone.utc)
    )
    spotlight = await gallery.get_spotlight(session, tenant_id=tenant_id, principal_id=member, today=today)
    assert spotlight is not None
    assert spotlight.kind == "on_this_day"
    assert spotlight.years_ago == 5
    assert spotlight.collection.id == oldest
    assert spotlight.collection.id != recent


@pytest.mark.asyncio
async def test_spotlight_never_features_a_locked_collection(session) -> None:
    tenant_id, owner = await seed_tenant()
    member = await add_member(tenant_id)
    today = date(2026, 10, 18)
    anniversary = datetime(2020, 10, 18, tzinfo=timezone.utc)
    await seed_collection(
        tenant_id, created_by=owner, date_taken=anniversary, is_locked=True, lock_visibility="public"
    )
    await seed_collection(
        tenant_id, created_by=owner, date_taken=anniversary, is_locked=True, lock_visibility="private"
    )
    assert await gallery.get_spotlight(session, tenant_id=tenant_id, principal_id=member, today=today) is None
    # Managers see the badge but a locked collection is still not featured.
    assert await gallery.get_spotlight(session, tenant_id=tenant_id, principal_id=owner, today=today) is None

    open_id = await seed_collection(tenant_id, created_by=owner)
    spotlight = await gallery.get_spotlight(
        session, tenant_id=tenant_id, principal_id=member, today=today, rng=random.Random(7)
    )
    assert spotlight is not None
    assert spotlight.kind == "random"
    assert spotlight.years_ago is None
    assert spotlight.collection.id == open_id
