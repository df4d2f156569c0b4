from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
import logging
import random

from sqlalchemy.ext.asyncio import AsyncSession

from twofold.core.errors import NotFound
from twofold.domain.state import as_utc
from twofold.persistence.repos import collections as collections_repo
from twofold.persistence.repos import media as media_repo
from twofold.persistence.repos import tenants as tenants_repo
from twofold.services.directory import require_manage, resolve_membership
from twofold.services.resilience import store_transaction, with_store_retry
from twofold.services.unlock import collection_locked_effective, is_hidden_from
from twofold.services.visibility import CollectionView, MediaView, media_view, project_collection


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def list_collections(
    session: AsyncSession,
    *,
    tenant_id: str,
    principal_id: str,
    include_locked: bool = False,
) -> list[CollectionView]:
    """List collections as this principal may see them.

    ``include_locked=False`` is the gallery listing: private-locked
    collections are left out even for managers. ``include_locked=True`` is
    the admin listing and only widens the result for managers.
    """
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=principal_id)
    viewer = membership.capabilities

    async def _op():
        collections = await collections_repo.list_collections(session, tenant_id=tenant_id)
        items = await media_repo.list_items_for_collections(
            session, tenant_id=tenant_id, collection_ids=[collection.id for collection in collections]
        )
        return collections, items

    collections, items = await with_store_retry(session, _op, label="list_collections")
    # Evaluated per call; lock state is never cached between requests.
    now = _utc_now()
    views: list[CollectionView] = []
    for collection in collections:
        if not include_locked and is_hidden_from(collection, now=now, can_manage=False):
            continue
        view = project_collection(collection, items.get(collection.id, []), now=now, viewer=viewer)
        if view is not None:
            views.append(view)
    return views


async def get_collection(
    session: AsyncSession, *, tenant_id: str, principal_id: str, collection_id: str
) -> CollectionView:
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=principal_id)

    async def _op():
        collection = await collections_repo.get_collection(
            session, tenant_id=tenant_id, collection_id=collection_id
        )
        if collection is None:
            return None, []
        return collection, await media_repo.list_items(
            session, tenant_id=tenant_id, collection_id=collection_id
        )

    collection, items = await with_store_retry(session, _op, label="get_collection")
    if collection is None:
        raise NotFound("Collection not found")
    view = project_collection(collection, items, now=_utc_now(), viewer=membership.capabilities)
    if view is None:
        raise NotFound("Collection not found")
    return view


async def get_media_item(
    session: AsyncSession, *, tenant_id: str, principal_id: str, item_id: str
) -> MediaView:
    # Items never leak through a locked collection; non-managers get NotFound either way.
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=principal_id)

    async def _op():
        item = await media_repo.get_media_item(session, tenant_id=tenant_id, item_id=item_id)
        if item is None or item.collection_id is None:
            return item, None
        return item, await collections_repo.get_collection(
            session, tenant_id=tenant_id, collection_id=item.collection_id
        )

    item, collection = await with_store_retry(session, _op, label="get_media_item")
    if item is None:
        raise NotFound("Media item not found")
    if collection is not None and not membership.capabilities.can_manage:
        now = _utc_now()
        if is_hidden_from(collection, now=now, can_manage=False) or collection_locked_effective(collection, now):
            raise NotFound("Media item not found")
    return media_view(item)


async def pin_collection(
    session: AsyncSession, *, tenant_id: str, actor_id: str, collection_id: str | None
) -> str | None:
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=actor_id)
    require_manage(membership)

    async def _op() -> None:
        if collection_id is not None:
            collection = await collections_repo.get_collection(
                session, tenant_id=tenant_id, collection_id=collection_id
            )
            if collection is None:
                raise NotFound("Collection not found")
        await tenants_repo.set_pinned_collection(session, tenant_id=tenant_id, collection_id=collection_id)

    await store_transaction(session, _op, label="pin_collection")
    logger.info("collection_pinned tenant_id=%s collection_id=%s", tenant_id, collection_id)
    return collection_id


async def get_pinned_collection(
    session: AsyncSession, *, tenant_id: str, principal_id: str
) -> CollectionView | None:
    # The pin is just a pointer; what the viewer gets still goes through the projector.
    membership = await resolve_membership(session, tenant_id=tenant_id, principal_id=principal_id)

    async def _op() -> str | None:
        tenant = await tenants_repo.get_tenant(session, tenant_id)
        return tenant.pinned_collection_id if tenant is not None else None

    pinned_id = await with_store_retry(session, _op, label="get_pinned_collection")
    if pinned_id is None:
        return None
    try:
        return await get_collection(
            session, tenant_id=tenant_id, principal_id=membership.principal_id, collection_id=pinned_id
        )
    except NotFound:
        return None


@dataclass(frozen=True)
class Spotlight:
    kind: str  # "on_this_day" or "random"
    years_ago: int | None
    collection: CollectionView


def _years_ago(view: CollectionView, today: date) -> int | None:
    taken = as_utc(view.date_taken)
    if taken is None or (taken.month, taken.day) != (today.month, today.day):
        return None
    years = today.year - taken.year
    return years if years > 0 else None


async def get_spotlight(
    session: AsyncSession,
    *,
    tenant_id: str,
    principal_id: str,
    today: date | None = None,
    rng: random.Random | None = None,
) -> Spotlight | None:
    """Pick one collection to feature: an "on this day" anniversary, else a random one.

    Candidates come from the gallery listing, so they are already projected
    for this viewer; locked and redacted collections are never featured.
    """
    views = await list_collections(session, tenant_id=tenant_id, principal_id=principal_id)
    candidates = [view for view in views if not view.locked and not view.redacted]
    if not candidates:
        return None
    today = today or _utc_now().date()
    anniversaries = []
    for view in candidates:
        years = _years_ago(view, today)
        if years is not None:
            anniversaries.append((years, view))
    if anniversaries:
        # The oldest memory wins; ties fall back to listing order.
        years, view = max(anniversaries, key=lambda pair: pair[0])
        return Spotlight(kind="on_this_day", years_ago=years, collection=view)
    choose = rng.choice if rng is not None else random.choice
    return Spotlight(kind="random", years_ago=None, collection=choose(candidates))
