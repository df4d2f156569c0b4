from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from twofold.core.logging import configure_logging
from twofold.persistence.db import SessionLocal, engine
from twofold.services import directory, media, unlock


DEMO_OWNER_ID = "demo-owner"
DEMO_OWNER_EMAIL = "owner@demo.twofold"
DEMO_PARTNER_EMAIL = "partner@demo.twofold"


@dataclass(frozen=True)
class DemoCollection:
    # One collection per lock state.
    draft: unlock.NewCollection
    photos: tuple[str, ...]


def build_demo_collections(now: datetime) -> tuple[DemoCollection, ...]:
    return (
        DemoCollection(
            draft=unlock.NewCollection(title="First trip", description="Open to everyone in the tenant."),
            photos=("harbour.jpg", "sunset.jpg"),
        ),
        DemoCollection(
            draft=unlock.NewCollection(
                title="Anniversary surprise",
                description="Public teaser until the big day.",
                is_locked=True,
                lock_visibility="public",
                unlock_at=now + timedelta(days=30),
                unlock_hint="Opens on our anniversary",
                show_title=True,
                show_item_count=True,
                show_blurred_preview=True,
                blur_strength=90,
            ),
            photos=("ring.jpg",),
        ),
        DemoCollection(
            draft=unlock.NewCollection(
                title="Scavenger hunt",
                description="Unlocks once the task is done.",
                is_locked=True,
                lock_visibility="public",
                unlock_type="task_based",
                task_description="Find the note under the plant",
                show_title=True,
            ),
            photos=("clue.jpg",),
        ),
        DemoCollection(
            draft=unlock.NewCollection(
                title="Letters for later",
                description="Hidden until an admin opens it.",
                is_locked=True,
                lock_visibility="private",
            ),
            photos=("letter.jpg",),
        ),
    )


async def seed_demo() -> int:
    configure_logging()
    now = datetime.now(timezone.utc)
    try:
        async with SessionLocal() as session:
            tenant = await directory.create_tenant(
                session,
                principal_id=DEMO_OWNER_ID,
                name="Demo Couple",
                description="Seeded demo tenant",
                email=DEMO_OWNER_EMAIL,
            )
            invite = await directory.create_invite(
                session, tenant_id=tenant.id, inviter_id=DEMO_OWNER_ID, email=DEMO_PARTNER_EMAIL
            )
            for demo in build_demo_collections(now):
                collection = await unlock.create_collection(
                    session, tenant_id=tenant.id, actor_id=DEMO_OWNER_ID, draft=demo.draft
                )
                for photo in demo.photos:
                    await media.add_media_item(
                        session,
                        tenant_id=tenant.id,
                        collection_id=collection.id,
                        actor_id=DEMO_OWNER_ID,
                        item=media.NewMediaItem(
                            storage_key=f"demo/{photo}",
                            storage_url=f"https://media.demo.twofold/{photo}",
                            filename=photo,
                            original_name=photo,
                            content_type="image/jpeg",
                        ),
                    )
    finally:
        await engine.dispose()
    print(f"Seeded tenant {tenant.id} ({tenant.slug})")
    print(f"Partner invite token for {DEMO_PARTNER_EMAIL}: {invite.token}")
    return 0


def main() -> int:
    return asyncio.run(seed_demo())


if __name__ == "__main__":
    raise SystemExit(main())
