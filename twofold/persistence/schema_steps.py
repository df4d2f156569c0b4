from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.schema import CreateColumn

from twofold.persistence.migrations import MigrationStep


# Table shapes are frozen per step; later steps only add to them.
_metadata = sa.MetaData()


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


_tenants = sa.Table(
    "tenants",
    _metadata,
    sa.Column("id", sa.String(), primary_key=True),
    sa.Column("name", sa.String(255), nullable=False),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("slug", sa.String(100), nullable=False, unique=True),
    sa.Column("invite_code", sa.String(32), nullable=False, unique=True),
    sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("access_password_hash", sa.String(255), nullable=True),
    sa.Column("owner_principal_id", sa.String(255), nullable=False),
    *_timestamps(),
)

_memberships = sa.Table(
    "memberships",
    _metadata,
    sa.Column("id", sa.String(), primary_key=True),
    sa.Column("tenant_id", sa.String(), nullable=False),
    sa.Column("principal_id", sa.String(255), nullable=False),
    sa.Column("role", sa.String(32), nullable=False),
    sa.Column("can_upload", sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column("can_edit_others", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("can_manage", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("display_name", sa.String(255), nullable=True),
    sa.Column("email", sa.String(255), nullable=True),
    sa.Column("avatar_url", sa.Text(), nullable=True),
    sa.Column("joined_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    sa.Column("last_active_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    sa.UniqueConstraint("tenant_id", "principal_id", name="uq_memberships_tenant_principal"),
)

_invites = sa.Table(
    "invites",
    _metadata,
    sa.Column("id", sa.String(), primary_key=True),
    sa.Column("tenant_id", sa.String(), nullable=False),
    sa.Column("email", sa.String(255), nullable=False),
    sa.Column("token", sa.String(64), nullable=False, unique=True),
    sa.Column("message", sa.Text(), nullable=True),
    sa.Column("role", sa.String(32), nullable=False),
    sa.Column("can_upload", sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column("can_edit_others", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("can_manage", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("status", sa.String(16), nullable=False),
    sa.Column("invited_by_principal_id", sa.String(255), nullable=False),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("accepted_by_principal_id", sa.String(255), nullable=True),
)

# Collections start without lock configuration; 0003 adds it in place.
_memory_collections = sa.Table(
    "memory_collections",
    _metadata,
    sa.Column("id", sa.String(), primary_key=True),
    sa.Column("tenant_id", sa.String(), nullable=False),
    sa.Column("title", sa.String(255), nullable=True),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("date_taken", sa.DateTime(timezone=True), nullable=True),
    sa.Column("is_milestone", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("cover_media_id", sa.String(), nullable=True),
    sa.Column("created_by_principal_id", sa.String(255), nullable=False),
    *_timestamps(),
)

_media_items = sa.Table(
    "media_items",
    _metadata,
    sa.Column("id", sa.String(), primary_key=True),
    sa.Column("tenant_id", sa.String(), nullable=False),
    sa.Column("collection_id", sa.String(), nullable=True),
    sa.Column("storage_key", sa.String(512), nullable=False),
    sa.Column("storage_url", sa.Text(), nullable=False),
    sa.Column("filename", sa.String(255), nullable=False),
    sa.Column("original_name", sa.String(255), nullable=False),
    sa.Column("content_type", sa.String(100), nullable=True),
    sa.Column("size_bytes", sa.BigInteger(), nullable=True),
    sa.Column("width", sa.Integer(), nullable=True),
    sa.Column("height", sa.Integer(), nullable=True),
    sa.Column("duration_s", sa.Integer(), nullable=True),
    sa.Column("title", sa.String(255), nullable=True),
    sa.Column("note", sa.Text(), nullable=True),
    sa.Column("date_taken", sa.DateTime(timezone=True), nullable=True),
    sa.Column("latitude", sa.Float(), nullable=True),
    sa.Column("longitude", sa.Float(), nullable=True),
    sa.Column("place_name", sa.String(255), nullable=True),
    sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("uploaded_by_principal_id", sa.String(255), nullable=False),
    *_timestamps(),
)


async def _create_tables(conn: AsyncConnection, *tables: sa.Table) -> None:
    for table in tables:
        await conn.run_sync(table.create, checkfirst=True)


async def _add_missing_columns(conn: AsyncConnection, table_name: str, columns: list[sa.Column]) -> None:
    # Inspector-checked adds so a half-applied step can be re-run safely.
    existing = await conn.run_sync(
        lambda sync_conn: {column["name"] for column in sa.inspect(sync_conn).get_columns(table_name)}
    )
    preparer = conn.dialect.identifier_preparer
    for column in columns:
        if column.name in existing:
            continue
        sa.Table(table_name, sa.MetaData(), column)
        column_ddl = CreateColumn(column).compile(dialect=conn.dialect)
        await conn.execute(sa.text(f"ALTER TABLE {preparer.quote(table_name)} ADD COLUMN {column_ddl}"))


async def _create_indexes(conn: AsyncConnection, indexes: list[sa.Index]) -> None:
    for index in indexes:
        await conn.run_sync(index.create, checkfirst=True)


async def core_tables(conn: AsyncConnection) -> None:
    await _create_tables(conn, _tenants, _memberships, _invites)


async def collections_and_media(conn: AsyncConnection) -> None:
    await _create_tables(conn, _memory_collections, _media_items)


async def collection_lock_config(conn: AsyncConnection) -> None:
    await _add_missing_columns(
        conn,
        "memory_collections",
        [
            sa.Column("is_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("lock_visibility", sa.String(16), nullable=False, server_default="private"),
            sa.Column("unlock_type", sa.String(16), nullable=False, server_default="scheduled"),
            sa.Column("unlock_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("unlock_hint", sa.Text(), nullable=True),
            sa.Column("task_description", sa.Text(), nullable=True),
            sa.Column("task_completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("show_title", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("show_description", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("show_item_count", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("show_created_date", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("show_blurred_preview", sa.Boolean(), nullable=False, server_default=sa.false()),
            # Stored as the 0-100 percentage, never a renderer unit.
            sa.Column("blur_strength", sa.Integer(), nullable=False, server_default=sa.text("80")),
        ],
    )


async def tenant_profile(conn: AsyncConnection) -> None:
    await _add_missing_columns(
        conn,
        "tenants",
        [
            sa.Column("anniversary_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("location_origin", sa.Text(), nullable=True),
            sa.Column("cover_photo_url", sa.Text(), nullable=True),
            sa.Column("pinned_collection_id", sa.String(), nullable=True),
        ],
    )


async def lookup_indexes(conn: AsyncConnection) -> None:
    # Bind index definitions to fresh reflected tables so they pick up columns added by 0003.
    def _reflect(sync_conn) -> dict[str, sa.Table]:
        reflected = sa.MetaData()
        reflected.reflect(
            bind=sync_conn,
            only=["tenants", "memberships", "invites", "memory_collections", "media_items"],
        )
        return dict(reflected.tables)

    tables = await conn.run_sync(_reflect)
    memberships = tables["memberships"]
    invites = tables["invites"]
    collections = tables["memory_collections"]
    media = tables["media_items"]
    tenants = tables["tenants"]
    await _create_indexes(
        conn,
        [
            sa.Index("ix_tenants_owner_principal_id", tenants.c.owner_principal_id),
            sa.Index("ix_memberships_tenant_id", memberships.c.tenant_id),
            sa.Index("ix_memberships_principal_id", memberships.c.principal_id),
            sa.Index("ix_invites_tenant_id", invites.c.tenant_id),
            sa.Index("ix_invites_email", invites.c.email),
            sa.Index("ix_invites_status", invites.c.status),
            sa.Index("ix_memory_collections_tenant_id", collections.c.tenant_id),
            sa.Index("ix_memory_collections_created_by_principal_id", collections.c.created_by_principal_id),
            sa.Index("ix_media_items_tenant_id", media.c.tenant_id),
            sa.Index("ix_media_items_collection_id", media.c.collection_id),
            sa.Index("ix_media_items_uploaded_by_principal_id", media.c.uploaded_by_principal_id),
        ],
    )


STEPS: tuple[MigrationStep, ...] = (
    MigrationStep("0001_core_tables", core_tables),
    MigrationStep("0002_collections_and_media", collections_and_media),
    MigrationStep("0003_collection_lock_config", collection_lock_config),
    MigrationStep("0004_tenant_profile", tenant_profile),
    MigrationStep("0005_lookup_indexes", lookup_indexes),
)
