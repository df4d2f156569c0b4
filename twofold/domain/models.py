from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
    text,
    true,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from twofold.core.errors import TenantMismatchError
from twofold.domain.state import Capabilities


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class TenantStamped:
    # Rows carry their own tenant stamp; it is never re-derived from a parent after creation.

    @validates("tenant_id")
    def _validate_tenant_id(self, _key: str, value: str) -> str:
        current = self.__dict__.get("tenant_id")
        if current is not None and current != value:
            raise TenantMismatchError(
                f"{type(self).__name__} tenant_id is immutable once stamped"
            )
        return value


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Slug and invite code are globally unique handles for links.
    slug: Mapped[str] = mapped_column(String(100), unique=True)
    invite_code: Mapped[str] = mapped_column(String(32), unique=True)
    is_public: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    # Store only a salted hash of the optional share password.
    access_password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    owner_principal_id: Mapped[str] = mapped_column(String(255), index=True)
    anniversary_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    location_origin: Mapped[str | None] = mapped_column(Text, nullable=True)
    cover_photo_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Single pinned collection shown on the dashboard; still projected per viewer.
    pinned_collection_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class Membership(TenantStamped, Base):
    __tablename__ = "memberships"
    __table_args__ = (
        UniqueConstraint("tenant_id", "principal_id", name="uq_memberships_tenant_principal"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    principal_id: Mapped[str] = mapped_column(String(255), index=True)
    role: Mapped[str] = mapped_column(String(32))
    can_upload: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true())
    can_edit_others: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    can_manage: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    # Display metadata cached from the identity provider at join time.
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())
    last_active_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())

    @property
    def capabilities(self) -> Capabilities:
        return Capabilities(
            can_upload=bool(self.can_upload),
            can_edit_others=bool(self.can_edit_others),
            can_manage=bool(self.can_manage),
        )

    def apply_capabilities(self, capabilities: Capabilities) -> None:
        self.can_upload = capabilities.can_upload
        self.can_edit_others = capabilities.can_edit_others
        self.can_manage = capabilities.can_manage


class Invite(TenantStamped, Base):
    __tablename__ = "invites"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[str] = mapped_column(String(255), index=True)
    # Single-use secret; only the invitee should ever see it.
    token: Mapped[str] = mapped_column(String(64), unique=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    role: Mapped[str] = mapped_column(String(32))
    can_upload: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true())
    can_edit_others: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    can_manage: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    status: Mapped[str] = mapped_column(String(16), index=True)
    invited_by_principal_id: Mapped[str] = mapped_column(String(255))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())
    # Set together with status=accepted and never otherwise.
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_by_principal_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @property
    def capabilities(self) -> Capabilities:
        return Capabilities(
            can_upload=bool(self.can_upload),
            can_edit_others=bool(self.can_edit_others),
            can_manage=bool(self.can_manage),
        )


class MemoryCollection(TenantStamped, Base):
    __tablename__ = "memory_collections"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    date_taken: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_milestone: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    cover_media_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_by_principal_id: Mapped[str] = mapped_column(String(255), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )

    # Lock configuration; effective lock state is derived at read time, never stored.
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    lock_visibility: Mapped[str] = mapped_column(String(16), default="private", server_default="private")
    unlock_type: Mapped[str] = mapped_column(String(16), default="scheduled", server_default="scheduled")
    unlock_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    unlock_hint: Mapped[str | None] = mapped_column(Text, nullable=True)
    task_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    task_completed: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    show_title: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    show_description: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    show_item_count: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    show_created_date: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    show_blurred_preview: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    # Stored as a 0-100 percentage; renderers map it to their own unit.
    blur_strength: Mapped[int] = mapped_column(Integer, default=80, server_default=text("80"))


class MediaItem(TenantStamped, Base):
    __tablename__ = "media_items"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    # Nullable only while an upload is being attached to its collection.
    collection_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    storage_key: Mapped[str] = mapped_column(String(512))
    storage_url: Mapped[str] = mapped_column(Text)
    filename: Mapped[str] = mapped_column(String(255))
    original_name: Mapped[str] = mapped_column(String(255))
    content_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_s: Mapped[int | None] = mapped_column(Integer, nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    date_taken: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    place_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    uploaded_by_principal_id: Mapped[str] = mapped_column(String(255), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class MigrationRecord(Base):
    __tablename__ = "schema_migrations"

    # Append-only ledger; one row per applied schema step.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, server_default=func.now())
