from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class Role(str, Enum):
    admin = "admin"
    participant = "participant"


class InviteStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    expired = "expired"
    revoked = "revoked"


class LockVisibility(str, Enum):
    # private: hidden from non-managers while locked; public: listed but redacted.
    private = "private"
    public = "public"


class UnlockType(str, Enum):
    scheduled = "scheduled"
    task_based = "task_based"


@dataclass(frozen=True)
class Capabilities:
    # Fixed capability record; adding a field forces every constructor site to change.
    can_upload: bool
    can_edit_others: bool
    can_manage: bool

    @classmethod
    def for_role(cls, role: Role) -> "Capabilities":
        # Admins get everything; participants may upload their own memories only.
        if role == Role.admin:
            return cls(can_upload=True, can_edit_others=True, can_manage=True)
        return cls(can_upload=True, can_edit_others=False, can_manage=False)


def parse_role(value: str) -> Role:
    # Normalize role strings from requests and rows into the closed vocabulary.
    try:
        return Role(value.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported role: {value}") from exc


def as_utc(value: datetime | None) -> datetime | None:
    # Stores that drop tz info (SQLite) hand back naive values; they were written as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Unset(Enum):
    # Marks a patch field the caller did not send; distinct from an explicit None.
    token = "UNSET"

    def __repr__(self) -> str:
        return "UNSET"


UNSET = Unset.token
