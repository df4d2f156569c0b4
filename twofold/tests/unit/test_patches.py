from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from twofold.core.errors import ValidationError
from twofold.domain.state import UNSET, Capabilities, Role, parse_role
from twofold.services.media import MediaPatch
from twofold.services.unlock import CollectionPatch, PATCH_FIELDS, validate_lock_config


def test_empty_patch_yields_nothing() -> None:
    patch = CollectionPatch()
    assert patch.is_empty()
    assert list(patch.items()) == []
    assert not patch.touches_lock()
    assert not patch.touches_content()


def test_patch_keeps_explicit_none_apart_from_unset() -> None:
    # None clears a field; UNSET leaves it alone.
    patch = CollectionPatch(description=None, show_title=True)
    assert dict(patch.items()) == {"description": None, "show_title": True}
    assert patch.title is UNSET
    assert patch.touches_lock()
    assert patch.touches_content()


def test_patch_iterates_in_fixed_field_order() -> None:
    patch = CollectionPatch(blur_strength=50, title="x", is_locked=False)
    names = [name for name, _ in patch.items()]
    assert names == sorted(names, key=PATCH_FIELDS.index)


def test_media_patch_iteration() -> None:
    patch = MediaPatch(note="hello", latitude=None)
    assert dict(patch.items()) == {"note": "hello", "latitude": None}


def test_task_lock_cannot_carry_unlock_time() -> None:
    state = {
        "is_locked": True,
        "unlock_type": "task_based",
        "unlock_at": datetime.now(timezone.utc) + timedelta(days=1),
        "task_description": "Cook dinner",
    }
    with pytest.raises(ValidationError):
        validate_lock_config(state)


def test_locked_task_needs_description() -> None:
    state = {"is_locked": True, "unlock_type": "task_based", "unlock_at": None, "task_description": "  "}
    with pytest.raises(ValidationError):
        validate_lock_config(state)
    validate_lock_config({**state, "is_locked": False})


def test_capabilities_for_role() -> None:
    admin = Capabilities.for_role(Role.admin)
    member = Capabilities.for_role(Role.participant)
    assert admin == Capabilities(can_upload=True, can_edit_others=True, can_manage=True)
    assert member == Capabilities(can_upload=True, can_edit_others=False, can_manage=False)


def test_parse_role_normalizes_and_rejects_unknown() -> None:
    assert parse_role(" Admin ") is Role.admin
    with pytest.raises(ValueError):
        parse_role("owner")
