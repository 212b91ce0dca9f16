# tests/test_mirror.py

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from timetable_scheduler.mirror import LocalMirror, is_offline_id, new_offline_id
from timetable_scheduler.schemas import UserRecord, UserWithHash

from .fakes import make_task


def test_offline_ids() -> None:
    a, b = new_offline_id(), new_offline_id()
    assert a != b
    assert is_offline_id(a)
    assert not is_offline_id(42)
    assert not is_offline_id("42")


def test_tasks_are_owner_scoped() -> None:
    mirror = LocalMirror()
    mirror.add_task(make_task(task_id="offline_a", user_id=1, when=datetime(2026, 10, 19, 9)))
    mirror.add_task(make_task(task_id="offline_b", user_id=2, when=datetime(2026, 10, 19, 9)))

    assert [t.id for t in mirror.list_tasks(1)] == ["offline_a"]
    assert mirror.update_task("offline_b", 1, {"completed": True}) is None
    assert mirror.delete_task("offline_b", 1) is False
    assert mirror.delete_task("offline_b", 2) is True
    assert mirror.list_tasks(2) == []


def test_update_revalidates() -> None:
    mirror = LocalMirror()
    mirror.add_task(make_task(task_id="offline_a", when=datetime(2026, 10, 19, 9)))

    with pytest.raises(PydanticValidationError):
        mirror.update_task("offline_a", 1, {"priority": "Urgent"})
    assert mirror.list_tasks(1)[0].priority == "Medium"

    updated = mirror.update_task("offline_a", 1, {"name": "Renamed"})
    assert updated.name == "Renamed"
    assert updated.updated_at is not None


def test_session_and_tokens(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "mirror.json"
    mirror = LocalMirror(path)
    user = UserWithHash(id="offline_u", name="Alice", email="alice@school.edu", hashed_password="h")
    mirror.add_user(user)
    token = mirror.issue_token(user.id)
    mirror.set_session(token, UserRecord(id=user.id, name=user.name, email=user.email))

    reloaded = LocalMirror(path)
    assert reloaded.get_token() == token
    assert reloaded.get_session_user().name == "Alice"
    assert reloaded.user_for_token(token).hashed_password == "h"
    assert reloaded.find_user_by_email("ALICE@school.edu").id == "offline_u"

    reloaded.revoke_token(token)
    reloaded.clear_session()
    assert LocalMirror(path).user_for_token(token) is None
    assert LocalMirror(path).get_session_user() is None


def test_corrupt_file_loads_empty(tmp_path: Path) -> None:
    path = tmp_path / "mirror.json"
    path.write_text("{not json", encoding="utf-8")

    mirror = LocalMirror(path)

    assert mirror.get_token() is None
    assert mirror.list_tasks(1) == []
