# tests/test_task_store.py

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from timetable_scheduler.errors import ValidationError
from timetable_scheduler.task_store import TaskStore
from timetable_scheduler.user_store import UserStore


@pytest.fixture()
def owners(users: UserStore) -> tuple[int, int]:
    a = users.create("Alice", "alice@school.edu", "secret123")
    b = users.create("Bob", "bob@school.edu", "secret123")
    return a.id, b.id


def test_create_applies_defaults(tasks: TaskStore, owners) -> None:
    alice, _ = owners
    before = datetime.now() - timedelta(seconds=1)

    task = tasks.create({"name": " Read chapter 3 ", "duration": 45}, alice)

    assert task.name == "Read chapter 3"
    assert task.priority == "Medium"
    assert task.category == "General"
    assert task.completed is False
    assert task.user_id == alice
    assert before <= task.date <= datetime.now() + timedelta(seconds=1)


@pytest.mark.parametrize(
    "fields,message",
    [
        ({"duration": 30}, "Field required"),
        ({"name": "", "duration": 30}, "Please provide a task name"),
        ({"name": "x" * 101, "duration": 30}, "Task name cannot be more than 100 characters"),
        ({"name": "Read", "duration": 0}, "Duration must be at least 1 minute"),
    ],
)
def test_create_validation(tasks: TaskStore, owners, fields, message) -> None:
    with pytest.raises(ValidationError) as ei:
        tasks.create(fields, owners[0])
    assert ei.value.message == message


def test_create_rejects_unknown_priority(tasks: TaskStore, owners) -> None:
    with pytest.raises(ValidationError):
        tasks.create({"name": "Read", "duration": 30, "priority": "Urgent"}, owners[0])


def test_list_by_owner_is_newest_first_and_scoped(tasks: TaskStore, owners) -> None:
    alice, bob = owners
    tasks.create({"name": "old", "duration": 10, "date": datetime(2026, 10, 1, 9)}, alice)
    tasks.create({"name": "new", "duration": 10, "date": datetime(2026, 10, 5, 9)}, alice)
    tasks.create({"name": "mid", "duration": 10, "date": datetime(2026, 10, 3, 9)}, alice)
    tasks.create({"name": "bobs", "duration": 10, "date": datetime(2026, 10, 4, 9)}, bob)

    assert [t.name for t in tasks.list_by_owner(alice)] == ["new", "mid", "old"]
    assert [t.name for t in tasks.list_by_owner(bob)] == ["bobs"]


def test_list_by_owner_completed_filter(tasks: TaskStore, owners) -> None:
    alice, _ = owners
    done = tasks.create({"name": "done", "duration": 10}, alice)
    tasks.create({"name": "todo", "duration": 10}, alice)
    tasks.update(done.id, alice, {"completed": True})

    assert [t.name for t in tasks.list_by_owner(alice, completed=True)] == ["done"]
    assert [t.name for t in tasks.list_by_owner(alice, completed=False)] == ["todo"]


def test_date_range_is_inclusive_and_ascending(tasks: TaskStore, owners) -> None:
    alice, _ = owners
    start = datetime(2026, 10, 19)
    end = datetime(2026, 10, 20, 23, 59, 59, 999999)
    tasks.create({"name": "before", "duration": 10, "date": start - timedelta(microseconds=1)}, alice)
    tasks.create({"name": "at-end", "duration": 10, "date": end}, alice)
    tasks.create({"name": "at-start", "duration": 10, "date": start}, alice)
    tasks.create({"name": "after", "duration": 10, "date": end + timedelta(microseconds=1)}, alice)

    assert [t.name for t in tasks.list_by_date_range(alice, start, end)] == ["at-start", "at-end"]

    with pytest.raises(ValidationError):
        tasks.list_by_date_range(alice, end, start)


def test_list_today(tasks: TaskStore, owners) -> None:
    alice, _ = owners
    now = datetime(2026, 10, 19, 15, 0)
    tasks.create({"name": "morning", "duration": 10, "date": datetime(2026, 10, 19, 0, 0)}, alice)
    tasks.create({"name": "night", "duration": 10, "date": datetime(2026, 10, 19, 23, 59)}, alice)
    tasks.create({"name": "tomorrow", "duration": 10, "date": datetime(2026, 10, 20, 0, 0)}, alice)

    assert [t.name for t in tasks.list_today(alice, now=now)] == ["morning", "night"]


def test_update_changes_only_allowed_fields(tasks: TaskStore, owners) -> None:
    alice, bob = owners
    task = tasks.create({"name": "Read", "duration": 30}, alice)

    updated = tasks.update(task.id, alice, {"completed": True, "duration": 50, "user_id": bob, "id": 999})
    assert updated.completed is True
    assert updated.duration == 50
    assert updated.user_id == alice
    assert updated.id == task.id


def test_update_without_changes_returns_record(tasks: TaskStore, owners) -> None:
    alice, _ = owners
    task = tasks.create({"name": "Read", "duration": 30}, alice)
    same = tasks.update(task.id, alice, {"unknown": 1})
    assert same == task


def test_update_rejects_bad_values(tasks: TaskStore, owners) -> None:
    alice, _ = owners
    task = tasks.create({"name": "Read", "duration": 30}, alice)

    with pytest.raises(ValidationError) as ei:
        tasks.update(task.id, alice, {"name": None})
    assert ei.value.message == "name cannot be null"

    with pytest.raises(ValidationError):
        tasks.update(task.id, alice, {"duration": 0})

    assert tasks.list_by_owner(alice)[0].duration == 30


def test_foreign_task_behaves_like_missing(tasks: TaskStore, owners) -> None:
    alice, bob = owners
    task = tasks.create({"name": "Read", "duration": 30}, alice)

    assert tasks.update(task.id, bob, {"completed": True}) is None
    assert tasks.update(424242, alice, {"completed": True}) is None
    assert tasks.update("not-a-number", alice, {"completed": True}) is None
    assert tasks.delete(task.id, bob) is False
    assert tasks.list_by_owner(alice)[0].completed is False


def test_delete(tasks: TaskStore, owners) -> None:
    alice, _ = owners
    task = tasks.create({"name": "Read", "duration": 30}, alice)
    assert tasks.delete(task.id, alice) is True
    assert tasks.delete(task.id, alice) is False
    assert tasks.list_by_owner(alice) == []


def test_stats_through_store(tasks: TaskStore, owners) -> None:
    alice, _ = owners
    now = datetime(2026, 10, 21, 12, 0)
    t = tasks.create({"name": "a", "duration": 60, "date": datetime(2026, 10, 21, 9)}, alice)
    tasks.create({"name": "b", "duration": 30, "date": datetime(2026, 10, 22, 9)}, alice)
    tasks.update(t.id, alice, {"completed": True})

    stats = tasks.stats(alice, now=now)
    assert stats.total == 2
    assert stats.completed == 1
    assert stats.today_total == 1
    assert stats.today_completed == 1
    assert stats.weekly_hours == 2


def test_list_due_reminders_groups_incomplete_today(tasks: TaskStore, owners) -> None:
    alice, bob = owners
    now = datetime(2026, 10, 19, 8, 0)
    tasks.create({"name": "a1", "duration": 10, "date": datetime(2026, 10, 19, 9)}, alice)
    done = tasks.create({"name": "a2", "duration": 10, "date": datetime(2026, 10, 19, 10)}, alice)
    tasks.update(done.id, alice, {"completed": True})
    tasks.create({"name": "b1", "duration": 10, "date": datetime(2026, 10, 19, 11)}, bob)
    tasks.create({"name": "b-tomorrow", "duration": 10, "date": datetime(2026, 10, 20, 11)}, bob)

    due = tasks.list_due_reminders(now=now)
    assert {k: [t.name for t in v] for k, v in due.items()} == {alice: ["a1"], bob: ["b1"]}
