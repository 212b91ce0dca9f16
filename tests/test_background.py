# tests/test_background.py

from __future__ import annotations

import asyncio
import threading
from datetime import datetime

import pytest

from timetable_scheduler.background import (
    build_reminder,
    flush_once,
    run_flush_loop,
    run_reminder_loop,
    send_reminders_once,
)
from timetable_scheduler.database import Database
from timetable_scheduler.task_store import TaskStore
from timetable_scheduler.user_store import UserStore

from .fakes import FakeNotifier, make_task

TODAY = datetime(2026, 10, 19, 8, 0)


@pytest.fixture()
def owners(database: Database) -> tuple[int, int]:
    with database.session() as db:
        users, tasks = UserStore(db), TaskStore(db)
        a = users.create("Alice", "alice@school.edu", "secret123")
        b = users.create("Bob", "bob@school.edu", "secret123")
        tasks.create({"name": "Essay", "duration": 60, "date": datetime(2026, 10, 19, 10)}, a.id)
        tasks.create({"name": "Quiz", "duration": 30, "date": datetime(2026, 10, 19, 14)}, a.id)
        tasks.create({"name": "Run", "duration": 30, "date": datetime(2026, 10, 20, 7)}, b.id)
        return a.id, b.id


def test_build_reminder() -> None:
    one = [make_task(name="Essay", when=TODAY)]
    assert build_reminder(one) == ("1 task left today", "Essay")

    many = [make_task(name=f"T{i}", task_id=i, when=TODAY) for i in range(5)]
    assert build_reminder(many) == ("5 tasks left today", "T0, T1, T2 and 2 more")


def test_flush_once(database: Database) -> None:
    assert flush_once(database) is True


@pytest.mark.asyncio
async def test_send_reminders_once(database: Database, owners) -> None:
    alice, _ = owners
    notifier = FakeNotifier()

    sent = await send_reminders_once(database, notifier, now=TODAY)

    assert sent == 1
    assert notifier.sent[0].user_id == alice
    assert notifier.sent[0].title == "2 tasks left today"
    assert notifier.sent[0].body == "Essay, Quiz"


@pytest.mark.asyncio
async def test_failed_delivery_is_not_counted(database: Database, owners) -> None:
    alice, _ = owners
    notifier = FakeNotifier(fail_for={alice})

    assert await send_reminders_once(database, notifier, now=TODAY) == 0


@pytest.mark.asyncio
async def test_reminder_loop_runs_until_cancelled(database: Database, owners) -> None:
    notifier = FakeNotifier()
    job = asyncio.create_task(
        run_reminder_loop(database, notifier, interval_seconds=0.1, clock=lambda: TODAY)
    )
    await asyncio.sleep(0.35)
    job.cancel()
    with pytest.raises(asyncio.CancelledError):
        await job

    assert len(notifier.sent) >= 2


class ThreadRecordingDatabase:
    """Stands in for ``Database`` in the flush loop; remembers which thread flushed."""

    def __init__(self) -> None:
        self.threads: list[int] = []

    def flush(self) -> None:
        self.threads.append(threading.get_ident())


@pytest.mark.asyncio
async def test_flush_loop_runs_off_the_event_loop() -> None:
    database = ThreadRecordingDatabase()
    job = asyncio.create_task(run_flush_loop(database, interval_seconds=0.1))
    await asyncio.sleep(0.25)
    job.cancel()
    with pytest.raises(asyncio.CancelledError):
        await job

    assert database.threads
    assert threading.get_ident() not in database.threads


@pytest.mark.asyncio
async def test_reminder_scan_runs_off_the_event_loop(
    database: Database, owners, monkeypatch: pytest.MonkeyPatch
) -> None:
    threads: list[int] = []
    open_session = database.session

    def recording_session():
        threads.append(threading.get_ident())
        return open_session()

    monkeypatch.setattr(database, "session", recording_session)

    assert await send_reminders_once(database, FakeNotifier(), now=TODAY) == 1
    assert threads and threading.get_ident() not in threads
