"""
Periodic background jobs.

- flush loop: asks the database to write pending pages to disk. Every
  mutating store call already commits, so a skipped tick loses nothing.
- reminder loop: finds incomplete tasks scheduled for today and hands each
  owner's batch to a notifier.

Both loops run until cancelled and never raise out of a tick.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

from starlette.concurrency import run_in_threadpool

from .database import Database
from .schemas import TaskRecord
from .task_store import TaskStore

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, *, user_id: int, title: str, body: str) -> None: ...


class LogNotifier:
    """Default notifier: one log record per reminder."""

    async def notify(self, *, user_id: int, title: str, body: str) -> None:
        logger.info("Reminder user=%s %s: %s", user_id, title, body)


def build_reminder(tasks: List[TaskRecord]) -> tuple[str, str]:
    n = len(tasks)
    title = f"{n} task{'s' if n != 1 else ''} left today"
    names = ", ".join(t.name for t in tasks[:3])
    if n > 3:
        names += f" and {n - 3} more"
    return title, names


def flush_once(database: Database) -> bool:
    try:
        database.flush()
        return True
    except Exception:
        logger.exception("Database flush failed")
        return False


async def run_flush_loop(database: Database, *, interval_seconds: float = 5.0) -> None:
    sleep_s = max(0.1, float(interval_seconds))
    while True:
        await asyncio.sleep(sleep_s)
        await run_in_threadpool(flush_once, database)


def _due_reminders(database: Database, now: Optional[datetime]) -> Dict[int, List[TaskRecord]]:
    with database.session() as db:
        return TaskStore(db).list_due_reminders(now=now)


async def send_reminders_once(
    database: Database,
    notifier: Notifier,
    *,
    now: Optional[datetime] = None,
) -> int:
    """Notify every owner with incomplete tasks today. Returns the number of notifications sent."""
    try:
        due = await run_in_threadpool(_due_reminders, database, now)
    except Exception:
        logger.exception("Reminder scan failed")
        return 0

    sent = 0
    for user_id, tasks in due.items():
        title, body = build_reminder(tasks)
        try:
            await notifier.notify(user_id=user_id, title=title, body=body)
            sent += 1
        except Exception:
            logger.exception("Reminder delivery failed user=%s", user_id)
    return sent


async def run_reminder_loop(
    database: Database,
    notifier: Notifier,
    *,
    interval_seconds: float = 60.0,
    clock: Callable[[], datetime] = datetime.now,
) -> None:
    sleep_s = max(0.1, float(interval_seconds))
    while True:
        await asyncio.sleep(sleep_s)
        sent = await send_reminders_once(database, notifier, now=clock())
        if sent:
            logger.debug("Reminders sent: %s", sent)
