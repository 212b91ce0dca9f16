"""Task aggregates. Always recomputed from the task set, never stored."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, Optional

from .schemas import TaskRecord, TaskStats
from .timeutil import day_bounds, local_now, to_local_naive, week_bounds


def round_hours(minutes: int) -> int:
    # half-up: 90 min -> 2, 150 min -> 3
    return int(math.floor(minutes / 60 + 0.5))


def compute_stats(tasks: Iterable[TaskRecord], now: Optional[datetime] = None) -> TaskStats:
    now = to_local_naive(now or local_now())
    day_start, day_end = day_bounds(now)
    week_start, week_end = week_bounds(now)

    total = completed = today_total = today_completed = 0
    weekly_minutes = 0
    for task in tasks:
        total += 1
        if task.completed:
            completed += 1
        when = to_local_naive(task.date)
        if day_start <= when <= day_end:
            today_total += 1
            if task.completed:
                today_completed += 1
        if week_start <= when < week_end:
            weekly_minutes += int(task.duration or 0)

    return TaskStats(
        total=total,
        completed=completed,
        today_total=today_total,
        today_completed=today_completed,
        weekly_hours=round_hours(weekly_minutes),
    )
