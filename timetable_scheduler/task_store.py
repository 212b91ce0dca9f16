from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from .errors import ValidationError
from .models import Task as DBTask
from .schemas import TaskCreate, TaskRecord, TaskStats, TaskUpdate, first_error_message
from .stats import compute_stats
from .timeutil import day_bounds, local_now, to_local_naive

logger = logging.getLogger(__name__)


class TaskStore:
    """
    Owner-scoped task store over one SQLAlchemy session.

    A task id that belongs to somebody else behaves exactly like a missing id.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def _owned(self, task_id, owner_id):
        try:
            task_id = int(task_id)
        except (TypeError, ValueError):
            return None
        return (
            self.db.query(DBTask)
            .filter(DBTask.id == task_id, DBTask.user_id == owner_id)
            .first()
        )

    def create(self, fields: dict, owner_id: int) -> TaskRecord:
        try:
            task = TaskCreate.model_validate(fields or {})
        except PydanticValidationError as e:
            raise ValidationError(first_error_message(e))

        db_task = DBTask(
            name=task.name,
            duration=task.duration,
            priority=task.priority,
            category=task.category,
            notes=task.notes,
            date=task.date or local_now(),
            completed=False,
            user_id=owner_id,
        )
        self.db.add(db_task)
        self.db.commit()
        self.db.refresh(db_task)
        logger.debug("Task created id=%s owner=%s date=%s", db_task.id, owner_id, db_task.date)
        return TaskRecord.model_validate(db_task)

    def list_by_owner(self, owner_id: int, completed: Optional[bool] = None) -> List[TaskRecord]:
        query = self.db.query(DBTask).filter(DBTask.user_id == owner_id)
        if completed is not None:
            query = query.filter(DBTask.completed == completed)
        query = query.order_by(DBTask.date.desc(), DBTask.created_at.desc(), DBTask.id.desc())
        return [TaskRecord.model_validate(t) for t in query.all()]

    def list_by_date_range(self, owner_id: int, start: datetime, end: datetime) -> List[TaskRecord]:
        start, end = to_local_naive(start), to_local_naive(end)
        if end < start:
            raise ValidationError("End date must not be before start date")
        query = (
            self.db.query(DBTask)
            .filter(DBTask.user_id == owner_id, DBTask.date >= start, DBTask.date <= end)
            .order_by(DBTask.date.asc(), DBTask.created_at.asc(), DBTask.id.asc())
        )
        return [TaskRecord.model_validate(t) for t in query.all()]

    def list_today(self, owner_id: int, now: Optional[datetime] = None) -> List[TaskRecord]:
        start, end = day_bounds(now)
        return self.list_by_date_range(owner_id, start, end)

    def update(self, task_id, owner_id: int, patch: dict) -> Optional[TaskRecord]:
        db_task = self._owned(task_id, owner_id)
        if db_task is None:
            return None

        try:
            changes = TaskUpdate.model_validate(patch or {}).changes()
        except PydanticValidationError as e:
            raise ValidationError(first_error_message(e))

        if not changes:
            return TaskRecord.model_validate(db_task)

        for key, value in changes.items():
            setattr(db_task, key, value)
        self.db.commit()
        self.db.refresh(db_task)
        return TaskRecord.model_validate(db_task)

    def delete(self, task_id, owner_id: int) -> bool:
        db_task = self._owned(task_id, owner_id)
        if db_task is None:
            return False
        self.db.delete(db_task)
        self.db.commit()
        return True

    def stats(self, owner_id: int, now: Optional[datetime] = None) -> TaskStats:
        return compute_stats(self.list_by_owner(owner_id), now=now)

    def list_due_reminders(self, now: Optional[datetime] = None) -> Dict[int, List[TaskRecord]]:
        """Incomplete tasks scheduled for today, grouped by owner."""
        start, end = day_bounds(now)
        query = (
            self.db.query(DBTask)
            .filter(DBTask.completed.is_(False), DBTask.date >= start, DBTask.date <= end)
            .order_by(DBTask.user_id.asc(), DBTask.date.asc(), DBTask.id.asc())
        )
        out: Dict[int, List[TaskRecord]] = defaultdict(list)
        for t in query.all():
            out[t.user_id].append(TaskRecord.model_validate(t))
        return dict(out)
