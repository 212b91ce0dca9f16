"""Client-local offline mirror.

Holds provisional copies of users and tasks created while the backend is
unreachable, plus the client's current session (token + user). Backed by a
JSON file, or kept in memory when no path is given. Mirror records are never
pushed back to the backend.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .schemas import TaskRecord, UserRecord, UserWithHash

logger = logging.getLogger(__name__)

OFFLINE_ID_PREFIX = "offline_"


def new_offline_id() -> str:
    return f"{OFFLINE_ID_PREFIX}{uuid.uuid4().hex}"


def is_offline_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(OFFLINE_ID_PREFIX)


def _empty() -> Dict[str, Any]:
    return {"users": [], "tasks": [], "tokens": {}, "session": {"token": None, "user": None}}


class LocalMirror:
    def __init__(self, path: Optional[str | Path] = None) -> None:
        self.path = Path(path) if path is not None else None
        self._lock = threading.RLock()
        self._data = self._load()

    # ---- persistence ----

    def _load(self) -> Dict[str, Any]:
        if self.path is None or not self.path.exists():
            return _empty()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("Invalid mirror format")
        except (json.JSONDecodeError, ValueError, OSError) as e:
            logger.error("Error loading offline mirror %s: %s", self.path, e)
            return _empty()

        merged = _empty()
        merged.update({k: v for k, v in data.items() if k in merged})
        return merged

    def _save(self) -> None:
        if self.path is None:
            return
        os.makedirs(self.path.parent, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._data, f, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)

    # ---- session ----

    def get_token(self) -> Optional[str]:
        with self._lock:
            return self._data["session"].get("token")

    def get_session_user(self) -> Optional[UserRecord]:
        with self._lock:
            raw = self._data["session"].get("user")
        return UserRecord.model_validate(raw) if raw else None

    def set_session(self, token: str, user: UserRecord) -> None:
        with self._lock:
            self._data["session"] = {"token": token, "user": user.model_dump(mode="json")}
            self._save()

    def clear_session(self) -> None:
        with self._lock:
            self._data["session"] = {"token": None, "user": None}
            self._save()

    # ---- users ----

    def add_user(self, user: UserWithHash) -> UserWithHash:
        with self._lock:
            self._data["users"].append(user.model_dump(mode="json"))
            self._save()
        return user

    def find_user_by_email(self, email: str) -> Optional[UserWithHash]:
        email = (email or "").strip().lower()
        with self._lock:
            for raw in self._data["users"]:
                if raw.get("email") == email:
                    return UserWithHash.model_validate(raw)
        return None

    def find_user_by_id(self, user_id: Any) -> Optional[UserWithHash]:
        with self._lock:
            for raw in self._data["users"]:
                if raw.get("id") == user_id:
                    return UserWithHash.model_validate(raw)
        return None

    def issue_token(self, user_id: Any) -> str:
        token = new_offline_id()
        with self._lock:
            self._data["tokens"][token] = user_id
            self._save()
        return token

    def user_for_token(self, token: str) -> Optional[UserWithHash]:
        with self._lock:
            user_id = self._data["tokens"].get(token)
        return self.find_user_by_id(user_id) if user_id is not None else None

    def revoke_token(self, token: str) -> None:
        with self._lock:
            if self._data["tokens"].pop(token, None) is not None:
                self._save()

    # ---- tasks ----

    def list_tasks(self, owner_id: Any) -> List[TaskRecord]:
        with self._lock:
            raws = [t for t in self._data["tasks"] if t.get("user_id") == owner_id]
        return [TaskRecord.model_validate(raw) for raw in raws]

    def add_task(self, task: TaskRecord) -> TaskRecord:
        with self._lock:
            self._data["tasks"].append(task.model_dump(mode="json"))
            self._save()
        return task

    def update_task(self, task_id: Any, owner_id: Any, changes: Dict[str, Any]) -> Optional[TaskRecord]:
        with self._lock:
            for i, raw in enumerate(self._data["tasks"]):
                if raw.get("id") == task_id and raw.get("user_id") == owner_id:
                    current = TaskRecord.model_validate(raw)
                    if not changes:
                        return current
                    updated = current.model_copy(update={**changes, "updated_at": datetime.utcnow()})
                    # Re-validate so a bad patch cannot corrupt the stored record.
                    updated = TaskRecord.model_validate(updated.model_dump())
                    self._data["tasks"][i] = updated.model_dump(mode="json")
                    self._save()
                    return updated
        return None

    def delete_task(self, task_id: Any, owner_id: Any) -> bool:
        with self._lock:
            before = len(self._data["tasks"])
            self._data["tasks"] = [
                t for t in self._data["tasks"]
                if not (t.get("id") == task_id and t.get("user_id") == owner_id)
            ]
            removed = len(self._data["tasks"]) != before
            if removed:
                self._save()
        return removed
