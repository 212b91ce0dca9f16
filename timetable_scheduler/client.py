"""Client data-access layer.

Every call goes through ``TimetableClient.resilient_call``:

1. If the backend looks unreachable (``online()`` is false, or the optional
   health check fails), the offline operation runs against the local mirror.
2. Otherwise the online operation runs under a bounded timeout. Transport
   errors, timeouts and 5xx answers fall back to the offline operation;
   4xx answers are raised as typed errors and never fall back.

Results come back wrapped in ``Result`` whose ``offline`` flag tells callers
whether the data is authoritative. List and stats reads sit behind a short
TTL cache that every mutating call clears first.

Offline writes stay in the mirror. There is no sync-on-reconnect.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import AuthenticationError, NotFoundError, ValidationError, error_for_status
from .mirror import LocalMirror, is_offline_id, new_offline_id
from .planner import TemplatePlanStrategy, plan_to_tasks
from .schemas import (
    Plan,
    PlanRequest,
    TaskCreate,
    TaskRecord,
    TaskStats,
    TaskUpdate,
    UserRecord,
    UserWithHash,
    check_email,
    check_password,
    check_user_name,
    first_error_message,
)
from .security import OFFLINE_TOKEN_PREFIX, get_password_hash, make_password_context, verify_password
from .stats import compute_stats
from .timeutil import day_bounds, local_now, parse_datetime

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 5.0


class BackendUnreachable(Exception):
    """The backend could not answer; the caller should use the offline path."""


@dataclass
class Result:
    data: Any
    offline: bool = False


class ReadCache:
    def __init__(self, ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Result]] = {}

    def get(self, key: str) -> Optional[Result]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def put(self, key: str, value: Result) -> None:
        self._entries[key] = (self._clock(), value)

    def invalidate(self) -> None:
        self._entries.clear()


def _task_wire(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Task fields as the backend expects them: camelCase keys, ISO dates."""
    out = {}
    for k, v in (fields or {}).items():
        if k == "name":
            k = "taskName"
        elif "_" in k:
            k = to_camel(k)
        out[k] = v.isoformat() if isinstance(v, (datetime, date)) else v
    return out


def _validated(check, value):
    try:
        return check(value)
    except ValueError as e:
        raise ValidationError(str(e))


def _sort_newest_first(tasks: List[TaskRecord]) -> List[TaskRecord]:
    return sorted(tasks, key=lambda t: (t.date, t.created_at or datetime.min), reverse=True)


def _sort_oldest_first(tasks: List[TaskRecord]) -> List[TaskRecord]:
    return sorted(tasks, key=lambda t: (t.date, t.created_at or datetime.min))


class TimetableClient:
    def __init__(
        self,
        base_url: str = "http://localhost:5000",
        *,
        mirror: Optional[LocalMirror] = None,
        http: Optional[httpx.Client] = None,
        timeout: float = 5.0,
        health_check: bool = False,
        health_check_timeout: float = 1.5,
        online: Optional[Callable[[], bool]] = None,
        cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.mirror = mirror or LocalMirror()
        self._owns_http = http is None
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)
        self.timeout = timeout
        self.health_check = health_check
        self.health_check_timeout = health_check_timeout
        self._online = online or (lambda: True)
        self.cache = ReadCache(cache_ttl, clock=clock)
        self._pwd_context = make_password_context()

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    def __enter__(self) -> "TimetableClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ---- connectivity / transport ----

    def is_reachable(self) -> bool:
        if not self._online():
            return False
        if not self.health_check:
            return True
        try:
            resp = self.http.get("/api/health", timeout=self.health_check_timeout)
        except httpx.HTTPError:
            return False
        return resp.status_code < 500

    def _auth_headers(self, token: Optional[str]) -> Dict[str, str]:
        if token and not token.startswith(OFFLINE_TOKEN_PREFIX):
            return {"Authorization": f"Bearer {token}"}
        return {}

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            resp = self.http.request(
                method,
                path,
                json=json,
                params=params,
                headers=self._auth_headers(token),
                timeout=self.timeout,
            )
        except httpx.TransportError as e:
            raise BackendUnreachable(f"{method} {path}: {e.__class__.__name__}") from e

        if resp.status_code >= 500:
            raise BackendUnreachable(f"{method} {path}: HTTP {resp.status_code}")

        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {"data": data}

        if resp.status_code >= 400:
            raise error_for_status(resp.status_code, data.get("message"))
        return data

    def resilient_call(
        self,
        online_op: Callable[[], Any],
        offline_op: Callable[[], Any],
        *,
        force_offline: bool = False,
    ) -> Result:
        if force_offline or not self.is_reachable():
            return Result(offline_op(), offline=True)
        try:
            return Result(online_op())
        except BackendUnreachable as e:
            logger.warning("Backend unreachable (%s); using offline mirror", e)
            return Result(offline_op(), offline=True)

    def _cached_read(self, key: str, online_op: Callable[[], Any], offline_op: Callable[[], Any]) -> Result:
        hit = self.cache.get(key)
        if hit is not None:
            return hit
        result = self.resilient_call(online_op, offline_op, force_offline=self._offline_session())
        self.cache.put(key, result)
        return result

    # ---- session helpers ----

    @property
    def token(self) -> Optional[str]:
        return self.mirror.get_token()

    def _offline_session(self) -> bool:
        token = self.token
        return bool(token and token.startswith(OFFLINE_TOKEN_PREFIX))

    def _session_user_id(self) -> Any:
        user = self.mirror.get_session_user()
        if user is None:
            raise AuthenticationError("Not logged in")
        return user.id

    def _start_session(self, data: Dict[str, Any]) -> Dict[str, Any]:
        user = UserRecord.model_validate(data["user"])
        self.mirror.set_session(data["token"], user)
        return {"token": data["token"], "user": user}

    # ---- auth ----

    def signup(self, name: str, email: str, password: str, confirm_password: str) -> Result:
        self.cache.invalidate()

        def online():
            data = self._request(
                "POST",
                "/api/auth/signup",
                json={"name": name, "email": email, "password": password, "confirmPassword": confirm_password},
            )
            return self._start_session(data)

        def offline():
            clean_name = _validated(check_user_name, name)
            clean_email = _validated(check_email, email)
            _validated(check_password, password)
            if password != confirm_password:
                raise ValidationError("Passwords do not match")
            if self.mirror.find_user_by_email(clean_email) is not None:
                raise ValidationError("User already exists")

            now = datetime.utcnow()
            user = self.mirror.add_user(
                UserWithHash(
                    id=new_offline_id(),
                    name=clean_name,
                    email=clean_email,
                    hashed_password=get_password_hash(self._pwd_context, password),
                    created_at=now,
                    updated_at=now,
                )
            )
            public = UserRecord.model_validate(user.model_dump(exclude={"hashed_password"}))
            token = self.mirror.issue_token(user.id)
            self.mirror.set_session(token, public)
            return {"token": token, "user": public}

        return self.resilient_call(online, offline)

    def login(self, email: str, password: str) -> Result:
        self.cache.invalidate()

        def online():
            data = self._request("POST", "/api/auth/login", json={"email": email, "password": password})
            return self._start_session(data)

        def offline():
            user = self.mirror.find_user_by_email(email)
            if user is None or not verify_password(self._pwd_context, password, user.hashed_password):
                raise AuthenticationError("Invalid credentials")
            public = UserRecord.model_validate(user.model_dump(exclude={"hashed_password"}))
            token = self.mirror.issue_token(user.id)
            self.mirror.set_session(token, public)
            return {"token": token, "user": public}

        return self.resilient_call(online, offline)

    def get_me(self, token: Optional[str] = None) -> Result:
        token = token or self.token
        if not token:
            raise AuthenticationError("Not logged in")

        if token.startswith(OFFLINE_TOKEN_PREFIX):
            user = self.mirror.user_for_token(token)
            if user is None:
                raise AuthenticationError("Token is not valid")
            public = UserRecord.model_validate(user.model_dump(exclude={"hashed_password"}))
            return Result({"user": public}, offline=True)

        def online():
            data = self._request("GET", "/api/auth/me", token=token)
            return {"user": UserRecord.model_validate(data["user"])}

        def offline():
            user = self.mirror.get_session_user()
            if user is None or self.mirror.get_token() != token:
                raise AuthenticationError("Not logged in")
            return {"user": user}

        return self.resilient_call(online, offline)

    def logout(self) -> Result:
        token = self.token
        self.cache.invalidate()
        try:
            if not token or token.startswith(OFFLINE_TOKEN_PREFIX):
                return Result({"message": "Logout successful"}, offline=True)

            def online():
                return self._request("POST", "/api/auth/logout", token=token)

            try:
                return self.resilient_call(online, lambda: {"message": "Logout successful"})
            except AuthenticationError:
                # Expired on the server already; the local session is cleared below anyway.
                return Result({"message": "Logout successful"})
        finally:
            if token and token.startswith(OFFLINE_TOKEN_PREFIX):
                self.mirror.revoke_token(token)
            self.mirror.clear_session()

    # ---- tasks ----

    def create_task(self, fields: Dict[str, Any]) -> Result:
        self.cache.invalidate()

        def online():
            data = self._request("POST", "/api/tasks", json=_task_wire(fields), token=self.token)
            return TaskRecord.model_validate(data["task"])

        def offline():
            owner_id = self._session_user_id()
            try:
                task = TaskCreate.model_validate(fields or {})
            except PydanticValidationError as e:
                raise ValidationError(first_error_message(e))
            now = datetime.utcnow()
            record = TaskRecord(
                id=new_offline_id(),
                user_id=owner_id,
                name=task.name,
                duration=task.duration,
                priority=task.priority,
                category=task.category,
                notes=task.notes,
                date=task.date or local_now(),
                completed=False,
                created_at=now,
                updated_at=now,
                offline=True,
            )
            return self.mirror.add_task(record)

        return self.resilient_call(online, offline, force_offline=self._offline_session())

    def list_tasks(self, completed: Optional[bool] = None) -> Result:
        def online():
            params = {} if completed is None else {"completed": str(completed).lower()}
            data = self._request("GET", "/api/tasks", params=params, token=self.token)
            return [TaskRecord.model_validate(t) for t in data["tasks"]]

        def offline():
            tasks = self.mirror.list_tasks(self._session_user_id())
            if completed is not None:
                tasks = [t for t in tasks if t.completed == completed]
            return _sort_newest_first(tasks)

        return self._cached_read(f"tasks:{completed}", online, offline)

    def today_tasks(self) -> Result:
        def online():
            data = self._request("GET", "/api/tasks/today", token=self.token)
            return [TaskRecord.model_validate(t) for t in data["tasks"]]

        def offline():
            start, end = day_bounds()
            tasks = self.mirror.list_tasks(self._session_user_id())
            return _sort_oldest_first([t for t in tasks if start <= t.date <= end])

        return self._cached_read("today", online, offline)

    def tasks_by_date_range(
        self,
        start: Union[str, date, datetime],
        end: Union[str, date, datetime],
    ) -> Result:
        try:
            start_dt = parse_datetime(start)
            end_dt = parse_datetime(end, end_of_day=True)
        except ValueError:
            raise ValidationError("Dates must be ISO formatted")

        def online():
            params = {"startDate": start_dt.isoformat(), "endDate": end_dt.isoformat()}
            data = self._request("GET", "/api/tasks/date-range", params=params, token=self.token)
            return [TaskRecord.model_validate(t) for t in data["tasks"]]

        def offline():
            tasks = self.mirror.list_tasks(self._session_user_id())
            return _sort_oldest_first([t for t in tasks if start_dt <= t.date <= end_dt])

        return self._cached_read(f"range:{start_dt.isoformat()}:{end_dt.isoformat()}", online, offline)

    def stats(self) -> Result:
        def online():
            data = self._request("GET", "/api/tasks/stats", token=self.token)
            return TaskStats.model_validate(data["stats"])

        def offline():
            return compute_stats(self.mirror.list_tasks(self._session_user_id()))

        return self._cached_read("stats", online, offline)

    def update_task(self, task_id: Any, patch: Dict[str, Any]) -> Result:
        """Returns ``Result(None)`` when the task does not exist for this user."""
        self.cache.invalidate()

        def online():
            try:
                data = self._request("PUT", f"/api/tasks/{task_id}", json=_task_wire(patch), token=self.token)
            except NotFoundError:
                return None
            return TaskRecord.model_validate(data["task"])

        def offline():
            owner_id = self._session_user_id()
            try:
                changes = TaskUpdate.model_validate(patch or {}).changes()
            except PydanticValidationError as e:
                raise ValidationError(first_error_message(e))
            return self.mirror.update_task(task_id, owner_id, changes)

        # An offline id never exists on the server.
        force = self._offline_session() or is_offline_id(task_id)
        return self.resilient_call(online, offline, force_offline=force)

    def delete_task(self, task_id: Any) -> Result:
        self.cache.invalidate()

        def online():
            return self._request("DELETE", f"/api/tasks/{task_id}", token=self.token)

        def offline():
            self.mirror.delete_task(task_id, self._session_user_id())
            return {"message": "Task deleted successfully"}

        force = self._offline_session() or is_offline_id(task_id)
        return self.resilient_call(online, offline, force_offline=force)

    # ---- plans ----

    def generate_plan(self, request: Union[PlanRequest, Dict[str, Any]]) -> Result:
        if not isinstance(request, PlanRequest):
            try:
                request = PlanRequest.model_validate(request)
            except PydanticValidationError as e:
                raise ValidationError(first_error_message(e))

        def online():
            payload = request.model_dump(mode="json", by_alias=True, exclude_none=True)
            data = self._request("POST", "/api/ai/generate-plan", json=payload, token=self.token)
            return Plan.model_validate(data["plan"])

        def offline():
            return TemplatePlanStrategy().generate(request)

        return self.resilient_call(online, offline, force_offline=self._offline_session())

    def apply_plan(self, plan: Plan) -> Result:
        """Create one task per schedule line."""
        created: List[TaskRecord] = []
        any_offline = False
        for fields in plan_to_tasks(plan):
            result = self.create_task(fields)
            any_offline = any_offline or result.offline
            created.append(result.data)
        return Result(created, offline=any_offline)


__all__ = [
    "BackendUnreachable",
    "ReadCache",
    "Result",
    "TimetableClient",
]
