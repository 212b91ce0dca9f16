from __future__ import annotations

import re
from datetime import date as date_type
from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .timeutil import to_local_naive

Priority = Literal["Low", "Medium", "High"]
Role = Literal["student", "admin"]

PRIORITIES = ("Low", "Medium", "High")
ROLES = ("student", "admin")

EMAIL_PATTERN = re.compile(r"^\w+([.-]?\w+)*@\w+([.-]?\w+)*(\.\w{2,3})+$")
TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

MIN_PASSWORD_LENGTH = 6
MIN_NAME_LENGTH = 3
MAX_NAME_LENGTH = 50
MAX_TASK_NAME_LENGTH = 100

# Fields a task patch may touch; anything else in a patch is ignored.
TASK_PATCH_FIELDS = ("name", "duration", "priority", "category", "notes", "date", "completed")
USER_PATCH_FIELDS = ("name", "email", "role", "is_active")


def first_error_message(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid input"
    msg = str(errors[0].get("msg") or "Invalid input")
    return msg.removeprefix("Value error, ")


def check_user_name(v: str) -> str:
    v = (v or "").strip()
    if not v:
        raise ValueError("Please provide a name")
    if len(v) < MIN_NAME_LENGTH:
        raise ValueError(f"Name must be at least {MIN_NAME_LENGTH} characters")
    if len(v) > MAX_NAME_LENGTH:
        raise ValueError(f"Name cannot be more than {MAX_NAME_LENGTH} characters")
    return v


def check_email(v: str) -> str:
    v = (v or "").strip().lower()
    if not v or not EMAIL_PATTERN.match(v):
        raise ValueError("Please provide a valid email")
    return v


def check_password(v: str) -> str:
    if not v or len(v) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return v


def check_task_name(v: str) -> str:
    v = (v or "").strip()
    if not v:
        raise ValueError("Please provide a task name")
    if len(v) > MAX_TASK_NAME_LENGTH:
        raise ValueError(f"Task name cannot be more than {MAX_TASK_NAME_LENGTH} characters")
    return v


def check_duration(v: int) -> int:
    if v < 1:
        raise ValueError("Duration must be at least 1 minute")
    return v


# ---- auth ----

class SignupRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    confirm_password: str = Field(alias="confirmPassword")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("name")
    def name_validator(cls, v):
        return check_user_name(v)

    @field_validator("password")
    def password_validator(cls, v):
        return check_password(v)

    @field_validator("confirm_password")
    def confirm_validator(cls, v):
        if not v:
            raise ValueError("Please confirm your password")
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str

    @field_validator("password")
    def password_validator(cls, v):
        if not v:
            raise ValueError("Password is required")
        return v


class UserRecord(BaseModel):
    """Public user shape. Never carries the password hash."""

    id: Union[int, str]
    name: str
    email: str
    role: Role = "student"
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, extra="forbid")


class UserWithHash(UserRecord):
    hashed_password: str


class UserPatch(BaseModel):
    """Administrative user changes; only fields present in the patch are applied."""

    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    is_active: Optional[bool] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("role")
    def role_validator(cls, v):
        if v is not None and v not in ROLES:
            raise ValueError("Role must be student or admin")
        return v

    @field_validator("name")
    def name_validator(cls, v):
        return v if v is None else check_user_name(v)

    @field_validator("email")
    def email_validator(cls, v):
        return v if v is None else check_email(v)

    @model_validator(mode="after")
    def no_nulls(self):
        for name in self.model_fields_set:
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict:
        return self.model_dump(include=set(USER_PATCH_FIELDS), exclude_unset=True)


class CurrentUser(BaseModel):
    id: int
    role: Role = "student"


# ---- tasks ----

# Task payloads travel in camelCase (taskName, userId, createdAt, ...); Python code uses the field names.
TASK_WIRE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _TaskFields(BaseModel):
    model_config = ConfigDict(**TASK_WIRE_CONFIG, extra="ignore")

    @field_validator("name", check_fields=False)
    def name_validator(cls, v):
        return v if v is None else check_task_name(v)

    @field_validator("duration", check_fields=False)
    def duration_validator(cls, v):
        return v if v is None else check_duration(v)

    @field_validator("category", check_fields=False)
    def category_validator(cls, v):
        if v is None:
            return v
        return v.strip() or "General"

    @field_validator("notes", check_fields=False)
    def notes_validator(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("date", check_fields=False)
    def date_validator(cls, v):
        return to_local_naive(v) if isinstance(v, datetime) else v


class TaskCreate(_TaskFields):
    name: str = Field(alias="taskName")
    duration: int
    priority: Priority = "Medium"
    category: str = "General"
    notes: Optional[str] = None
    date: Optional[datetime] = None


class TaskUpdate(_TaskFields):
    name: Optional[str] = Field(None, alias="taskName")
    duration: Optional[int] = None
    priority: Optional[Priority] = None
    category: Optional[str] = None
    notes: Optional[str] = None
    date: Optional[datetime] = None
    completed: Optional[bool] = None

    @model_validator(mode="after")
    def no_null_required(self):
        for name in ("name", "duration", "priority", "category", "date", "completed"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict:
        return self.model_dump(include=set(TASK_PATCH_FIELDS), exclude_unset=True)


class TaskRecord(BaseModel):
    id: Union[int, str]
    user_id: Union[int, str]
    name: str = Field(alias="taskName")
    duration: int
    priority: Priority
    category: str
    notes: Optional[str] = None
    date: datetime
    completed: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    offline: bool = False

    model_config = ConfigDict(**TASK_WIRE_CONFIG, from_attributes=True, extra="forbid")

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class TaskStats(BaseModel):
    total: int = 0
    completed: int = 0
    today_total: int = Field(0, alias="todayTotal")
    today_completed: int = Field(0, alias="todayCompleted")
    weekly_hours: int = Field(0, alias="weeklyHours")

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


# ---- plans ----

class PlanRequest(BaseModel):
    available_hours: float = Field(6, alias="availableHours")
    start_time: str = Field("09:00", alias="startTime")
    goals: List[str] = Field(default_factory=lambda: ["Study", "Work"])
    start_date: Optional[date_type] = Field(None, alias="startDate")
    days_to_plan: int = Field(7, alias="daysToPlan")
    custom_tasks: List[str] = Field(default_factory=list, alias="customTasks")
    deadline: Optional[date_type] = None
    active_tasks: int = Field(0, alias="activeTasks")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("start_date", "deadline", mode="before")
    def date_only(cls, v):
        # Accept full ISO timestamps from browser date pickers.
        if isinstance(v, str) and "T" in v:
            return v.split("T", 1)[0]
        return v

    @model_validator(mode="after")
    def start_date_required(self):
        if self.start_date is None:
            raise ValueError("Start date is required")
        return self

    @field_validator("available_hours")
    def hours_validator(cls, v):
        if v < 1 or v > 16:
            raise ValueError("Available hours must be between 1 and 16")
        return v

    @field_validator("start_time")
    def start_time_validator(cls, v):
        v = (v or "").strip()
        if not TIME_PATTERN.match(v):
            raise ValueError("Start time must be in HH:MM format")
        return v

    @field_validator("days_to_plan")
    def days_validator(cls, v):
        if v < 1 or v > 31:
            raise ValueError("Days to plan must be between 1 and 31")
        return v

    @field_validator("goals", "custom_tasks")
    def strip_labels(cls, v):
        return [s.strip() for s in v if isinstance(s, str) and s.strip()]


class PlanDay(BaseModel):
    day: int
    date: str
    tasks: str
    total_hours: float = Field(alias="totalHours")
    task_count: int = Field(alias="taskCount")

    model_config = ConfigDict(populate_by_name=True)


class Plan(BaseModel):
    title: str
    description: str
    schedule: List[PlanDay]

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True)
