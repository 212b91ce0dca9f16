# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from timetable_scheduler.app import create_app
from timetable_scheduler.config import Settings
from timetable_scheduler.database import Database
from timetable_scheduler.planner import TemplatePlanStrategy
from timetable_scheduler.security import make_password_context
from timetable_scheduler.task_store import TaskStore
from timetable_scheduler.user_store import UserStore

from .fakes import FakeNotifier

PASSWORD = "secret123"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """
    Settings for one test: a private SQLite file, cheap bcrypt, no rate
    limiting and no background jobs.
    """
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'timetable.db'}",
        jwt_secret="test-secret",
        bcrypt_rounds=4,
        rate_limit_enabled=False,
        flush_interval_seconds=0,
        reminder_interval_seconds=0,
    )


@pytest.fixture()
def database(settings: Settings) -> Iterator[Database]:
    db = Database(settings.database_url).open()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def session(database: Database) -> Iterator[Session]:
    with database.session() as s:
        yield s


@pytest.fixture()
def users(session: Session) -> UserStore:
    return UserStore(session, make_password_context(4))


@pytest.fixture()
def tasks(session: Session) -> TaskStore:
    return TaskStore(session)


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def app(settings: Settings, notifier: FakeNotifier):
    return create_app(settings, plan_strategy=TemplatePlanStrategy(), notifier=notifier)


@pytest.fixture()
def client(app) -> Iterator[TestClient]:
    # Entering the context runs the lifespan, which opens the database.
    with TestClient(app) as c:
        yield c


def signup(client: TestClient, email: str = "alice@school.edu", name: str = "Alice") -> dict:
    resp = client.post(
        "/api/auth/signup",
        json={"name": name, "email": email, "password": PASSWORD, "confirmPassword": PASSWORD},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def alice(client: TestClient) -> dict:
    data = signup(client)
    return {"user": data["user"], "token": data["token"], "headers": auth_header(data["token"])}


@pytest.fixture()
def bob(client: TestClient) -> dict:
    data = signup(client, email="bob@school.edu", name="Bob")
    return {"user": data["user"], "token": data["token"], "headers": auth_header(data["token"])}
