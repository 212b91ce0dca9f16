# tests/test_api_auth.py

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta

from fastapi.testclient import TestClient

from timetable_scheduler.app import create_app
from timetable_scheduler.security import create_access_token
from timetable_scheduler.user_store import UserStore

from .conftest import PASSWORD, auth_header, signup


def test_health(client: TestClient) -> None:
    resp = client.get("/api/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "Server is running"
    assert body["database"] == "connected"
    assert body["mode"] == "sqlite"


def test_unknown_route(client: TestClient) -> None:
    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.json() == {"message": "Route not found"}


def test_signup_returns_token_and_public_user(client: TestClient) -> None:
    data = signup(client, email="Alice@School.edu")

    assert data["message"] == "User registered successfully"
    assert data["token"]
    assert data["user"]["email"] == "alice@school.edu"
    assert data["user"]["role"] == "student"
    assert set(data["user"]) == {"id", "name", "email", "role"}


def test_signup_password_mismatch(client: TestClient) -> None:
    resp = client.post(
        "/api/auth/signup",
        json={"name": "Alice", "email": "alice@school.edu", "password": PASSWORD, "confirmPassword": "other123"},
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Passwords do not match"


def test_signup_duplicate_email(client: TestClient) -> None:
    signup(client)
    resp = client.post(
        "/api/auth/signup",
        json={"name": "Again", "email": "alice@school.edu", "password": PASSWORD, "confirmPassword": PASSWORD},
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "User already exists"


def test_signup_validation_errors(client: TestClient) -> None:
    resp = client.post(
        "/api/auth/signup",
        json={"name": "Alice", "email": "alice@school.edu", "password": "123", "confirmPassword": "123"},
    )
    assert resp.status_code == 400
    body = resp.json()
    assert body["message"] == "Password must be at least 6 characters"
    assert body["errors"][0]["field"] == "password"

    resp = client.post("/api/auth/signup", json={"name": "Alice", "email": "nope", "password": PASSWORD})
    assert resp.status_code == 400


def test_login_and_me(client: TestClient) -> None:
    signup(client)

    resp = client.post("/api/auth/login", json={"email": "ALICE@school.edu", "password": PASSWORD})
    assert resp.status_code == 200
    token = resp.json()["token"]

    me = client.get("/api/auth/me", headers=auth_header(token))
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "alice@school.edu"


def test_login_failures_are_indistinguishable(client: TestClient) -> None:
    signup(client)

    wrong = client.post("/api/auth/login", json={"email": "alice@school.edu", "password": "bad-password"})
    unknown = client.post("/api/auth/login", json={"email": "ghost@school.edu", "password": PASSWORD})

    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json() == {"message": "Invalid credentials"}


def test_login_inactive_user(client: TestClient, app) -> None:
    data = signup(client)
    with app.state.database.session() as db:
        UserStore(db).update(data["user"]["id"], {"is_active": False})

    resp = client.post("/api/auth/login", json={"email": "alice@school.edu", "password": PASSWORD})
    assert resp.status_code == 401
    assert resp.json()["message"] == "User account is inactive"


def test_me_requires_valid_token(client: TestClient, settings) -> None:
    resp = client.get("/api/auth/me")
    assert resp.status_code == 401
    assert resp.json()["message"] == "No token, authorization denied"

    resp = client.get("/api/auth/me", headers=auth_header("garbage"))
    assert resp.status_code == 401
    assert resp.json()["message"] == "Token is not valid"

    resp = client.get("/api/auth/me", headers=auth_header("offline_abc123"))
    assert resp.status_code == 401

    data = signup(client)
    expired = create_access_token(data["user"]["id"], "student", settings, now=datetime.utcnow() - timedelta(days=8))
    resp = client.get("/api/auth/me", headers=auth_header(expired))
    assert resp.status_code == 401
    assert resp.json()["message"] == "Token has expired"

    foreign = create_access_token(data["user"]["id"], "student", replace(settings, jwt_secret="other"))
    assert client.get("/api/auth/me", headers=auth_header(foreign)).status_code == 401


def test_me_for_deleted_user(client: TestClient, app) -> None:
    data = signup(client)
    with app.state.database.session() as db:
        UserStore(db).delete(data["user"]["id"])

    resp = client.get("/api/auth/me", headers=auth_header(data["token"]))
    assert resp.status_code == 401
    assert resp.json()["message"] == "User not found"


def test_logout(client: TestClient, alice) -> None:
    resp = client.post("/api/auth/logout", headers=alice["headers"])
    assert resp.status_code == 200
    assert resp.json()["message"] == "Logout successful"


def test_auth_rate_limit(settings) -> None:
    app = create_app(replace(settings, rate_limit_enabled=True))
    with TestClient(app) as client:
        codes = [
            client.post("/api/auth/login", json={"email": "ghost@school.edu", "password": PASSWORD}).status_code
            for _ in range(11)
        ]
    assert codes[:10] == [401] * 10
    assert codes[10] == 429


def test_rate_limits_are_kept_per_app(settings) -> None:
    limited = replace(settings, rate_limit_enabled=True)
    first, second = create_app(limited), create_app(limited)
    login = {"email": "ghost@school.edu", "password": PASSWORD}

    with TestClient(first) as a, TestClient(second) as b:
        for _ in range(10):
            a.post("/api/auth/login", json=login)
        assert a.post("/api/auth/login", json=login).status_code == 429
        assert b.post("/api/auth/login", json=login).status_code == 401


def test_signup_short_name(client: TestClient) -> None:
    resp = client.post(
        "/api/auth/signup",
        json={"name": "Al", "email": "al@school.edu", "password": PASSWORD, "confirmPassword": PASSWORD},
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Name must be at least 3 characters"


def test_unreachable_database_answers_503(settings, tmp_path) -> None:
    # The database path runs through a regular file, so it can never be opened.
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    app = create_app(replace(settings, database_url=f"sqlite:///{blocker / 'timetable.db'}"))

    with TestClient(app) as client:
        resp = client.post(
            "/api/auth/signup",
            json={"name": "Alice", "email": "alice@school.edu", "password": PASSWORD, "confirmPassword": PASSWORD},
        )
        assert resp.status_code == 503
        assert resp.json() == {"message": "Database not connected. Please check the database settings."}

        assert client.get("/api/health").json()["database"] == "unavailable"
