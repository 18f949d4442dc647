"""
Tests for the HTTP surface: exception mapping, health and metrics.

The lifespan is not entered (no `with TestClient(...)`), so no schedulers or
database engine are started.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from conftest import make_result, make_subscription
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from app.api.dependencies import AuthenticatedUser, get_current_user
from app.api.rate_limit import limiter
from app.db.session import get_db
from app.exceptions import (
    AccountLockedError,
    AccountSuspendedError,
    GoogleSignInUnavailableError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    StorageUnavailableError,
)
from app.main import app, build_schedulers
from app.models.api import UserRole
from app.models.domain import TokenPair

AUTH_SERVICE = "app.api.auth_routes.AuthService"
LOGIN_BODY = {"email": "owner@example.com", "password": "secret"}


@pytest.fixture
def client(db_session):
    async def override_db():
        yield db_session

    app.dependency_overrides[get_db] = override_db
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


def _login_raising(exc: Exception):
    patcher = patch(AUTH_SERVICE)
    service_cls = patcher.start()
    service_cls.return_value.login = AsyncMock(side_effect=exc)
    return patcher


class TestExceptionMapping:
    def test_invalid_credentials(self, client):
        patcher = _login_raising(InvalidCredentialsError(remaining_attempts=3))
        try:
            response = client.post("/api/auth/login", json=LOGIN_BODY)
        finally:
            patcher.stop()

        assert response.status_code == 401
        body = response.json()
        assert body["error"] == "Invalid email or password"
        assert body["error_ar"]
        assert body["remaining_attempts"] == 3

    def test_locked(self, client):
        patcher = _login_raising(AccountLockedError(minutes_remaining=12))
        try:
            response = client.post("/api/auth/login", json=LOGIN_BODY)
        finally:
            patcher.stop()

        assert response.status_code == 403
        body = response.json()
        assert body["is_locked"] is True
        assert body["minutes_remaining"] == 12
        assert "12" in body["error"]
        assert "locked_until" not in body

    def test_suspended(self, client):
        patcher = _login_raising(AccountSuspendedError(user_id=42, reason="Fraud review"))
        try:
            response = client.post("/api/auth/login", json=LOGIN_BODY)
        finally:
            patcher.stop()

        assert response.status_code == 403
        assert response.json()["is_suspended"] is True
        assert response.json()["suspended_reason"] == "Fraud review"

    def test_storage_unavailable(self, client):
        patcher = _login_raising(StorageUnavailableError("lock_check"))
        try:
            response = client.post("/api/auth/login", json=LOGIN_BODY)
        finally:
            patcher.stop()

        assert response.status_code == 503
        assert response.json() == {
            "error": "Service temporarily unavailable",
            "is_locked": False,
            "is_suspended": False,
        }

    def test_invalid_refresh_token(self, client):
        with patch(AUTH_SERVICE) as service_cls:
            service_cls.return_value.refresh = AsyncMock(side_effect=InvalidOrExpiredTokenError())
            response = client.post("/api/auth/refresh", json={"refresh_token": "stale"})

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"] == "Invalid or expired token"

    def test_google_unconfigured(self, client):
        with patch(AUTH_SERVICE) as service_cls:
            service_cls.return_value.google_login = AsyncMock(
                side_effect=GoogleSignInUnavailableError()
            )
            response = client.post("/api/auth/google", json={"id_token": "x"})

        assert response.status_code == 503

    def test_validation_error_does_not_echo_password(self, client):
        response = client.post("/api/auth/login", json={"email": "owner@example.com", "password": ""})

        assert response.status_code == 422
        assert "input" not in response.json()["detail"][0]

    def test_protected_route_without_token(self, client):
        response = client.post("/api/auth/logout", json={})
        assert response.status_code == 401


class TestLoginRoute:
    def test_success_returns_pair_and_user(self, client, user):
        now = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
        pair = TokenPair(
            access_token="access",
            refresh_token="refresh",
            access_expires_at=now + timedelta(minutes=15),
            refresh_expires_at=now + timedelta(days=7),
        )
        with patch(AUTH_SERVICE) as service_cls:
            service_cls.return_value.login = AsyncMock(return_value=(pair, user))
            response = client.post(
                "/api/auth/login",
                json=LOGIN_BODY,
                headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
            )

        assert response.status_code == 200
        body = response.json()
        assert body["access_token"] == "access"
        assert body["token_type"] == "Bearer"
        assert body["user"]["id"] == user.id
        assert service_cls.return_value.login.await_args.kwargs["ip_address"] == "203.0.113.9"


@pytest.fixture
def rate_limited():
    limiter.enabled = True
    limiter.reset()
    yield limiter
    limiter.reset()
    limiter.enabled = False


class TestAuthRateLimit:
    """Five sign-in requests per client per window, shared by /login and /google."""

    def test_sixth_login_is_rejected(self, client, rate_limited):
        with patch(AUTH_SERVICE) as service_cls:
            service_cls.return_value.login = AsyncMock(
                side_effect=InvalidCredentialsError(remaining_attempts=1)
            )
            statuses = [client.post("/api/auth/login", json=LOGIN_BODY).status_code for _ in range(6)]

        assert statuses == [401] * 5 + [429]
        assert service_cls.return_value.login.await_count == 5

    def test_rejection_body(self, client, rate_limited):
        with patch(AUTH_SERVICE) as service_cls:
            service_cls.return_value.login = AsyncMock(
                side_effect=InvalidCredentialsError(remaining_attempts=1)
            )
            for _ in range(5):
                client.post("/api/auth/login", json=LOGIN_BODY)
            response = client.post("/api/auth/login", json=LOGIN_BODY)

        body = response.json()
        assert body["error"] == "Too many authentication attempts, please try again later."
        assert body["error_ar"]
        assert body["retry_after_minutes"] == 15

    def test_google_shares_the_budget(self, client, rate_limited):
        with patch(AUTH_SERVICE) as service_cls:
            service_cls.return_value.login = AsyncMock(
                side_effect=InvalidCredentialsError(remaining_attempts=1)
            )
            for _ in range(5):
                client.post("/api/auth/login", json=LOGIN_BODY)
            response = client.post("/api/auth/google", json={"id_token": "google-token"})

        assert response.status_code == 429
        service_cls.return_value.google_login.assert_not_called()

    def test_budget_is_per_client_address(self, client, rate_limited):
        with patch(AUTH_SERVICE) as service_cls:
            service_cls.return_value.login = AsyncMock(
                side_effect=InvalidCredentialsError(remaining_attempts=1)
            )
            for _ in range(5):
                client.post(
                    "/api/auth/login", json=LOGIN_BODY, headers={"X-Forwarded-For": "198.51.100.1"}
                )
            response = client.post(
                "/api/auth/login", json=LOGIN_BODY, headers={"X-Forwarded-For": "198.51.100.2"}
            )

        assert response.status_code == 401



@pytest.fixture
def signed_in():
    caller = AuthenticatedUser(
        user_id=42,
        email="owner@example.com",
        role=UserRole.USER,
        access_token="access",
        access_expires_at=datetime(2026, 10, 19, 12, 15, tzinfo=UTC),
    )
    app.dependency_overrides[get_current_user] = lambda: caller
    yield caller
    app.dependency_overrides.pop(get_current_user, None)


class TestMeRoute:
    def test_returns_user_and_active_plan(self, client, db_session, signed_in, user, monthly_plan):
        end = datetime(2026, 11, 19, tzinfo=UTC)
        subscription = make_subscription(end_date=end)
        db_session.execute = AsyncMock(return_value=make_result(rows=[(subscription, monthly_plan)]))
        db_session.get = AsyncMock(return_value=user)

        response = client.get("/api/auth/me")

        assert response.status_code == 200
        body = response.json()
        assert body["user"] == {
            "id": 42,
            "email": "owner@example.com",
            "name": "Menu Owner",
            "role": "user",
        }
        assert body["plan"]["plan_name"] == "Monthly"
        assert body["plan"]["billing_cycle"] == "monthly"
        assert body["plan"]["max_menus"] == 3

    def test_no_active_subscription_is_404(self, client, db_session, signed_in):
        db_session.execute = AsyncMock(return_value=make_result(rows=[]))

        response = client.get("/api/auth/me")

        assert response.status_code == 404
        assert response.json()["error"] == "No active subscription found for user 42"

    def test_requires_token(self, client):
        assert client.get("/api/auth/me").status_code == 401


class TestOperationalRoutes:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health_ok(self, client, db_session):
        @asynccontextmanager
        async def session():
            yield db_session

        with patch("app.main.get_session", session):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "database": "up"}

    def test_health_degraded(self, client, db_session):
        db_session.execute = AsyncMock(side_effect=OperationalError("SELECT 1", {}, Exception("x")))

        @asynccontextmanager
        async def session():
            yield db_session

        with patch("app.main.get_session", session):
            response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["database"] == "down"

    def test_metrics_exposition(self, client):
        client.get("/")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "account_core_http_requests_total" in response.text


class TestBuildSchedulers:
    def test_disabled_by_test_environment(self):
        assert build_schedulers() == []

    def test_both_enabled(self):
        with patch("app.main.settings.subscription_scheduler_enabled", True), patch(
            "app.main.settings.cleanup_scheduler_enabled", True
        ):
            jobs = build_schedulers()

        assert [job.name for job in jobs] == ["subscription_lifecycle", "cleanup"]
