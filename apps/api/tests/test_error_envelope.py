from __future__ import annotations

import time
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from cuedesk.core.config import get_settings
from cuedesk.core.database import get_db
from cuedesk.main import app
from cuedesk.platform.security.errors import (
    AuthorizationError,
    CompanyNotFound,
    CrossTenantAccessError,
    Forbidden,
    InvalidState,
    JoinRequestNotFound,
    NoCompanyContext,
    ProfileNotFound,
    TransientError,
    Unauthenticated,
)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("JWT_SECRET", "envelope-secret")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def unreachable_db_client() -> Generator[TestClient, None, None]:
    engine = create_engine("sqlite+pysqlite:////nonexistent-dir/cuedesk/app.db")
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    def override_get_db() -> Generator[Session, None, None]:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.mark.parametrize(
    ("error", "status_code", "code"),
    [
        (Unauthenticated(), 401, "UNAUTHENTICATED"),
        (ProfileNotFound(), 404, "PROFILE_NOT_FOUND"),
        (CompanyNotFound(), 404, "COMPANY_NOT_FOUND"),
        (JoinRequestNotFound(), 404, "JOIN_REQUEST_NOT_FOUND"),
        (Forbidden(), 403, "FORBIDDEN"),
        (CrossTenantAccessError(), 403, "CROSS_TENANT_FORBIDDEN"),
        (NoCompanyContext(), 403, "NO_COMPANY_CONTEXT"),
        (InvalidState(), 403, "INVALID_STATE"),
        (TransientError(), 503, "TRANSIENT_ERROR"),
    ],
)
def test_error_kinds_map_to_http_status(error: AuthorizationError, status_code: int, code: str) -> None:
    assert error.status_code == status_code
    assert error.code == code
    assert error.message == error.default_message


def test_cross_tenant_denial_is_a_forbidden() -> None:
    assert isinstance(CrossTenantAccessError(), Forbidden)


def test_storage_outage_returns_503_with_retry_after(unreachable_db_client: TestClient) -> None:
    now = int(time.time())
    token = jwt.encode(
        {"sub": "player-1", "aud": "authenticated", "iat": now, "exp": now + 60},
        get_settings().jwt_secret,
        algorithm="HS256",
    )

    response = unreachable_db_client.get(
        "/api/me/context",
        headers={"Authorization": f"Bearer {token}", "X-Correlation-Id": "corr-outage-1"},
    )

    assert response.status_code == 503
    assert response.headers.get("retry-after") == "1"
    body = response.json()
    assert body["code"] == "TRANSIENT_ERROR"
    assert body["details"] == {"operation": "get_profile"}
    assert body["correlation_id"] == "corr-outage-1"
