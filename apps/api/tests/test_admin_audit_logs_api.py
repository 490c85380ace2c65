from __future__ import annotations

import time
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from cuedesk import events
from cuedesk.authz.models import Company, CompanyJoinRequest, JoinRequestStatus, Profile
from cuedesk.core.config import get_settings
from cuedesk.core.database import Base, get_db
from cuedesk.main import app
from cuedesk.models.audit import AdminAuditLog


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("JWT_SECRET", "audit-logs-secret")
    monkeypatch.setenv("CLAIMS_SYNC_MODE", "disabled")
    get_settings.cache_clear()
    events.published_events.clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _auth(sub: str) -> dict[str, str]:
    now = int(time.time())
    token = jwt.encode(
        {"sub": sub, "aud": "authenticated", "iat": now, "exp": now + 3600},
        get_settings().jwt_secret,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def hall_a(db_session: Session) -> Company:
    company = Company(name="Corner Pocket")
    db_session.add(company)
    db_session.commit()
    return company


def _profile(db: Session, principal_id: str, role: str = "USER", company_id: uuid.UUID | None = None) -> Profile:
    profile = Profile(principal_id=principal_id, role=role, company_id=company_id)
    db.add(profile)
    db.commit()
    return profile


def _seed_logs(db: Session, operations: list[str]) -> None:
    base = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)
    for index, operation in enumerate(operations):
        db.add(
            AdminAuditLog(
                operation=operation,
                performed_by="admin-a",
                entity_type="profile",
                entity_id=f"player-{index}",
                details={"index": index},
                created_at=base + timedelta(minutes=index),
            )
        )
    db.commit()


def test_superadmin_pages_through_newest_first(client: TestClient, db_session: Session) -> None:
    _profile(db_session, "root", role="SUPERADMIN")
    _seed_logs(db_session, ["profile.update"] * 5)

    first = client.get("/api/admin/audit-logs", params={"limit": 2}, headers=_auth("root"))
    last = client.get("/api/admin/audit-logs", params={"page": 3, "limit": 2}, headers=_auth("root"))

    assert first.status_code == 200
    body = first.json()
    assert [log["entity_id"] for log in body["logs"]] == ["player-4", "player-3"]
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 5, "pages": 3}
    assert [log["entity_id"] for log in last.json()["logs"]] == ["player-0"]


def test_operation_filter_applies_to_rows_and_total(client: TestClient, db_session: Session) -> None:
    _profile(db_session, "root", role="SUPERADMIN")
    _seed_logs(db_session, ["profile.update", "profile.delete", "profile.update", "join_request.approved"])

    response = client.get("/api/admin/audit-logs", params={"operation": "profile.update"}, headers=_auth("root"))

    assert response.status_code == 200
    body = response.json()
    assert {log["operation"] for log in body["logs"]} == {"profile.update"}
    assert body["pagination"]["total"] == 2
    assert body["pagination"]["pages"] == 1


def test_empty_log_has_no_pages(client: TestClient, db_session: Session) -> None:
    _profile(db_session, "root", role="SUPERADMIN")

    response = client.get("/api/admin/audit-logs", headers=_auth("root"))

    assert response.json() == {"logs": [], "pagination": {"page": 1, "limit": 50, "total": 0, "pages": 0}}


@pytest.mark.parametrize("role", ["ADMIN", "SELLER", "USER"])
def test_only_superadmin_reads_audit_logs(client: TestClient, db_session: Session, hall_a: Company, role: str) -> None:
    _profile(db_session, "member", role=role, company_id=hall_a.id)
    _seed_logs(db_session, ["profile.update"])

    response = client.get("/api/admin/audit-logs", headers=_auth("member"))

    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"
    assert response.json()["details"] == {"section": "admin.audit_logs", "action": "view"}


def test_audit_logs_require_authentication(client: TestClient) -> None:
    response = client.get("/api/admin/audit-logs")

    assert response.status_code == 401


@pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 201}, {"page": 0}])
def test_pagination_bounds_are_validated(client: TestClient, db_session: Session, params: dict[str, int]) -> None:
    _profile(db_session, "root", role="SUPERADMIN")

    response = client.get("/api/admin/audit-logs", params=params, headers=_auth("root"))

    assert response.status_code == 422


def test_join_request_decision_shows_up_in_audit_log(client: TestClient, db_session: Session, hall_a: Company) -> None:
    _profile(db_session, "root", role="SUPERADMIN")
    _profile(db_session, "admin-a", role="ADMIN", company_id=hall_a.id)
    _profile(db_session, "player-1")
    request = CompanyJoinRequest(principal_id="player-1", company_id=hall_a.id, status=JoinRequestStatus.PENDING)
    db_session.add(request)
    db_session.commit()

    decided = client.post(
        f"/api/admin/join-requests/{request.id}/decision",
        json={"decision": "APPROVE"},
        headers=_auth("admin-a"),
    )
    logs = client.get(
        "/api/admin/audit-logs",
        params={"operation": "join_request.approved"},
        headers=_auth("root"),
    )

    assert decided.status_code == 200
    entry = logs.json()["logs"][0]
    assert entry["performed_by"] == "admin-a"
    assert entry["entity_id"] == str(request.id)
    assert entry["company_id"] == str(hall_a.id)
    assert entry["details"] == {"principal_id": "player-1", "note": None}
