from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from cuedesk import events
from cuedesk.authz.models import Company, CompanyJoinRequest, JoinRequestStatus, Profile
from cuedesk.platform.security.storage import translate_storage_errors
from cuedesk.authz.schemas import JoinDecision
from cuedesk.authz.service import JoinRequestService
from cuedesk.core.config import get_settings
from cuedesk.core.database import Base
from cuedesk.models.audit import AdminAuditLog
from cuedesk.platform.security.errors import (
    CompanyNotFound,
    Forbidden,
    InvalidState,
    JoinRequestNotFound,
    ProfileNotFound,
    TransientError,
)


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
    monkeypatch.setenv("CLAIMS_SYNC_MODE", "disabled")
    get_settings.cache_clear()
    events.published_events.clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def service() -> JoinRequestService:
    return JoinRequestService()


def _company(db: Session, name: str) -> Company:
    company = Company(name=name)
    db.add(company)
    db.commit()
    return company


def _profile(db: Session, principal_id: str, role: str = "USER", company_id: uuid.UUID | None = None, active: bool = True) -> Profile:
    profile = Profile(principal_id=principal_id, role=role, company_id=company_id, active=active)
    db.add(profile)
    db.commit()
    return profile


@pytest.fixture()
def hall_a(db_session: Session) -> Company:
    return _company(db_session, "Corner Pocket")


@pytest.fixture()
def hall_b(db_session: Session) -> Company:
    return _company(db_session, "Eight Ball Lounge")


def _event_types() -> list[str]:
    return [event["event_type"] for event in events.published_events]


def test_request_and_approval_moves_principal_into_company(
    db_session: Session,
    service: JoinRequestService,
    hall_a: Company,
) -> None:
    _profile(db_session, "admin-a", role="ADMIN", company_id=hall_a.id)
    _profile(db_session, "player-1")

    created = service.request_to_join(db_session, "player-1", hall_a.id, "Regular on Tuesdays")
    assert created.status == JoinRequestStatus.PENDING
    assert created.message == "Regular on Tuesdays"

    decided = service.decide(db_session, created.id, JoinDecision.APPROVE, "admin-a")

    assert decided.status == JoinRequestStatus.APPROVED
    assert decided.decided_by == "admin-a"
    assert decided.decided_at is not None
    player = db_session.scalar(select(Profile).where(Profile.principal_id == "player-1"))
    assert player is not None
    assert player.company_id == hall_a.id
    assert player.role == "USER"

    audit_row = db_session.scalar(select(AdminAuditLog).where(AdminAuditLog.entity_id == str(created.id)))
    assert audit_row is not None
    assert audit_row.operation == "join_request.approved"
    assert audit_row.performed_by == "admin-a"
    assert audit_row.company_id == hall_a.id

    assert _event_types() == [
        events.JOIN_REQUEST_CREATED,
        events.JOIN_REQUEST_DECIDED,
        events.PROFILE_COMPANY_CHANGED,
    ]
    assert events.published_events[-1]["changes"] == {"company_id": str(hall_a.id)}


def test_repeated_request_returns_existing_pending(
    db_session: Session,
    service: JoinRequestService,
    hall_a: Company,
) -> None:
    _profile(db_session, "player-1")

    first = service.request_to_join(db_session, "player-1", hall_a.id)
    second = service.request_to_join(db_session, "player-1", hall_a.id, "second try")

    assert second.id == first.id
    rows = db_session.scalars(select(CompanyJoinRequest)).all()
    assert len(rows) == 1
    assert _event_types() == [events.JOIN_REQUEST_CREATED]


def test_request_to_unknown_company_is_not_found(db_session: Session, service: JoinRequestService) -> None:
    _profile(db_session, "player-1")

    with pytest.raises(CompanyNotFound):
        service.request_to_join(db_session, "player-1", uuid.uuid4())


def test_request_without_profile_is_not_found(db_session: Session, service: JoinRequestService, hall_a: Company) -> None:
    with pytest.raises(ProfileNotFound):
        service.request_to_join(db_session, "ghost", hall_a.id)


def test_affiliated_principal_cannot_request(
    db_session: Session,
    service: JoinRequestService,
    hall_a: Company,
    hall_b: Company,
) -> None:
    _profile(db_session, "seller-a", role="SELLER", company_id=hall_a.id)

    with pytest.raises(Forbidden):
        service.request_to_join(db_session, "seller-a", hall_b.id)


def test_admin_of_other_company_cannot_decide(
    db_session: Session,
    service: JoinRequestService,
    hall_a: Company,
    hall_b: Company,
) -> None:
    _profile(db_session, "admin-b", role="ADMIN", company_id=hall_b.id)
    _profile(db_session, "player-1")
    created = service.request_to_join(db_session, "player-1", hall_a.id)

    with pytest.raises(Forbidden):
        service.decide(db_session, created.id, JoinDecision.APPROVE, "admin-b")

    request = db_session.get(CompanyJoinRequest, created.id)
    assert request is not None
    assert request.status == JoinRequestStatus.PENDING
    player = db_session.scalar(select(Profile).where(Profile.principal_id == "player-1"))
    assert player is not None
    assert player.company_id is None


@pytest.mark.parametrize("role", ["USER", "SELLER"])
def test_non_admin_member_cannot_decide(
    db_session: Session,
    service: JoinRequestService,
    hall_a: Company,
    role: str,
) -> None:
    _profile(db_session, "member-a", role=role, company_id=hall_a.id)
    _profile(db_session, "player-1")
    created = service.request_to_join(db_session, "player-1", hall_a.id)

    with pytest.raises(Forbidden):
        service.decide(db_session, created.id, JoinDecision.REJECT, "member-a")


def test_deactivated_admin_cannot_decide(db_session: Session, service: JoinRequestService, hall_a: Company) -> None:
    _profile(db_session, "admin-a", role="ADMIN", company_id=hall_a.id, active=False)
    _profile(db_session, "player-1")
    created = service.request_to_join(db_session, "player-1", hall_a.id)

    with pytest.raises(Forbidden):
        service.decide(db_session, created.id, JoinDecision.APPROVE, "admin-a")


def test_superadmin_can_decide_for_any_company(
    db_session: Session,
    service: JoinRequestService,
    hall_b: Company,
) -> None:
    _profile(db_session, "root", role="SUPERADMIN")
    _profile(db_session, "player-1")
    created = service.request_to_join(db_session, "player-1", hall_b.id)

    decided = service.decide(db_session, created.id, JoinDecision.APPROVE, "root")

    assert decided.status == JoinRequestStatus.APPROVED


def test_rejection_leaves_profile_unchanged(db_session: Session, service: JoinRequestService, hall_a: Company) -> None:
    _profile(db_session, "admin-a", role="ADMIN", company_id=hall_a.id)
    _profile(db_session, "player-1")
    created = service.request_to_join(db_session, "player-1", hall_a.id)

    decided = service.decide(db_session, created.id, JoinDecision.REJECT, "admin-a")

    assert decided.status == JoinRequestStatus.REJECTED
    player = db_session.scalar(select(Profile).where(Profile.principal_id == "player-1"))
    assert player is not None
    assert player.company_id is None
    assert events.PROFILE_COMPANY_CHANGED not in _event_types()


@pytest.mark.parametrize("first", [JoinDecision.APPROVE, JoinDecision.REJECT])
@pytest.mark.parametrize("second", [JoinDecision.APPROVE, JoinDecision.REJECT])
def test_decided_request_cannot_be_decided_again(
    db_session: Session,
    service: JoinRequestService,
    hall_a: Company,
    first: JoinDecision,
    second: JoinDecision,
) -> None:
    _profile(db_session, "admin-a", role="ADMIN", company_id=hall_a.id)
    _profile(db_session, "player-1")
    created = service.request_to_join(db_session, "player-1", hall_a.id)
    decided = service.decide(db_session, created.id, first, "admin-a")

    with pytest.raises(InvalidState) as exc_info:
        service.decide(db_session, created.id, second, "admin-a")
    assert exc_info.value.status_code == 403

    request = db_session.get(CompanyJoinRequest, created.id)
    assert request is not None
    assert request.status == decided.status


def test_approval_supersedes_other_pending_requests(
    db_session: Session,
    service: JoinRequestService,
    hall_a: Company,
    hall_b: Company,
) -> None:
    _profile(db_session, "admin-a", role="ADMIN", company_id=hall_a.id)
    _profile(db_session, "admin-b", role="ADMIN", company_id=hall_b.id)
    _profile(db_session, "player-1")
    to_a = service.request_to_join(db_session, "player-1", hall_a.id)
    to_b = service.request_to_join(db_session, "player-1", hall_b.id)

    service.decide(db_session, to_a.id, JoinDecision.APPROVE, "admin-a")

    other = db_session.get(CompanyJoinRequest, to_b.id)
    assert other is not None
    assert other.status == JoinRequestStatus.REJECTED
    assert other.decision_note == "superseded"

    with pytest.raises(InvalidState):
        service.decide(db_session, to_b.id, JoinDecision.APPROVE, "admin-b")

    player = db_session.scalar(select(Profile).where(Profile.principal_id == "player-1"))
    assert player is not None
    assert player.company_id == hall_a.id


def test_approval_for_already_affiliated_principal_rejects_request(
    db_session: Session,
    service: JoinRequestService,
    hall_a: Company,
    hall_b: Company,
) -> None:
    _profile(db_session, "admin-a", role="ADMIN", company_id=hall_a.id)
    player = _profile(db_session, "player-1")
    created = service.request_to_join(db_session, "player-1", hall_a.id)
    player.company_id = hall_b.id
    db_session.commit()

    with pytest.raises(InvalidState):
        service.decide(db_session, created.id, JoinDecision.APPROVE, "admin-a")

    request = db_session.get(CompanyJoinRequest, created.id)
    assert request is not None
    assert request.status == JoinRequestStatus.REJECTED
    assert request.decision_note == "already_affiliated"
    refreshed = db_session.scalar(select(Profile).where(Profile.principal_id == "player-1"))
    assert refreshed is not None
    assert refreshed.company_id == hall_b.id


def test_deciding_unknown_request_is_not_found(db_session: Session, service: JoinRequestService, hall_a: Company) -> None:
    _profile(db_session, "admin-a", role="ADMIN", company_id=hall_a.id)

    with pytest.raises(JoinRequestNotFound):
        service.decide(db_session, uuid.uuid4(), JoinDecision.APPROVE, "admin-a")


def test_list_pending_is_scoped_by_role(
    db_session: Session,
    service: JoinRequestService,
    hall_a: Company,
    hall_b: Company,
) -> None:
    _profile(db_session, "root", role="SUPERADMIN")
    _profile(db_session, "admin-a", role="ADMIN", company_id=hall_a.id)
    _profile(db_session, "seller-a", role="SELLER", company_id=hall_a.id)
    _profile(db_session, "player-1")
    _profile(db_session, "player-2")
    to_a = service.request_to_join(db_session, "player-1", hall_a.id)
    to_b = service.request_to_join(db_session, "player-2", hall_b.id)

    assert [row.id for row in service.list_pending(db_session, "admin-a")] == [to_a.id]
    assert {row.id for row in service.list_pending(db_session, "root")} == {to_a.id, to_b.id}
    assert service.list_pending(db_session, "seller-a") == []
    assert service.list_pending(db_session, "player-1") == []


def test_list_mine_returns_own_requests_only(
    db_session: Session,
    service: JoinRequestService,
    hall_a: Company,
    hall_b: Company,
) -> None:
    _profile(db_session, "player-1")
    _profile(db_session, "player-2")
    mine = service.request_to_join(db_session, "player-1", hall_a.id)
    service.request_to_join(db_session, "player-2", hall_b.id)

    assert [row.id for row in service.list_mine(db_session, "player-1")] == [mine.id]


def test_storage_failure_is_translated_to_transient_error() -> None:
    with pytest.raises(TransientError) as exc_info:
        with translate_storage_errors("get_profile"):
            raise OperationalError("SELECT 1", {}, Exception("server closed the connection unexpectedly"))

    assert exc_info.value.status_code == 503
    assert exc_info.value.details == {"operation": "get_profile"}


def test_commit_failure_surfaces_as_transient_error(
    db_session: Session,
    service: JoinRequestService,
    hall_a: Company,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _profile(db_session, "player-1")

    def failing_commit() -> None:
        raise OperationalError("COMMIT", {}, Exception("connection reset"))

    monkeypatch.setattr(db_session, "commit", failing_commit)

    with pytest.raises(TransientError):
        service.request_to_join(db_session, "player-1", hall_a.id)
    assert len(events.published_events) == 0
