from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from cuedesk.authz.models import Company, CompanyJoinRequest, JoinRequestStatus, Profile
from cuedesk.platform.security.context import EffectiveCompanyContext
from cuedesk.platform.security.rls import apply_company_scope
from cuedesk.platform.security.roles import Role
from cuedesk.platform.security.storage import translate_storage_errors


_MUTABLE_PROFILE_FIELDS = frozenset({"role", "company_id", "active", "first_name", "last_name"})


class ProfileStore:
    """Persistence for profiles, companies and join requests.

    Methods flush but never commit; the calling service owns the transaction.
    """

    def get_profile(self, session: Session, principal_id: str) -> Profile | None:
        with translate_storage_errors("get_profile"):
            return session.scalar(select(Profile).where(Profile.principal_id == principal_id))

    def lock_profile(self, session: Session, principal_id: str) -> Profile | None:
        with translate_storage_errors("lock_profile"):
            return session.scalar(
                select(Profile)
                .where(Profile.principal_id == principal_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )

    def upsert_profile(
        self,
        session: Session,
        principal_id: str,
        changes: Mapping[str, Any] | None = None,
    ) -> Profile:
        unknown = set(changes or {}) - _MUTABLE_PROFILE_FIELDS
        if unknown:
            raise ValueError(f"unsupported profile fields: {', '.join(sorted(unknown))}")

        with translate_storage_errors("upsert_profile"):
            profile = session.scalar(select(Profile).where(Profile.principal_id == principal_id))
            if profile is None:
                profile = Profile(principal_id=principal_id, role=Role.USER.value, active=True)
                session.add(profile)
            for key, value in (changes or {}).items():
                setattr(profile, key, value.value if isinstance(value, Role) else value)
            session.flush()
            return profile

    def list_profiles(self, session: Session, context: EffectiveCompanyContext) -> list[Profile]:
        stmt = apply_company_scope(select(Profile).order_by(Profile.created_at.asc()), context)
        with translate_storage_errors("list_profiles"):
            return list(session.scalars(stmt).all())

    def company_exists(self, session: Session, company_id: uuid.UUID) -> bool:
        with translate_storage_errors("company_exists"):
            return session.scalar(select(Company.id).where(Company.id == company_id)) is not None

    def get_join_request(
        self,
        session: Session,
        request_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> CompanyJoinRequest | None:
        stmt = select(CompanyJoinRequest).where(CompanyJoinRequest.id == request_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        with translate_storage_errors("get_join_request"):
            return session.scalar(stmt)

    def find_pending_join_request(
        self,
        session: Session,
        principal_id: str,
        company_id: uuid.UUID,
    ) -> CompanyJoinRequest | None:
        with translate_storage_errors("find_pending_join_request"):
            return session.scalar(
                select(CompanyJoinRequest).where(
                    CompanyJoinRequest.principal_id == principal_id,
                    CompanyJoinRequest.company_id == company_id,
                    CompanyJoinRequest.status == JoinRequestStatus.PENDING,
                )
            )

    def create_join_request(
        self,
        session: Session,
        principal_id: str,
        company_id: uuid.UUID,
        message: str | None = None,
    ) -> CompanyJoinRequest:
        with translate_storage_errors("create_join_request"):
            request = CompanyJoinRequest(
                principal_id=principal_id,
                company_id=company_id,
                status=JoinRequestStatus.PENDING,
                message=message,
            )
            session.add(request)
            session.flush()
            return request

    def list_pending_join_requests(
        self,
        session: Session,
        *,
        company_id: uuid.UUID | None = None,
        all_companies: bool = False,
    ) -> list[CompanyJoinRequest]:
        stmt = (
            select(CompanyJoinRequest)
            .where(CompanyJoinRequest.status == JoinRequestStatus.PENDING)
            .order_by(CompanyJoinRequest.created_at.asc())
        )
        if not all_companies:
            if company_id is None:
                return []
            stmt = stmt.where(CompanyJoinRequest.company_id == company_id)
        with translate_storage_errors("list_pending_join_requests"):
            return list(session.scalars(stmt).all())

    def list_join_requests_for_principal(self, session: Session, principal_id: str) -> list[CompanyJoinRequest]:
        with translate_storage_errors("list_join_requests_for_principal"):
            return list(
                session.scalars(
                    select(CompanyJoinRequest)
                    .where(CompanyJoinRequest.principal_id == principal_id)
                    .order_by(CompanyJoinRequest.created_at.desc())
                ).all()
            )

    def list_other_pending_join_requests(
        self,
        session: Session,
        principal_id: str,
        exclude_request_id: uuid.UUID,
    ) -> list[CompanyJoinRequest]:
        with translate_storage_errors("list_other_pending_join_requests"):
            return list(
                session.scalars(
                    select(CompanyJoinRequest)
                    .where(
                        CompanyJoinRequest.principal_id == principal_id,
                        CompanyJoinRequest.status == JoinRequestStatus.PENDING,
                        CompanyJoinRequest.id != exclude_request_id,
                    )
                    .with_for_update()
                ).all()
            )

    def decide_join_request(
        self,
        session: Session,
        request: CompanyJoinRequest,
        status: JoinRequestStatus,
        *,
        decided_by: str,
        note: str | None = None,
    ) -> CompanyJoinRequest:
        if request.status != JoinRequestStatus.PENDING:
            raise ValueError(f"join request {request.id} is already {request.status}")
        with translate_storage_errors("decide_join_request"):
            request.status = status.value
            request.decided_by = decided_by
            request.decided_at = datetime.now(timezone.utc)
            request.decision_note = note
            session.flush()
            return request


profile_store = ProfileStore()
