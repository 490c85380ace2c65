from __future__ import annotations

import logging
import uuid
from typing import Any

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cuedesk import events
from cuedesk.authz.models import CompanyJoinRequest, JoinRequestStatus, Profile
from cuedesk.authz.repository import ProfileStore, profile_store
from cuedesk.authz.schemas import JoinDecision, JoinRequestRead, ProfileRead, ProfileUpdate
from cuedesk.context import get_correlation_id
from cuedesk.metrics import observe_join_request_transition
from cuedesk.platform.security.company import EffectiveCompanyResolver
from cuedesk.platform.security.context import AuthContext, EffectiveCompanyContext, Principal
from cuedesk.platform.security.errors import (
    CompanyNotFound,
    Forbidden,
    InvalidState,
    JoinRequestNotFound,
    ProfileNotFound,
)
from cuedesk.platform.security.policies import is_allowed
from cuedesk.platform.security.roles import Role, can_manage, parse_role
from cuedesk.platform.security.storage import translate_storage_errors
from cuedesk.services.audit import write_audit_log


logger = logging.getLogger("cuedesk.authz")
tracer = trace.get_tracer("cuedesk.authz.workflow")

SUPERSEDED = "superseded"
ALREADY_AFFILIATED = "already_affiliated"


def _load_active_actor(store: ProfileStore, session: Session, principal_id: str) -> tuple[Profile, Role]:
    profile = store.get_profile(session, principal_id)
    if profile is None:
        raise ProfileNotFound(details={"principal_id": principal_id})
    if not profile.active:
        raise Forbidden("Profile is deactivated")
    return profile, parse_role(profile.role)


def _commit(session: Session, operation: str) -> None:
    with translate_storage_errors(operation):
        session.commit()


class JoinRequestService:
    """Company join-request state machine: PENDING to exactly one of APPROVED or REJECTED."""

    def __init__(self, store: ProfileStore | None = None) -> None:
        self._store = store or profile_store

    def request_to_join(
        self,
        session: Session,
        principal_id: str,
        company_id: uuid.UUID,
        message: str | None = None,
    ) -> JoinRequestRead:
        """File a join request, or return the PENDING one already filed for the same company."""

        with tracer.start_as_current_span("authz.join_request.create") as span:
            span.set_attribute("principal_id", principal_id)
            span.set_attribute("company_id", str(company_id))

            profile = self._store.get_profile(session, principal_id)
            if profile is None:
                raise ProfileNotFound(details={"principal_id": principal_id})
            if not profile.active:
                raise Forbidden("Profile is deactivated")
            if profile.company_id is not None:
                raise Forbidden("Principal already belongs to a company")
            if not self._store.company_exists(session, company_id):
                raise CompanyNotFound(details={"company_id": str(company_id)})

            existing = self._store.find_pending_join_request(session, principal_id, company_id)
            if existing is not None:
                return JoinRequestRead.model_validate(existing)

            try:
                request = self._store.create_join_request(session, principal_id, company_id, message)
                _commit(session, "create_join_request")
            except IntegrityError:
                session.rollback()
                existing = self._store.find_pending_join_request(session, principal_id, company_id)
                if existing is not None:
                    return JoinRequestRead.model_validate(existing)
                if not self._store.company_exists(session, company_id):
                    raise CompanyNotFound(details={"company_id": str(company_id)})
                raise

        observe_join_request_transition(JoinRequestStatus.PENDING)
        logger.info(
            "authz.join_request_created",
            extra={"principal_id": principal_id, "company_id": str(company_id), "join_request_id": str(request.id)},
        )
        events.publish(
            {
                "event_type": events.JOIN_REQUEST_CREATED,
                "join_request_id": str(request.id),
                "principal_id": principal_id,
                "company_id": str(company_id),
            }
        )
        return JoinRequestRead.model_validate(request)

    def list_pending(self, session: Session, manager_principal_id: str) -> list[JoinRequestRead]:
        manager, role = _load_active_actor(self._store, session, manager_principal_id)
        if role == Role.SUPERADMIN:
            rows = self._store.list_pending_join_requests(session, all_companies=True)
        elif role == Role.ADMIN:
            rows = self._store.list_pending_join_requests(session, company_id=manager.company_id)
        else:
            rows = []
        return [JoinRequestRead.model_validate(row) for row in rows]

    def list_mine(self, session: Session, principal_id: str) -> list[JoinRequestRead]:
        rows = self._store.list_join_requests_for_principal(session, principal_id)
        return [JoinRequestRead.model_validate(row) for row in rows]

    def decide(
        self,
        session: Session,
        request_id: uuid.UUID,
        decision: JoinDecision,
        manager_principal_id: str,
    ) -> JoinRequestRead:
        """Approve or reject a PENDING request.

        Concurrent decisions for the same principal serialize on the principal's
        profile row. The first approval to commit wins and rejects the principal's
        other PENDING requests in the same transaction, so a concurrent decision
        on any of them fails with InvalidState. Approving a request for a
        principal that already belongs to a company rejects it and fails with
        InvalidState.
        """

        with tracer.start_as_current_span("authz.join_request.decide") as span:
            span.set_attribute("join_request_id", str(request_id))
            span.set_attribute("decision", decision.value)
            try:
                request, superseded = self._decide(session, request_id, decision, manager_principal_id)
            except Exception:
                session.rollback()
                raise

        observe_join_request_transition(request.status)
        for _ in superseded:
            observe_join_request_transition(JoinRequestStatus.REJECTED)
        logger.info(
            "authz.join_request_decided",
            extra={
                "principal_id": manager_principal_id,
                "target_principal_id": request.principal_id,
                "company_id": str(request.company_id),
                "join_request_id": str(request.id),
                "decision": request.status,
            },
        )
        events.publish(
            {
                "event_type": events.JOIN_REQUEST_DECIDED,
                "join_request_id": str(request.id),
                "principal_id": request.principal_id,
                "company_id": str(request.company_id),
                "status": request.status,
                "decided_by": manager_principal_id,
            }
        )
        if request.status == JoinRequestStatus.APPROVED:
            events.publish(
                {
                    "event_type": events.PROFILE_COMPANY_CHANGED,
                    "principal_id": request.principal_id,
                    "changes": {"company_id": str(request.company_id)},
                }
            )
        return JoinRequestRead.model_validate(request)

    def _decide(
        self,
        session: Session,
        request_id: uuid.UUID,
        decision: JoinDecision,
        manager_principal_id: str,
    ) -> tuple[CompanyJoinRequest, list[CompanyJoinRequest]]:
        manager, manager_role = _load_active_actor(self._store, session, manager_principal_id)

        request = self._store.get_join_request(session, request_id)
        if request is None:
            raise JoinRequestNotFound(details={"join_request_id": str(request_id)})
        self._authorize_decider(manager, manager_role, request)

        target = self._store.lock_profile(session, request.principal_id)
        request = self._store.get_join_request(session, request_id, for_update=True)
        if request is None:
            raise JoinRequestNotFound(details={"join_request_id": str(request_id)})
        if request.status != JoinRequestStatus.PENDING:
            raise InvalidState(
                "Join request has already been decided",
                details={"join_request_id": str(request.id), "status": request.status},
            )
        if target is None:
            raise ProfileNotFound(details={"principal_id": request.principal_id})

        superseded: list[CompanyJoinRequest] = []
        if decision == JoinDecision.APPROVE and target.company_id is not None:
            self._store.decide_join_request(
                session,
                request,
                JoinRequestStatus.REJECTED,
                decided_by=manager_principal_id,
                note=ALREADY_AFFILIATED,
            )
            self._audit_decision(session, manager_principal_id, request, ALREADY_AFFILIATED)
            _commit(session, "decide_join_request")
            observe_join_request_transition(JoinRequestStatus.REJECTED)
            raise InvalidState(
                "Principal already belongs to a company; request rejected",
                details={"join_request_id": str(request.id), "status": request.status},
            )

        if decision == JoinDecision.APPROVE:
            # Row policies admit a company admin to the principal's rows only while
            # the request for that company is PENDING, so it is decided last.
            for other in self._store.list_other_pending_join_requests(session, request.principal_id, request.id):
                self._store.decide_join_request(
                    session,
                    other,
                    JoinRequestStatus.REJECTED,
                    decided_by=manager_principal_id,
                    note=SUPERSEDED,
                )
                self._audit_decision(session, manager_principal_id, other, SUPERSEDED)
                superseded.append(other)
            self._store.upsert_profile(session, request.principal_id, {"company_id": request.company_id})
            self._store.decide_join_request(session, request, JoinRequestStatus.APPROVED, decided_by=manager_principal_id)
        else:
            self._store.decide_join_request(session, request, JoinRequestStatus.REJECTED, decided_by=manager_principal_id)

        self._audit_decision(session, manager_principal_id, request, None)
        _commit(session, "decide_join_request")
        return request, superseded

    @staticmethod
    def _authorize_decider(manager: Profile, manager_role: Role, request: CompanyJoinRequest) -> None:
        if manager_role == Role.SUPERADMIN:
            return
        if manager_role == Role.ADMIN and manager.company_id is not None and manager.company_id == request.company_id:
            return
        raise Forbidden(
            "Only a superadmin or an admin of the requested company may decide this request",
            details={"join_request_id": str(request.id)},
        )

    @staticmethod
    def _audit_decision(session: Session, performed_by: str, request: CompanyJoinRequest, note: str | None) -> None:
        write_audit_log(
            session,
            performed_by=performed_by,
            operation=f"join_request.{request.status.lower()}",
            entity_type="company_join_request",
            entity_id=str(request.id),
            company_id=request.company_id,
            details={"principal_id": request.principal_id, "note": note},
        )


def _profile_snapshot(profile: Profile) -> dict[str, Any]:
    return {
        "role": profile.role,
        "company_id": str(profile.company_id) if profile.company_id else None,
        "active": profile.active,
    }


class ProfileAdminService:
    """Administrative changes to other principals' profiles."""

    def __init__(self, store: ProfileStore | None = None) -> None:
        self._store = store or profile_store

    def provision_profile(
        self,
        session: Session,
        principal: Principal,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> ProfileRead:
        """Create a USER profile on first authentication. Existing profiles are returned unchanged."""

        existing = self._store.get_profile(session, principal.id)
        if existing is not None:
            return ProfileRead.model_validate(existing)

        try:
            profile = self._store.upsert_profile(
                session,
                principal.id,
                {"role": Role.USER, "company_id": None, "first_name": first_name, "last_name": last_name},
            )
            _commit(session, "provision_profile")
        except IntegrityError:
            session.rollback()
            existing = self._store.get_profile(session, principal.id)
            if existing is None:
                raise
            return ProfileRead.model_validate(existing)

        logger.info("authz.profile_provisioned", extra={"principal_id": principal.id})
        events.publish({"event_type": events.PROFILE_PROVISIONED, "principal_id": principal.id})
        return ProfileRead.model_validate(profile)

    def list_profiles(self, session: Session, actor: AuthContext, context: EffectiveCompanyContext) -> list[ProfileRead]:
        self._require(actor, "view")
        rows = self._store.list_profiles(session, context)
        return [ProfileRead.model_validate(row) for row in rows]

    def update_profile(
        self,
        session: Session,
        actor: AuthContext,
        target_principal_id: str,
        dto: ProfileUpdate,
    ) -> ProfileRead:
        self._require(actor, "edit")
        changes = dto.model_dump(exclude_unset=True)
        if changes.get("role", Role.USER) is None:
            changes.pop("role")
        if changes.get("active", True) is None:
            changes.pop("active")

        try:
            target, before = self._load_managed_target(session, actor, target_principal_id)
            original_company_id = target.company_id

            if "role" in changes and not can_manage(actor.role, changes["role"]):
                raise Forbidden(
                    "Cannot assign a role above your own",
                    details={"role": changes["role"].value},
                )
            if "company_id" in changes and changes["company_id"] is not None:
                actor_profile = self._store.get_profile(session, actor.principal_id)
                resolver = EffectiveCompanyResolver(lambda company_id: self._store.company_exists(session, company_id))
                resolver.resolve(actor_profile, changes["company_id"])
            if changes.get("active") is False and target_principal_id == actor.principal_id:
                raise Forbidden("Cannot deactivate your own account")

            profile = self._store.upsert_profile(session, target_principal_id, changes)
            after = _profile_snapshot(profile)
            write_audit_log(
                session,
                performed_by=actor.principal_id,
                operation="profile.update",
                entity_type="profile",
                entity_id=target_principal_id,
                company_id=original_company_id or actor.company_id,
                details={"before": before, "after": after},
            )
            _commit(session, "update_profile")
        except Exception:
            session.rollback()
            raise

        logger.info(
            "authz.profile_updated",
            extra={
                "principal_id": actor.principal_id,
                "target_principal_id": target_principal_id,
                "role": after["role"],
                "company_id": after["company_id"],
            },
        )
        self._publish_claim_changes(target_principal_id, before, after)
        return ProfileRead.model_validate(profile)

    def delete_profile(self, session: Session, actor: AuthContext, target_principal_id: str) -> ProfileRead:
        """Deactivate a profile and detach it from its company."""

        self._require(actor, "delete")
        if target_principal_id == actor.principal_id:
            raise Forbidden("Cannot delete your own account")

        try:
            target, before = self._load_managed_target(session, actor, target_principal_id)
            company_id = target.company_id
            profile = self._store.upsert_profile(session, target_principal_id, {"active": False, "company_id": None})
            after = _profile_snapshot(profile)
            write_audit_log(
                session,
                performed_by=actor.principal_id,
                operation="profile.delete",
                entity_type="profile",
                entity_id=target_principal_id,
                company_id=company_id,
                details={"before": before, "after": after},
            )
            _commit(session, "delete_profile")
        except Exception:
            session.rollback()
            raise

        logger.info(
            "authz.profile_deleted",
            extra={"principal_id": actor.principal_id, "target_principal_id": target_principal_id},
        )
        self._publish_claim_changes(target_principal_id, before, after)
        return ProfileRead.model_validate(profile)

    @staticmethod
    def _require(actor: AuthContext, action: str) -> None:
        if not is_allowed(actor.role, "admin.users", action, ctx=actor):
            raise Forbidden(
                f"Missing permission: admin.users:{action}",
                details={"section": "admin.users", "action": action},
            )

    def _load_managed_target(
        self,
        session: Session,
        actor: AuthContext,
        target_principal_id: str,
    ) -> tuple[Profile, dict[str, Any]]:
        target = self._store.lock_profile(session, target_principal_id)
        if target is None:
            raise ProfileNotFound(details={"principal_id": target_principal_id})
        if not actor.is_super_admin and (actor.company_id is None or target.company_id != actor.company_id):
            raise Forbidden(
                "Profile belongs to another company",
                details={"principal_id": target_principal_id},
            )
        target_role = parse_role(target.role)
        if not can_manage(actor.role, target_role):
            raise Forbidden(
                "Cannot manage a principal with a higher role",
                details={"principal_id": target_principal_id, "role": target_role.value},
            )
        return target, _profile_snapshot(target)

    @staticmethod
    def _publish_claim_changes(principal_id: str, before: dict[str, Any], after: dict[str, Any]) -> None:
        correlation_id = get_correlation_id()
        if before["role"] != after["role"]:
            events.publish(
                {
                    "event_type": events.PROFILE_ROLE_CHANGED,
                    "principal_id": principal_id,
                    "changes": {"role": after["role"]},
                    "correlation_id": correlation_id,
                }
            )
        if before["company_id"] != after["company_id"]:
            events.publish(
                {
                    "event_type": events.PROFILE_COMPANY_CHANGED,
                    "principal_id": principal_id,
                    "changes": {"company_id": after["company_id"]},
                    "correlation_id": correlation_id,
                }
            )


join_request_service = JoinRequestService()
profile_admin_service = ProfileAdminService()
