from __future__ import annotations

import math
import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from cuedesk.authz.models import Profile
from cuedesk.authz.repository import profile_store
from cuedesk.authz.schemas import (
    AdminAuditLogPage,
    AdminAuditLogRead,
    CompanyContextRead,
    JoinRequestCreate,
    JoinRequestDecisionRequest,
    JoinRequestRead,
    MeRead,
    PaginationRead,
    PermissionCheckRead,
    ProfileRead,
    ProfileUpdate,
)
from cuedesk.authz.service import join_request_service, profile_admin_service
from cuedesk.core.config import get_settings
from cuedesk.core.database import get_db
from cuedesk.core.rbac import (
    get_active_profile,
    get_auth_context,
    get_company_context,
    get_current_profile,
    get_row_security_principal,
    require_permission,
)
from cuedesk.platform.security.claims import claims_are_fresh
from cuedesk.platform.security.context import AuthContext, EffectiveCompanyContext, Principal
from cuedesk.platform.security.errors import ProfileNotFound
from cuedesk.platform.security.policies import is_allowed
from cuedesk.platform.security.roles import parse_role
from cuedesk.services.audit import list_audit_logs


me_router = APIRouter(prefix="/api/me", tags=["auth"])
authz_router = APIRouter(prefix="/api/authz", tags=["authz"])
join_requests_router = APIRouter(prefix="/api/companies/join-requests", tags=["companies.join_requests"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])


@me_router.get("", response_model=MeRead)
def me(
    principal: Principal = Depends(get_row_security_principal),
    db: Session = Depends(get_db),
) -> MeRead:
    settings = get_settings()
    if claims_are_fresh(principal, max_age_seconds=settings.claims_max_age_seconds):
        return MeRead(
            principal_id=principal.id,
            role=principal.claims.role,
            company_id=principal.claims.company_id,
            source="claims",
        )
    profile = profile_store.get_profile(db, principal.id)
    if profile is None:
        raise ProfileNotFound(details={"principal_id": principal.id})
    return MeRead(
        principal_id=principal.id,
        role=parse_role(profile.role),
        company_id=profile.company_id,
        source="profile",
    )


@me_router.post("/profile", response_model=ProfileRead, status_code=status.HTTP_200_OK)
def provision_profile(
    principal: Principal = Depends(get_row_security_principal),
    db: Session = Depends(get_db),
) -> ProfileRead:
    return profile_admin_service.provision_profile(db, principal)


@me_router.get("/context", response_model=CompanyContextRead)
def company_context(
    profile: Profile = Depends(get_current_profile),
    context: EffectiveCompanyContext = Depends(get_company_context),
) -> CompanyContextRead:
    return CompanyContextRead(
        principal_id=profile.principal_id,
        role=parse_role(profile.role),
        company_id=context.company_id,
        is_super_admin=context.is_super_admin,
    )


@authz_router.get("/check", response_model=PermissionCheckRead)
def check_permission(
    section: str = Query(min_length=1),
    action: str = Query(min_length=1),
    ctx: AuthContext = Depends(get_auth_context),
) -> PermissionCheckRead:
    return PermissionCheckRead(
        section=section,
        action=action,
        allowed=is_allowed(ctx.role, section, action, ctx=ctx),
    )


@join_requests_router.post("", response_model=JoinRequestRead, status_code=status.HTTP_201_CREATED)
def request_to_join(
    dto: JoinRequestCreate,
    principal: Principal = Depends(get_row_security_principal),
    db: Session = Depends(get_db),
) -> JoinRequestRead:
    return join_request_service.request_to_join(db, principal.id, dto.company_id, dto.message)


@join_requests_router.get("/mine", response_model=list[JoinRequestRead])
def list_my_join_requests(
    principal: Principal = Depends(get_row_security_principal),
    db: Session = Depends(get_db),
) -> list[JoinRequestRead]:
    return join_request_service.list_mine(db, principal.id)


@admin_router.get("/join-requests", response_model=list[JoinRequestRead])
def list_pending_join_requests(
    profile: Profile = Depends(get_active_profile),
    db: Session = Depends(get_db),
) -> list[JoinRequestRead]:
    return join_request_service.list_pending(db, profile.principal_id)


@admin_router.post("/join-requests/{request_id}/decision", response_model=JoinRequestRead)
def decide_join_request(
    request_id: uuid.UUID,
    dto: JoinRequestDecisionRequest,
    profile: Profile = Depends(get_active_profile),
    db: Session = Depends(get_db),
) -> JoinRequestRead:
    return join_request_service.decide(db, request_id, dto.decision, profile.principal_id)


@admin_router.get("/users", response_model=list[ProfileRead])
def list_users(
    ctx: AuthContext = Depends(require_permission("admin.users", "view")),
    context: EffectiveCompanyContext = Depends(get_company_context),
    db: Session = Depends(get_db),
) -> list[ProfileRead]:
    return profile_admin_service.list_profiles(db, ctx, context)


@admin_router.patch("/users/{principal_id}", response_model=ProfileRead)
def update_user(
    principal_id: str,
    dto: ProfileUpdate,
    ctx: AuthContext = Depends(require_permission("admin.users", "edit")),
    db: Session = Depends(get_db),
) -> ProfileRead:
    return profile_admin_service.update_profile(db, ctx, principal_id, dto)


@admin_router.delete("/users/{principal_id}", response_model=ProfileRead)
def delete_user(
    principal_id: str,
    ctx: AuthContext = Depends(require_permission("admin.users", "delete")),
    db: Session = Depends(get_db),
) -> ProfileRead:
    return profile_admin_service.delete_profile(db, ctx, principal_id)


@admin_router.get("/audit-logs", response_model=AdminAuditLogPage)
def list_admin_audit_logs(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    operation: str | None = Query(default=None),
    _ctx: AuthContext = Depends(require_permission("admin.audit_logs", "view")),
    db: Session = Depends(get_db),
) -> AdminAuditLogPage:
    rows, total = list_audit_logs(db, page=page, limit=limit, operation=operation)
    return AdminAuditLogPage(
        logs=[AdminAuditLogRead.model_validate(row) for row in rows],
        pagination=PaginationRead(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )
