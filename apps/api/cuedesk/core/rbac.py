import uuid
from collections.abc import Callable

from fastapi import Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from starlette.requests import Request

from cuedesk.authz.models import Profile
from cuedesk.authz.repository import profile_store
from cuedesk.context import get_correlation_id
from cuedesk.core.auth import get_current_principal
from cuedesk.core.database import get_db
from cuedesk.platform.security.company import EffectiveCompanyResolver, require_company
from cuedesk.platform.security.context import AuthContext, EffectiveCompanyContext, Principal
from cuedesk.platform.security.errors import Forbidden, ProfileNotFound
from cuedesk.platform.security.policies import is_allowed
from cuedesk.platform.security.rls import bind_row_security_principal
from cuedesk.platform.security.roles import parse_role


def get_row_security_principal(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> Principal:
    """Authenticated principal, bound to the request session for row-level policies."""
    bind_row_security_principal(db, principal.id)
    return principal


def get_current_profile(
    principal: Principal = Depends(get_row_security_principal),
    db: Session = Depends(get_db),
) -> Profile:
    profile = profile_store.get_profile(db, principal.id)
    if profile is None:
        raise ProfileNotFound(details={"principal_id": principal.id})
    return profile


def get_active_profile(profile: Profile = Depends(get_current_profile)) -> Profile:
    if not profile.active:
        raise Forbidden("Profile is deactivated")
    return profile


def get_requested_company_id(
    request: Request,
    company_id: uuid.UUID | None = Query(default=None),
) -> uuid.UUID | None:
    raw_header = request.headers.get("x-company-id")
    if not raw_header:
        return company_id
    try:
        return uuid.UUID(raw_header)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="X-Company-Id must be a UUID")


def company_resolver_for(db: Session) -> EffectiveCompanyResolver:
    return EffectiveCompanyResolver(lambda company_id: profile_store.company_exists(db, company_id))


def get_company_context(
    request: Request,
    profile: Profile = Depends(get_current_profile),
    requested_company_id: uuid.UUID | None = Depends(get_requested_company_id),
    db: Session = Depends(get_db),
) -> EffectiveCompanyContext:
    context = company_resolver_for(db).resolve(profile, requested_company_id)
    request_context = getattr(request.state, "context", None)
    if request_context is not None:
        request_context.company_id = str(context.company_id) if context.company_id else None
    return context


def require_company_context(context: EffectiveCompanyContext = Depends(get_company_context)) -> EffectiveCompanyContext:
    require_company(context)
    return context


def get_auth_context(profile: Profile = Depends(get_active_profile)) -> AuthContext:
    return AuthContext(
        principal_id=profile.principal_id,
        role=parse_role(profile.role),
        company_id=profile.company_id,
        correlation_id=get_correlation_id(),
    )


def require_permission(section: str, action: str) -> Callable[[AuthContext], AuthContext]:
    def checker(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if not is_allowed(ctx.role, section, action, ctx=ctx):
            raise Forbidden(
                f"Missing permission: {section}:{action}",
                details={"section": section, "action": action},
            )
        return ctx

    return checker
