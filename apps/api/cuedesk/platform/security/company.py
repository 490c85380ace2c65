from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import Protocol

from opentelemetry import trace

from cuedesk import audit
from cuedesk.metrics import observe_cross_tenant_denial
from cuedesk.platform.security.context import EffectiveCompanyContext
from cuedesk.platform.security.errors import (
    CompanyNotFound,
    CrossTenantAccessError,
    Forbidden,
    NoCompanyContext,
    ProfileNotFound,
)
from cuedesk.platform.security.roles import Role, parse_role


logger = logging.getLogger("cuedesk.authz")
security_logger = logging.getLogger("cuedesk.authz.security")
tracer = trace.get_tracer("cuedesk.authz.company")


class ProfileLike(Protocol):
    principal_id: str
    role: str
    company_id: uuid.UUID | None
    active: bool


class EffectiveCompanyResolver:
    """Derive the company a request operates on from the caller's stored profile.

    ``company_exists`` is consulted only when a superadmin names a company.
    Resolution never writes the profile.
    """

    def __init__(self, company_exists: Callable[[uuid.UUID], bool]) -> None:
        self._company_exists = company_exists

    def resolve(
        self,
        profile: ProfileLike | None,
        requested_company_id: uuid.UUID | None = None,
    ) -> EffectiveCompanyContext:
        with tracer.start_as_current_span("authz.resolve_company") as span:
            if profile is None:
                raise ProfileNotFound()

            span.set_attribute("principal_id", profile.principal_id)
            if requested_company_id is not None:
                span.set_attribute("requested_company_id", str(requested_company_id))

            if not profile.active:
                raise Forbidden("Profile is deactivated")

            role = parse_role(profile.role)
            if role == Role.SUPERADMIN:
                return self._resolve_super_admin(profile, requested_company_id)

            if requested_company_id is not None and requested_company_id != profile.company_id:
                self._deny_cross_tenant(profile, role, requested_company_id)

            return EffectiveCompanyContext(company_id=profile.company_id, is_super_admin=False)

    def _resolve_super_admin(
        self,
        profile: ProfileLike,
        requested_company_id: uuid.UUID | None,
    ) -> EffectiveCompanyContext:
        if requested_company_id is None:
            return EffectiveCompanyContext(company_id=profile.company_id, is_super_admin=True)

        if not self._company_exists(requested_company_id):
            raise CompanyNotFound(details={"company_id": str(requested_company_id)})

        logger.info(
            "authz.company_selected",
            extra={
                "principal_id": profile.principal_id,
                "company_id": str(profile.company_id) if profile.company_id else None,
                "requested_company_id": str(requested_company_id),
            },
        )
        return EffectiveCompanyContext(company_id=requested_company_id, is_super_admin=True)

    @staticmethod
    def _deny_cross_tenant(profile: ProfileLike, role: Role, requested_company_id: uuid.UUID) -> None:
        observe_cross_tenant_denial()
        security_logger.warning(
            "authz.cross_tenant_denied",
            extra={
                "principal_id": profile.principal_id,
                "role": role.value,
                "company_id": str(profile.company_id) if profile.company_id else None,
                "requested_company_id": str(requested_company_id),
                "decision": "deny",
            },
        )
        try:
            audit.record(
                actor_principal_id=profile.principal_id,
                entity_type="security.tenant",
                entity_id=str(requested_company_id),
                action="tenant.cross_access_denied",
                details={
                    "role": role.value,
                    "company_id": str(profile.company_id) if profile.company_id else None,
                },
            )
        except Exception as exc:
            security_logger.warning("authz.audit_sink_failed", extra={"error": str(exc)})
        raise CrossTenantAccessError(details={"requested_company_id": str(requested_company_id)})


def require_company(context: EffectiveCompanyContext) -> uuid.UUID:
    """Return the effective company id, or raise when the request has none."""

    if context.company_id is None:
        raise NoCompanyContext()
    return context.company_id
