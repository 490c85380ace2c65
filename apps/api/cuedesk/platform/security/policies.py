from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from cuedesk import audit
from cuedesk.authz.models import RolePermissionOverride
from cuedesk.core.database import SessionLocal
from cuedesk.metrics import observe_authz_policy_cache_hit, observe_authz_policy_cache_miss, observe_permission_decision
from cuedesk.platform.security.context import AuthContext
from cuedesk.platform.security.roles import Role
from cuedesk.platform.security.storage import translate_storage_errors


logger = logging.getLogger("cuedesk.authz")


class PermissionAction(StrEnum):
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"


SECTIONS: frozenset[str] = frozenset(
    {
        "dashboard",
        "inventory",
        "tables",
        "finance",
        "reports",
        "admin",
        "admin.users",
        "admin.roles",
        "admin.companies",
        "admin.audit_logs",
    }
)
ACTIONS: frozenset[str] = frozenset(action.value for action in PermissionAction)

_ALL_ACTIONS = frozenset(PermissionAction)
_VIEW = frozenset({PermissionAction.VIEW})

PermissionMatrix = Mapping[Role, Mapping[str, frozenset[PermissionAction]]]

# SUPERADMIN has no row; is_allowed() grants it before any backend lookup.
ROLE_PERMISSIONS: PermissionMatrix = {
    Role.ADMIN: {
        "dashboard": _ALL_ACTIONS,
        "inventory": _ALL_ACTIONS,
        "tables": _ALL_ACTIONS,
        "finance": _ALL_ACTIONS,
        "reports": _ALL_ACTIONS,
        "admin": _VIEW,
        "admin.users": _ALL_ACTIONS,
    },
    Role.SELLER: {
        "dashboard": _VIEW,
        "inventory": _VIEW,
        "tables": frozenset({PermissionAction.VIEW, PermissionAction.CREATE, PermissionAction.EDIT}),
        "finance": frozenset({PermissionAction.VIEW, PermissionAction.CREATE}),
        "reports": _VIEW,
    },
    Role.USER: {
        "dashboard": _VIEW,
        "tables": _VIEW,
    },
}


class PolicyBackend(Protocol):
    """Pluggable lookup for (role, section, action) grants of non-superadmin roles."""

    def is_allowed(self, role: Role, section: str, action: PermissionAction, ctx: AuthContext | None = None) -> bool:
        ...


class StaticPolicyBackend:
    """Built-in permission matrix only."""

    def __init__(self, matrix: PermissionMatrix | None = None) -> None:
        self._matrix = matrix if matrix is not None else ROLE_PERMISSIONS

    def is_allowed(self, role: Role, section: str, action: PermissionAction, ctx: AuthContext | None = None) -> bool:
        return action in self._matrix.get(role, {}).get(section, frozenset())


@dataclass(slots=True)
class _OverrideRule:
    section: str
    action: str
    effect: str


class DbPolicyBackend:
    """Built-in matrix with per-role overrides stored in the database.

    An explicit ``deny`` override wins over ``allow``. Roles without matching
    overrides fall back to the built-in matrix.
    """

    CACHE_KEY = "authz.role_overrides"

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        *,
        matrix: PermissionMatrix | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._fallback = StaticPolicyBackend(matrix)

    def is_allowed(self, role: Role, section: str, action: PermissionAction, ctx: AuthContext | None = None) -> bool:
        rules = self._load_overrides(role, ctx)
        decision = self._evaluate_rules(rules, section=section, action=action.value)
        if decision == "deny":
            return False
        if decision == "allow":
            return True
        return self._fallback.is_allowed(role, section, action, ctx)

    def _load_overrides(self, role: Role, ctx: AuthContext | None) -> list[_OverrideRule]:
        cache_key = f"{self.CACHE_KEY}:{role.value}"
        if ctx is not None:
            cached = ctx._cache.get(cache_key)
            if isinstance(cached, list):
                observe_authz_policy_cache_hit()
                return cached

        observe_authz_policy_cache_miss()
        with translate_storage_errors("load_policy_overrides"), self._session_factory() as session:
            rows = session.scalars(
                select(RolePermissionOverride).where(RolePermissionOverride.role == role.value)
            ).all()
            rules = [
                _OverrideRule(section=row.section, action=row.action, effect=row.effect.lower())
                for row in rows
                if row.section in SECTIONS and row.action in ACTIONS
            ]

        if ctx is not None:
            ctx._cache[cache_key] = rules
        return rules

    @staticmethod
    def _evaluate_rules(rules: list[_OverrideRule], *, section: str, action: str) -> str | None:
        matched = [rule for rule in rules if rule.section == section and rule.action == action]
        if not matched:
            return None
        if any(rule.effect == "deny" for rule in matched):
            return "deny"
        if any(rule.effect == "allow" for rule in matched):
            return "allow"
        return None


_POLICY_BACKEND: PolicyBackend = StaticPolicyBackend()
_POLICY_LOCK = Lock()


def get_policy_backend() -> PolicyBackend:
    """Get the active policy backend instance."""

    return _POLICY_BACKEND


def set_policy_backend(backend: PolicyBackend) -> None:
    """Set the active policy backend instance."""

    global _POLICY_BACKEND
    with _POLICY_LOCK:
        _POLICY_BACKEND = backend


def is_allowed(
    role: Role,
    section: str,
    action: str,
    *,
    ctx: AuthContext | None = None,
    backend: PolicyBackend | None = None,
) -> bool:
    """Decide whether ``role`` may perform ``action`` on ``section``.

    SUPERADMIN is allowed for every section and action without consulting the
    backend. Otherwise the decision is deny unless the backend grants it;
    unknown sections and actions are denied. Emitting metrics or audit entries
    never changes the returned decision.
    """

    if role == Role.SUPERADMIN:
        allowed = True
    elif section not in SECTIONS or action not in ACTIONS:
        allowed = False
    else:
        allowed = (backend or get_policy_backend()).is_allowed(role, section, PermissionAction(action), ctx)

    _emit_decision(role=role, section=section, action=action, allowed=allowed, ctx=ctx)
    return allowed


def _emit_decision(*, role: Role, section: str, action: str, allowed: bool, ctx: AuthContext | None) -> None:
    section_label = section if section in SECTIONS else "unknown"
    action_label = action if action in ACTIONS else "unknown"
    try:
        observe_permission_decision(section_label, action_label, allowed)
        if allowed:
            return

        principal_id = ctx.principal_id if ctx is not None else "unknown"
        details: dict[str, Any] = {
            "role": role.value,
            "section": section,
            "action": action,
            "company_id": str(ctx.company_id) if ctx is not None and ctx.company_id else None,
        }
        logger.info(
            "authz.permission_denied",
            extra={"principal_id": principal_id, "role": role.value, "section": section, "action": action, "decision": "deny"},
        )
        audit.record(
            actor_principal_id=principal_id,
            entity_type="security.permission",
            entity_id=f"{section}:{action}",
            action="permission.denied",
            details=details,
            correlation_id=ctx.correlation_id if ctx is not None else None,
        )
    except Exception as exc:
        logger.warning("authz.audit_sink_failed", extra={"section": section, "action": action, "error": str(exc)})
