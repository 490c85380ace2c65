from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from cuedesk.platform.security.context import EffectiveCompanyContext
from cuedesk.platform.security.errors import NoCompanyContext
from cuedesk.platform.security.roles import Role, parse_role


PRINCIPAL_SETTING = "app.principal_id"
PRINCIPAL_SESSION_KEY = "row_security_principal_id"


@dataclass(frozen=True, slots=True)
class RowViewer:
    principal_id: str
    role: Role
    company_id: uuid.UUID | None
    active: bool = True

    @classmethod
    def from_profile(cls, profile: Any) -> RowViewer:
        return cls(
            principal_id=profile.principal_id,
            role=parse_role(profile.role),
            company_id=profile.company_id,
            active=profile.active,
        )


@dataclass(frozen=True, slots=True)
class RowPolicy:
    table: str
    name: str
    command: str
    predicates: tuple[str, ...]
    # WITH CHECK predicates for UPDATE when the new row obeys a narrower rule than the old one.
    check: tuple[str, ...] | None = None

    @property
    def check_predicates(self) -> tuple[str, ...]:
        return self.check if self.check is not None else self.predicates


def _own_row(viewer: RowViewer, row: Mapping[str, Any]) -> bool:
    return row.get("principal_id") == viewer.principal_id


def _fresh_user_row(viewer: RowViewer, row: Mapping[str, Any]) -> bool:
    return _own_row(viewer, row) and row.get("role") == Role.USER.value and row.get("company_id") is None


def _same_company(viewer: RowViewer, row: Mapping[str, Any]) -> bool:
    return viewer.active and viewer.company_id is not None and row.get("company_id") == viewer.company_id


def _company_admin(viewer: RowViewer, row: Mapping[str, Any]) -> bool:
    return viewer.role == Role.ADMIN and _same_company(viewer, row)


def _pending_join_target(viewer: RowViewer, row: Mapping[str, Any]) -> bool:
    """The row's principal has a PENDING join request for the viewing admin's company.

    Rows carry the companies their principal has PENDING requests for under
    ``pending_join_company_ids``.
    """

    if not viewer.active or viewer.role != Role.ADMIN or viewer.company_id is None:
        return False
    return viewer.company_id in row.get("pending_join_company_ids", ())


def _detached_by_admin(viewer: RowViewer, row: Mapping[str, Any]) -> bool:
    return (
        viewer.active
        and viewer.role == Role.ADMIN
        and row.get("company_id") is None
        and row.get("active") is False
    )


def _performer(viewer: RowViewer, row: Mapping[str, Any]) -> bool:
    return row.get("performed_by") == viewer.principal_id


def _superadmin(viewer: RowViewer, row: Mapping[str, Any]) -> bool:
    return viewer.active and viewer.role == Role.SUPERADMIN


# Each predicate has a SQL rendering for PostgreSQL row-level security and a
# Python rendering used by application checks and tests. Both must agree.
PREDICATES: dict[str, tuple[str, Callable[[RowViewer, Mapping[str, Any]], bool]]] = {
    "own_row": ("principal_id = cuedesk_current_principal()", _own_row),
    "fresh_user_row": (
        "(principal_id = cuedesk_current_principal() AND role = 'USER' AND company_id IS NULL)",
        _fresh_user_row,
    ),
    "same_company": ("company_id = cuedesk_user_company_id()", _same_company),
    "company_admin": ("(cuedesk_is_company_admin() AND company_id = cuedesk_user_company_id())", _company_admin),
    "pending_join_target": (
        "(cuedesk_is_company_admin() AND cuedesk_has_pending_join_for_my_company(principal_id))",
        _pending_join_target,
    ),
    "detached_by_admin": ("(cuedesk_is_company_admin() AND company_id IS NULL AND NOT active)", _detached_by_admin),
    "performer": ("performed_by = cuedesk_current_principal()", _performer),
    "superadmin": ("cuedesk_is_superadmin()", _superadmin),
}

ROW_POLICIES: tuple[RowPolicy, ...] = (
    RowPolicy("profiles", "profiles_select", "SELECT", ("own_row", "same_company", "pending_join_target", "superadmin")),
    RowPolicy("profiles", "profiles_insert", "INSERT", ("fresh_user_row", "superadmin")),
    RowPolicy(
        "profiles",
        "profiles_update",
        "UPDATE",
        ("company_admin", "pending_join_target", "superadmin"),
        check=("company_admin", "detached_by_admin", "superadmin"),
    ),
    RowPolicy(
        "company_join_requests",
        "join_requests_select",
        "SELECT",
        ("own_row", "company_admin", "pending_join_target", "superadmin"),
    ),
    RowPolicy("company_join_requests", "join_requests_insert", "INSERT", ("own_row",)),
    RowPolicy(
        "company_join_requests",
        "join_requests_update",
        "UPDATE",
        ("company_admin", "pending_join_target", "superadmin"),
    ),
    RowPolicy("admin_audit_logs", "admin_audit_logs_select", "SELECT", ("company_admin", "superadmin")),
    RowPolicy("admin_audit_logs", "admin_audit_logs_insert", "INSERT", ("performer",)),
)

# The helpers are SECURITY DEFINER and read profiles and join requests as their
# owner, so the tables must not use FORCE ROW LEVEL SECURITY and the application
# must connect as a role that does not own them.
HELPER_FUNCTIONS_SQL: tuple[str, ...] = (
    f"""
    CREATE OR REPLACE FUNCTION cuedesk_current_principal() RETURNS text
    LANGUAGE sql STABLE AS $$
        SELECT nullif(current_setting('{PRINCIPAL_SETTING}', true), '')
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION cuedesk_user_company_id() RETURNS uuid
    LANGUAGE sql STABLE SECURITY DEFINER AS $$
        SELECT company_id FROM profiles
        WHERE principal_id = cuedesk_current_principal() AND active
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION cuedesk_is_superadmin() RETURNS boolean
    LANGUAGE sql STABLE SECURITY DEFINER AS $$
        SELECT EXISTS (
            SELECT 1 FROM profiles
            WHERE principal_id = cuedesk_current_principal() AND active AND role = 'SUPERADMIN'
        )
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION cuedesk_is_company_admin() RETURNS boolean
    LANGUAGE sql STABLE SECURITY DEFINER AS $$
        SELECT EXISTS (
            SELECT 1 FROM profiles
            WHERE principal_id = cuedesk_current_principal() AND active AND role = 'ADMIN'
        )
    $$
    """,
    """
    CREATE OR REPLACE FUNCTION cuedesk_has_pending_join_for_my_company(target text) RETURNS boolean
    LANGUAGE sql STABLE SECURITY DEFINER AS $$
        SELECT EXISTS (
            SELECT 1 FROM company_join_requests
            WHERE principal_id = target
              AND status = 'PENDING'
              AND company_id = cuedesk_user_company_id()
        )
    $$
    """,
)

HELPER_FUNCTION_SIGNATURES: tuple[str, ...] = (
    "cuedesk_has_pending_join_for_my_company(text)",
    "cuedesk_is_company_admin()",
    "cuedesk_is_superadmin()",
    "cuedesk_user_company_id()",
    "cuedesk_current_principal()",
)


def policy_predicate_sql(policy: RowPolicy, *, check: bool = False) -> str:
    names = policy.check_predicates if check else policy.predicates
    return " OR ".join(PREDICATES[name][0] for name in names)


def render_policy_sql(policies: tuple[RowPolicy, ...] = ROW_POLICIES) -> list[str]:
    """Render PostgreSQL statements enabling row-level security for ``policies``.

    Tables get ENABLE, not FORCE: owners bypass the policies, which the
    SECURITY DEFINER helpers rely on.
    """

    statements: list[str] = []
    tables = sorted({policy.table for policy in policies})
    for table in tables:
        statements.append(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")

    for policy in policies:
        predicate = policy_predicate_sql(policy)
        if policy.command == "INSERT":
            clause = f"WITH CHECK ({predicate})"
        elif policy.command == "UPDATE":
            clause = f"USING ({predicate}) WITH CHECK ({policy_predicate_sql(policy, check=True)})"
        else:
            clause = f"USING ({predicate})"
        statements.append(f"CREATE POLICY {policy.name} ON {policy.table} FOR {policy.command} {clause}")
    return statements


def render_drop_policy_sql(policies: tuple[RowPolicy, ...] = ROW_POLICIES) -> list[str]:
    statements = [f"DROP POLICY IF EXISTS {policy.name} ON {policy.table}" for policy in policies]
    for table in sorted({policy.table for policy in policies}):
        statements.append(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
    return statements


def row_allowed(
    table: str,
    command: str,
    viewer: RowViewer,
    row: Mapping[str, Any],
    *,
    check: bool = False,
) -> bool:
    """Evaluate the row policies for ``table``/``command`` in Python.

    ``check=True`` evaluates the WITH CHECK side of an UPDATE against the new
    row. Like PostgreSQL, a table with row security and no matching policy denies.
    """

    matching = [policy for policy in ROW_POLICIES if policy.table == table and policy.command == command]
    return any(
        PREDICATES[name][1](viewer, row)
        for policy in matching
        for name in (policy.check_predicates if check else policy.predicates)
    )


def apply_company_scope(query: Select[Any], context: EffectiveCompanyContext) -> Select[Any]:
    """Restrict a query over company-scoped models to the effective company.

    A superadmin without a selected company sees every row.
    """

    if context.company_id is None:
        if context.is_super_admin:
            return query
        raise NoCompanyContext()

    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None:
            continue
        if hasattr(model, "company_id"):
            query = query.where(getattr(model, "company_id") == context.company_id)
    return query


def _set_principal_setting(connection: Connection, principal_id: str) -> None:
    connection.execute(
        text("SELECT set_config(:setting, :principal_id, true)"),
        {"setting": PRINCIPAL_SETTING, "principal_id": principal_id},
    )


@event.listens_for(Session, "after_begin")
def _rebind_principal_on_begin(session: Session, transaction: Any, connection: Connection) -> None:
    principal_id = session.info.get(PRINCIPAL_SESSION_KEY)
    if principal_id is not None and connection.dialect.name == "postgresql":
        _set_principal_setting(connection, principal_id)


def bind_row_security_principal(session: Session, principal_id: str) -> None:
    """Expose the caller to PostgreSQL row policies.

    The setting is transaction-local, so it is re-applied whenever the session
    begins a new transaction, including after a commit or rollback.
    """

    session.info[PRINCIPAL_SESSION_KEY] = principal_id
    bind = session.get_bind()
    if bind.dialect.name != "postgresql":
        return
    _set_principal_setting(session.connection(), principal_id)


def bound_row_security_principal(session: Session) -> str | None:
    return session.info.get(PRINCIPAL_SESSION_KEY)
