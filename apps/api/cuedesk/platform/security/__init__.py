from cuedesk.platform.security.company import EffectiveCompanyResolver, require_company
from cuedesk.platform.security.context import AuthContext, EffectiveCompanyContext, Principal, PrincipalClaims
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
from cuedesk.platform.security.policies import (
    DbPolicyBackend,
    PermissionAction,
    PolicyBackend,
    StaticPolicyBackend,
    get_policy_backend,
    is_allowed,
    set_policy_backend,
)
from cuedesk.platform.security.rls import apply_company_scope, row_allowed
from cuedesk.platform.security.roles import Role, can_manage, parse_role, rank

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "CompanyNotFound",
    "CrossTenantAccessError",
    "DbPolicyBackend",
    "EffectiveCompanyContext",
    "EffectiveCompanyResolver",
    "Forbidden",
    "InvalidState",
    "JoinRequestNotFound",
    "NoCompanyContext",
    "PermissionAction",
    "PolicyBackend",
    "Principal",
    "PrincipalClaims",
    "ProfileNotFound",
    "Role",
    "StaticPolicyBackend",
    "TransientError",
    "Unauthenticated",
    "apply_company_scope",
    "can_manage",
    "get_policy_backend",
    "is_allowed",
    "parse_role",
    "rank",
    "require_company",
    "row_allowed",
    "set_policy_backend",
]
