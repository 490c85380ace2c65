from cuedesk.authz.models import Company, CompanyJoinRequest, JoinRequestStatus, Profile, RolePermissionOverride

__all__ = [
    "Company",
    "CompanyJoinRequest",
    "JoinRequestStatus",
    "Profile",
    "RolePermissionOverride",
]
