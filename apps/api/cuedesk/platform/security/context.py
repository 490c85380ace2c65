from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from cuedesk.platform.security.roles import Role


@dataclass(frozen=True, slots=True)
class PrincipalClaims:
    """Identity-provider claims. Advisory only; may lag the profile store."""

    role: Role | None = None
    company_id: uuid.UUID | None = None
    initialized: bool = False
    issued_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Principal:
    id: str
    claims: PrincipalClaims = field(default_factory=PrincipalClaims)


@dataclass(frozen=True, slots=True)
class EffectiveCompanyContext:
    company_id: uuid.UUID | None
    is_super_admin: bool = False


@dataclass(slots=True)
class AuthContext:
    """Authorization context used by policy evaluation for one request."""

    principal_id: str
    role: Role
    company_id: uuid.UUID | None = None
    correlation_id: str | None = None
    _cache: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_super_admin(self) -> bool:
        return self.role == Role.SUPERADMIN
