from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from cuedesk.platform.security.roles import Role


class JoinDecision(StrEnum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class JoinRequestCreate(BaseModel):
    company_id: UUID
    message: str | None = Field(default=None, max_length=2000)


class JoinRequestDecisionRequest(BaseModel):
    decision: JoinDecision


class JoinRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    principal_id: str
    company_id: UUID
    status: str
    message: str | None
    decided_by: str | None
    decided_at: datetime | None
    decision_note: str | None
    created_at: datetime


class ProfileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    principal_id: str
    role: Role
    company_id: UUID | None
    active: bool
    first_name: str | None
    last_name: str | None
    created_at: datetime
    updated_at: datetime


class ProfileUpdate(BaseModel):
    role: Role | None = None
    company_id: UUID | None = None
    active: bool | None = None
    first_name: str | None = Field(default=None, max_length=128)
    last_name: str | None = Field(default=None, max_length=128)


class CompanyContextRead(BaseModel):
    principal_id: str
    role: Role
    company_id: UUID | None
    is_super_admin: bool


class PermissionCheckRead(BaseModel):
    section: str
    action: str
    allowed: bool


class MeRead(BaseModel):
    principal_id: str
    role: Role | None
    company_id: UUID | None
    source: str


class AdminAuditLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    operation: str
    performed_by: str
    company_id: UUID | None
    entity_type: str
    entity_id: str
    details: dict[str, Any]
    correlation_id: str | None
    created_at: datetime


class PaginationRead(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class AdminAuditLogPage(BaseModel):
    logs: list[AdminAuditLogRead]
    pagination: PaginationRead
