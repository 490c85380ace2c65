import uuid

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from cuedesk.context import get_correlation_id
from cuedesk.models.audit import AdminAuditLog
from cuedesk.platform.security.storage import translate_storage_errors


def write_audit_log(
    db: Session,
    performed_by: str,
    operation: str,
    entity_type: str,
    entity_id: str,
    company_id: uuid.UUID | None = None,
    details: dict | None = None,
) -> AdminAuditLog:
    """Stage an admin audit row in the caller's transaction; the caller commits."""
    event = AdminAuditLog(
        operation=operation,
        performed_by=performed_by,
        company_id=company_id,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details or {},
        correlation_id=get_correlation_id(),
    )
    db.add(event)
    db.flush()
    return event


def list_audit_logs(
    db: Session,
    *,
    page: int = 1,
    limit: int = 50,
    operation: str | None = None,
) -> tuple[list[AdminAuditLog], int]:
    """Return one page of audit rows, newest first, and the number of matching rows."""
    stmt = select(AdminAuditLog)
    count_stmt = select(func.count()).select_from(AdminAuditLog)
    if operation:
        stmt = stmt.where(AdminAuditLog.operation == operation)
        count_stmt = count_stmt.where(AdminAuditLog.operation == operation)

    stmt = stmt.order_by(AdminAuditLog.created_at.desc(), AdminAuditLog.id.desc())
    with translate_storage_errors("list_audit_logs"):
        total = db.scalar(count_stmt) or 0
        rows = list(db.scalars(stmt.offset((page - 1) * limit).limit(limit)).all())
    return rows, total
