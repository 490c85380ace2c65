from cuedesk.models.audit import AdminAuditLog

__all__ = [
	"AdminAuditLog",
]
