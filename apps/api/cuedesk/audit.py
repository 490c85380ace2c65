from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from cuedesk.context import get_correlation_id

# Recent decisions only; the durable trail is the security log and admin_audit_logs.
AUDIT_SINK_MAX_ENTRIES = 1000
audit_entries: deque[dict[str, Any]] = deque(maxlen=AUDIT_SINK_MAX_ENTRIES)


def record(
    actor_principal_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    details: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    """Append a security decision to the in-process audit sink."""

    resolved_correlation_id = correlation_id or get_correlation_id()
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_principal_id": actor_principal_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "details": details,
            "correlation_id": resolved_correlation_id,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )
