from __future__ import annotations

from collections import deque
from typing import Any

from cuedesk.context import get_correlation_id
from cuedesk.core.events import event_bus

PROFILE_PROVISIONED = "profile.provisioned"
PROFILE_ROLE_CHANGED = "profile.role_changed"
PROFILE_COMPANY_CHANGED = "profile.company_changed"
JOIN_REQUEST_CREATED = "join_request.created"
JOIN_REQUEST_DECIDED = "join_request.decided"

PUBLISHED_EVENTS_MAX_ENTRIES = 1000
published_events: deque[dict[str, Any]] = deque(maxlen=PUBLISHED_EVENTS_MAX_ENTRIES)


def publish(envelope: dict[str, Any]) -> None:
    """Publish a domain event. Callers publish only after their transaction commits."""

    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
