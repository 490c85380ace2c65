from __future__ import annotations

import logging
from typing import Any

from cuedesk.core.celery_app import celery_app
from cuedesk.core.config import get_settings
from cuedesk.core.events import InternalEvent
from cuedesk.metrics import observe_claims_sync
from cuedesk.platform.security.claims import IdentityProviderError, claims_synchronizer, normalize_claim_changes


logger = logging.getLogger("cuedesk.claims")

CLAIMS_SYNC_MODES = {"inline", "celery", "disabled"}


@celery_app.task(
    name="cuedesk.claims.sync",
    bind=True,
    autoretry_for=(IdentityProviderError,),
    retry_backoff=True,
    retry_backoff_max=300,
    max_retries=8,
)
def sync_claims_task(self, principal_id: str, changes: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
    try:
        claims_synchronizer.push(principal_id, changes)
    except IdentityProviderError as exc:
        observe_claims_sync("retry" if exc.retryable else "failure")
        logger.warning(
            "claims.sync_attempt_failed",
            extra={"principal_id": principal_id, "attempt": self.request.retries, "error": str(exc)},
        )
        if not exc.retryable:
            return
        raise
    observe_claims_sync("success")


def _claim_changes_from_event(event: InternalEvent) -> dict[str, Any] | None:
    if event.name == "profile.provisioned":
        return {"role": "USER", "company_id": None}
    changes = event.payload.get("changes")
    return changes if isinstance(changes, dict) else None


def dispatch_claims_sync(event: InternalEvent) -> None:
    """Event handler for committed profile changes."""

    principal_id = event.payload.get("principal_id")
    changes = _claim_changes_from_event(event)
    if not isinstance(principal_id, str) or not changes:
        return

    mode = get_settings().claims_sync_mode.lower()
    if mode not in CLAIMS_SYNC_MODES:
        logger.error("claims.unknown_sync_mode", extra={"error": mode})
        return
    if mode == "disabled":
        return
    if mode == "celery":
        sync_claims_task.delay(principal_id, normalize_claim_changes(changes))
        return
    claims_synchronizer.sync(principal_id, changes)
