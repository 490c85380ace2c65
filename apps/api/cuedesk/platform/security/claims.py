"""Identity-provider claims synchronization.

Profile role and company changes are pushed into the identity provider's
``app_metadata`` after the profile write has committed. Claims may lag the
profile store; authorization decisions never depend on them.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from opentelemetry import trace

from cuedesk.core.config import get_settings
from cuedesk.metrics import observe_claims_sync
from cuedesk.platform.security.context import Principal
from cuedesk.platform.security.roles import Role


logger = logging.getLogger("cuedesk.claims")
tracer = trace.get_tracer("cuedesk.claims")

CLAIM_FIELDS = frozenset({"role", "company_id"})


class IdentityProviderError(Exception):
    """Raised when the identity provider rejects or fails an admin call.

    Attributes:
        status_code: HTTP status from the identity provider, or None on transport failure.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500 or self.status_code == 429


class IdentityProviderClient:
    """Admin API client for the identity provider's user records.

    If ``client`` is provided it is reused and the caller manages its lifecycle;
    otherwise an internal ``httpx.Client`` is created lazily and released by
    :meth:`close`.
    """

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._service_key = service_key
        self._timeout = timeout
        self._external_client = client is not None
        self._client: httpx.Client | None = client

    def get_app_metadata(self, principal_id: str) -> dict[str, Any]:
        payload = self._request("GET", principal_id)
        metadata = payload.get("app_metadata")
        return dict(metadata) if isinstance(metadata, dict) else {}

    def update_app_metadata(self, principal_id: str, app_metadata: Mapping[str, Any]) -> dict[str, Any]:
        payload = self._request("PUT", principal_id, json={"app_metadata": dict(app_metadata)})
        metadata = payload.get("app_metadata")
        return dict(metadata) if isinstance(metadata, dict) else dict(app_metadata)

    def close(self) -> None:
        if self._client is not None and not self._external_client:
            self._client.close()
            self._client = None

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client()
        return self._client

    def _request(self, method: str, principal_id: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._base_url}/auth/v1/admin/users/{principal_id}"
        headers = {
            "apikey": self._service_key,
            "Authorization": f"Bearer {self._service_key}",
        }
        try:
            response = self._get_client().request(method, url, json=json, headers=headers, timeout=self._timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise IdentityProviderError(
                f"identity provider returned {exc.response.status_code} for {method} user",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise IdentityProviderError(f"identity provider unreachable: {exc}") from exc

        body = response.json()
        return body if isinstance(body, dict) else {}


def _default_client_factory() -> IdentityProviderClient:
    settings = get_settings()
    return IdentityProviderClient(
        base_url=settings.identity_provider_url,
        service_key=settings.identity_provider_service_key,
        timeout=settings.identity_provider_timeout_seconds,
    )


def normalize_claim_changes(changes: Mapping[str, Any]) -> dict[str, str | None]:
    """Convert role/company changes to the JSON-safe shape sent across process boundaries."""

    unknown = set(changes) - CLAIM_FIELDS
    if unknown:
        raise ValueError(f"unsupported claim fields: {', '.join(sorted(unknown))}")

    normalized: dict[str, str | None] = {}
    if "role" in changes:
        role = changes["role"]
        normalized["role"] = Role(role).value if role is not None else None
    if "company_id" in changes:
        company_id = changes["company_id"]
        normalized["company_id"] = str(uuid.UUID(str(company_id))) if company_id is not None else None
    return normalized


def merge_app_metadata(existing: Mapping[str, Any], changes: Mapping[str, str | None]) -> dict[str, Any]:
    merged = dict(existing)
    if "role" in changes:
        merged["role"] = changes["role"]
    if "company_id" in changes:
        merged["companyId"] = changes["company_id"]
    merged["initialized"] = True
    merged["syncedAt"] = datetime.now(timezone.utc).isoformat()
    return merged


class ClaimsSynchronizer:
    def __init__(self, client_factory: Callable[[], IdentityProviderClient] | None = None) -> None:
        self._client_factory = client_factory or _default_client_factory

    def push(self, principal_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
        """Read, merge and write ``app_metadata``. Raises IdentityProviderError on failure."""

        normalized = normalize_claim_changes(changes)
        client = self._client_factory()
        try:
            with tracer.start_as_current_span("claims.sync") as span:
                span.set_attribute("principal_id", principal_id)
                span.set_attribute("claim_fields", ",".join(sorted(normalized)))
                existing = client.get_app_metadata(principal_id)
                return client.update_app_metadata(principal_id, merge_app_metadata(existing, normalized))
        finally:
            client.close()

    def sync(self, principal_id: str, changes: Mapping[str, Any]) -> bool:
        """Best-effort push. Failures are logged and counted and never raised."""

        try:
            self.push(principal_id, changes)
        except IdentityProviderError as exc:
            observe_claims_sync("failure")
            logger.error(
                "claims.sync_failed",
                extra={"principal_id": principal_id, "status_code": exc.status_code, "error": str(exc)},
            )
            return False

        observe_claims_sync("success")
        logger.info("claims.synced", extra={"principal_id": principal_id})
        return True

    def initialize(self, principal_id: str) -> bool:
        return self.sync(principal_id, {"role": Role.USER, "company_id": None})


def claims_are_fresh(principal: Principal, *, max_age_seconds: int, now: datetime | None = None) -> bool:
    """Whether the token's claims may stand in for the profile on non-security reads."""

    claims = principal.claims
    if not claims.initialized or claims.issued_at is None:
        return False
    current = now or datetime.now(timezone.utc)
    return current - claims.issued_at <= timedelta(seconds=max_age_seconds)


claims_synchronizer = ClaimsSynchronizer()
