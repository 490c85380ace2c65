import uuid
from datetime import datetime, timezone
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from cuedesk.context import set_principal_id
from cuedesk.core.config import get_settings
from cuedesk.platform.security.context import Principal, PrincipalClaims
from cuedesk.platform.security.errors import Unauthenticated
from cuedesk.platform.security.roles import parse_role


def parse_claims(payload: dict[str, Any]) -> PrincipalClaims:
    """Read role/company claims from a verified token. Malformed claims count as uninitialized."""

    metadata = payload.get("app_metadata")
    if not isinstance(metadata, dict):
        return PrincipalClaims()

    role = None
    raw_role = metadata.get("role")
    if isinstance(raw_role, str):
        try:
            role = parse_role(raw_role)
        except ValueError:
            return PrincipalClaims()

    company_id = None
    raw_company_id = metadata.get("companyId")
    if raw_company_id is not None:
        try:
            company_id = uuid.UUID(str(raw_company_id))
        except ValueError:
            return PrincipalClaims()

    issued_at = None
    raw_iat = payload.get("iat")
    if isinstance(raw_iat, (int, float)):
        issued_at = datetime.fromtimestamp(raw_iat, tz=timezone.utc)

    return PrincipalClaims(
        role=role,
        company_id=company_id,
        initialized=metadata.get("initialized") is True,
        issued_at=issued_at,
    )


def decode_principal(token: str) -> Principal:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options={"verify_aud": settings.jwt_audience is not None},
        )
    except JWTError as exc:
        raise Unauthenticated("Invalid or expired token") from exc

    subject = payload.get("sub")
    if not subject:
        raise Unauthenticated("Token has no subject")
    return Principal(id=str(subject), claims=parse_claims(payload))


async def get_current_principal(request: Request) -> Principal:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.removeprefix("Bearer ").strip() if auth_header.startswith("Bearer ") else ""
    if not token:
        raise Unauthenticated()

    principal = decode_principal(token)
    context = getattr(request.state, "context", None)
    if context is not None:
        context.principal_id = principal.id
    set_principal_id(principal.id)
    return principal
