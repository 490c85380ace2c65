from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from cuedesk.context import get_correlation_id
from cuedesk.platform.security.errors import AuthorizationError, TransientError


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = (
        get_correlation_id()
        or getattr(request.state, "correlation_id", None)
        or getattr(getattr(request.state, "context", None), "request_id", None)
    )
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    response = JSONResponse(status_code=status_code, content=payload.__dict__)
    if correlation_id:
        response.headers["X-Correlation-Id"] = correlation_id
    return response


async def authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    response = error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )
    if isinstance(exc, TransientError):
        response.headers["Retry-After"] = str(exc.retry_after_seconds)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response
