from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from cuedesk import events
from cuedesk.api.errors import authorization_error_handler
from cuedesk.api.routes import router as api_router
from cuedesk.authz.tasks import dispatch_claims_sync
from cuedesk.core.config import get_settings
from cuedesk.core.context import RequestContextMiddleware
from cuedesk.core.events import InternalEvent, event_bus
from cuedesk.logging import configure_logging
from cuedesk.middleware.correlation_id import CorrelationIdMiddleware
from cuedesk.middleware.request_logging import RequestLoggingMiddleware
from cuedesk.otel import get_fastapi_server_request_hook, setup_otel
from cuedesk.platform.security.errors import AuthorizationError
from cuedesk.platform.security.policies import DbPolicyBackend, StaticPolicyBackend, set_policy_backend


configure_logging()
logger = logging.getLogger("cuedesk.lifecycle")

_claims_event_types = [
    events.PROFILE_PROVISIONED,
    events.PROFILE_ROLE_CHANGED,
    events.PROFILE_COMPANY_CHANGED,
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def register_event_handlers() -> None:
    event_bus.subscribe("system.started", _on_system_started)
    for event_name in _claims_event_types:
        event_bus.subscribe(event_name, dispatch_claims_sync)


def configure_policy_backend() -> None:
    settings = get_settings()
    backend_choice = settings.authz_policy_backend.lower()
    if backend_choice == "auto":
        backend_choice = "db" if settings.app_env.lower() in {"prod", "production"} else "static"

    if backend_choice == "db":
        set_policy_backend(DbPolicyBackend())
    else:
        set_policy_backend(StaticPolicyBackend())
    logger.info("authz.policy_backend_selected", extra={"decision": backend_choice})


@asynccontextmanager
async def lifespan(app: FastAPI):
    register_event_handlers()
    event_bus.publish("system.started", {"service": "cuedesk-api"})
    yield


app = FastAPI(title="Cuedesk API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_exception_handler(AuthorizationError, authorization_error_handler)  # type: ignore[arg-type]
app.include_router(api_router)

configure_policy_backend()

settings = get_settings()
if settings.otel_enabled:
    setup_otel("cuedesk-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
