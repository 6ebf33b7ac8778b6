from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from salesops.api.routes import router as api_router
from salesops.context import get_correlation_id
from salesops.core.config import get_settings
from salesops.core.events import InternalEvent, event_bus
from salesops.logging import configure_logging
from salesops.middleware.correlation_id import CorrelationIdMiddleware
from salesops.middleware.request_logging import RequestLoggingMiddleware
from salesops.otel import get_fastapi_server_request_hook, setup_otel
from salesops.platform.errors import QuotationCoreError


configure_logging()
logger = logging.getLogger("salesops.lifecycle")
_subscriptions_registered = False

_payment_event_types = [
    "payment.submitted",
    "payment.verified",
    "payment.rejected",
    "payment.reopened",
    "quotation.payment_status_changed",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"action": event.name})


def _on_payment_event(event: InternalEvent) -> None:
    payload = event.payload if isinstance(event.payload, dict) else {}
    logger.info(
        "domain_event",
        extra={
            "action": event.name,
            "company_id": payload.get("company_id"),
            "quotation_id": payload.get("quotation_id"),
            "payment_id": payload.get("payment_id"),
            "to_status": payload.get("to_status"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _payment_event_types:
            event_bus.subscribe(event_name, _on_payment_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "salesops-api"})
    yield


app = FastAPI(title="SalesOps API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(QuotationCoreError)
async def quotation_core_error_handler(request: Request, exc: QuotationCoreError) -> JSONResponse:
    request.state.error_kind = exc.kind
    payload = exc.to_dict()
    payload["correlation_id"] = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return JSONResponse(status_code=exc.status_code, content=payload)


settings = get_settings()
if settings.otel_enabled:
    setup_otel("salesops-api", True, environment=settings.app_env)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
