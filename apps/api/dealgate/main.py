from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from dealgate.api.routes import router as api_router
from dealgate.core.events import InternalEvent, event_bus
from dealgate.enforcement.config import get_policy_config
from dealgate.logging import configure_logging
from dealgate.middleware.correlation_id import CorrelationIdMiddleware
from dealgate.middleware.request_logging import RequestLoggingMiddleware
from dealgate.otel import server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("dealgate.lifecycle")
_subscriptions_registered = False

_enforcement_event_types = [
    "enforcement.deal_frozen",
    "enforcement.deal_unfrozen",
    "enforcement.override_approved",
    "enforcement.override_denied",
]

# An invalid policy aborts startup instead of surfacing at evaluation time.
policy_config = get_policy_config()


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_enforcement_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload", {}) if isinstance(event.payload, dict) else {}
    logger.info(
        "enforcement_event",
        extra={
            "event_name": event.name,
            "deal_id": payload.get("deal_id"),
            "reason_code": payload.get("reason_code"),
            "token_id": payload.get("token_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _enforcement_event_types:
            event_bus.subscribe(event_name, _on_enforcement_event)
        _subscriptions_registered = True
    event_bus.publish(
        "system.started",
        {"service": "dealgate", "auto_freeze": sorted(code.value for code in policy_config.auto_freeze_reason_codes)},
    )
    yield


app = FastAPI(title="Deal Enforcement Gateway", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel()

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=server_request_hook)
