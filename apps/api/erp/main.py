from contextlib import asynccontextmanager
import logging
import weakref

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import uvicorn

from erp.api.routes import router as api_router
from erp.core.config import get_settings
from erp.core.events import InProcessEventBus, InternalEvent
from erp.crm.api import error_response
from erp.crm.container import build_crm_services
from erp.logging import configure_logging
from erp.middleware.correlation_id import CorrelationIdMiddleware
from erp.middleware.request_logging import RequestLoggingMiddleware
from erp.otel import instrument_app, setup_otel


configure_logging()
logger = logging.getLogger("erp.lifecycle")
_subscribed_buses: weakref.WeakSet[InProcessEventBus] = weakref.WeakSet()


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_deal_status_changed(event: InternalEvent) -> None:
    payload = event.body
    if payload.get("to_status") not in {"won", "lost"}:
        return
    logger.info(
        "deal closed",
        extra={
            "event_name": event.name,
            "deal_id": payload.get("deal_id"),
            "status": payload.get("to_status"),
        },
    )


def register_subscribers(bus: InProcessEventBus) -> None:
    if bus in _subscribed_buses:
        return
    bus.subscribe("system.started", _on_system_started)
    bus.subscribe("crm.deal.status_changed", _on_deal_status_changed)
    _subscribed_buses.add(bus)


@asynccontextmanager
async def lifespan(app: FastAPI):
    bus = app.state.crm_services.bus
    register_subscribers(bus)
    bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="ERP CRM API", version="0.1.0", lifespan=lifespan)
app.state.crm_services = build_crm_services()
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_400_BAD_REQUEST,
        code="validation_error",
        message="request validation failed",
        details=jsonable_encoder(exc.errors()),
    )


setup_otel(get_settings())
instrument_app(app)


def run() -> None:
    settings = get_settings()
    uvicorn.run("erp.main:app", host="0.0.0.0", port=settings.api_port, log_config=None)
