from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crmtrail.api.routes import router as api_router
from crmtrail.context import get_correlation_id
from crmtrail.core.config import get_settings
from crmtrail.core.errors import CrmError, ErrorEnvelope, StorageError
from crmtrail.core.events import event_bus
from crmtrail.logging import configure_logging
from crmtrail.middleware.client_info import ClientInfoMiddleware
from crmtrail.middleware.correlation_id import CorrelationIdMiddleware
from crmtrail.middleware.request_logging import RequestLoggingMiddleware
from crmtrail.otel import configure_tracing, server_request_hook
from crmtrail.realtime import manager as realtime_manager


configure_logging()
logger = logging.getLogger("crmtrail.lifecycle")
_subscriptions_registered = False


def error_response(request: Request, *, status_code: int, code: str, message: str, details=None) -> JSONResponse:  # type: ignore[no-untyped-def]
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload.to_dict()))


async def handle_crm_error(request: Request, exc: CrmError) -> JSONResponse:
    if isinstance(exc, StorageError):
        logger.error("storage_error", extra={"error": exc.message, "path": request.url.path})
        return error_response(request, status_code=exc.status_code, code=exc.code, message="internal storage error")
    return error_response(request, status_code=exc.status_code, code=exc.code, message=exc.message, details=exc.details)


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="validation_error",
        message="request validation failed",
        details=exc.errors(),
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", extra={"path": request.url.path, "error": str(exc)[:500]})
    return error_response(request, status_code=500, code="internal_error", message="internal server error")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("*", realtime_manager.dispatch)
        _subscriptions_registered = True
    logger.info("system_started", extra={"event_type": "system.started"})
    yield


app = FastAPI(title="crmtrail API", version="0.1.0", lifespan=lifespan)
app.add_middleware(ClientInfoMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_exception_handler(CrmError, handle_crm_error)  # type: ignore[arg-type]
app.add_exception_handler(RequestValidationError, handle_request_validation_error)  # type: ignore[arg-type]
app.add_exception_handler(Exception, handle_unexpected_error)
app.include_router(api_router)

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

configure_tracing(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=server_request_hook)
