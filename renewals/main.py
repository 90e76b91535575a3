import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from renewals.api.routes import router as api_router
from renewals.core.config import get_settings
from renewals.logging import configure_logging
from renewals.middleware.correlation_id import CorrelationIdMiddleware
from renewals.middleware.request_logging import RequestLoggingMiddleware
from renewals.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("renewals.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("system.started", extra={"status": settings.app_env})
    yield


app = FastAPI(title="Renewal Ledger", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("renewals", True, run_mode=settings.run_mode)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
