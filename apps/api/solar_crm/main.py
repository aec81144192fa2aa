from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from solar_crm.api.routes import router as api_router
from solar_crm.core.config import get_settings
from solar_crm.core.context import RequestContextMiddleware
from solar_crm.core.database import SessionLocal
from solar_crm.logging import configure_logging
from solar_crm.middleware.correlation_id import CorrelationIdMiddleware
from solar_crm.middleware.request_logging import RequestLoggingMiddleware
from solar_crm.otel import get_fastapi_server_request_hook, setup_otel
from solar_crm.timeline.seed import ensure_default_steps


configure_logging()
logger = logging.getLogger("solar_crm.lifecycle")


def _seed_step_catalog() -> None:
    session = SessionLocal()
    try:
        created = ensure_default_steps(session)
    finally:
        session.close()
    logger.info("system.catalog_ready", extra={"created_count": created})


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.seed_default_steps:
        _seed_step_catalog()
    logger.info("system.started", extra={"status": settings.app_env})
    yield


app = FastAPI(title="Solar CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel(get_settings())

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
