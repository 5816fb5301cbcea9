import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from crm_api.api.routes import router as api_router
from crm_api.core.config import get_settings
from crm_api.core.errors import register_exception_handlers
from crm_api.logging import configure_logging
from crm_api.middleware.correlation_id import RequestContextMiddleware
from crm_api.middleware.rate_limit import MutationRateLimitMiddleware
from crm_api.middleware.request_logging import RequestLoggingMiddleware
from crm_api.otel import configure_tracing, instrument_app

settings = get_settings()
configure_logging(settings.log_level)
configure_tracing(settings)
logger = logging.getLogger("crm_api.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("app.started", extra={"status": get_settings().app_env})
    yield
    logger.info("app.stopped")


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# Starlette wraps in reverse order: the request context is bound before logging and limiting run.
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestContextMiddleware)
register_exception_handlers(app)
app.include_router(api_router)
instrument_app(app)
