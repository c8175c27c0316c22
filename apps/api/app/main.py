from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from app.api.errors import register_error_handlers
from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import AuthRateLimitMiddleware, TokenBucketLimiter
from app.middleware.request_logging import RequestLoggingMiddleware


configure_logging()
logger = logging.getLogger("app.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("system.started", extra={"context": settings.app_env})
    yield
    logger.info("system.stopped", extra={"context": settings.app_env})


def create_app(limiter: TokenBucketLimiter | None = None) -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    application.state.auth_rate_limiter = limiter or TokenBucketLimiter(
        idle_ttl_seconds=settings.rate_limit_idle_ttl_seconds
    )
    application.add_middleware(AuthRateLimitMiddleware)
    application.add_middleware(RequestContextMiddleware)
    application.add_middleware(RequestLoggingMiddleware)
    application.add_middleware(CorrelationIdMiddleware)
    register_error_handlers(application)
    application.include_router(api_router)
    return application


app = create_app()
