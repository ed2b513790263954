from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from regtruth.api.router import api_router
from regtruth.core.config import Settings, get_settings
from regtruth.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from regtruth.services.repository import get_repository

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        shutdown_telemetry(app.state.telemetry)
        await get_repository().close()
        get_repository.cache_clear()


async def log_requests(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s -> %s in %.2fms",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started_at) * 1000.0,
    )
    return response


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging()
    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.state.telemetry = setup_telemetry(settings, service_role="api", app=application)
    application.middleware("http")(log_requests)
    application.include_router(api_router)
    return application


app = create_app()
