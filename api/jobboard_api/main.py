from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from jobboard_api.api.router import api_router
from jobboard_api.core.config import get_settings
from jobboard_api.core.telemetry import setup_api_telemetry, shutdown_telemetry
from jobboard_api.services.billing_provider import get_billing_provider
from jobboard_api.services.repository import get_repository

logger = logging.getLogger(__name__)


async def close_shared_clients() -> None:
    """Close the per-process Stripe client and database pool."""
    await get_billing_provider().close()
    get_billing_provider.cache_clear()
    await get_repository().close()
    get_repository.cache_clear()


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        shutdown_telemetry(app.state.telemetry, app=app)
        await close_shared_clients()


settings = get_settings()
app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.telemetry = setup_api_telemetry(app, settings)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started_at) * 1000.0,
    )
    return response


app.include_router(api_router)
