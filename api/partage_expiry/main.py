from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
import time

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request

from partage_expiry.api.router import api_router
from partage_expiry.api.routes.cron import elapsed_ms
from partage_expiry.core.config import get_settings
from partage_expiry.core.security import TriggerUnauthorizedError
from partage_expiry.core.telemetry import (
    TelemetryRuntime,
    configure_logging,
    setup_telemetry,
    shutdown_telemetry,
)
from partage_expiry.services.records import ConfigurationMissingError

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)


configure_logging()
app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_telemetry(settings, app)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request.state.started_at = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms(request),
    )
    return response


@app.exception_handler(TriggerUnauthorizedError)
async def unauthorized_trigger_handler(_: Request, exc: TriggerUnauthorizedError) -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": "Non autorisé", "message": str(exc)})


@app.exception_handler(ConfigurationMissingError)
async def configuration_missing_handler(request: Request, exc: ConfigurationMissingError) -> JSONResponse:
    logger.error("records store is not configured: %s", exc)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Configuration manquante",
            "message": str(exc),
            "duration": f"{elapsed_ms(request)}ms",
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        },
    )


app.include_router(api_router)
