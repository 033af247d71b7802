import asyncio
from datetime import datetime, timezone
import logging
import time
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.requests import Request

from partage_expiry.core.config import Settings, get_settings
from partage_expiry.core.security import require_cron_trigger
from partage_expiry.schemas.announcements import (
    DryRunData,
    DryRunItemOut,
    DryRunResponse,
    ExpirationRunData,
    ExpirationRunResponse,
    StatusAnomalyOut,
    StatusReportOut,
    TriggerRequest,
)
from partage_expiry.services.dry_run import DryRunReporter
from partage_expiry.services.expiration_batch import ExpirationBatch, utc_now
from partage_expiry.services.monitoring import count_statuses, detect_status_anomalies
from partage_expiry.services.records import AnnouncementGateway, StoreConfig

router = APIRouter(dependencies=[Depends(require_cron_trigger)])
logger = logging.getLogger(__name__)


def get_announcement_gateway(settings: Settings = Depends(get_settings)) -> AnnouncementGateway:
    return AnnouncementGateway(StoreConfig.from_settings(settings))


@router.get("/expire-announcements", response_model=ExpirationRunResponse)
async def expire_announcements(
    request: Request,
    settings: Settings = Depends(get_settings),
    gateway: AnnouncementGateway = Depends(get_announcement_gateway),
):
    return await _run_live_batch(request, settings, gateway)


@router.post("/expire-announcements", response_model=ExpirationRunResponse | DryRunResponse)
async def trigger_expiration(
    request: Request,
    settings: Settings = Depends(get_settings),
    gateway: AnnouncementGateway = Depends(get_announcement_gateway),
):
    payload = await _read_trigger_request(request)
    if not payload.test:
        return await _run_live_batch(request, settings, gateway)

    logger.info("expiration dry run requested")
    try:
        report = await DryRunReporter(gateway).simulate()
    except Exception as exc:
        logger.exception("expiration dry run failed")
        return _failure_response(request, exc, error="Erreur lors de la simulation d'expiration")

    return DryRunResponse(
        message=f"{report.would_expire_count} annonces seraient expirées",
        data=DryRunData(
            total_checked=report.total_checked,
            would_expire=report.would_expire_count,
            announcements=[DryRunItemOut(id=item.id, type=item.type, reason=item.reason) for item in report.items],
        ),
    )


@router.get("/expiration-conflicts", response_model=StatusReportOut)
async def expiration_conflicts(
    request: Request,
    gateway: AnnouncementGateway = Depends(get_announcement_gateway),
):
    try:
        records = await gateway.fetch_all()
    except Exception as exc:
        logger.exception("status monitoring failed")
        return _failure_response(request, exc, error="Erreur lors du contrôle des statuts")

    anomalies = detect_status_anomalies(records, utc_now())
    for anomaly in anomalies:
        logger.warning("status anomaly type=%s count=%s", anomaly.type, anomaly.count)
    return StatusReportOut(
        total_checked=len(records),
        status_counts=count_statuses(records),
        anomalies=[
            StatusAnomalyOut(type=a.type, description=a.description, count=a.count, items=a.items) for a in anomalies
        ],
    )


async def _run_live_batch(request: Request, settings: Settings, gateway: AnnouncementGateway):
    logger.info(
        "expiration batch triggered at=%s user_agent=%s",
        datetime.now(timezone.utc).isoformat(),
        request.headers.get("user-agent"),
    )
    batch = ExpirationBatch(
        gateway,
        pause_every=settings.expiration_pause_every,
        pause_seconds=settings.expiration_pause_seconds,
    )
    try:
        result = await asyncio.wait_for(batch.run(), timeout=settings.expiration_timeout_seconds)
    except asyncio.TimeoutError as exc:
        logger.error("expiration batch timed out after %gs", settings.expiration_timeout_seconds)
        message = f"expiration batch exceeded {settings.expiration_timeout_seconds:g}s"
        return _failure_response(request, exc, message=message)
    except Exception as exc:
        logger.error("expiration batch failed: %s", exc)
        return _failure_response(request, exc)

    duration = elapsed_ms(request)
    logger.info(
        "expiration summary processed=%s expired=%s errors=%s duration_ms=%s",
        result.processed,
        result.expired,
        result.errors,
        duration,
    )
    return ExpirationRunResponse(
        message="Processus d'expiration terminé",
        data=ExpirationRunData(
            processed=result.processed,
            expired=result.expired,
            errors=result.errors,
            duration=f"{duration}ms",
            timestamp=_timestamp(),
        ),
    )


async def _read_trigger_request(request: Request) -> TriggerRequest:
    try:
        raw: Any = await request.json()
    except ValueError:
        return TriggerRequest()
    if not isinstance(raw, dict):
        return TriggerRequest()
    try:
        return TriggerRequest.model_validate(raw)
    except ValidationError:
        return TriggerRequest()


def _failure_response(
    request: Request,
    exc: BaseException,
    *,
    error: str = "Erreur lors du processus d'expiration",
    message: str | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": error,
            "message": message or str(exc) or type(exc).__name__,
            "duration": f"{elapsed_ms(request)}ms",
            "timestamp": _timestamp(),
        },
    )


def elapsed_ms(request: Request) -> int:
    started_at = getattr(request.state, "started_at", None)
    if started_at is None:
        return 0
    return int((time.perf_counter() - started_at) * 1000)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
