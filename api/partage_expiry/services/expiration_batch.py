from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Protocol

from opentelemetry import trace

from partage_expiry.schemas.announcements import AnnouncementRecord
from partage_expiry.services.expiration_rules import ExpirationDecision, evaluate_expiration
from partage_expiry.services.records import RecordUpdateFailedError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Evaluator = Callable[[AnnouncementRecord, datetime], ExpirationDecision]
Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[None]]


class AnnouncementSource(Protocol):
    async def fetch_candidates(self, *, require_expires_at: bool = True) -> list[AnnouncementRecord]: ...

    async def mark_expired(self, record_id: str, reason: str, *, now: datetime | None = None) -> bool: ...


class BatchState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class BatchResult:
    processed: int = 0
    expired: int = 0
    errors: int = 0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ExpirationBatch:
    """One sequential scan of published announcements.

    A failing record only bumps ``errors``; the batch carries on with the
    next candidate. Only the candidate fetch can fail the whole run.
    """

    def __init__(
        self,
        gateway: AnnouncementSource,
        *,
        evaluator: Evaluator = evaluate_expiration,
        clock: Clock = utc_now,
        sleep: Sleeper = asyncio.sleep,
        pause_every: int = 10,
        pause_seconds: float = 1.0,
    ) -> None:
        self.gateway = gateway
        self.evaluator = evaluator
        self.clock = clock
        self.sleep = sleep
        self.pause_every = max(1, pause_every)
        self.pause_seconds = pause_seconds
        self.state = BatchState.IDLE

    async def run(self) -> BatchResult:
        self.state = BatchState.RUNNING
        with tracer.start_as_current_span("expiration.batch") as span:
            try:
                candidates = await self.gateway.fetch_candidates(require_expires_at=True)
            except Exception:
                self.state = BatchState.FAILED
                logger.exception("expiration batch aborted: candidates could not be fetched")
                raise

            logger.info("expiration batch started candidates=%s", len(candidates))
            result = BatchResult()
            total = len(candidates)
            for position, record in enumerate(candidates, start=1):
                result.processed += 1
                await self._process(record, result)
                if position % self.pause_every == 0 and position < total:
                    await self.sleep(self.pause_seconds)

            span.set_attribute("expiration.processed", result.processed)
            span.set_attribute("expiration.expired", result.expired)
            span.set_attribute("expiration.errors", result.errors)

        self.state = BatchState.COMPLETED
        logger.info(
            "expiration batch completed processed=%s expired=%s errors=%s",
            result.processed,
            result.expired,
            result.errors,
        )
        return result

    async def _process(self, record: AnnouncementRecord, result: BatchResult) -> None:
        if not record.id:
            result.errors += 1
            logger.error("announcement without id skipped (type=%s)", record.request_type)
            return

        now = self.clock()
        decision = self.evaluator(record, now)
        if not decision.should_expire:
            return

        logger.info(
            "expiring announcement id=%s type=%s owner=%s route=%s->%s reason=%s",
            record.id,
            record.request_type,
            record.contact_first_name,
            record.departure_country,
            record.arrival_country,
            decision.reason,
        )
        with tracer.start_as_current_span("expiration.mark_expired") as span:
            span.set_attribute("announcement.id", record.id)
            span.set_attribute("expiration.reason", decision.reason)
            try:
                updated = await self.gateway.mark_expired(record.id, decision.reason, now=now)
            except RecordUpdateFailedError as exc:
                result.errors += 1
                logger.error("expiration failed id=%s reason=%s: %s", record.id, decision.reason, exc.cause)
                return
            except Exception:  # pragma: no cover - unexpected gateway failure stays per-record
                result.errors += 1
                logger.exception("unexpected error while expiring id=%s", record.id)
                return

        if updated:
            result.expired += 1
