from __future__ import annotations

from dataclasses import dataclass, field
import logging

from partage_expiry.services.expiration_batch import AnnouncementSource, Clock, Evaluator, utc_now
from partage_expiry.services.expiration_rules import evaluate_expiration

logger = logging.getLogger(__name__)

UNKNOWN_ID = "unknown"


@dataclass(frozen=True, slots=True)
class DryRunItem:
    id: str
    type: str | None
    reason: str


@dataclass(slots=True)
class DryRunReport:
    total_checked: int = 0
    items: list[DryRunItem] = field(default_factory=list)

    @property
    def would_expire_count(self) -> int:
        return len(self.items)


class DryRunReporter:
    """Preview of a live batch; reads candidates and never writes."""

    def __init__(
        self,
        gateway: AnnouncementSource,
        *,
        evaluator: Evaluator = evaluate_expiration,
        clock: Clock = utc_now,
    ) -> None:
        self.gateway = gateway
        self.evaluator = evaluator
        self.clock = clock

    async def simulate(self) -> DryRunReport:
        candidates = await self.gateway.fetch_candidates(require_expires_at=False)
        now = self.clock()
        report = DryRunReport(total_checked=len(candidates))
        for record in candidates:
            decision = self.evaluator(record, now)
            if not decision.should_expire:
                continue
            report.items.append(DryRunItem(id=record.id or UNKNOWN_ID, type=record.request_type, reason=decision.reason))
            logger.info(
                "dry run: would expire id=%s type=%s reason=%s evidence=%s",
                record.id,
                record.request_type,
                decision.reason,
                decision.evidence,
            )

        logger.info("dry run checked=%s would_expire=%s", report.total_checked, report.would_expire_count)
        return report
