from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from partage_expiry.schemas.announcements import AnnouncementRecord

REASON_EXPIRES_AT_PASSED = "date_expiration_depassee"
REASON_DEPARTURE_PASSED = "date_depart_passee"
REASON_SEARCH_WINDOW_ELAPSED = "delai_recherche_expire"
REASON_NOT_EXPIRED = "non_expire"

REQUEST_TYPE_OFFER = "offer"
REQUEST_TYPE_SEARCH = "search"

OFFER_GRACE_DAYS = 1
SEARCH_LIFETIME_DAYS = 60


@dataclass(frozen=True, slots=True)
class ExpirationDecision:
    should_expire: bool
    reason: str
    evidence: dict[str, Any] = field(default_factory=dict)


def evaluate_expiration(record: AnnouncementRecord, now: datetime) -> ExpirationDecision:
    """Decide whether a published announcement must expire at ``now``.

    The explicit ``expires_at`` deadline wins over the type-specific rule and
    is compared to the instant. The offer and search cutoffs are compared on
    UTC calendar dates.
    """
    current = _as_utc(now)
    today = current.date()

    if record.expires_at is not None and current >= _as_utc(record.expires_at):
        return ExpirationDecision(
            should_expire=True,
            reason=REASON_EXPIRES_AT_PASSED,
            evidence={"expires_at": record.expires_at.isoformat()},
        )

    if record.request_type == REQUEST_TYPE_OFFER and record.shipping_date is not None:
        cutoff = record.shipping_date + timedelta(days=OFFER_GRACE_DAYS)
        if today >= cutoff:
            return ExpirationDecision(
                should_expire=True,
                reason=REASON_DEPARTURE_PASSED,
                evidence={"shipping_date": record.shipping_date.isoformat(), "cutoff": cutoff.isoformat()},
            )
    elif record.request_type == REQUEST_TYPE_SEARCH and record.created_at is not None:
        created_on = _utc_date(record.created_at)
        cutoff = created_on + timedelta(days=SEARCH_LIFETIME_DAYS)
        if today >= cutoff:
            return ExpirationDecision(
                should_expire=True,
                reason=REASON_SEARCH_WINDOW_ELAPSED,
                evidence={"created_at": created_on.isoformat(), "cutoff": cutoff.isoformat()},
            )

    return ExpirationDecision(should_expire=False, reason=REASON_NOT_EXPIRED)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utc_date(value: datetime) -> date:
    return _as_utc(value).date()
