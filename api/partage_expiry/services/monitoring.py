from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import math
from typing import Any

from partage_expiry.schemas.announcements import AnnouncementRecord

PUBLISHED_BUT_EXPIRED = "PUBLISHED_BUT_EXPIRED"
EXPIRED_WITHOUT_TIMESTAMP = "EXPIRED_WITHOUT_TIMESTAMP"
DELETED_WITH_FUTURE_EXPIRATION = "DELETED_WITH_FUTURE_EXPIRATION"

OVERDUE_TOLERANCE = timedelta(days=1)


@dataclass(slots=True)
class StatusAnomaly:
    type: str
    description: str
    items: list[dict[str, Any]] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.items)


def count_statuses(records: list[AnnouncementRecord]) -> dict[str, int]:
    return dict(Counter(record.status or "undefined" for record in records))


def detect_status_anomalies(records: list[AnnouncementRecord], now: datetime) -> list[StatusAnomaly]:
    """Flag announcements whose status disagrees with their expiration fields.

    Only non-empty anomaly groups are returned.
    """
    overdue = StatusAnomaly(
        type=PUBLISHED_BUT_EXPIRED,
        description="published announcements whose expires_at passed more than one day ago",
    )
    missing_timestamp = StatusAnomaly(
        type=EXPIRED_WITHOUT_TIMESTAMP,
        description="expired announcements without an expired_at timestamp",
    )
    deleted_future = StatusAnomaly(
        type=DELETED_WITH_FUTURE_EXPIRATION,
        description="deleted announcements that still carry a future expires_at",
    )

    for record in records:
        if record.status == "published" and record.expires_at is not None:
            late_by = now - record.expires_at
            if late_by > OVERDUE_TOLERANCE:
                overdue.items.append(
                    {
                        "id": record.id,
                        "reference": record.reference,
                        "expires_at": record.expires_at.isoformat(),
                        "days_overdue": math.ceil(late_by / timedelta(days=1)),
                    }
                )
        elif record.status == "expired" and record.expired_at is None:
            missing_timestamp.items.append({"id": record.id, "reference": record.reference})
        elif record.status == "deleted" and record.expires_at is not None and record.expires_at > now:
            deleted_future.items.append(
                {"id": record.id, "reference": record.reference, "expires_at": record.expires_at.isoformat()}
            )

    return [anomaly for anomaly in (overdue, missing_timestamp, deleted_future) if anomaly.items]
