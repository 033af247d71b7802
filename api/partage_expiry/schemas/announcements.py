from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, StrictBool, field_validator

ANNOUNCEMENT_FIELDS = (
    "id",
    "status",
    "request_type",
    "shipping_date",
    "created_at",
    "expires_at",
    "contact_first_name",
    "departure_country",
    "arrival_country",
)
MONITORING_FIELDS = (*ANNOUNCEMENT_FIELDS, "expired_at", "reference")


class AnnouncementRecord(BaseModel):
    """Snapshot of one announcement as read from the records store.

    Date fields are lenient: anything that cannot be read as a date becomes
    ``None`` so the matching expiration rule simply does not apply.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str | None = None
    status: str | None = None
    request_type: str | None = None
    shipping_date: date | None = None
    created_at: datetime | None = None
    expires_at: datetime | None = None
    expired_at: datetime | None = None
    contact_first_name: str | None = None
    departure_country: str | None = None
    arrival_country: str | None = None
    reference: str | None = None

    @field_validator(
        "id",
        "status",
        "request_type",
        "contact_first_name",
        "departure_country",
        "arrival_country",
        "reference",
        mode="before",
    )
    @classmethod
    def _strip_text(cls, value: Any) -> str | None:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return None

    @field_validator("shipping_date", mode="before")
    @classmethod
    def _lenient_date(cls, value: Any) -> date | None:
        parsed = parse_timestamp(value)
        return parsed.date() if parsed is not None else None

    @field_validator("created_at", "expires_at", "expired_at", mode="before")
    @classmethod
    def _lenient_datetime(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)


class ExpirationRunData(BaseModel):
    processed: int
    expired: int
    errors: int
    duration: str
    timestamp: str


class ExpirationRunResponse(BaseModel):
    success: bool = True
    message: str
    data: ExpirationRunData


class DryRunItemOut(BaseModel):
    id: str
    type: str | None = None
    reason: str


class DryRunData(BaseModel):
    total_checked: int
    would_expire: int
    announcements: list[DryRunItemOut]


class DryRunResponse(BaseModel):
    success: bool = True
    test: bool = True
    message: str
    data: DryRunData


class TriggerRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    test: StrictBool = False


class StatusAnomalyOut(BaseModel):
    type: str
    description: str
    count: int
    items: list[dict[str, Any]]


class StatusReportOut(BaseModel):
    success: bool = True
    total_checked: int
    status_counts: dict[str, int]
    anomalies: list[StatusAnomalyOut]


def parse_timestamp(value: Any) -> datetime | None:
    """Read an ISO date or datetime into an aware UTC datetime, or ``None``."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
