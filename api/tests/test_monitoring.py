from datetime import datetime, timezone

from partage_expiry.schemas.announcements import AnnouncementRecord
from partage_expiry.services.monitoring import (
    DELETED_WITH_FUTURE_EXPIRATION,
    EXPIRED_WITHOUT_TIMESTAMP,
    PUBLISHED_BUT_EXPIRED,
    count_statuses,
    detect_status_anomalies,
)

NOW = datetime(2025, 5, 10, 12, 0, tzinfo=timezone.utc)


def test_detects_each_anomaly_type() -> None:
    records = [
        AnnouncementRecord(id="late", reference="PARTAGE-1", status="published", expires_at="2025-05-07T00:00:00Z"),
        AnnouncementRecord(id="grace", status="published", expires_at="2025-05-10T00:00:00Z"),
        AnnouncementRecord(id="no-ts", reference="PARTAGE-2", status="expired"),
        AnnouncementRecord(id="ok-exp", status="expired", expired_at="2025-05-01T00:00:00Z"),
        AnnouncementRecord(id="zombie", status="deleted", expires_at="2025-06-01T00:00:00Z"),
        AnnouncementRecord(id="gone", status="deleted", expires_at="2025-04-01T00:00:00Z"),
    ]

    anomalies = {anomaly.type: anomaly for anomaly in detect_status_anomalies(records, NOW)}

    assert set(anomalies) == {PUBLISHED_BUT_EXPIRED, EXPIRED_WITHOUT_TIMESTAMP, DELETED_WITH_FUTURE_EXPIRATION}
    overdue = anomalies[PUBLISHED_BUT_EXPIRED]
    assert overdue.count == 1
    assert overdue.items[0]["id"] == "late"
    assert overdue.items[0]["reference"] == "PARTAGE-1"
    assert overdue.items[0]["days_overdue"] == 4
    assert [item["id"] for item in anomalies[EXPIRED_WITHOUT_TIMESTAMP].items] == ["no-ts"]
    assert [item["id"] for item in anomalies[DELETED_WITH_FUTURE_EXPIRATION].items] == ["zombie"]


def test_consistent_store_has_no_anomalies() -> None:
    records = [
        AnnouncementRecord(id="a", status="published", expires_at="2025-06-01T00:00:00Z"),
        AnnouncementRecord(id="b", status="expired", expired_at="2025-05-01T00:00:00Z"),
    ]

    assert detect_status_anomalies(records, NOW) == []


def test_count_statuses_groups_missing_status() -> None:
    records = [
        AnnouncementRecord(id="a", status="published"),
        AnnouncementRecord(id="b", status="published"),
        AnnouncementRecord(id="c"),
    ]

    assert count_statuses(records) == {"published": 2, "undefined": 1}
