from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from partage_expiry.core.config import Settings
from partage_expiry.services.records import (
    AnnouncementGateway,
    ConfigurationMissingError,
    GatewayUnavailableError,
    MalformedRecordError,
    RecordUpdateFailedError,
    StoreConfig,
    parse_store_record,
)

TABLE_URL = "https://store.test/v0/appBase/DodoPartage%20Announcements"


def _config(**overrides: Any) -> StoreConfig:
    values: dict[str, Any] = {"api_url": "https://store.test/v0", "base_id": "appBase", "token": "tok-123"}
    values.update(overrides)
    return StoreConfig(**values)


def _run(handler, call, config: StoreConfig | None = None):
    async def run():
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport) as client:
            gateway = AnnouncementGateway(config or _config(), client=client)
            return await call(gateway)

    return asyncio.run(run())


def test_fetch_candidates_drains_pagination_and_projects_fields() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.params.get("offset") is None:
            return httpx.Response(
                200,
                json={
                    "records": [
                        {"id": "rec1", "fields": {"status": "published", "request_type": "offer"}},
                        {"id": "rec2", "fields": {"status": "published", "request_type": "search"}},
                    ],
                    "offset": "page-2",
                },
            )
        return httpx.Response(
            200,
            json={"records": [{"id": "rec3", "fields": {"status": "published", "shipping_date": "2025-01-10"}}]},
        )

    records = _run(handler, lambda gateway: gateway.fetch_candidates())

    assert [record.id for record in records] == ["rec1", "rec2", "rec3"]
    assert records[2].shipping_date.isoformat() == "2025-01-10"
    assert len(seen) == 2
    first = seen[0]
    assert str(first.url).startswith(TABLE_URL)
    assert first.headers["Authorization"] == "Bearer tok-123"
    assert first.url.params["filterByFormula"] == "AND({status} = 'published', {expires_at} != '')"
    assert "expires_at" in first.url.params.get_list("fields[]")
    assert "contact_first_name" in first.url.params.get_list("fields[]")
    assert seen[1].url.params["offset"] == "page-2"


def test_fetch_candidates_without_deadline_filter() -> None:
    formulas: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        formulas.append(request.url.params.get("filterByFormula"))
        return httpx.Response(200, json={"records": []})

    records = _run(handler, lambda gateway: gateway.fetch_candidates(require_expires_at=False))

    assert records == []
    assert formulas == ["AND({status} = 'published')"]


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="unavailable"),
        httpx.Response(200, text="<html>not json</html>"),
        httpx.Response(200, json={"unexpected": True}),
    ],
)
def test_fetch_candidates_failures_are_gateway_unavailable(response: httpx.Response) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    with pytest.raises(GatewayUnavailableError):
        _run(handler, lambda gateway: gateway.fetch_candidates())


def test_fetch_candidates_transport_error_is_gateway_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayUnavailableError, match="unreachable"):
        _run(handler, lambda gateway: gateway.fetch_candidates())


def test_fetch_keeps_malformed_entries_as_idless_records() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"records": ["garbage", {"id": "rec1", "fields": {"status": "published"}}]})

    records = _run(handler, lambda gateway: gateway.fetch_candidates())

    assert [record.id for record in records] == [None, "rec1"]


def test_mark_expired_patches_only_status_and_timestamp() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "rec1", "fields": {}})

    now = datetime(2025, 1, 12, 3, 0, tzinfo=timezone.utc)
    updated = _run(handler, lambda gateway: gateway.mark_expired("rec1", "date_depart_passee", now=now))

    assert updated is True
    assert captured["method"] == "PATCH"
    assert captured["url"] == f"{TABLE_URL}/rec1"
    assert captured["body"] == {"fields": {"status": "expired", "expired_at": "2025-01-12T03:00:00Z"}}


def test_mark_expired_persists_reason_when_field_configured() -> None:
    bodies: list[dict[str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={})

    config = _config(reason_field="expiration_reason")
    _run(handler, lambda gateway: gateway.mark_expired("rec1", "delai_recherche_expire"), config=config)

    assert bodies[0]["fields"]["expiration_reason"] == "delai_recherche_expire"


def test_mark_expired_error_carries_record_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"error": "INVALID_VALUE"})

    with pytest.raises(RecordUpdateFailedError) as exc_info:
        _run(handler, lambda gateway: gateway.mark_expired("rec9", "non_expire"))

    assert exc_info.value.record_id == "rec9"
    assert "422" in exc_info.value.cause


def test_mark_expired_status_guard_skips_already_expired_record() -> None:
    methods: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append(request.method)
        return httpx.Response(200, json={"id": "rec1", "fields": {"status": "expired"}})

    config = _config(verify_status_before_update=True)
    updated = _run(handler, lambda gateway: gateway.mark_expired("rec1", "date_depart_passee"), config=config)

    assert updated is False
    assert methods == ["GET"]


def test_store_config_requires_credentials() -> None:
    with pytest.raises(ConfigurationMissingError, match="store_token"):
        StoreConfig.from_settings(Settings(store_base_id="appBase", store_token=None))

    config = StoreConfig.from_settings(Settings(store_base_id="appBase", store_token="tok", store_page_size=500))
    assert config.page_size == 100


def test_parse_store_record_uses_created_time_fallback() -> None:
    record = parse_store_record({"id": "rec1", "createdTime": "2025-01-01T10:00:00.000Z", "fields": {}})

    assert record.created_at == datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)

    with pytest.raises(MalformedRecordError):
        parse_store_record({"id": "rec2", "fields": ["not", "a", "mapping"]})
