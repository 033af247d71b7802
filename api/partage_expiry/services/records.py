from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from partage_expiry.core.config import Settings
from partage_expiry.schemas.announcements import (
    ANNOUNCEMENT_FIELDS,
    MONITORING_FIELDS,
    AnnouncementRecord,
)

logger = logging.getLogger(__name__)

STATUS_PUBLISHED = "published"
STATUS_EXPIRED = "expired"
PUBLISHED_FORMULA = "AND({status} = 'published')"
PUBLISHED_WITH_DEADLINE_FORMULA = "AND({status} = 'published', {expires_at} != '')"
MAX_PAGES = 1000


class RecordStoreError(Exception):
    """Base records store error."""


class ConfigurationMissingError(RecordStoreError):
    """Raised when the store credentials or identifiers are not configured."""


class GatewayUnavailableError(RecordStoreError):
    """Raised when candidates cannot be read from the store."""


class RecordUpdateFailedError(RecordStoreError):
    """Raised when a single announcement could not be updated."""

    def __init__(self, record_id: str, cause: str) -> None:
        super().__init__(f"failed to update announcement {record_id}: {cause}")
        self.record_id = record_id
        self.cause = cause


class MalformedRecordError(RecordStoreError):
    """Raised when a store payload entry cannot be read as an announcement."""


@dataclass(frozen=True, slots=True)
class StoreConfig:
    api_url: str
    base_id: str
    token: str
    table: str = "DodoPartage Announcements"
    page_size: int = 100
    timeout_seconds: float = 10.0
    reason_field: str | None = None
    verify_status_before_update: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> StoreConfig:
        missing = [
            name
            for name, value in (("store_base_id", settings.store_base_id), ("store_token", settings.store_token))
            if not value
        ]
        if missing:
            raise ConfigurationMissingError(f"missing records store configuration: {', '.join(missing)}")
        return cls(
            api_url=settings.store_api_url,
            base_id=settings.store_base_id or "",
            token=settings.store_token or "",
            table=settings.store_table,
            page_size=max(1, min(100, settings.store_page_size)),
            timeout_seconds=settings.store_timeout_seconds,
            reason_field=settings.store_reason_field,
            verify_status_before_update=settings.store_verify_status_before_update,
        )

    @property
    def table_url(self) -> str:
        return f"{self.api_url.rstrip('/')}/{quote(self.base_id, safe='')}/{quote(self.table, safe='')}"


class AnnouncementGateway:
    """Thin client over the hosted announcements table.

    Each call is a single attempt; retry policy belongs to whoever schedules
    the batch.
    """

    def __init__(self, config: StoreConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self.headers = {
            "Authorization": f"Bearer {config.token}",
            "Content-Type": "application/json",
        }
        self._client = client

    async def fetch_candidates(self, *, require_expires_at: bool = True) -> list[AnnouncementRecord]:
        formula = PUBLISHED_WITH_DEADLINE_FORMULA if require_expires_at else PUBLISHED_FORMULA
        return await self._fetch(formula=formula, fields=ANNOUNCEMENT_FIELDS)

    async def fetch_all(self) -> list[AnnouncementRecord]:
        return await self._fetch(formula=None, fields=MONITORING_FIELDS)

    async def mark_expired(self, record_id: str, reason: str, *, now: datetime | None = None) -> bool:
        """Move one announcement to ``expired``.

        Returns ``False`` without writing when the status guard is enabled and
        the record already left ``published``.
        """
        current = now or datetime.now(timezone.utc)
        fields: dict[str, Any] = {
            "status": STATUS_EXPIRED,
            "expired_at": current.isoformat().replace("+00:00", "Z"),
        }
        if self.config.reason_field:
            fields[self.config.reason_field] = reason

        url = f"{self.config.table_url}/{quote(record_id, safe='')}"
        try:
            async with self._session() as client:
                if self.config.verify_status_before_update:
                    status = await self._current_status(client, url)
                    if status != STATUS_PUBLISHED:
                        logger.info(
                            "skip expiration id=%s reason=%s: status is already %s",
                            record_id,
                            reason,
                            status,
                        )
                        return False
                response = await client.patch(url, json={"fields": fields}, headers=self.headers)
        except (httpx.HTTPError, ValueError, MalformedRecordError) as exc:
            raise RecordUpdateFailedError(record_id, f"{type(exc).__name__}: {exc}") from exc

        if response.status_code >= 400:
            raise RecordUpdateFailedError(record_id, f"HTTP {response.status_code} {response.reason_phrase}")

        logger.debug("announcement id=%s marked expired reason=%s", record_id, reason)
        return True

    async def _fetch(self, *, formula: str | None, fields: Sequence[str]) -> list[AnnouncementRecord]:
        records: list[AnnouncementRecord] = []
        offset: str | None = None
        async with self._session() as client:
            for _ in range(MAX_PAGES):
                params: list[tuple[str, str | int]] = [("pageSize", self.config.page_size)]
                if formula:
                    params.append(("filterByFormula", formula))
                params.extend(("fields[]", name) for name in fields)
                if offset:
                    params.append(("offset", offset))

                payload = await self._get_page(client, params)
                raw_records = payload.get("records")
                if not isinstance(raw_records, list):
                    raise GatewayUnavailableError("records store response has no 'records' list")
                records.extend(_parse_entry(entry) for entry in raw_records)

                next_offset = payload.get("offset")
                if not isinstance(next_offset, str) or not next_offset:
                    return records
                offset = next_offset

        raise GatewayUnavailableError(f"records store pagination did not finish after {MAX_PAGES} pages")

    async def _get_page(self, client: httpx.AsyncClient, params: list[tuple[str, str | int]]) -> dict[str, Any]:
        try:
            response = await client.get(self.config.table_url, params=params, headers=self.headers)
        except httpx.HTTPError as exc:
            raise GatewayUnavailableError(f"records store unreachable: {type(exc).__name__}: {exc}") from exc

        if response.status_code >= 400:
            raise GatewayUnavailableError(
                f"records store error: {response.status_code} {response.reason_phrase}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayUnavailableError("records store returned an undecodable body") from exc
        if not isinstance(payload, dict):
            raise GatewayUnavailableError("records store returned an unexpected body")
        return payload

    async def _current_status(self, client: httpx.AsyncClient, url: str) -> str | None:
        response = await client.get(url, params=[("fields[]", "status")], headers=self.headers)
        if response.status_code >= 400:
            raise httpx.HTTPStatusError(
                f"status read failed: {response.status_code}",
                request=response.request,
                response=response,
            )
        return parse_store_record(response.json()).status

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
            yield client


def parse_store_record(entry: Any) -> AnnouncementRecord:
    """Convert one store entry (``{"id", "createdTime", "fields"}``) into a record."""
    if not isinstance(entry, Mapping):
        raise MalformedRecordError(f"expected an object, got {type(entry).__name__}")
    fields = entry.get("fields") or {}
    if not isinstance(fields, Mapping):
        raise MalformedRecordError(f"record {entry.get('id')!r} has non-object fields")

    data = dict(fields)
    data["id"] = entry.get("id") or fields.get("id")
    if not data.get("created_at") and entry.get("createdTime"):
        data["created_at"] = entry["createdTime"]
    try:
        return AnnouncementRecord.model_validate(data)
    except ValidationError as exc:
        raise MalformedRecordError(f"record {data['id']!r} failed validation: {exc}") from exc


def _parse_entry(entry: Any) -> AnnouncementRecord:
    try:
        return parse_store_record(entry)
    except MalformedRecordError as exc:
        logger.warning("malformed announcement payload: %s", exc)
        return AnnouncementRecord()
