from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Protocol

import httpx

from loanflow.core.settings import settings

logger = logging.getLogger(__name__)

TABLE_LOAN_APPLICATIONS = "Loan Application"
TABLE_CLIENTS = "Clients"
TABLE_KAM_USERS = "KAM Users"
TABLE_CREDIT_TEAM_USERS = "Credit Team Users"
TABLE_NBFC_PARTNERS = "NBFC Partners"
TABLE_USER_ACCOUNTS = "User Accounts"
TABLE_FILE_AUDIT_LOG = "File Auditing Log"
TABLE_ADMIN_ACTIVITY_LOG = "Admin Activity Log"
TABLE_NOTIFICATIONS = "Notifications"
TABLE_FORM_LINKS = "Form Link"

Record = dict[str, Any]


@dataclass(frozen=True)
class RecordStoreError(RuntimeError):
    table: str
    message: str
    status_code: int | None = None

    def __str__(self) -> str:
        return f"{self.table}: {self.message}"


class RecordStore(Protocol):
    async def get(self, table: str, record_id: str) -> Record | None: ...

    async def list(self, table: str, filter: Mapping[str, Any] | None = None) -> list[Record]: ...

    async def upsert(self, table: str, record: Record) -> Record: ...


def matches_filter(record: Mapping[str, Any], filter: Mapping[str, Any] | None) -> bool:
    if not filter:
        return True
    for field, expected in filter.items():
        if str(record.get(field, "")) != str(expected):
            return False
    return True


def table_slug(table: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", table.strip().lower())
    return slug.strip("-")


def flatten_record(raw: Mapping[str, Any]) -> Record:
    """Accept both ``{id, createdTime, fields: {...}}`` and already-flat rows."""
    fields = raw.get("fields")
    if isinstance(fields, dict):
        flat: Record = {"id": raw.get("id"), **fields}
        if raw.get("createdTime"):
            flat.setdefault("createdTime", raw["createdTime"])
        return flat
    return dict(raw)


def _extract_rows(payload: Any) -> list[Mapping[str, Any]]:
    if payload is None:
        return []
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)]
    if isinstance(payload, dict):
        for key in ("records", "data", "items"):
            rows = payload.get(key)
            if isinstance(rows, list):
                return [row for row in rows if isinstance(row, dict)]
        if "id" in payload:
            return [payload]
    return []


class WebhookRecordStore:
    """Record store backed by one GET/POST webhook per table.

    Reads are single attempts bounded by ``timeout``. Writes are upserts keyed
    by ``id`` and are retried with exponential backoff on transport errors
    and 5xx responses; 4xx responses fail immediately.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self.api_key = api_key
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_settings(cls) -> "WebhookRecordStore":
        return cls(
            settings.record_store_base_url,
            timeout=settings.record_store_timeout_seconds,
            max_retries=settings.record_store_max_retries,
            backoff_seconds=settings.record_store_backoff_seconds,
            api_key=settings.record_store_api_key,
        )

    def table_url(self, table: str) -> str:
        return f"{self.base_url}/{table_slug(table)}"

    def _client(self) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return httpx.AsyncClient(timeout=self.timeout, headers=headers, transport=self._transport)

    async def list(self, table: str, filter: Mapping[str, Any] | None = None) -> list[Record]:
        url = self.table_url(table)
        try:
            async with self._client() as client:
                response = await client.get(url)
        except httpx.TimeoutException as exc:
            raise RecordStoreError(table, f"timed out after {self.timeout}s") from exc
        except httpx.TransportError as exc:
            raise RecordStoreError(table, str(exc)) from exc
        if response.status_code >= 400:
            raise RecordStoreError(table, f"GET failed with HTTP {response.status_code}", response.status_code)
        try:
            payload = response.json() if response.content else None
        except ValueError as exc:
            raise RecordStoreError(table, "response is not valid JSON", response.status_code) from exc
        rows = [flatten_record(row) for row in _extract_rows(payload)]
        return [row for row in rows if matches_filter(row, filter)]

    async def get(self, table: str, record_id: str) -> Record | None:
        for row in await self.list(table):
            if str(row.get("id")) == str(record_id):
                return row
        return None

    async def upsert(self, table: str, record: Record) -> Record:
        if not record.get("id"):
            raise RecordStoreError(table, "record id is required for upsert")
        url = self.table_url(table)
        last_error = RecordStoreError(table, "POST not attempted")
        for attempt in range(self.max_retries):
            try:
                async with self._client() as client:
                    response = await client.post(url, json=record)
            except httpx.TransportError as exc:
                last_error = RecordStoreError(table, f"POST failed: {exc}")
            else:
                if response.status_code < 400:
                    return _merge_response(record, response)
                if response.status_code < 500:
                    raise RecordStoreError(
                        table, f"POST rejected with HTTP {response.status_code}", response.status_code
                    )
                last_error = RecordStoreError(
                    table, f"POST failed with HTTP {response.status_code}", response.status_code
                )
            if attempt < self.max_retries - 1:
                delay = self.backoff_seconds * (2**attempt)
                logger.warning(
                    "Retrying record store write",
                    extra={"table": table, "attempt": attempt + 1, "delay": delay},
                )
                await self._sleep(delay)
        raise last_error


def _merge_response(record: Record, response: httpx.Response) -> Record:
    try:
        payload = response.json() if response.content else None
    except ValueError:
        payload = None
    rows = _extract_rows(payload)
    if rows:
        echoed = flatten_record(rows[0])
        if str(echoed.get("id")) == str(record["id"]):
            return {**record, **echoed}
    return dict(record)
