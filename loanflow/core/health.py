from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from redis.exceptions import RedisError

from loanflow.core.settings import settings
from loanflow.services.record_store import TABLE_USER_ACCOUNTS, RecordStore, RecordStoreError
from loanflow.utils.redis_client import get_redis_client

APP_VERSION = "0.1.0"

_OK = {"status": "ok"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _check_record_store(store: RecordStore | None) -> dict[str, str]:
    """Probe by reading the login table."""
    if store is None:
        return {"status": "error", "error": "record store not configured"}
    try:
        await store.list(TABLE_USER_ACCOUNTS)
    except RecordStoreError as exc:
        return {"status": "error", "error": str(exc)}
    return dict(_OK)


async def _check_redis() -> dict[str, str]:
    try:
        await get_redis_client().ping()
    except (RedisError, OSError) as exc:
        return {"status": "error", "error": str(exc)}
    return dict(_OK)


async def _collect_checks(store: RecordStore | None) -> dict[str, dict[str, Any]]:
    return {
        "api": {"status": "ok", "version": APP_VERSION},
        "record_store": await _check_record_store(store),
        "redis": await _check_redis(),
    }


async def live_payload() -> dict[str, str]:
    return {"status": "ok", "timestamp": _now()}


async def ready_payload(store: RecordStore | None) -> dict[str, Any]:
    checks = await _collect_checks(store)
    ready = all(check.get("status") == "ok" for check in checks.values())
    return {
        "status": "ok" if ready else "degraded",
        "ready": ready,
        "environment": settings.environment,
        "timestamp": _now(),
        "checks": checks,
    }


async def status_summary_payload(store: RecordStore | None) -> dict[str, Any]:
    return {**await ready_payload(store), "version": APP_VERSION}
