from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from loanflow.schemas.loan import LoanApplication
from loanflow.services.access_filter import match_ids
from loanflow.services.record_store import TABLE_FORM_LINKS, RecordStore, RecordStoreError

logger = logging.getLogger(__name__)

_VERSION_FIELDS = ("Version", "version", "createdTime", "Created Time")
_NUMBERED_VERSION_RE = re.compile(r"v?(\d+(?:\.\d+)*)", re.IGNORECASE)


def _row_version(row: dict) -> str | None:
    for field in _VERSION_FIELDS:
        value = row.get(field)
        if value:
            return str(value)
    return None


def _version_key(version: str) -> tuple:
    """Numbered versions compare numerically, timestamps chronologically."""
    numbered = _NUMBERED_VERSION_RE.fullmatch(version.strip())
    if numbered:
        return (2, tuple(int(part) for part in numbered.group(1).split(".")))
    try:
        stamp = datetime.fromisoformat(version.strip().replace("Z", "+00:00"))
    except ValueError:
        return (0, version)
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return (1, stamp.timestamp())


async def get_latest_form_config_version(store: RecordStore, client_id: str | None) -> str | None:
    if not client_id:
        return None
    try:
        rows = await store.list(TABLE_FORM_LINKS)
    except RecordStoreError:
        logger.warning("Form link lookup failed", exc_info=True, extra={"client_id": client_id})
        return None
    versions: list[str] = []
    for row in rows:
        if not match_ids(row.get("Client"), client_id):
            continue
        version = _row_version(row)
        if version:
            versions.append(version)
    return max(versions, key=_version_key) if versions else None


async def resolve_form_config_version(store: RecordStore, application: LoanApplication) -> str | None:
    """Frozen version for submitted files, latest for drafts."""
    if application.is_submitted and application.form_config_version:
        return application.form_config_version
    return await get_latest_form_config_version(store, application.client_id)
