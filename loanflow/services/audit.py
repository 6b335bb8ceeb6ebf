from __future__ import annotations

import re
import secrets
import string
import time
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from fastapi.encoders import jsonable_encoder

from loanflow.core.logging import get_audit_logger
from loanflow.schemas.audit import (
    AdminActivityEntry,
    AuditActionType,
    FileAuditEntry,
    StatusHistoryItem,
)
from loanflow.schemas.identity import Role
from loanflow.schemas.loan import LoanStatus
from loanflow.services import status_machine
from loanflow.services.record_store import (
    TABLE_ADMIN_ACTIVITY_LOG,
    TABLE_FILE_AUDIT_LOG,
    RecordStore,
)

audit_logger = get_audit_logger()

_BASE36 = string.digits + string.ascii_lowercase
_DISPLAY_TO_STATUS = {name: status for status, name in status_machine.STATUS_DISPLAY_NAMES.items()}
# labels may themselves contain " to ", so match whole known labels, longest first
_STATUS_LABEL = "|".join(re.escape(name) for name in sorted(_DISPLAY_TO_STATUS, key=len, reverse=True))
_STATUS_CHANGE_RE = re.compile(
    rf"^Status changed from (?P<from>None|{_STATUS_LABEL}) to (?P<to>{_STATUS_LABEL})(?:: (?P<reason>.*))?$",
    re.S,
)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_log_id(prefix: str = "ACT") -> str:
    """``<PREFIX>-<epoch ms>-<9 random base36 chars>``; call once per logical action."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def serialize_for_audit(value: Any) -> Any:
    return jsonable_encoder(
        value,
        custom_encoder={
            Decimal: lambda v: str(v),
            datetime: lambda v: v.isoformat(),
            date: lambda v: v.isoformat(),
        },
    )


def _diff_values(old: Any, new: Any, prefix: str = "") -> dict[str, dict[str, Any]]:
    changes: dict[str, dict[str, Any]] = {}
    if isinstance(old, dict) and isinstance(new, dict):
        for key in sorted(set(old.keys()) | set(new.keys())):
            path = f"{prefix}.{key}" if prefix else str(key)
            changes.update(_diff_values(old.get(key), new.get(key), path))
        return changes
    if old != new:
        changes[prefix or "value"] = {"from": old, "to": new}
    return changes


def build_summary(action: str, changes: dict[str, dict[str, Any]] | None) -> str:
    if not changes:
        return action
    keys = list(changes.keys())
    snippet = ", ".join(keys[:3])
    suffix = "..." if len(keys) > 3 else ""
    return f"{action}: {snippet}{suffix}"


def status_change_message(
    from_status: LoanStatus | str | None,
    to_status: LoanStatus | str,
    reason: str | None = None,
) -> str:
    source = status_machine.display_name(from_status) if from_status else "None"
    message = f"Status changed from {source} to {status_machine.display_name(to_status)}"
    if reason:
        message += f": {reason}"
    return message


class AuditTrailRecorder:
    """Append-only writer for the admin activity and file audit tables.

    Every write is an upsert keyed by the entry id, so replaying an entry that
    already carries an id does not duplicate it. Store failures are logged to
    the audit stream and the entry is returned as if written.
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    async def _write(self, table: str, entry_id: str, record: dict[str, Any]) -> bool:
        try:
            await self.store.upsert(table, record)
        except Exception:
            audit_logger.exception(
                "Audit write failed",
                extra={"table": table, "entry_id": entry_id},
            )
            return False
        audit_logger.info("Audit entry written", extra={"table": table, "entry_id": entry_id})
        return True

    async def record(self, entry: AdminActivityEntry | dict[str, Any]) -> AdminActivityEntry:
        if isinstance(entry, dict):
            data = dict(entry)
            data.setdefault("id", data.get("activity_id") or data.get("Activity ID") or generate_log_id("ACT"))
            entry = AdminActivityEntry.model_validate(data)
        updates: dict[str, Any] = {}
        if not entry.activity_id:
            updates["activity_id"] = entry.id
        if not entry.timestamp:
            updates["timestamp"] = utcnow_iso()
        if updates:
            entry = entry.model_copy(update=updates)
        await self._write(TABLE_ADMIN_ACTIVITY_LOG, entry.id, entry.to_record())
        return entry

    async def record_file_event(
        self,
        *,
        file_id: str,
        actor: str,
        action_type: AuditActionType | str,
        message: str,
        target_role: Role | str | None = None,
        resolved: bool = False,
        entry_id: str | None = None,
        timestamp: str | None = None,
    ) -> FileAuditEntry:
        log_id = entry_id or generate_log_id("LOG")
        entry = FileAuditEntry(
            id=log_id,
            log_entry_id=log_id,
            file_id=file_id,
            timestamp=timestamp or utcnow_iso(),
            actor=actor,
            action_type=_enum_value(action_type),
            details_message=message,
            target_role=_enum_value(target_role) if target_role else None,
            resolved=resolved,
        )
        await self._write(TABLE_FILE_AUDIT_LOG, entry.id, entry.to_record())
        return entry

    async def log_application_action(
        self,
        *,
        performed_by: str,
        action_type: AuditActionType | str,
        file_id: str,
        description: str,
        client_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AdminActivityEntry:
        return await self.record(
            AdminActivityEntry(
                id=generate_log_id("ACT"),
                performed_by=performed_by,
                action_type=_enum_value(action_type),
                description=description,
                target_entity="loan_application",
                related_file_id=file_id,
                related_client_id=client_id,
                metadata=serialize_for_audit(metadata or {}),
            )
        )

    async def log_client_action(
        self,
        *,
        performed_by: str,
        action_type: AuditActionType | str,
        client_id: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> AdminActivityEntry:
        return await self.record(
            AdminActivityEntry(
                id=generate_log_id("ACT"),
                performed_by=performed_by,
                action_type=_enum_value(action_type),
                description=description,
                target_entity="client",
                related_client_id=client_id,
                metadata=serialize_for_audit(metadata or {}),
            )
        )

    async def log_status_change(
        self,
        *,
        performed_by: str,
        file_id: str,
        from_status: LoanStatus | str | None,
        to_status: LoanStatus | str,
        reason: str | None = None,
        entry_id: str | None = None,
    ) -> FileAuditEntry:
        """One ``status_change`` row in the file log, addressed to whoever acts next."""
        return await self.record_file_event(
            file_id=file_id,
            actor=performed_by,
            action_type=AuditActionType.STATUS_CHANGE,
            message=status_change_message(from_status, to_status, reason),
            target_role=status_machine.target_role_for_status(to_status),
            entry_id=entry_id,
        )

    async def list_file_events(self, file_id: str | None = None) -> list[FileAuditEntry]:
        rows = await self.store.list(TABLE_FILE_AUDIT_LOG)
        entries = [FileAuditEntry.model_validate(row) for row in rows]
        if file_id is not None:
            entries = [entry for entry in entries if entry.file_id == file_id]
        return sorted(entries, key=lambda entry: entry.timestamp or "")

    async def list_admin_activity(self) -> list[AdminActivityEntry]:
        rows = await self.store.list(TABLE_ADMIN_ACTIVITY_LOG)
        entries = [AdminActivityEntry.model_validate(row) for row in rows]
        return sorted(entries, key=lambda entry: entry.timestamp or "", reverse=True)

    async def get_status_history(self, file_id: str) -> list[StatusHistoryItem]:
        history: list[StatusHistoryItem] = []
        for entry in await self.list_file_events(file_id):
            if entry.action_type != AuditActionType.STATUS_CHANGE.value:
                continue
            match = _STATUS_CHANGE_RE.match(entry.details_message or "")
            if not match:
                continue
            history.append(
                StatusHistoryItem(
                    from_status=_status_value(match.group("from")),
                    to_status=_status_value(match.group("to")),
                    changed_by=entry.actor,
                    timestamp=entry.timestamp,
                    reason=match.group("reason"),
                )
            )
        return history


def _enum_value(value: Any) -> str:
    return value.value if hasattr(value, "value") else str(value)


def _status_value(label: str) -> str | None:
    status = _DISPLAY_TO_STATUS.get(label.strip())
    if status is not None:
        return status.value
    return None if label.strip() == "None" else label.strip()
