from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from loanflow.schemas.audit import AuditActionType, FileAuditEntry
from loanflow.schemas.identity import Role
from loanflow.schemas.query import QueryNode, QueryStatus, QueryThread
from loanflow.services import query_content
from loanflow.services.audit import generate_log_id
from loanflow.services.capabilities import Capability
from loanflow.services.errors import NotFound, PermissionDenied, ValidationFailed
from loanflow.services.notifications import Notifier, notify_safely
from loanflow.services.record_store import TABLE_FILE_AUDIT_LOG, RecordStore

logger = logging.getLogger(__name__)

QUERY_NOT_FOUND = "Query not found"
PARENT_NOT_FOUND = "Parent query not found"
ONLY_AUTHOR_CAN_RESOLVE = "Only the query author can resolve this query"
ONLY_AUTHOR_CAN_REOPEN = "Only the query author can reopen this query"
ONLY_AUTHOR_CAN_EDIT = "Only the query author can edit this query"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _sort_key(node: QueryNode) -> datetime:
    return _parse_timestamp(node.timestamp) or _EPOCH


# events recorded beside a thread; they are never nodes of it
_THREAD_EVENT_TYPES = frozenset(
    {
        AuditActionType.RESOLVE_QUERY.value,
        AuditActionType.REOPEN_QUERY.value,
        AuditActionType.EDIT_QUERY.value,
        "query_resolved",
        "query_reopened",
    }
)


def is_query_entry(entry: FileAuditEntry) -> bool:
    """Tagged rows, plus untagged rows whose event type names a query."""
    message = entry.details_message or ""
    if query_content.STATUS_TAG_RE.search(message) or query_content.PARENT_TAG_RE.search(message):
        return True
    action = (entry.action_type or "").strip().lower()
    return "query" in action and action not in _THREAD_EVENT_TYPES


def node_from_entry(entry: FileAuditEntry) -> QueryNode:
    parsed = query_content.parse_query_content(entry.details_message)
    status = parsed.status
    if entry.resolved and parsed.parent is None:
        status = QueryStatus.RESOLVED
    return QueryNode(
        id=entry.id,
        file_id=entry.file_id,
        author_id=entry.actor or "",
        parent_id=parsed.parent,
        status=status,
        message=parsed.message,
        target_role=entry.target_role,
        action_type=entry.action_type,
        timestamp=entry.timestamp,
    )


class QueryThreadEngine:
    """Threaded queries stored as tagged rows of the file audit log.

    Resolution and reopening act on the root node and are author-only for
    every role. Both writes of a resolve go straight to the record store so a
    failure surfaces to the caller.
    """

    def __init__(
        self,
        store: RecordStore,
        notifier: Notifier,
        *,
        edit_window: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.edit_window = edit_window
        self.clock = clock

    def _now_iso(self) -> str:
        return self.clock().isoformat()

    async def _load_rows(self, file_id: str | None = None) -> list[FileAuditEntry]:
        rows = await self.store.list(TABLE_FILE_AUDIT_LOG, {"File": file_id} if file_id else None)
        return [FileAuditEntry.model_validate(row) for row in rows]

    async def _load_entry(self, query_id: str) -> FileAuditEntry:
        record = await self.store.get(TABLE_FILE_AUDIT_LOG, query_id)
        if record is None:
            raise NotFound(message=QUERY_NOT_FOUND, details={"query_id": query_id})
        entry = FileAuditEntry.model_validate(record)
        if not is_query_entry(entry):
            raise NotFound(message=QUERY_NOT_FOUND, details={"query_id": query_id})
        return entry

    async def _load_root_entry(self, query_id: str, file_id: str | None) -> FileAuditEntry:
        entry = await self._load_entry(query_id)
        parent_id = query_content.get_parent_id(entry.details_message)
        if parent_id:
            entry = await self._load_entry(parent_id)
        if file_id and entry.file_id and entry.file_id != file_id:
            raise NotFound(message=QUERY_NOT_FOUND, details={"query_id": query_id, "file_id": file_id})
        return entry

    async def get_query(self, query_id: str) -> QueryNode:
        return node_from_entry(await self._load_entry(query_id))

    async def create_query(
        self,
        *,
        file_id: str,
        capability: Capability,
        message: str,
        target_role: Role | str,
        action_type: AuditActionType | str = AuditActionType.RAISE_QUERY,
        client_id: str | None = None,
    ) -> QueryNode:
        query_id = generate_log_id("QUERY")
        role_value = Role(target_role).value
        entry = FileAuditEntry(
            id=query_id,
            log_entry_id=query_id,
            file_id=file_id,
            timestamp=self._now_iso(),
            actor=capability.identity.email,
            action_type=action_type.value if isinstance(action_type, AuditActionType) else str(action_type),
            details_message=query_content.build_query_content(message),
            target_role=role_value,
            resolved=False,
        )
        await self.store.upsert(TABLE_FILE_AUDIT_LOG, entry.to_record())
        await notify_safely(
            self.notifier,
            role_value,
            {
                "type": "query_raised",
                "file_id": file_id,
                "client_id": client_id,
                "title": "New query raised",
                "message": message,
            },
        )
        node = node_from_entry(entry)
        return node.model_copy(update={"author_role": capability.role})

    async def reply_to_query(
        self,
        *,
        root_id: str,
        file_id: str,
        capability: Capability,
        message: str,
    ) -> QueryNode:
        try:
            root_entry = await self._load_root_entry(root_id, file_id)
        except NotFound as exc:
            raise NotFound(message=PARENT_NOT_FOUND, details={"query_id": root_id}) from exc
        reply_id = generate_log_id("QUERY-REPLY")
        author = capability.identity.email
        entry = FileAuditEntry(
            id=reply_id,
            log_entry_id=reply_id,
            file_id=root_entry.file_id or file_id,
            timestamp=self._now_iso(),
            actor=author,
            action_type=AuditActionType.REPLY_TO_QUERY.value,
            details_message=query_content.build_query_content(message, parent=root_entry.id),
            target_role=root_entry.target_role,
            resolved=False,
        )
        await self.store.upsert(TABLE_FILE_AUDIT_LOG, entry.to_record())
        payload = {
            "type": "query_reply",
            "file_id": entry.file_id,
            "title": "New reply on query",
            "message": message,
        }
        if author == root_entry.actor:
            await notify_safely(self.notifier, root_entry.target_role or Role.CREDIT_TEAM.value, payload)
        else:
            await notify_safely(self.notifier, capability.role, {**payload, "recipient_user": root_entry.actor})
        node = node_from_entry(entry)
        return node.model_copy(update={"author_role": capability.role})

    async def get_thread(self, root_id: str) -> QueryThread:
        root_entry = await self._load_root_entry(root_id, None)
        rows = await self._load_rows(root_entry.file_id)
        return self._assemble(root_entry, rows)

    async def list_threads(self, file_id: str, capability: Capability) -> list[QueryThread]:
        rows = await self._load_rows(file_id)
        threads: list[QueryThread] = []
        for entry in rows:
            if not is_query_entry(entry):
                continue
            if not query_content.is_root_query(entry.details_message):
                continue
            thread = self._assemble(entry, rows)
            if capability.can_view_thread(thread.root):
                threads.append(thread)
        threads.sort(key=lambda thread: _sort_key(thread.root), reverse=True)
        return threads

    def _assemble(self, root_entry: FileAuditEntry, rows: list[FileAuditEntry]) -> QueryThread:
        root = node_from_entry(root_entry)
        replies = [
            node
            for node in (node_from_entry(row) for row in rows if is_query_entry(row))
            if node.parent_id == root.id
        ]
        replies.sort(key=_sort_key)
        return QueryThread(root=root, replies=replies)

    async def resolve_query(
        self,
        query_id: str,
        file_id: str,
        capability: Capability,
        resolution_message: str | None = None,
    ) -> QueryNode:
        root_entry = await self._load_root_entry(query_id, file_id)
        root = node_from_entry(root_entry)
        if not capability.can_resolve(root):
            raise PermissionDenied(
                message=ONLY_AUTHOR_CAN_RESOLVE,
                details={"query_id": root.id, "role": capability.role.value},
            )
        if root.status == QueryStatus.RESOLVED:
            return root

        resolved_by = capability.identity.email
        updated = root_entry.model_copy(
            update={
                "details_message": query_content.update_query_status(
                    root_entry.details_message, QueryStatus.RESOLVED
                ),
                "resolved": True,
            }
        )
        await self.store.upsert(TABLE_FILE_AUDIT_LOG, updated.to_record())

        resolution_id = generate_log_id("QUERY-RESOLVE")
        resolution_text = resolution_message or f"Query resolved by {resolved_by}"
        resolution = FileAuditEntry(
            id=resolution_id,
            log_entry_id=resolution_id,
            file_id=root_entry.file_id or file_id,
            timestamp=self._now_iso(),
            actor=resolved_by,
            action_type=AuditActionType.RESOLVE_QUERY.value,
            details_message=f"Query {root.id} resolved: {resolution_text}",
            target_role=root_entry.target_role,
            resolved=True,
        )
        await self.store.upsert(TABLE_FILE_AUDIT_LOG, resolution.to_record())
        logger.info("Query resolved", extra={"query_id": root.id, "file_id": resolution.file_id})

        return node_from_entry(updated)

    async def reopen_query(
        self,
        query_id: str,
        file_id: str,
        capability: Capability,
        reason: str | None = None,
    ) -> QueryNode:
        root_entry = await self._load_root_entry(query_id, file_id)
        root = node_from_entry(root_entry)
        if not capability.can_reopen(root):
            raise PermissionDenied(
                message=ONLY_AUTHOR_CAN_REOPEN,
                details={"query_id": root.id, "role": capability.role.value},
            )
        if root.status != QueryStatus.RESOLVED:
            raise ValidationFailed(message="Query is not resolved", details={"query_id": root.id})

        updated = root_entry.model_copy(
            update={
                "details_message": query_content.update_query_status(
                    root_entry.details_message, QueryStatus.OPEN
                ),
                "resolved": False,
            }
        )
        await self.store.upsert(TABLE_FILE_AUDIT_LOG, updated.to_record())

        reopen_id = generate_log_id("QUERY-REOPEN")
        reopen = FileAuditEntry(
            id=reopen_id,
            log_entry_id=reopen_id,
            file_id=root_entry.file_id or file_id,
            timestamp=self._now_iso(),
            actor=capability.identity.email,
            action_type=AuditActionType.REOPEN_QUERY.value,
            details_message=f"Query {root.id} reopened" + (f": {reason}" if reason else ""),
            target_role=root_entry.target_role,
            resolved=False,
        )
        await self.store.upsert(TABLE_FILE_AUDIT_LOG, reopen.to_record())

        return node_from_entry(updated)

    async def update_query(
        self,
        query_id: str,
        capability: Capability,
        message: str,
        *,
        file_id: str | None = None,
    ) -> QueryNode:
        entry = await self._load_entry(query_id)
        if file_id and entry.file_id and entry.file_id != file_id:
            raise NotFound(message=QUERY_NOT_FOUND, details={"query_id": query_id, "file_id": file_id})
        node = node_from_entry(entry)
        if not capability.can_edit(node):
            raise PermissionDenied(message=ONLY_AUTHOR_CAN_EDIT, details={"query_id": node.id})
        if node.status == QueryStatus.RESOLVED:
            raise ValidationFailed(message="Resolved queries cannot be edited", details={"query_id": node.id})
        posted_at = _parse_timestamp(node.timestamp)
        if posted_at is None or self.clock() - posted_at > self.edit_window:
            minutes = int(self.edit_window.total_seconds() // 60)
            raise ValidationFailed(
                message=f"Queries can only be edited within {minutes} minutes of posting",
                details={"query_id": node.id},
            )
        updated = entry.model_copy(
            update={"details_message": query_content.replace_query_message(entry.details_message, message)}
        )
        await self.store.upsert(TABLE_FILE_AUDIT_LOG, updated.to_record())
        return node_from_entry(updated)
