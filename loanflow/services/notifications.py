from __future__ import annotations

import logging
from typing import Any, Protocol

from loanflow.schemas.identity import Role
from loanflow.services.audit import generate_log_id, utcnow_iso
from loanflow.services.record_store import TABLE_NOTIFICATIONS, RecordStore, RecordStoreError

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, role: Role | str, payload: dict[str, Any]) -> None: ...


class RecordStoreNotifier:
    """Queue in-app notifications as rows of the ``Notifications`` table.

    Delivery is fire-and-forget: a failed write is logged and dropped.
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    async def notify(self, role: Role | str, payload: dict[str, Any]) -> None:
        role_value = role.value if isinstance(role, Role) else str(role)
        notification_id = generate_log_id("NOTIF")
        record = {
            "id": notification_id,
            "Notification ID": notification_id,
            "Recipient User": payload.get("recipient_user") or "",
            "Recipient Role": role_value,
            "Related File": payload.get("file_id") or "",
            "Related Client": payload.get("client_id") or "",
            "Notification Type": payload.get("type") or "status_change",
            "Title": payload.get("title") or "",
            "Message": payload.get("message") or "",
            "Channel": payload.get("channel") or "in_app",
            "Is Read": "False",
            "Created At": utcnow_iso(),
            "Action Link": payload.get("action_link") or "",
        }
        try:
            await self.store.upsert(TABLE_NOTIFICATIONS, record)
        except RecordStoreError:
            logger.warning(
                "Notification delivery failed",
                exc_info=True,
                extra={"notification_id": notification_id, "recipient_role": role_value},
            )


async def notify_safely(notifier: Notifier, role: Role | str, payload: dict[str, Any]) -> None:
    try:
        await notifier.notify(role, payload)
    except Exception:
        logger.warning("Notifier raised; continuing", exc_info=True, extra={"recipient_role": str(role)})
