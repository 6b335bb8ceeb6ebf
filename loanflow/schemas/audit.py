from __future__ import annotations

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class AuditActionType(str, Enum):
    CREATE_APPLICATION = "create_application"
    SUBMIT_APPLICATION = "submit_application"
    UPDATE_APPLICATION = "update_application"
    SAVE_DRAFT = "save_draft"
    WITHDRAW_APPLICATION = "withdraw_application"
    STATUS_CHANGE = "status_change"
    FORWARD_TO_CREDIT = "forward_to_credit"
    ASSIGN_NBFC = "assign_nbfc"
    NBFC_DECISION = "nbfc_decision"
    MARK_DISBURSED = "mark_disbursed"
    MARK_REJECTED = "mark_rejected"
    CLOSE_FILE = "close_file"
    CREATE_CLIENT = "create_client"
    UPDATE_CLIENT = "update_client"
    RAISE_QUERY = "raise_query"
    REPLY_TO_QUERY = "reply_to_query"
    RESOLVE_QUERY = "resolve_query"
    REOPEN_QUERY = "reopen_query"
    EDIT_QUERY = "edit_query"
    LOGIN = "login"
    LOGOUT = "logout"


class AdminActivityEntry(BaseModel):
    """Row of the ``Admin Activity Log`` table."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    activity_id: str | None = Field(default=None, alias="Activity ID")
    timestamp: str | None = Field(default=None, alias="Timestamp")
    performed_by: str = Field(default="", alias="Performed By")
    action_type: str = Field(default="", alias="Action Type")
    description: str = Field(default="", alias="Description/Details")
    target_entity: str | None = Field(default=None, alias="Target Entity")
    related_file_id: str | None = Field(default=None, alias="Related File")
    related_client_id: str | None = Field(default=None, alias="Related Client")
    related_user_id: str | None = Field(default=None, alias="Related User")
    metadata: dict[str, Any] = Field(default_factory=dict, alias="Metadata")

    @field_validator("metadata", mode="before")
    @classmethod
    def _parse_metadata(cls, value: Any) -> Any:
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except ValueError:
                return {"raw": value}
            return parsed if isinstance(parsed, dict) else {"value": parsed}
        return value

    @field_serializer("metadata")
    def _serialize_metadata(self, value: dict[str, Any], info) -> Any:
        if info.by_alias:
            return json.dumps(value, default=str) if value else ""
        return value

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class FileAuditEntry(BaseModel):
    """Row of the ``File Auditing Log`` table.

    Query thread nodes live here too; their ``details_message`` carries the
    encoded parent/status tags.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    log_entry_id: str | None = Field(default=None, alias="Log Entry ID")
    file_id: str | None = Field(default=None, alias="File")
    timestamp: str | None = Field(default=None, alias="Timestamp")
    actor: str = Field(default="", alias="Actor")
    action_type: str = Field(default="", alias="Action/Event Type")
    details_message: str = Field(default="", alias="Details/Message")
    target_role: str | None = Field(default=None, alias="Target User/Role")
    resolved: bool = Field(default=False, alias="Resolved")

    @field_validator("resolved", mode="before")
    @classmethod
    def _parse_resolved(cls, value: Any) -> bool:
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return bool(value)

    @field_serializer("resolved")
    def _serialize_resolved(self, value: bool, info) -> Any:
        if info.by_alias:
            return "True" if value else "False"
        return value

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class StatusHistoryItem(BaseModel):
    from_status: str | None = None
    to_status: str | None = None
    changed_by: str
    timestamp: str | None = None
    reason: str | None = None


class AdminActivityListResponse(BaseModel):
    items: list[AdminActivityEntry]
    total: int


class FileAuditListResponse(BaseModel):
    items: list[FileAuditEntry]
    total: int
