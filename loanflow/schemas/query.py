from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from loanflow.schemas.identity import Role


class QueryStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class ParsedQueryContent(BaseModel):
    parent: str | None = None
    status: QueryStatus = QueryStatus.OPEN
    message: str = ""


class QueryNode(BaseModel):
    id: str
    file_id: str | None = None
    author_id: str = ""
    author_role: Role | None = None
    parent_id: str | None = None
    status: QueryStatus = QueryStatus.OPEN
    message: str = ""
    target_role: str | None = None
    action_type: str | None = None
    timestamp: str | None = None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class QueryThread(BaseModel):
    root: QueryNode
    replies: list[QueryNode] = Field(default_factory=list)


class QueryCreateRequest(BaseModel):
    message: str = Field(min_length=1, max_length=5000)
    target_role: Role


class QueryReplyRequest(BaseModel):
    message: str = Field(min_length=1, max_length=5000)


class QueryResolveRequest(BaseModel):
    resolution_message: str | None = Field(default=None, max_length=5000)


class QueryEditRequest(BaseModel):
    message: str = Field(min_length=1, max_length=5000)
