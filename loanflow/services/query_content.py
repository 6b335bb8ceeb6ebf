"""Encode thread metadata inside a query's message body.

Stored form: ``[[parent:<id>]][[status:<open|resolved>]] <text>``. The parent
tag is absent on root queries; a missing status tag reads as ``open``.
"""

from __future__ import annotations

import re

from loanflow.schemas.query import ParsedQueryContent, QueryStatus

PARENT_TAG_RE = re.compile(r"\[\[parent:([^\]]+)\]\]")
STATUS_TAG_RE = re.compile(r"\[\[status:(open|resolved)\]\]")


def parse_query_content(raw: str | None) -> ParsedQueryContent:
    content = raw or ""
    parent_match = PARENT_TAG_RE.search(content)
    status_match = STATUS_TAG_RE.search(content)
    message = STATUS_TAG_RE.sub("", PARENT_TAG_RE.sub("", content)).strip()
    return ParsedQueryContent(
        parent=parent_match.group(1) if parent_match else None,
        status=QueryStatus(status_match.group(1)) if status_match else QueryStatus.OPEN,
        message=message,
    )


def build_query_content(
    message: str,
    *,
    parent: str | None = None,
    status: QueryStatus | str | None = None,
) -> str:
    tags = ""
    if parent:
        tags += f"[[parent:{parent}]]"
    tags += f"[[status:{QueryStatus(status or QueryStatus.OPEN).value}]]"
    return f"{tags} {message}"


def update_query_status(content: str, new_status: QueryStatus | str) -> str:
    status = QueryStatus(new_status).value
    tag = f"[[status:{status}]]"
    if STATUS_TAG_RE.search(content):
        return STATUS_TAG_RE.sub(tag, content, count=1)
    parent_match = PARENT_TAG_RE.match(content)
    if parent_match:
        # parent tag stays first
        end = parent_match.end()
        return f"{content[:end]}{tag}{content[end:]}"
    return f"{tag} {content}"


def replace_query_message(content: str, new_message: str) -> str:
    parsed = parse_query_content(content)
    return build_query_content(new_message, parent=parsed.parent, status=parsed.status)


def is_root_query(content: str | None) -> bool:
    return PARENT_TAG_RE.search(content or "") is None


def get_parent_id(content: str | None) -> str | None:
    match = PARENT_TAG_RE.search(content or "")
    return match.group(1) if match else None
