from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from loanflow.services.errors import LifecycleError
from loanflow.services.record_store import RecordStoreError

logger = logging.getLogger(__name__)

_HTTP_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "unprocessable_entity",
    429: "rate_limited",
    502: "bad_gateway",
}

# request sections FastAPI prefixes onto validation error locations
_LOCATION_SECTIONS = {"body", "query", "path", "header"}


def _phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Request failed"


def _as_details(value: Any) -> dict:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, list):
        return {"errors": value}
    return {"detail": str(value)}


def error_response(
    status_code: int,
    code: str,
    message: str,
    details: Any | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Render the failure half of the ``{success, code, message, data, details}`` envelope."""
    body = {
        "success": False,
        "code": code,
        "message": message,
        "data": None,
        "details": _as_details(details),
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


def _unpack_http_detail(detail: Any, status_code: int) -> tuple[str, str, dict]:
    code = _HTTP_CODES.get(status_code, "http_error")
    if isinstance(detail, str):
        return code, detail, {"detail": detail}
    if not isinstance(detail, dict):
        return code, _phrase(status_code), _as_details(detail)

    message = detail.get("message") or detail.get("detail") or detail.get("error") or _phrase(status_code)
    if "details" in detail:
        details = _as_details(detail["details"])
    else:
        details = {k: v for k, v in detail.items() if k not in {"code", "message", "detail", "error"}}
    return detail.get("code") or code, message, details or {"detail": message}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _unpack_http_detail(exc.detail, exc.status_code)
    headers = exc.headers if isinstance(getattr(exc, "headers", None), dict) else None
    return error_response(exc.status_code, code, message, details, headers=headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Validation failed"
    if errors:
        first = errors[0] or {}
        where = ".".join(str(part) for part in first.get("loc") or () if part not in _LOCATION_SECTIONS)
        reason = first.get("msg") or message
        message = f"{where}: {reason}" if where else str(reason)
    return error_response(422, "validation_error", message, {"errors": errors})


async def lifecycle_exception_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    logger.info(
        "Lifecycle request rejected",
        extra={"code": exc.code, "path": request.url.path, "status_code": exc.status_code},
    )
    return error_response(exc.status_code, exc.code, exc.message, exc.details)


async def record_store_exception_handler(request: Request, exc: RecordStoreError) -> JSONResponse:
    logger.error(
        "Record store failure",
        extra={"table": exc.table, "upstream_status": exc.status_code, "error": exc.message},
    )
    return error_response(502, "record_store_unavailable", "Record store request failed", {"table": exc.table})


async def rate_limit_exception_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    headers = exc.headers if isinstance(getattr(exc, "headers", None), dict) else None
    return error_response(429, "rate_limited", _phrase(429), getattr(exc, "detail", None), headers=headers)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "internal_server_error", "Internal server error")


def register_exception_handlers(app) -> None:
    for exc_class, handler in (
        (StarletteHTTPException, http_exception_handler),
        (RequestValidationError, validation_exception_handler),
        (LifecycleError, lifecycle_exception_handler),
        (RecordStoreError, record_store_exception_handler),
        (RateLimitExceeded, rate_limit_exception_handler),
        (Exception, unhandled_exception_handler),
    ):
        app.add_exception_handler(exc_class, handler)
