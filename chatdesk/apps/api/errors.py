from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatdesk.apps.api.response import error_response, get_request_id
from chatdesk.core.errors import ChatDeskError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "INVALID_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "ACCESS_DENIED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    429: "QUOTA_EXCEEDED",
    500: "CHAT_PROCESSING_ERROR",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def chatdesk_exception_handler(request: Request, exc: ChatDeskError) -> JSONResponse:
    # Domain errors already carry their status, code and user-facing message.
    details: Any | None = exc.details
    # A single "details" entry is flattened to a string for widget display.
    if isinstance(details, dict) and set(details) == {"details"}:
        details = details["details"]
    payload = error_response(request=request, code=exc.code, message=exc.message, details=details)
    return JSONResponse(
        content=payload,
        status_code=exc.status_code,
        headers={"X-Request-ID": get_request_id(request)},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed payloads are client errors; surface field-level details for debugging.
    payload = error_response(
        request=request,
        code="INVALID_REQUEST",
        message="Invalid request payload",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.error("unhandled_exception request_id=%s", get_request_id(request), exc_info=exc)
    payload = error_response(
        request=request,
        code="CHAT_PROCESSING_ERROR",
        message="Failed to process chat request",
    )
    return JSONResponse(content=payload, status_code=500)

