"""Unified API error response helpers."""
from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request

from app.core.exceptions import ConflictError, EngineError, NotFoundError, ValidationError

ENGINE_ERROR_STATUS: dict[type[EngineError], int] = {
    NotFoundError: 404,
    ValidationError: 400,
    ConflictError: 409,
}


def build_error_payload(
    *,
    code: str,
    message: str,
    detail: Any = None,
    context: dict[str, Any] | None = None,
    request: Request | None = None,
) -> dict[str, Any]:
    payload_context = context.copy() if context else {}
    if request is not None:
        payload_context.setdefault("request_id", getattr(request.state, "request_id", None))
        payload_context.setdefault("correlation_id", getattr(request.state, "correlation_id", None))
        payload_context.setdefault("path", request.url.path)
        payload_context.setdefault("method", request.method)

    return {
        "code": code,
        "message": message,
        "detail": detail,
        "context": payload_context,
    }


def raise_api_error(
    *,
    status_code: int,
    code: str,
    message: str,
    detail: Any = None,
    context: dict[str, Any] | None = None,
) -> None:
    raise HTTPException(
        status_code=status_code,
        detail={
            "code": code,
            "message": message,
            "detail": detail,
            "context": context or {},
        },
    )


def raise_engine_error(error: EngineError, context: dict[str, Any] | None = None) -> None:
    """Translate a service error into the unified HTTP error."""
    status_code = next(
        (status for kind, status in ENGINE_ERROR_STATUS.items() if isinstance(error, kind)),
        500,
    )
    raise_api_error(
        status_code=status_code,
        code=error.code,
        message=error.message,
        context=context,
    )
