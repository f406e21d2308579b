from __future__ import annotations

from typing import Iterable, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from collabauth.api.schemas import ErrorBody, ErrorEnvelope
from collabauth.logging import get_logger
from collabauth.service.errors import ServiceError
from collabauth.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "invalid_field",
    401: "unauthenticated",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def error_response(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    fields: Optional[Iterable[str]] = None,
    details: Optional[dict | list] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    """Build the ``{"success": false, "error": {...}}`` body every failure uses."""
    body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        fields=list(fields or []),
        details=details or None,
    )
    envelope = ErrorEnvelope(error=body)
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(exclude_none=True),
        headers=headers,
    )


def _validation_fields(exc: RequestValidationError) -> list[str]:
    fields: list[str] = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query")]
        name = loc[0] if loc else "body"
        if name not in fields:
            fields.append(name)
    return fields


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            fields=exc.fields or None,
        )
        headers = None
        retry_after = exc.detail.get("retry_after") if exc.detail else None
        if retry_after:
            headers = {"Retry-After": str(retry_after)}
        return error_response(
            exc.status_code,
            exc.message,
            code=exc.error_code,
            fields=exc.fields,
            details=exc.detail,
            headers=headers,
        )

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error(
            "credential_store_unavailable",
            path=request.url.path,
            method=request.method,
            cause_type=type(exc.cause).__name__ if exc.cause else None,
            error=exc.message,
        )
        return error_response(500, "internal server error", code="server_error")

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(409, exc.message, code="conflict", details=exc.detail)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = _validation_fields(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=fields,
        )
        return error_response(
            400, "request validation failed", code="invalid_field", fields=fields
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(500, "internal server error", code="server_error")
