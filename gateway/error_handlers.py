"""Global exception handlers enforcing the API error response contract."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from gateway.errors import ErrorCode, GatewayError, code_for_status, error_payload, status_for

logger = structlog.get_logger(__name__)


def _error_response(
    code: ErrorCode,
    message: str,
    details: dict[str, Any] | None = None,
    status_code: int | None = None,
) -> JSONResponse:
    """Build standardized JSON error payload."""
    return JSONResponse(
        status_code=status_code or status_for(code),
        content=error_payload(code, message, details),
    )


def _extract_message(detail: Any) -> str:
    """Normalize framework exception detail into a message."""
    if isinstance(detail, str):
        return detail
    if isinstance(detail, dict):
        return str(detail.get("message") or detail.get("detail") or "Request failed.")
    return "Request failed."


def _correlation_id(request: Request) -> str:
    return getattr(
        request.state,
        "correlation_id",
        request.headers.get("x-correlation-id", "unknown"),
    )


def _log_client_failure(request: Request, status_code: int, code: ErrorCode, message: str) -> None:
    """Emit a WARNING for rejected session and connection requests."""
    if status_code < 400 or status_code >= 500:
        return
    logger.warning(
        "request_rejected",
        correlation_id=_correlation_id(request),
        status_code=status_code,
        code=code.value,
        detail=message,
        path=request.url.path,
        method=request.method,
    )


def register_exception_handlers(app: FastAPI, environment: str) -> None:
    """Register global exception handlers enforcing error shape contract."""

    @app.exception_handler(GatewayError)
    async def handle_gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        """Render domain errors with their mapped status."""
        _log_client_failure(request, exc.status_code, exc.code, exc.detail)
        if exc.status_code >= 500:
            logger.error(
                "gateway_error",
                correlation_id=_correlation_id(request),
                code=exc.code.value,
                detail=exc.detail,
                path=request.url.path,
            )
        return _error_response(exc.code, exc.detail, exc.details)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Normalize framework HTTP exceptions to contract payload."""
        code = code_for_status(exc.status_code)
        message = _extract_message(exc.detail)
        _log_client_failure(request, exc.status_code, code, message)
        return _error_response(code, message, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_exception(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Map request validation errors to standardized payload."""
        message = "Invalid request payload."
        details: dict[str, Any] | None = None
        errors = exc.errors()
        if errors:
            details = {
                "fields": [".".join(str(part) for part in error.get("loc", ())) for error in errors]
            }
            if environment == "development":
                message = f"Invalid request payload: {errors[0].get('msg', 'validation error')}."
        _log_client_failure(request, 422, ErrorCode.VALIDATION_FAILED, message)
        return _error_response(ErrorCode.VALIDATION_FAILED, message, details)

    @app.exception_handler(Exception)
    async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
        """Mask internal errors and enforce contract payload."""
        logger.exception(
            "unhandled_exception",
            correlation_id=_correlation_id(request),
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        details = {"error": str(exc)} if environment == "development" else None
        return _error_response(ErrorCode.SERVER_ERROR, "Internal server error.", details)
