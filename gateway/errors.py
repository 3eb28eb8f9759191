"""Gateway error taxonomy and HTTP status mapping."""

from __future__ import annotations

from enum import Enum
from http import HTTPStatus
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes returned by every endpoint."""

    TOKEN_MISSING = "TOKEN_MISSING"
    TOKEN_INVALID = "TOKEN_INVALID"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    INVALID_REQUEST = "INVALID_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    CREDENTIAL_UNAVAILABLE = "CREDENTIAL_UNAVAILABLE"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"
    SERVER_ERROR = "SERVER_ERROR"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.TOKEN_MISSING: 401,
    ErrorCode.TOKEN_EXPIRED: 401,
    ErrorCode.TOKEN_INVALID: 403,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CREDENTIAL_UNAVAILABLE: 409,
    ErrorCode.VALIDATION_FAILED: 422,
    ErrorCode.TOO_MANY_REQUESTS: 429,
    ErrorCode.SERVER_ERROR: 500,
    ErrorCode.NOT_IMPLEMENTED: 501,
    ErrorCode.PROVIDER_ERROR: 502,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
}

_CODE_BY_STATUS: dict[int, ErrorCode] = {
    400: ErrorCode.INVALID_REQUEST,
    401: ErrorCode.TOKEN_MISSING,
    403: ErrorCode.TOKEN_INVALID,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.INVALID_REQUEST,
    409: ErrorCode.CREDENTIAL_UNAVAILABLE,
    422: ErrorCode.VALIDATION_FAILED,
    429: ErrorCode.TOO_MANY_REQUESTS,
    501: ErrorCode.NOT_IMPLEMENTED,
    502: ErrorCode.PROVIDER_ERROR,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


def status_for(code: ErrorCode) -> int:
    """Return the HTTP status for an error code."""
    return _STATUS_BY_CODE[code]


def code_for_status(status_code: int) -> ErrorCode:
    """Return the closest error code for a framework-raised HTTP status."""
    return _CODE_BY_STATUS.get(status_code, ErrorCode.SERVER_ERROR)


def error_payload(
    code: ErrorCode, message: str, details: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Build the JSON error body shared by all handlers."""
    payload: dict[str, Any] = {
        "error": HTTPStatus(status_for(code)).phrase,
        "code": code.value,
        "message": message,
    }
    if details:
        payload["details"] = details
    return payload


class GatewayError(Exception):
    """Base class for errors that map onto the public error contract."""

    def __init__(
        self,
        detail: str,
        code: ErrorCode,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code
        self.details = details or {}

    @property
    def status_code(self) -> int:
        """HTTP status derived from the error code."""
        return status_for(self.code)

    def to_payload(self) -> dict[str, Any]:
        """Serialize the error to the public JSON shape."""
        return error_payload(self.code, self.detail, self.details)
