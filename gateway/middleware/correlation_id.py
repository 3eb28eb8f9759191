"""Correlation ID middleware."""

from __future__ import annotations

from uuid import uuid4

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

CORRELATION_ID_HEADER = "X-Correlation-ID"
_MAX_CORRELATION_ID_LENGTH = 128


def _accept_correlation_id(raw: str) -> str | None:
    """Accept a client-supplied id only when it is short printable ASCII."""
    candidate = raw.strip()
    if not candidate or len(candidate) > _MAX_CORRELATION_ID_LENGTH:
        return None
    if not candidate.isascii() or not candidate.isprintable():
        return None
    return candidate


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Attach a request correlation ID and bind it to structlog context."""

    async def dispatch(self, request: Request, call_next) -> Response:
        """Bind correlation ID context for the current request lifecycle."""
        correlation_id = _accept_correlation_id(
            request.headers.get(CORRELATION_ID_HEADER, "")
        ) or str(uuid4())
        request.state.correlation_id = correlation_id
        with structlog.contextvars.bound_contextvars(correlation_id=correlation_id):
            response = await call_next(request)

        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response
