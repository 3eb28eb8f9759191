"""Shared FastAPI dependency helpers."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import Depends, Request

from gateway.core.sessions import (
    AuthenticatedSession,
    SessionManager,
    SessionStateError,
    get_session_manager,
)
from gateway.db.store import GatewayStore, open_store
from gateway.errors import ErrorCode


async def get_store() -> AsyncIterator[GatewayStore]:
    """Open a request-scoped store over its own database session."""
    async with open_store() as store:
        yield store


def _extract_bearer_token(request: Request) -> str | None:
    """Extract bearer token from Authorization header."""
    authorization = request.headers.get("authorization", "").strip()
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    cleaned = token.strip()
    return cleaned or None


def require_bearer_token(request: Request) -> str:
    """Return the raw bearer token or reject the request as unauthenticated."""
    token = _extract_bearer_token(request)
    if token is None:
        raise SessionStateError("Missing or malformed bearer token.", ErrorCode.TOKEN_MISSING)
    return token


async def require_session(
    request: Request,
    session_token: Annotated[str, Depends(require_bearer_token)],
    db: Annotated[GatewayStore, Depends(get_store)],
    session_manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> AuthenticatedSession:
    """Authenticate the bearer token against its unrevoked CLI session."""
    session = await session_manager.authenticate(db, session_token)
    request.state.device_session_id = session.device_session_id
    return session
