"""Device session routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Body, Depends

from gateway.core.sessions import SessionManager, get_session_manager
from gateway.db.store import GatewayStore
from gateway.dependencies import get_store, require_bearer_token
from gateway.schemas.session import (
    MessageResponse,
    SessionInitRequest,
    SessionInitResponse,
    SessionRefreshRequest,
    SessionRefreshResponse,
)

router = APIRouter(prefix="/session", tags=["session"])


@router.post("/init", response_model=SessionInitResponse)
async def init_session(
    db: Annotated[GatewayStore, Depends(get_store)],
    session_manager: Annotated[SessionManager, Depends(get_session_manager)],
    payload: Annotated[SessionInitRequest | None, Body()] = None,
) -> SessionInitResponse:
    """Create a device session and issue its first session/refresh pair."""
    issued = await session_manager.init_session(
        db, device_info=payload.device_info if payload else None
    )
    return SessionInitResponse(
        session_id=issued.device_session_id,
        session_token=issued.session_token,
        refresh_token=issued.refresh_token,
        expires_at=issued.expires_at,
        session_expires_at=issued.session_expires_at,
    )


@router.post("/refresh", response_model=SessionRefreshResponse)
async def refresh_session(
    payload: SessionRefreshRequest,
    db: Annotated[GatewayStore, Depends(get_store)],
    session_manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> SessionRefreshResponse:
    """Exchange a refresh token for a new session token."""
    rotated = await session_manager.refresh(db, payload.refresh_token)
    return SessionRefreshResponse(
        session_token=rotated.session_token,
        refresh_token=rotated.refresh_token,
        expires_at=rotated.expires_at,
        session_expires_at=rotated.session_expires_at,
    )


@router.delete("/revoke", response_model=MessageResponse)
async def revoke_session(
    session_token: Annotated[str, Depends(require_bearer_token)],
    db: Annotated[GatewayStore, Depends(get_store)],
    session_manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> MessageResponse:
    """Revoke the presented session token."""
    await session_manager.revoke(db, session_token)
    return MessageResponse(message="Session revoked successfully")
