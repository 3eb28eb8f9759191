"""Schemas for device session endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class SessionInitRequest(BaseModel):
    """Optional client description sent when a device session is created."""

    device_info: str | None = Field(default=None, max_length=512)


class SessionInitResponse(BaseModel):
    """New device session with its first session/refresh pair."""

    session_id: str
    session_token: str
    refresh_token: str
    expires_at: datetime
    session_expires_at: datetime


class SessionRefreshRequest(BaseModel):
    """Refresh token exchange payload."""

    refresh_token: str = Field(min_length=16)


class SessionRefreshResponse(BaseModel):
    """Rotated session token over the same refresh token."""

    session_token: str
    refresh_token: str
    expires_at: datetime
    session_expires_at: datetime


class MessageResponse(BaseModel):
    """Plain acknowledgement payload."""

    message: str
