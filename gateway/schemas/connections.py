"""Schemas for connection and OAuth callback endpoints."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class ConnectRequest(BaseModel):
    """Connect payload; credential fields apply to static-credential services."""

    session_id: str | None = None
    email: str | None = Field(default=None, max_length=320)
    password: str | None = Field(default=None, max_length=1024)
    api_token: str | None = Field(default=None, max_length=1024)


class ConnectResponse(BaseModel):
    """Connect result, carrying an authorization URL for OAuth services."""

    service: str
    session_id: str
    connected: bool
    message: str
    authorization_url: str | None = None
    state: str | None = None
    session_reset: bool | None = None


class DisconnectRequest(BaseModel):
    """Disconnect payload."""

    session_id: str | None = None


class DisconnectResponse(BaseModel):
    """Disconnect result listing every removed service."""

    service: str
    session_id: str
    connected: Literal[False] = False
    disconnected: list[str]


class ServiceStatusResponse(BaseModel):
    """Connection summary for one service."""

    connected: bool
    user: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None


class ConnectionsResponse(BaseModel):
    """Connection summaries for every known service."""

    session_id: str
    connections: dict[str, ServiceStatusResponse]


class OAuthStatusResponse(BaseModel):
    """Progress of a browser authorization flow."""

    status: Literal["pending", "complete"]
