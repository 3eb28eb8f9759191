"""External service connection routes."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from gateway.core.sessions import AuthenticatedSession
from gateway.db.store import GatewayStore
from gateway.dependencies import get_store, require_session
from gateway.schemas.connections import (
    ConnectionsResponse,
    ConnectRequest,
    ConnectResponse,
    DisconnectRequest,
    DisconnectResponse,
    ServiceStatusResponse,
)
from gateway.services.connection_service import (
    ConnectCredentials,
    ConnectionService,
    get_connection_service,
)

router = APIRouter(prefix="/connections", tags=["connections"])


@router.get("", response_model=ConnectionsResponse, response_model_exclude_none=True)
async def list_connections(
    session: Annotated[AuthenticatedSession, Depends(require_session)],
    db: Annotated[GatewayStore, Depends(get_store)],
    connection_service: Annotated[ConnectionService, Depends(get_connection_service)],
    session_id: Annotated[str | None, Query()] = None,
) -> ConnectionsResponse:
    """Report per-service connection status for a device session."""
    device_session_id = session_id or session.device_session_id
    statuses = await connection_service.get_status(db, device_session_id)
    return ConnectionsResponse(
        session_id=device_session_id,
        connections={
            name: ServiceStatusResponse(**status.to_dict()) for name, status in statuses.items()
        },
    )


@router.post("/connect", response_model=ConnectResponse, response_model_exclude_none=True)
async def connect_service(
    db: Annotated[GatewayStore, Depends(get_store)],
    connection_service: Annotated[ConnectionService, Depends(get_connection_service)],
    service: Annotated[str | None, Query()] = None,
    payload: ConnectRequest | None = None,
) -> ConnectResponse:
    """Start an OAuth flow or verify static credentials for one service."""
    body = payload or ConnectRequest()
    outcome = await connection_service.begin_connect(
        db,
        service_name=service,
        device_session_id=body.session_id,
        credentials=ConnectCredentials(
            email=body.email, password=body.password, api_token=body.api_token
        ),
    )
    return ConnectResponse(
        service=outcome.service.value,
        session_id=outcome.device_session_id,
        connected=outcome.connected,
        message=outcome.message,
        authorization_url=outcome.authorization_url,
        state=outcome.state,
        session_reset=outcome.session_reset or None,
    )


@router.post("/disconnect", response_model=DisconnectResponse)
async def disconnect_service(
    db: Annotated[GatewayStore, Depends(get_store)],
    connection_service: Annotated[ConnectionService, Depends(get_connection_service)],
    service: Annotated[str | None, Query()] = None,
    payload: DisconnectRequest | None = None,
) -> DisconnectResponse:
    """Remove a service connection and its dependent mirror."""
    body = payload or DisconnectRequest()
    removed = await connection_service.disconnect(db, body.session_id, service)
    return DisconnectResponse(
        service=removed[0].value,
        session_id=body.session_id or "",
        disconnected=[name.value for name in removed],
    )
