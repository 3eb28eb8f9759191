"""OAuth callback and flow status routes."""

from __future__ import annotations

from functools import lru_cache
from html import escape
from importlib.resources import files
from string import Template
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse

from gateway.core.connections import metadata_for
from gateway.core.oauth_state import OAuthStateBroker, OAuthStateError, get_oauth_state_broker
from gateway.core.registry import SERVICE_REGISTRY
from gateway.db.store import GatewayStore
from gateway.dependencies import get_store
from gateway.errors import ErrorCode
from gateway.schemas.connections import OAuthStatusResponse
from gateway.services.connection_service import (
    ConnectionService,
    ConnectionServiceError,
    get_connection_service,
)

router = APIRouter(prefix="/oauth", tags=["oauth"])


@lru_cache
def _success_template() -> Template:
    """Load the callback success page once."""
    source = files("gateway").joinpath("templates/auth_success.html").read_text(encoding="utf-8")
    return Template(source)


@router.get("/callback", response_class=HTMLResponse)
async def oauth_callback(
    db: Annotated[GatewayStore, Depends(get_store)],
    connection_service: Annotated[ConnectionService, Depends(get_connection_service)],
    code: Annotated[str | None, Query()] = None,
    state: Annotated[str | None, Query()] = None,
    service: Annotated[str | None, Query()] = None,
    error: Annotated[str | None, Query()] = None,
    error_description: Annotated[str | None, Query()] = None,
) -> HTMLResponse:
    """Complete a provider authorization round-trip and render the success page."""
    if error:
        await connection_service.abort_oauth_callback(db, state, error, error_description)
    if not code or not state:
        raise ConnectionServiceError(
            "Missing code or state parameter.", ErrorCode.INVALID_REQUEST
        )

    result = await connection_service.complete_oauth_callback(
        db, code=code, state=state, service_hint=service
    )
    user = metadata_for(result.connection).user_summary() or {}
    account = user.get("email") or user.get("name") or result.account_id
    page = _success_template().substitute(
        display_name=escape(SERVICE_REGISTRY[result.service].display_name),
        account=escape(str(account)),
    )
    return HTMLResponse(content=page)


@router.get("/status/{state}", response_model=OAuthStatusResponse)
async def oauth_status(
    state: str,
    db: Annotated[GatewayStore, Depends(get_store)],
    broker: Annotated[OAuthStateBroker, Depends(get_oauth_state_broker)],
) -> OAuthStatusResponse:
    """Report whether a browser authorization flow has completed."""
    status = await broker.status(db, state)
    if status is None:
        raise OAuthStateError("Invalid or expired state parameter.", ErrorCode.TOKEN_INVALID)
    return OAuthStatusResponse(status=status)
