"""Lazy OAuth access-token refresh with single-flight de-duplication."""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from functools import lru_cache
from typing import Protocol

import structlog

from gateway.config import get_settings
from gateway.core.connections import ConnectionStore, get_connection_store
from gateway.core.providers import ProviderError, ProviderTokens, get_atlassian_client
from gateway.core.registry import Provider, lookup_service
from gateway.core.token_cache import TokenCache
from gateway.db.store import GatewayStore
from gateway.errors import ErrorCode, GatewayError
from gateway.models import Connection

logger = structlog.get_logger(__name__)


class TokenRefreshError(GatewayError):
    """Raised when a stored credential cannot be refreshed; the user must reconnect."""

    def __init__(
        self,
        detail: str,
        service: str,
        upstream_status: int | None = None,
    ) -> None:
        details: dict[str, object] = {"service": service, "reauthentication_required": True}
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        super().__init__(detail, ErrorCode.PROVIDER_ERROR, details)
        self.service = service


class TokenRefresher(Protocol):
    """Provider capable of exchanging a refresh token."""

    async def refresh(self, refresh_token: str) -> ProviderTokens: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TokenRefreshManager:
    """Return live access tokens, refreshing expired ones at most once per flight."""

    def __init__(
        self,
        connection_store: ConnectionStore,
        refreshers: Mapping[Provider, TokenRefresher],
        token_cache: TokenCache | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._connection_store = connection_store
        self._refreshers = dict(refreshers)
        self._token_cache = token_cache
        self._now = clock or _utcnow
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def is_live(self, connection: Connection) -> bool:
        """Return True when the stored access token has not expired."""
        return connection.expires_at is None or self._now() < connection.expires_at

    async def get_live_access_token(
        self,
        db: GatewayStore,
        connection: Connection,
        force_refresh: bool = False,
    ) -> str:
        """Return a usable access token, refreshing and persisting it when expired."""
        if not force_refresh and self.is_live(connection):
            return connection.access_token

        observed_token = connection.access_token
        key = (connection.device_session_id, connection.service_name)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock

        async with lock:
            current = await db.connections.get(*key)
            if current is None:
                raise TokenRefreshError("Connection no longer exists.", connection.service_name)
            if current.access_token != observed_token and self.is_live(current):
                return current.access_token
            if not force_refresh and self.is_live(current):
                return current.access_token
            return await self._refresh(db, current)

    async def _refresh(self, db: GatewayStore, connection: Connection) -> str:
        service = connection.service_name
        if not connection.refresh_token:
            raise TokenRefreshError("No refresh token is stored for this connection.", service)
        definition = lookup_service(service)
        refresher = self._refreshers.get(definition.provider) if definition else None
        if refresher is None:
            raise TokenRefreshError("Service does not support token refresh.", service)

        old_token = connection.access_token
        try:
            tokens = await refresher.refresh(connection.refresh_token)
        except ProviderError as exc:
            logger.warning(
                "access_token_refresh_failed",
                device_session_id=connection.device_session_id,
                service=service,
                upstream_status=exc.upstream_status,
            )
            raise TokenRefreshError(
                "Token refresh failed; reconnect the service.", service, exc.upstream_status
            ) from exc

        await self._connection_store.update_tokens(db, connection, tokens)
        if self._token_cache is not None:
            self._token_cache.invalidate_token(old_token)
        logger.info(
            "access_token_refreshed",
            device_session_id=connection.device_session_id,
            service=service,
            expires_at=connection.expires_at.isoformat() if connection.expires_at else None,
        )
        return connection.access_token


@lru_cache
def get_token_cache() -> TokenCache:
    """Create and cache the process-local credential cache."""
    settings = get_settings()
    return TokenCache(
        ttl_seconds=settings.token_cache.ttl_seconds,
        maxsize=settings.token_cache.maxsize,
    )


@lru_cache
def get_token_refresh_manager() -> TokenRefreshManager:
    """Create and cache the token refresh manager."""
    return TokenRefreshManager(
        connection_store=get_connection_store(),
        refreshers={Provider.ATLASSIAN: get_atlassian_client()},
        token_cache=get_token_cache(),
    )
