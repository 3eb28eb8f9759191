"""Turn stored connections into the secret material downstream clients need."""

from __future__ import annotations

import base64
import binascii
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from functools import lru_cache

import httpx
import structlog

from gateway.config import get_settings
from gateway.core.connections import metadata_for
from gateway.core.metadata import AtlassianMetadata, MetadataError
from gateway.core.providers import build_timeout
from gateway.core.registry import ServiceName
from gateway.core.token_cache import CredentialBundle, ProviderClientCache, TokenCache
from gateway.core.token_refresh import (
    TokenRefreshManager,
    get_token_cache,
    get_token_refresh_manager,
)
from gateway.db.store import GatewayStore
from gateway.errors import ErrorCode, GatewayError
from gateway.models import Connection

logger = structlog.get_logger(__name__)


class CredentialUnavailableError(GatewayError):
    """Raised when no usable credential exists; the user must (re)connect."""

    def __init__(self, detail: str, service: str) -> None:
        super().__init__(detail, ErrorCode.CREDENTIAL_UNAVAILABLE, {"service": service})
        self.service = service


def encode_basic_credential(identity: str, secret: str) -> str:
    """Compose the stored `base64(identity:secret)` blob."""
    return base64.b64encode(f"{identity}:{secret}".encode()).decode("ascii")


def decode_basic_credential(blob: str, service: str) -> tuple[str, str]:
    """Split a stored `base64(identity:secret)` blob into its two halves."""
    try:
        decoded = base64.b64decode(blob, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise CredentialUnavailableError("Stored credential is not valid base64.", service) from exc
    identity, separator, secret = decoded.partition(":")
    if not separator or not identity or not secret:
        raise CredentialUnavailableError("Stored credential is malformed.", service)
    return identity, secret


class CredentialResolver:
    """Resolve per-provider secret bundles and authenticated provider clients."""

    def __init__(
        self,
        refresh_manager: TokenRefreshManager,
        token_cache: TokenCache,
        client_cache: ProviderClientCache[httpx.AsyncClient],
        atlassian_api_base_url: str,
        bitbucket_api_base_url: str,
        kyg_base_url: str,
        timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._refresh_manager = refresh_manager
        self._token_cache = token_cache
        self._client_cache = client_cache
        self._atlassian_api_base_url = atlassian_api_base_url.rstrip("/")
        self._bitbucket_api_base_url = bitbucket_api_base_url.rstrip("/")
        self._kyg_base_url = kyg_base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._now = clock or (lambda: datetime.now(UTC))
        self._transforms: dict[
            ServiceName, Callable[[GatewayStore, Connection, bool], Awaitable[dict[str, str]]]
        ] = {
            ServiceName.JIRA: self._atlassian_secrets,
            ServiceName.CONFLUENCE: self._atlassian_secrets,
            ServiceName.BITBUCKET: self._bitbucket_secrets,
            ServiceName.KYG: self._kyg_secrets,
        }

    @property
    def client_cache(self) -> ProviderClientCache[httpx.AsyncClient]:
        return self._client_cache

    async def resolve(
        self,
        db: GatewayStore,
        device_session_id: str,
        service: ServiceName,
        cache_key: str | None = None,
        force_refresh: bool = False,
    ) -> CredentialBundle:
        """Return named secrets for a service, refreshing OAuth tokens as needed."""
        if cache_key and not force_refresh:
            cached = self._token_cache.get(cache_key, service.value)
            if cached is not None:
                return cached

        connection = await db.connections.get(device_session_id, service.value)
        if connection is None:
            raise CredentialUnavailableError(
                f"No {service.value} connection for this session.", service.value
            )
        secrets = await self._transforms[service](db, connection, force_refresh)
        bundle = CredentialBundle(service=service.value, secrets=secrets)
        if cache_key:
            self._token_cache.put(cache_key, bundle)
        return bundle

    async def client_for(
        self, db: GatewayStore, device_session_id: str, service: ServiceName
    ) -> httpx.AsyncClient:
        """Return a cached HTTP client authenticated as the session's connection."""
        connection = await db.connections.get(device_session_id, service.value)
        if connection is None:
            raise CredentialUnavailableError(
                f"No {service.value} connection for this session.", service.value
            )
        secrets = await self._transforms[service](db, connection, False)
        bundle = CredentialBundle(service=service.value, secrets=secrets)
        lifetime: float | None = None
        if connection.expires_at is not None:
            lifetime = max((connection.expires_at - self._now()).total_seconds(), 0.0)

        async def _factory() -> httpx.AsyncClient:
            return self._build_client(service, connection, bundle)

        return await self._client_cache.get_or_create(
            (device_session_id, service.value), _factory, ttl_seconds=lifetime
        )

    async def _atlassian_secrets(
        self, db: GatewayStore, connection: Connection, force_refresh: bool
    ) -> dict[str, str]:
        access_token = await self._refresh_manager.get_live_access_token(
            db, connection, force_refresh=force_refresh
        )
        secrets = {"ATLASSIAN_ACCESS_TOKEN": access_token}
        metadata = self._atlassian_metadata(connection)
        if metadata is not None:
            if metadata.cloud_id:
                secrets["ATLASSIAN_CLOUD_ID"] = metadata.cloud_id
            if metadata.url:
                secrets["ATLASSIAN_SITE_URL"] = metadata.url
        return secrets

    async def _bitbucket_secrets(
        self, db: GatewayStore, connection: Connection, force_refresh: bool
    ) -> dict[str, str]:
        del db, force_refresh
        email, token = decode_basic_credential(connection.access_token, connection.service_name)
        return {"BITBUCKET_EMAIL": email, "BITBUCKET_TOKEN": token}

    async def _kyg_secrets(
        self, db: GatewayStore, connection: Connection, force_refresh: bool
    ) -> dict[str, str]:
        del db, force_refresh
        if not connection.access_token:
            raise CredentialUnavailableError("Stored KYG token is empty.", connection.service_name)
        return {"KYG_TOKEN": connection.access_token, "KYG_BASE_URL": self._kyg_base_url}

    def _atlassian_metadata(self, connection: Connection) -> AtlassianMetadata | None:
        try:
            metadata = metadata_for(connection)
        except MetadataError:
            logger.warning(
                "connection_metadata_unreadable",
                device_session_id=connection.device_session_id,
                service=connection.service_name,
            )
            return None
        return metadata if isinstance(metadata, AtlassianMetadata) else None

    def _build_client(
        self, service: ServiceName, connection: Connection, bundle: CredentialBundle
    ) -> httpx.AsyncClient:
        timeout = build_timeout(self._timeout_seconds)
        secrets = bundle.secrets
        if service is ServiceName.BITBUCKET:
            return httpx.AsyncClient(
                base_url=self._bitbucket_api_base_url,
                auth=(secrets["BITBUCKET_EMAIL"], secrets["BITBUCKET_TOKEN"]),
                timeout=timeout,
            )
        if service is ServiceName.KYG:
            return httpx.AsyncClient(
                base_url=self._kyg_base_url,
                headers={"Authorization": f"Bearer {secrets['KYG_TOKEN']}"},
                timeout=timeout,
            )
        cloud_id = secrets.get("ATLASSIAN_CLOUD_ID")
        if not cloud_id:
            raise CredentialUnavailableError(
                "Atlassian connection has no accessible site.", connection.service_name
            )
        return httpx.AsyncClient(
            base_url=f"{self._atlassian_api_base_url}/ex/{service.value}/{cloud_id}",
            headers={"Authorization": f"Bearer {secrets['ATLASSIAN_ACCESS_TOKEN']}"},
            timeout=timeout,
        )


@lru_cache
def get_provider_client_cache() -> ProviderClientCache[httpx.AsyncClient]:
    """Create and cache the provider client cache."""
    settings = get_settings()
    return ProviderClientCache(ttl_seconds=settings.token_cache.client_ttl_seconds)


@lru_cache
def get_credential_resolver() -> CredentialResolver:
    """Create and cache the credential resolver."""
    settings = get_settings()
    return CredentialResolver(
        refresh_manager=get_token_refresh_manager(),
        token_cache=get_token_cache(),
        client_cache=get_provider_client_cache(),
        atlassian_api_base_url=settings.atlassian.api_base_url,
        bitbucket_api_base_url=settings.bitbucket.api_base_url,
        kyg_base_url=str(settings.kyg.base_url),
        timeout_seconds=settings.providers.timeout_seconds,
    )
