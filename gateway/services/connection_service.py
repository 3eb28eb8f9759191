"""Connect, callback, and disconnect orchestration for external services."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, NoReturn

import httpx
import structlog
from pydantic import ValidationError

from gateway.core.connections import (
    ConnectionStore,
    ServiceStatus,
    get_connection_store,
    metadata_for,
)
from gateway.core.credentials import (
    CredentialUnavailableError,
    decode_basic_credential,
    encode_basic_credential,
    get_provider_client_cache,
)
from gateway.core.metadata import (
    AtlassianMetadata,
    AtlassianResource,
    AtlassianUser,
    BitbucketMetadata,
    KygMetadata,
)
from gateway.core.oauth_state import OAuthStateBroker, OAuthStateError, get_oauth_state_broker
from gateway.core.providers import (
    AtlassianOAuthClient,
    BitbucketClient,
    KygClient,
    ProviderError,
    get_atlassian_client,
    get_bitbucket_client,
    get_kyg_client,
)
from gateway.core.registry import (
    CredentialKind,
    ServiceDefinition,
    ServiceName,
    lookup_service,
    mirror_of,
)
from gateway.core.sessions import SessionManager, get_session_manager
from gateway.core.token_cache import ProviderClientCache, TokenCache
from gateway.core.token_refresh import get_token_cache
from gateway.db.store import GatewayStore
from gateway.errors import ErrorCode, GatewayError
from gateway.models import Connection

logger = structlog.get_logger(__name__)


class ConnectionServiceError(GatewayError):
    """Raised when a connect or disconnect request cannot be honored."""


@dataclass(frozen=True)
class ConnectCredentials:
    """Credentials a client may submit with a connect request."""

    email: str | None = None
    password: str | None = None
    api_token: str | None = None

    @property
    def supplied(self) -> bool:
        return bool(self.email or self.password or self.api_token)


@dataclass(frozen=True)
class ConnectOutcome:
    """Result of starting or completing a connect request."""

    service: ServiceName
    device_session_id: str
    connected: bool
    message: str
    session_reset: bool = False
    authorization_url: str | None = None
    state: str | None = None


@dataclass(frozen=True)
class CallbackResult:
    """Result of a completed provider callback."""

    service: ServiceName
    device_session_id: str
    account_id: str
    connection: Connection


def merge_resources(raw_resources: list[dict[str, Any]]) -> list[AtlassianResource]:
    """Collapse duplicate resource ids, taking the union of their scopes."""
    merged: dict[str, AtlassianResource] = {}
    for raw in raw_resources:
        resource = AtlassianResource.model_validate(raw)
        existing = merged.get(resource.id)
        if existing is None:
            merged[resource.id] = resource
            continue
        scopes = list(dict.fromkeys([*existing.scopes, *resource.scopes]))
        merged[resource.id] = existing.model_copy(update={"scopes": scopes})
    return list(merged.values())


def _primary_site_url(resources: list[AtlassianResource]) -> str | None:
    for resource in resources:
        if "atlassian.net" in resource.url:
            return resource.url
    return resources[0].url if resources else None


def _bitbucket_avatar(user: dict[str, Any]) -> str | None:
    links = user.get("links")
    if not isinstance(links, dict):
        return None
    avatar = links.get("avatar")
    if isinstance(avatar, dict) and avatar.get("href"):
        return str(avatar["href"])
    return None


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _cached_secret(connection: Connection) -> str:
    """Return the secret a cached bundle for this connection would carry."""
    definition = lookup_service(connection.service_name)
    if definition is None or definition.credential_kind is not CredentialKind.API_TOKEN:
        return connection.access_token
    try:
        return decode_basic_credential(connection.access_token, connection.service_name)[1]
    except CredentialUnavailableError:
        return connection.access_token


class ConnectionService:
    """Coordinate provider credential acquisition with the connection store."""

    def __init__(
        self,
        session_manager: SessionManager,
        state_broker: OAuthStateBroker,
        connection_store: ConnectionStore,
        atlassian_client: AtlassianOAuthClient,
        bitbucket_client: BitbucketClient,
        kyg_client: KygClient,
        client_cache: ProviderClientCache[httpx.AsyncClient] | None = None,
        token_cache: TokenCache | None = None,
    ) -> None:
        self._session_manager = session_manager
        self._state_broker = state_broker
        self._connection_store = connection_store
        self._atlassian = atlassian_client
        self._bitbucket = bitbucket_client
        self._kyg = kyg_client
        self._client_cache = client_cache
        self._token_cache = token_cache

    async def begin_connect(
        self,
        db: GatewayStore,
        service_name: str | None,
        device_session_id: str | None,
        credentials: ConnectCredentials,
    ) -> ConnectOutcome:
        """Start or perform a connect for one service on a device session."""
        definition = self._require_service(service_name)
        service = definition.name

        session_reset = False
        device_session = await self._session_manager.get_device_session(db, device_session_id)
        if device_session is None:
            try:
                device_session = await self._session_manager.create_device_session(db)
            except Exception:
                await db.rollback()
                raise
            await db.commit()
            session_reset = True
        session_id = device_session.id

        existing = await self._connection_store.get(db, session_id, service)
        reverify = definition.credential_kind is not CredentialKind.OAUTH and credentials.supplied
        if existing is not None and not reverify:
            return ConnectOutcome(
                service=service,
                device_session_id=session_id,
                connected=True,
                message=f"{definition.display_name} is already connected.",
                session_reset=session_reset,
            )

        if definition.credential_kind is CredentialKind.OAUTH:
            state = await self._state_broker.create_state(
                db, device_session_id=session_id, service_name=service.value
            )
            return ConnectOutcome(
                service=service,
                device_session_id=session_id,
                connected=False,
                message=f"Open the authorization URL to connect {definition.display_name}.",
                session_reset=session_reset,
                authorization_url=self._atlassian.build_authorization_url(state, service.value),
                state=state,
            )

        if definition.credential_kind is CredentialKind.API_TOKEN:
            api_token = credentials.api_token or credentials.password
            if not credentials.email or not api_token:
                raise ConnectionServiceError(
                    "Email and API token are required.", ErrorCode.INVALID_REQUEST
                )
            await self.connect_bitbucket(db, session_id, credentials.email, api_token)
        else:
            if not credentials.email or not credentials.password:
                raise ConnectionServiceError(
                    "Email and password are required.", ErrorCode.INVALID_REQUEST
                )
            await self.connect_kyg(db, session_id, credentials.email, credentials.password)

        return ConnectOutcome(
            service=service,
            device_session_id=session_id,
            connected=True,
            message=f"Connected to {definition.display_name}.",
            session_reset=session_reset,
        )

    async def connect_atlassian(
        self, db: GatewayStore, device_session_id: str, service: ServiceName, code: str
    ) -> Connection:
        """Exchange an authorization code and store the Atlassian grant."""
        sibling = mirror_of(service)
        services = [service] if sibling is None else [service, sibling]
        stale = await self._stale_secrets(db, device_session_id, services)
        try:
            tokens = await self._atlassian.exchange_code(code, service.value)
            if not tokens.refresh_token:
                raise ProviderError(
                    "Atlassian did not return a refresh token; offline access is required.",
                    "atlassian",
                )
            identity = await self._atlassian.fetch_identity(tokens.access_token)
            raw_resources = await self._atlassian.fetch_accessible_resources(tokens.access_token)
            try:
                user = AtlassianUser.model_validate(identity)
                resources = merge_resources(raw_resources)
            except ValidationError as exc:
                raise ProviderError(
                    "Atlassian returned an unexpected identity payload.", "atlassian"
                ) from exc
        except GatewayError:
            removed: list[ServiceName] = []
            for name in services:
                if await self._connection_store.delete(db, device_session_id, name):
                    removed.append(name)
            if removed:
                await self._forget_credentials(device_session_id, removed, stale)
                logger.info(
                    "stale_connection_removed",
                    device_session_id=device_session_id,
                    services=[name.value for name in removed],
                )
            raise

        metadata = AtlassianMetadata(
            account_id=user.account_id,
            url=_primary_site_url(resources),
            resources=resources,
            user_data=user,
        )
        connection = await self._connection_store.store(
            db,
            device_session_id=device_session_id,
            service_name=service,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
            metadata=metadata,
        )
        await self._forget_credentials(device_session_id, services, stale)
        return connection

    async def connect_bitbucket(
        self, db: GatewayStore, device_session_id: str, email: str, api_token: str
    ) -> Connection:
        """Verify an email/API token pair and store it; a failed check drops the old one."""
        services = [ServiceName.BITBUCKET]
        stale = await self._stale_secrets(db, device_session_id, services)
        try:
            user = await self._bitbucket.verify_credentials(email, api_token)
        except ProviderError:
            removed = await self._connection_store.delete(
                db, device_session_id, ServiceName.BITBUCKET
            )
            if removed:
                await self._forget_credentials(device_session_id, services, stale)
                logger.info(
                    "stale_connection_removed",
                    device_session_id=device_session_id,
                    service=ServiceName.BITBUCKET.value,
                )
            raise

        uuid = str(user["uuid"]).strip("{}")
        metadata = BitbucketMetadata(
            account_id=f"bitbucket_{uuid}",
            uuid=uuid,
            username=_optional_str(user.get("username") or user.get("nickname")),
            display_name=_optional_str(user.get("display_name")),
            avatar_url=_bitbucket_avatar(user),
            email=email,
        )
        connection = await self._connection_store.store(
            db,
            device_session_id=device_session_id,
            service_name=ServiceName.BITBUCKET,
            access_token=encode_basic_credential(email, api_token),
            metadata=metadata,
        )
        await self._forget_credentials(device_session_id, services, stale)
        return connection

    async def connect_kyg(
        self, db: GatewayStore, device_session_id: str, email: str, password: str
    ) -> Connection:
        """Log in to KYG and store its session token; a failed login changes nothing."""
        services = [ServiceName.KYG]
        stale = await self._stale_secrets(db, device_session_id, services)
        result = await self._kyg.login(email, password)
        user = result.user
        roles = user.get("roles")
        metadata = KygMetadata(
            account_id=f"kyg_{user['userid']}",
            user_id=str(user["userid"]),
            email=_optional_str(user.get("email")),
            first_name=_optional_str(user.get("firstName")),
            last_name=_optional_str(user.get("lastName")),
            company_id=_optional_str(user.get("CompanyID")),
            company_name=_optional_str(user.get("CompanyName")),
            roles=[str(role) for role in roles] if isinstance(roles, list) else [],
        )
        connection = await self._connection_store.store(
            db,
            device_session_id=device_session_id,
            service_name=ServiceName.KYG,
            access_token=result.token,
            metadata=metadata,
        )
        await self._forget_credentials(device_session_id, services, stale)
        return connection

    async def complete_oauth_callback(
        self,
        db: GatewayStore,
        code: str,
        state: str,
        service_hint: str | None = None,
    ) -> CallbackResult:
        """Validate a callback state, exchange the code, and consume the state."""
        resolved = await self._state_broker.resolve(db, state)
        if resolved is None:
            raise OAuthStateError("Invalid or expired state parameter.", ErrorCode.TOKEN_INVALID)
        if not resolved.device_session_id or not resolved.service_name:
            await self._state_broker.remove(db, state)
            raise OAuthStateError(
                "State is not bound to a session and service.", ErrorCode.INVALID_REQUEST
            )
        if service_hint and service_hint != resolved.service_name:
            await self._state_broker.remove(db, state)
            raise ConnectionServiceError(
                "Service mismatch between callback and authorization request.",
                ErrorCode.INVALID_REQUEST,
                {"expected": resolved.service_name, "received": service_hint},
            )
        definition = lookup_service(resolved.service_name)
        if definition is None or not definition.requires_oauth:
            await self._state_broker.remove(db, state)
            raise ConnectionServiceError(
                "Service does not use OAuth authorization.", ErrorCode.INVALID_REQUEST
            )

        try:
            connection = await self.connect_atlassian(
                db, resolved.device_session_id, definition.name, code
            )
        except GatewayError:
            await self._state_broker.remove(db, state)
            raise

        account_id = metadata_for(connection).account_id
        await self._state_broker.complete(db, state, account_id)
        logger.info(
            "oauth_callback_completed",
            device_session_id=resolved.device_session_id,
            service=definition.name.value,
        )
        return CallbackResult(
            service=definition.name,
            device_session_id=resolved.device_session_id,
            account_id=account_id,
            connection=connection,
        )

    async def abort_oauth_callback(
        self, db: GatewayStore, state: str | None, error: str, description: str | None = None
    ) -> NoReturn:
        """Discard the state of a flow the provider reported as failed."""
        if state:
            await self._state_broker.remove(db, state)
        detail = f"Authorization failed: {description or error}."
        raise ProviderError(detail, "atlassian")

    async def disconnect(
        self, db: GatewayStore, device_session_id: str | None, service_name: str | None
    ) -> list[ServiceName]:
        """Remove a connection and its dependent mirror."""
        definition = self._require_service(service_name)
        device_session = await self._session_manager.get_device_session(db, device_session_id)
        if device_session is None:
            raise ConnectionServiceError(
                "Invalid session_id.", ErrorCode.NOT_FOUND, {"session_reset_required": True}
            )
        stale = await self._stale_secrets(db, device_session.id, [definition.name])
        removed = await self._connection_store.disconnect(db, device_session.id, definition.name)
        if not removed:
            raise ConnectionServiceError(
                f"No {definition.display_name} connection found.", ErrorCode.NOT_FOUND
            )
        await self._forget_credentials(device_session.id, removed, stale)
        return removed

    async def get_status(
        self, db: GatewayStore, device_session_id: str
    ) -> dict[str, ServiceStatus]:
        """Return per-service connection status for a known device session."""
        device_session = await self._session_manager.get_device_session(db, device_session_id)
        if device_session is None:
            raise ConnectionServiceError(
                "Invalid session_id.", ErrorCode.TOKEN_INVALID, {"session_reset_required": True}
            )
        return await self._connection_store.get_status(db, device_session.id)

    def _require_service(self, service_name: str | None) -> ServiceDefinition:
        definition = lookup_service(service_name)
        if definition is None:
            raise ConnectionServiceError(
                f"Unknown service: {service_name or '<missing>'}.",
                ErrorCode.INVALID_REQUEST,
                {"supported_services": [service.value for service in ServiceName]},
            )
        return definition

    async def _stale_secrets(
        self, db: GatewayStore, device_session_id: str, services: list[ServiceName]
    ) -> list[str]:
        stale: list[str] = []
        for service in services:
            row = await self._connection_store.get(db, device_session_id, service)
            if row is not None:
                stale.append(_cached_secret(row))
        return stale

    async def _forget_credentials(
        self, device_session_id: str, services: list[ServiceName], stale: list[str]
    ) -> None:
        """Drop cached bundles and provider clients built from superseded credentials."""
        if self._token_cache is not None:
            for secret in stale:
                self._token_cache.invalidate_token(secret)
        await self._evict_clients(device_session_id, services)

    async def _evict_clients(self, device_session_id: str, services: list[ServiceName]) -> None:
        if self._client_cache is None:
            return
        await self._client_cache.evict_session(
            device_session_id, [service.value for service in services]
        )


@lru_cache
def get_connection_service() -> ConnectionService:
    """Build and cache connection service dependencies."""
    return ConnectionService(
        session_manager=get_session_manager(),
        state_broker=get_oauth_state_broker(),
        connection_store=get_connection_store(),
        atlassian_client=get_atlassian_client(),
        bitbucket_client=get_bitbucket_client(),
        kyg_client=get_kyg_client(),
        client_cache=get_provider_client_cache(),
        token_cache=get_token_cache(),
    )
