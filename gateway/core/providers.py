"""Outbound protocol clients for Atlassian, Bitbucket, and KYG."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any

import httpx
import structlog
from authlib.integrations.httpx_client import AsyncOAuth2Client

from gateway.config import get_settings
from gateway.errors import ErrorCode, GatewayError

logger = structlog.get_logger(__name__)

ATLASSIAN_AUDIENCE = "api.atlassian.com"
ATLASSIAN_SCOPES = (
    "read:me",
    "read:jira-work",
    "read:jira-user",
    "write:jira-work",
    "read:confluence-content.all",
    "write:confluence-content",
    "read:confluence-space.summary",
    "read:confluence-props",
    "read:confluence-content.summary",
    "read:confluence-user",
    "search:confluence",
    "offline_access",
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def build_timeout(seconds: float) -> httpx.Timeout:
    """Build an httpx timeout with a short connect deadline."""
    return httpx.Timeout(seconds, connect=min(seconds, 5.0))


class ProviderError(GatewayError):
    """Raised when a provider call fails; never carries secret material."""

    def __init__(
        self,
        detail: str,
        provider: str,
        upstream_status: int | None = None,
        code: ErrorCode = ErrorCode.PROVIDER_ERROR,
    ) -> None:
        details: dict[str, Any] = {"provider": provider}
        if upstream_status is not None:
            details["upstream_status"] = upstream_status
        super().__init__(detail, code, details)
        self.provider = provider
        self.upstream_status = upstream_status


@dataclass(frozen=True)
class ProviderTokens:
    """Normalized token endpoint response."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any], now: datetime) -> ProviderTokens:
        """Normalize an OAuth token payload, computing absolute expiry."""
        access_token = str(payload.get("access_token") or "")
        if not access_token:
            raise ValueError("Token response did not include an access token.")
        expires_at: datetime | None = None
        expires_in = payload.get("expires_in")
        if expires_in is not None:
            expires_at = now + timedelta(seconds=int(expires_in))
        refresh_token = payload.get("refresh_token")
        scope = payload.get("scope")
        return cls(
            access_token=access_token,
            refresh_token=str(refresh_token) if refresh_token else None,
            expires_at=expires_at,
            scope=str(scope) if scope else None,
        )


def _upstream_status(exc: Exception) -> int | None:
    """Extract the upstream HTTP status from an httpx or authlib failure."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    response = getattr(exc, "response", None)
    status_code = getattr(response, "status_code", None)
    return status_code if isinstance(status_code, int) else None


class AtlassianOAuthClient:
    """Authlib-backed Atlassian OAuth 2.0 (3LO) client."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        auth_base_url: str = "https://auth.atlassian.com",
        api_base_url: str = "https://api.atlassian.com",
        timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._auth_base_url = auth_base_url.rstrip("/")
        self._api_base_url = api_base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._now = clock or _utcnow

    @property
    def api_base_url(self) -> str:
        return self._api_base_url

    def redirect_uri_for(self, service: str) -> str:
        """Callback URI carrying the target service."""
        return str(httpx.URL(self._redirect_uri).copy_merge_params({"service": service}))

    def build_authorization_url(self, state: str, service: str) -> str:
        """Build the consent URL for a bound state."""
        client = self._build_client(redirect_uri=self.redirect_uri_for(service))
        authorization_url, _ = client.create_authorization_url(
            f"{self._auth_base_url}/authorize",
            state=state,
            audience=ATLASSIAN_AUDIENCE,
            prompt="consent",
        )
        return authorization_url

    async def exchange_code(self, code: str, service: str) -> ProviderTokens:
        """Exchange an authorization code for tokens."""
        redirect_uri = self.redirect_uri_for(service)
        client = self._build_client(redirect_uri=redirect_uri)
        try:
            payload = await client.fetch_token(
                f"{self._auth_base_url}/oauth/token",
                grant_type="authorization_code",
                code=code,
                redirect_uri=redirect_uri,
            )
            return ProviderTokens.from_payload(dict(payload), self._now())
        except Exception as exc:
            raise ProviderError(
                "Atlassian token exchange failed.", "atlassian", _upstream_status(exc)
            ) from exc
        finally:
            await client.aclose()

    async def refresh(self, refresh_token: str) -> ProviderTokens:
        """Exchange a refresh token for a new access token."""
        client = self._build_client(redirect_uri=self._redirect_uri)
        try:
            payload = await client.refresh_token(
                f"{self._auth_base_url}/oauth/token",
                refresh_token=refresh_token,
            )
            return ProviderTokens.from_payload(dict(payload), self._now())
        except Exception as exc:
            raise ProviderError(
                "Atlassian token refresh failed.", "atlassian", _upstream_status(exc)
            ) from exc
        finally:
            await client.aclose()

    async def fetch_identity(self, access_token: str) -> dict[str, Any]:
        """Fetch the authorizing user's profile."""
        payload = await self._get_json(f"{self._api_base_url}/me", access_token, "user profile")
        if not isinstance(payload, dict):
            raise ProviderError("Atlassian returned an invalid user profile.", "atlassian")
        return payload

    async def fetch_accessible_resources(self, access_token: str) -> list[dict[str, Any]]:
        """Fetch the cloud sites the grant can reach."""
        payload = await self._get_json(
            f"{self._api_base_url}/oauth/token/accessible-resources",
            access_token,
            "accessible resources",
        )
        if not isinstance(payload, list):
            raise ProviderError("Atlassian returned an invalid resource list.", "atlassian")
        return [item for item in payload if isinstance(item, dict)]

    async def _get_json(self, url: str, access_token: str, label: str) -> Any:
        """GET a bearer-authorized Atlassian endpoint."""
        client = self._build_client(
            redirect_uri=self._redirect_uri,
            token={"access_token": access_token, "token_type": "Bearer"},
        )
        try:
            response = await client.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
            return response.json()
        except Exception as exc:
            raise ProviderError(
                f"Failed to fetch Atlassian {label}.", "atlassian", _upstream_status(exc)
            ) from exc
        finally:
            await client.aclose()

    def _build_client(
        self, redirect_uri: str, token: dict[str, Any] | None = None
    ) -> AsyncOAuth2Client:
        """Build authlib OAuth2 client for Atlassian endpoints."""
        return AsyncOAuth2Client(
            client_id=self._client_id,
            client_secret=self._client_secret,
            scope=" ".join(ATLASSIAN_SCOPES),
            redirect_uri=redirect_uri,
            token_endpoint_auth_method="client_secret_post",
            token=token,
            timeout=self._timeout_seconds,
        )


@dataclass(frozen=True)
class KygLoginResult:
    """Session token and profile returned by a KYG login."""

    token: str
    user: dict[str, Any]


class _JSONProviderClient:
    """Shared httpx plumbing for JSON provider APIs."""

    provider = "provider"

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=build_timeout(timeout_seconds),
        )

    async def aclose(self) -> None:
        """Close underlying HTTP client if owned by this instance."""
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self, method: str, path: str, failure_detail: str, **kwargs: Any
    ) -> dict[str, Any]:
        """Execute a request and normalize failures into provider errors."""
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            raise ProviderError(
                f"{failure_detail}: provider unreachable.",
                self.provider,
                code=ErrorCode.SERVICE_UNAVAILABLE,
            ) from exc

        if response.status_code >= 400:
            code = (
                ErrorCode.INVALID_REQUEST
                if response.status_code < 500
                else ErrorCode.PROVIDER_ERROR
            )
            raise ProviderError(
                f"{failure_detail}: {response.status_code} {response.reason_phrase}.",
                self.provider,
                response.status_code,
                code=code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(
                f"{failure_detail}: invalid JSON response.", self.provider, response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderError(
                f"{failure_detail}: unexpected response shape.",
                self.provider,
                response.status_code,
            )
        return payload


class BitbucketClient(_JSONProviderClient):
    """Bitbucket Cloud identity verification for API-token credentials."""

    provider = "bitbucket"

    async def verify_credentials(self, email: str, api_token: str) -> dict[str, Any]:
        """Return the Bitbucket user profile if the credentials are accepted."""
        user = await self._request(
            "GET",
            "/user",
            "Bitbucket credential verification failed",
            auth=(email, api_token),
            headers={"Accept": "application/json"},
        )
        if not user.get("uuid"):
            raise ProviderError(
                "Bitbucket credential verification failed: missing account uuid.",
                self.provider,
            )
        return user


class KygClient(_JSONProviderClient):
    """KYG core login client."""

    provider = "kyg"

    async def login(self, email: str, password: str) -> KygLoginResult:
        """Exchange email and password for a KYG session token."""
        payload = await self._request(
            "POST",
            "/authentication/login",
            "KYG login failed",
            json={"email": email, "password": password},
        )
        token = payload.get("token")
        user = payload.get("user")
        if not isinstance(token, str) or not token or not isinstance(user, dict):
            raise ProviderError("KYG login failed: unexpected response shape.", self.provider)
        if user.get("userid") is None:
            raise ProviderError("KYG login failed: missing user id.", self.provider)
        return KygLoginResult(token=token, user=user)


@lru_cache
def get_atlassian_client() -> AtlassianOAuthClient:
    """Build and cache the Atlassian OAuth client from settings."""
    settings = get_settings()
    return AtlassianOAuthClient(
        client_id=settings.atlassian.client_id,
        client_secret=settings.atlassian.client_secret.get_secret_value(),
        redirect_uri=str(settings.atlassian.redirect_uri),
        auth_base_url=settings.atlassian.auth_base_url,
        api_base_url=settings.atlassian.api_base_url,
        timeout_seconds=settings.providers.timeout_seconds,
    )


@lru_cache
def get_bitbucket_client() -> BitbucketClient:
    """Build and cache the Bitbucket client from settings."""
    settings = get_settings()
    return BitbucketClient(
        base_url=settings.bitbucket.api_base_url,
        timeout_seconds=settings.providers.timeout_seconds,
    )


@lru_cache
def get_kyg_client() -> KygClient:
    """Build and cache the KYG client from settings."""
    settings = get_settings()
    return KygClient(
        base_url=str(settings.kyg.base_url),
        timeout_seconds=settings.providers.timeout_seconds,
    )
