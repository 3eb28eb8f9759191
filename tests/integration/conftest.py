"""Shared integration-test fixtures.

Router-level tests run against the in-memory store with stubbed providers. Tests named
`*_real.py` use Postgres and Redis testcontainers and are skipped without Docker.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from datetime import timedelta
from typing import Any

import pytest
from alembic import command
from alembic.config import Config
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import FastAPI
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from testcontainers.postgres import PostgresContainer
from testcontainers.redis import RedisContainer

from docker.errors import DockerException
from gateway.core.connections import ConnectionStore
from gateway.core.oauth_state import OAuthStateBroker, get_oauth_state_broker
from gateway.core.providers import KygLoginResult, ProviderError, ProviderTokens
from gateway.core.sessions import SessionManager, get_session_manager
from gateway.core.token_cache import ProviderClientCache, TokenCache
from gateway.dependencies import get_store
from gateway.error_handlers import register_exception_handlers
from gateway.errors import ErrorCode
from gateway.routers import connections, oauth, session
from gateway.services.connection_service import ConnectionService, get_connection_service


class StubAtlassianClient:
    """Atlassian OAuth double returning a fixed grant for any code."""

    def __init__(self, clock: Callable[[], Any]) -> None:
        self._clock = clock
        self.fail_exchange = False

    def build_authorization_url(self, state: str, service: str) -> str:
        return f"https://auth.atlassian.test/authorize?state={state}&service={service}"

    async def exchange_code(self, code: str, service: str) -> ProviderTokens:
        if self.fail_exchange:
            raise ProviderError("Atlassian token exchange failed.", "atlassian", 400)
        return ProviderTokens(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_at=self._clock() + timedelta(hours=1),
        )

    async def fetch_identity(self, access_token: str) -> dict[str, Any]:
        return {"account_id": "acct-1", "name": "Ada", "email": "ada@example.com"}

    async def fetch_accessible_resources(self, access_token: str) -> list[dict[str, Any]]:
        return [{"id": "cloud-1", "url": "https://acme.atlassian.net", "scopes": ["read:me"]}]


class StubBitbucketClient:
    """Accepts the API token `valid-token` and rejects everything else."""

    async def verify_credentials(self, email: str, api_token: str) -> dict[str, Any]:
        if api_token != "valid-token":
            raise ProviderError(
                "Bitbucket credential verification failed: 401 Unauthorized.",
                "bitbucket",
                401,
                ErrorCode.INVALID_REQUEST,
            )
        return {"uuid": "{u1}", "username": "ada", "display_name": "Ada L"}


class StubKygClient:
    async def login(self, email: str, password: str) -> KygLoginResult:
        if password != "valid-password":
            raise ProviderError("KYG login failed: 401 Unauthorized.", "kyg", 401)
        return KygLoginResult(
            token="kyg-token",
            user={"userid": 7, "email": email, "firstName": "Ada", "lastName": "Lovelace"},
        )


def build_connection_service(
    session_manager: SessionManager,
    broker: OAuthStateBroker,
    clock: Callable[[], Any],
    atlassian: StubAtlassianClient | None = None,
) -> ConnectionService:
    """Wire a connection service over stubbed provider clients."""
    return ConnectionService(
        session_manager=session_manager,
        state_broker=broker,
        connection_store=ConnectionStore(clock=clock),
        atlassian_client=atlassian or StubAtlassianClient(clock),  # type: ignore[arg-type]
        bitbucket_client=StubBitbucketClient(),  # type: ignore[arg-type]
        kyg_client=StubKygClient(),  # type: ignore[arg-type]
        client_cache=ProviderClientCache(),
        token_cache=TokenCache(),
    )


@pytest.fixture
def session_manager(jwt_service, clock) -> SessionManager:
    return SessionManager(jwt_service, 3600, 604800, clock=clock)


@pytest.fixture
def state_broker(clock) -> OAuthStateBroker:
    return OAuthStateBroker(ttl_seconds=600, clock=clock)


@pytest.fixture
def atlassian_stub(clock) -> StubAtlassianClient:
    return StubAtlassianClient(clock)


@pytest.fixture
def router_app(store, session_manager, state_broker, atlassian_stub, clock) -> FastAPI:
    """Gateway routers over the in-memory store with stubbed providers."""
    app = FastAPI()
    register_exception_handlers(app, environment="development")
    app.include_router(session.router)
    app.include_router(connections.router)
    app.include_router(oauth.router)

    async def _store_override() -> Any:
        return store

    service = build_connection_service(session_manager, state_broker, clock, atlassian_stub)
    app.dependency_overrides[get_store] = _store_override
    app.dependency_overrides[get_session_manager] = lambda: session_manager
    app.dependency_overrides[get_oauth_state_broker] = lambda: state_broker
    app.dependency_overrides[get_connection_service] = lambda: service
    return app


def _generate_rsa_keypair() -> tuple[str, str]:
    """Generate PEM-encoded RSA private/public keypair for integration settings."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("utf-8")
    )
    return private_pem, public_pem


def _clear_dependency_caches() -> None:
    """Clear all singleton/lru-cache dependencies between test phases."""
    from gateway.config import get_settings
    from gateway.core.connections import get_connection_store
    from gateway.core.credentials import get_credential_resolver, get_provider_client_cache
    from gateway.core.jwt import get_jwt_service
    from gateway.core.providers import (
        get_atlassian_client,
        get_bitbucket_client,
        get_kyg_client,
    )
    from gateway.core.token_refresh import get_token_cache, get_token_refresh_manager
    from gateway.db.session import get_engine, get_session_factory
    from gateway.middleware.rate_limit import get_rate_limit_redis_client

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()
    get_jwt_service.cache_clear()
    get_rate_limit_redis_client.cache_clear()
    get_session_manager.cache_clear()
    get_oauth_state_broker.cache_clear()
    get_connection_store.cache_clear()
    get_atlassian_client.cache_clear()
    get_bitbucket_client.cache_clear()
    get_kyg_client.cache_clear()
    get_token_cache.cache_clear()
    get_token_refresh_manager.cache_clear()
    get_provider_client_cache.cache_clear()
    get_credential_resolver.cache_clear()
    get_connection_service.cache_clear()


async def _dispose_async_singletons() -> None:
    """Dispose loop-bound async resources before changing event loops."""
    from gateway.db.session import dispose_engine, get_engine
    from gateway.middleware.rate_limit import get_rate_limit_redis_client

    if get_rate_limit_redis_client.cache_info().currsize:
        await get_rate_limit_redis_client().aclose()
    if get_engine.cache_info().currsize:
        await dispose_engine()


def _redis_connection_url(redis: RedisContainer) -> str:
    """Return a redis:// URL across testcontainers versions."""
    get_url = getattr(redis, "get_connection_url", None)
    if callable(get_url):
        redis_url = get_url()
    else:
        host = redis.get_container_host_ip()
        port = redis.get_exposed_port(6379)
        redis_url = f"redis://{host}:{port}"
    if not redis_url.endswith("/0"):
        redis_url = f"{redis_url}/0"
    return redis_url


def _postgres_async_url(postgres: PostgresContainer) -> str:
    """Return a postgresql+asyncpg URL across testcontainers versions."""
    try:
        postgres_url = postgres.get_connection_url(driver=None)
    except TypeError:
        postgres_url = postgres.get_connection_url()

    if postgres_url.startswith("postgresql+"):
        postgres_url = "postgresql://" + postgres_url.split("://", 1)[1]

    return postgres_url.replace("postgresql://", "postgresql+asyncpg://", 1)


def _set_env_values(env_values: dict[str, str]) -> Callable[[], None]:
    """Apply env vars and return a restore callback."""
    original = {key: os.environ.get(key) for key in env_values}
    os.environ.update(env_values)

    def _restore() -> None:
        for key, value in original.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    return _restore


@pytest.fixture(scope="session")
def integration_env() -> Iterator[dict[str, str]]:
    """Start Postgres/Redis containers and configure gateway settings."""
    try:
        postgres = PostgresContainer("postgres:16")
        redis = RedisContainer("redis:7")
        postgres.start()
        redis.start()
    except DockerException as exc:
        if os.environ.get("CI", "").lower() in {"1", "true", "yes"}:
            pytest.fail(f"Docker daemon unavailable in CI for testcontainers tests: {exc}")
        pytest.skip(f"Docker daemon unavailable for testcontainers-backed tests: {exc}")

    private_pem, public_pem = _generate_rsa_keypair()
    database_url = _postgres_async_url(postgres)
    redis_url = _redis_connection_url(redis)

    restore_env = _set_env_values(
        {
            "APP__ENVIRONMENT": "development",
            "APP__SERVICE": "agent-gateway",
            "APP__LOG_LEVEL": "INFO",
            "DATABASE__URL": database_url,
            "REDIS__URL": redis_url,
            "JWT__PRIVATE_KEY_PEM": private_pem,
            "JWT__PUBLIC_KEY_PEM": public_pem,
            "JWT__SESSION_TOKEN_TTL_SECONDS": "1h",
            "JWT__REFRESH_TOKEN_TTL_SECONDS": "30d",
            "ATLASSIAN__CLIENT_ID": "integration-atlassian-client",
            "ATLASSIAN__CLIENT_SECRET": "integration-atlassian-secret",
            "ATLASSIAN__REDIRECT_URI": "http://localhost:8000/oauth/callback",
            "KYG__BASE_URL": "http://kyg.test",
            "RATE_LIMIT__DEFAULT_REQUESTS_PER_MINUTE": "10000",
            "RATE_LIMIT__SESSION_REQUESTS_PER_MINUTE": "10000",
            "RATE_LIMIT__CONNECT_REQUESTS_PER_MINUTE": "10000",
        }
    )
    _clear_dependency_caches()

    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(alembic_cfg, "head")

    try:
        yield {"database_url": database_url, "redis_url": redis_url}
    finally:
        try:
            _clear_dependency_caches()
        finally:
            restore_env()
            postgres.stop()
            redis.stop()


@pytest.fixture(scope="function")
async def reset_state(integration_env: dict[str, str]) -> Iterator[None]:
    """Clear gateway tables and flush Redis; isolate async singletons per event loop."""
    del integration_env
    from gateway.db.session import get_session_factory
    from gateway.middleware.rate_limit import get_rate_limit_redis_client
    from gateway.models import CliSession, Connection, DeviceSession, OAuthState

    await _dispose_async_singletons()
    _clear_dependency_caches()

    session_factory = get_session_factory()
    async with session_factory() as db_session:
        await db_session.execute(delete(Connection))
        await db_session.execute(delete(OAuthState))
        await db_session.execute(delete(CliSession))
        await db_session.execute(delete(DeviceSession))
        await db_session.commit()

    await get_rate_limit_redis_client().flushdb()
    try:
        yield
    finally:
        await _dispose_async_singletons()
        _clear_dependency_caches()


@pytest.fixture(scope="function")
async def db_session_factory(reset_state: None) -> async_sessionmaker[AsyncSession]:
    """Expose the async session factory bound to integration Postgres."""
    del reset_state
    from gateway.db.session import get_session_factory

    return get_session_factory()


@pytest.fixture(scope="function")
def app_factory(reset_state: None) -> Callable[[], FastAPI]:
    """Build isolated gateway app instances for container-backed tests."""
    del reset_state
    from gateway.main import create_app

    return create_app
