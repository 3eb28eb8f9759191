"""Unit tests for provider connect flows, OAuth callbacks, and disconnects."""

from __future__ import annotations

import base64
from datetime import timedelta
from typing import Any

import pytest

from gateway.core.connections import ConnectionStore, metadata_for
from gateway.core.jwt import JWTService
from gateway.core.metadata import AtlassianMetadata, BitbucketMetadata, KygMetadata
from gateway.core.oauth_state import OAuthStateBroker, OAuthStateError
from gateway.core.providers import KygLoginResult, ProviderError, ProviderTokens
from gateway.core.registry import ServiceName
from gateway.core.sessions import SessionManager
from gateway.core.token_cache import CredentialBundle, ProviderClientCache, TokenCache
from gateway.db.store import ConnectionValues
from gateway.errors import ErrorCode
from gateway.services.connection_service import (
    ConnectCredentials,
    ConnectionService,
    ConnectionServiceError,
    merge_resources,
)

SID = "kaysession_1_abc"


class _StubAtlassian:
    """Atlassian OAuth client double returning canned grants."""

    def __init__(self, clock) -> None:
        self.tokens = ProviderTokens(
            access_token="a1", refresh_token="r1", expires_at=clock.now + timedelta(hours=1)
        )
        self.identity: dict[str, Any] = {
            "account_id": "acct-1",
            "name": "Ada",
            "email": "ada@example.com",
        }
        self.resources: list[dict[str, Any]] = [
            {"id": "cloud-1", "url": "https://acme.atlassian.net", "scopes": ["read:jira-work"]},
            {
                "id": "cloud-1",
                "url": "https://acme.atlassian.net",
                "scopes": ["read:page:confluence"],
            },
        ]
        self.exchange_error: Exception | None = None
        self.exchanged: list[tuple[str, str]] = []

    def build_authorization_url(self, state: str, service: str) -> str:
        return f"https://auth.example.com/authorize?state={state}&service={service}"

    async def exchange_code(self, code: str, service: str) -> ProviderTokens:
        self.exchanged.append((code, service))
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.tokens

    async def fetch_identity(self, access_token: str) -> dict[str, Any]:
        return self.identity

    async def fetch_accessible_resources(self, access_token: str) -> list[dict[str, Any]]:
        return self.resources


class _StubBitbucket:
    def __init__(self) -> None:
        self.error: ProviderError | None = None
        self.calls: list[tuple[str, str]] = []

    async def verify_credentials(self, email: str, api_token: str) -> dict[str, Any]:
        self.calls.append((email, api_token))
        if self.error is not None:
            raise self.error
        return {
            "uuid": "{u1}",
            "username": "ada",
            "display_name": "Ada L",
            "links": {"avatar": {"href": "https://img.example.com/ada.png"}},
        }


class _StubKyg:
    def __init__(self) -> None:
        self.error: ProviderError | None = None

    async def login(self, email: str, password: str) -> KygLoginResult:
        if self.error is not None:
            raise self.error
        return KygLoginResult(
            token="kyg-token",
            user={
                "userid": 7,
                "email": email,
                "firstName": "Ada",
                "lastName": "Lovelace",
                "CompanyID": 42,
                "CompanyName": "Analytical",
                "roles": ["admin"],
            },
        )


class _ClosableClient:
    def __init__(self) -> None:
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def atlassian(clock) -> _StubAtlassian:
    return _StubAtlassian(clock)


@pytest.fixture
def bitbucket() -> _StubBitbucket:
    return _StubBitbucket()


@pytest.fixture
def kyg() -> _StubKyg:
    return _StubKyg()


@pytest.fixture
def client_cache() -> ProviderClientCache:
    return ProviderClientCache()


@pytest.fixture
def token_cache() -> TokenCache:
    return TokenCache()


@pytest.fixture
def service(
    jwt_service: JWTService, clock, atlassian, bitbucket, kyg, client_cache, token_cache
) -> ConnectionService:
    return ConnectionService(
        session_manager=SessionManager(jwt_service, 3600, 86400, clock=clock),
        state_broker=OAuthStateBroker(ttl_seconds=600, clock=clock),
        connection_store=ConnectionStore(clock=clock),
        atlassian_client=atlassian,  # type: ignore[arg-type]
        bitbucket_client=bitbucket,  # type: ignore[arg-type]
        kyg_client=kyg,  # type: ignore[arg-type]
        client_cache=client_cache,
        token_cache=token_cache,
    )


def test_merge_resources_unions_scopes_of_duplicate_ids() -> None:
    merged = merge_resources(
        [
            {"id": "c1", "url": "https://a.atlassian.net", "scopes": ["x", "y"]},
            {"id": "c2", "url": "https://b.atlassian.net", "scopes": ["z"]},
            {"id": "c1", "url": "https://a.atlassian.net", "scopes": ["y", "w"]},
        ]
    )

    assert [resource.id for resource in merged] == ["c1", "c2"]
    assert merged[0].scopes == ["x", "y", "w"]


@pytest.mark.asyncio
async def test_begin_connect_rejects_unknown_service(service, store) -> None:
    with pytest.raises(ConnectionServiceError) as exc_info:
        await service.begin_connect(store, "github", None, ConnectCredentials())

    assert exc_info.value.code == ErrorCode.INVALID_REQUEST
    assert "jira" in exc_info.value.details["supported_services"]


@pytest.mark.asyncio
async def test_begin_connect_oauth_creates_session_and_bound_state(service, store) -> None:
    """A connect with no session creates one and binds the state to it."""
    outcome = await service.begin_connect(store, "jira", None, ConnectCredentials())

    assert outcome.session_reset is True
    assert outcome.connected is False
    assert outcome.device_session_id in store.device_sessions.rows
    assert outcome.state is not None
    assert f"state={outcome.state}" in outcome.authorization_url
    row = store.oauth_states.rows[outcome.state]
    assert row.device_session_id == outcome.device_session_id
    assert row.service_name == "jira"


@pytest.mark.asyncio
async def test_begin_connect_with_unknown_session_resets_it(service, store) -> None:
    outcome = await service.begin_connect(
        store, "confluence", "kaysession_0_gone", ConnectCredentials()
    )

    assert outcome.session_reset is True
    assert outcome.device_session_id != "kaysession_0_gone"


@pytest.mark.asyncio
async def test_begin_connect_reports_existing_oauth_connection(service, store) -> None:
    store.add_device_session(SID)
    await service.connect_atlassian(store, SID, ServiceName.JIRA, "code-1")

    outcome = await service.begin_connect(store, "confluence", SID, ConnectCredentials())

    assert outcome.connected is True
    assert outcome.session_reset is False
    assert outcome.authorization_url is None
    assert "already connected" in outcome.message


@pytest.mark.asyncio
async def test_connect_atlassian_stores_merged_resources_and_mirror(
    service, store, atlassian
) -> None:
    store.add_device_session(SID)

    connection = await service.connect_atlassian(store, SID, ServiceName.CONFLUENCE, "code-1")

    assert atlassian.exchanged == [("code-1", "confluence")]
    metadata = metadata_for(connection)
    assert isinstance(metadata, AtlassianMetadata)
    assert metadata.account_id == "acct-1"
    assert metadata.url == "https://acme.atlassian.net"
    assert metadata.cloud_id == "cloud-1"
    assert metadata.resources[0].scopes == ["read:jira-work", "read:page:confluence"]
    assert connection.refresh_token == "r1"
    jira = await store.connections.get(SID, "jira")
    assert jira is not None and jira.access_token == "a1"


@pytest.mark.asyncio
async def test_connect_atlassian_requires_refresh_token(service, store, atlassian) -> None:
    store.add_device_session(SID)
    atlassian.tokens = ProviderTokens(access_token="a1")

    with pytest.raises(ProviderError):
        await service.connect_atlassian(store, SID, ServiceName.JIRA, "code-1")

    assert await store.connections.list_for_session(SID) == []


@pytest.mark.asyncio
async def test_failed_atlassian_connect_removes_existing_shared_grant(
    service, store, atlassian
) -> None:
    store.add_device_session(SID)
    await service.connect_atlassian(store, SID, ServiceName.JIRA, "code-1")
    atlassian.exchange_error = ProviderError("exchange failed", "atlassian", 400)

    with pytest.raises(ProviderError):
        await service.connect_atlassian(store, SID, ServiceName.JIRA, "code-2")

    assert await store.connections.list_for_session(SID) == []


@pytest.mark.asyncio
async def test_failed_atlassian_connect_removes_independent_sibling(
    service, store, atlassian, token_cache
) -> None:
    """Both Atlassian rows go even when each holds its own grant."""
    store.add_device_session(SID)
    for name, token in (("jira", "jira-own"), ("confluence", "conf-own")):
        await store.connections.upsert(
            ConnectionValues(
                id=f"conn_{name}",
                device_session_id=SID,
                service_name=name,
                access_token=token,
                refresh_token=f"{token}-refresh",
            )
        )
    token_cache.put(
        "bearer-1", CredentialBundle("confluence", {"ATLASSIAN_ACCESS_TOKEN": "conf-own"})
    )
    atlassian.exchange_error = ProviderError("exchange failed", "atlassian", 400)

    with pytest.raises(ProviderError):
        await service.connect_atlassian(store, SID, ServiceName.JIRA, "code-2")

    assert await store.connections.list_for_session(SID) == []
    assert token_cache.get("bearer-1", "confluence") is None


@pytest.mark.asyncio
async def test_atlassian_reconnect_drops_bundles_of_replaced_grant(
    service, store, atlassian, token_cache, clock
) -> None:
    store.add_device_session(SID)
    await service.connect_atlassian(store, SID, ServiceName.JIRA, "code-1")
    token_cache.put("bearer-1", CredentialBundle("jira", {"ATLASSIAN_ACCESS_TOKEN": "a1"}))
    atlassian.tokens = ProviderTokens(
        access_token="a2", refresh_token="r2", expires_at=clock.now + timedelta(hours=1)
    )

    await service.connect_atlassian(store, SID, ServiceName.JIRA, "code-2")

    assert token_cache.get("bearer-1", "jira") is None
    row = await store.connections.get(SID, "confluence")
    assert row.access_token == "a2"


@pytest.mark.asyncio
async def test_failed_atlassian_identity_is_reported_as_provider_error(
    service, store, atlassian
) -> None:
    store.add_device_session(SID)
    atlassian.identity = {"name": "no account id"}

    with pytest.raises(ProviderError) as exc_info:
        await service.connect_atlassian(store, SID, ServiceName.JIRA, "code-1")

    assert exc_info.value.code == ErrorCode.PROVIDER_ERROR


@pytest.mark.asyncio
async def test_bitbucket_connect_stores_basic_credential(service, store, bitbucket) -> None:
    store.add_device_session(SID)

    outcome = await service.begin_connect(
        store, "bitbucket", SID, ConnectCredentials(email="ada@example.com", api_token="tok")
    )

    assert outcome.connected is True
    assert bitbucket.calls == [("ada@example.com", "tok")]
    row = await store.connections.get(SID, "bitbucket")
    assert base64.b64decode(row.access_token).decode() == "ada@example.com:tok"
    metadata = metadata_for(row)
    assert isinstance(metadata, BitbucketMetadata)
    assert metadata.account_id == "bitbucket_u1"
    assert metadata.avatar_url == "https://img.example.com/ada.png"


@pytest.mark.asyncio
async def test_bitbucket_connect_falls_back_to_password_field(service, store, bitbucket) -> None:
    store.add_device_session(SID)

    await service.begin_connect(
        store, "bitbucket", SID, ConnectCredentials(email="ada@example.com", password="pw-token")
    )

    assert bitbucket.calls == [("ada@example.com", "pw-token")]


@pytest.mark.asyncio
async def test_bitbucket_connect_requires_both_fields(service, store) -> None:
    with pytest.raises(ConnectionServiceError) as exc_info:
        await service.begin_connect(
            store, "bitbucket", None, ConnectCredentials(email="ada@example.com")
        )

    assert exc_info.value.code == ErrorCode.INVALID_REQUEST


@pytest.mark.asyncio
async def test_failed_bitbucket_verification_deletes_prior_connection(
    service, store, bitbucket, client_cache
) -> None:
    store.add_device_session(SID)
    await service.connect_bitbucket(store, SID, "ada@example.com", "good")
    client = _ClosableClient()
    await client_cache.get_or_create((SID, "bitbucket"), _returning(client))
    bitbucket.error = ProviderError("bad credentials", "bitbucket", 401, ErrorCode.INVALID_REQUEST)

    with pytest.raises(ProviderError):
        await service.connect_bitbucket(store, SID, "ada@example.com", "bad")

    assert await store.connections.get(SID, "bitbucket") is None
    assert client.closed is True


@pytest.mark.asyncio
async def test_failed_bitbucket_verification_drops_cached_bundle(
    service, store, bitbucket, token_cache
) -> None:
    store.add_device_session(SID)
    await service.connect_bitbucket(store, SID, "ada@example.com", "good")
    token_cache.put(
        "bearer-1",
        CredentialBundle(
            "bitbucket", {"BITBUCKET_EMAIL": "ada@example.com", "BITBUCKET_TOKEN": "good"}
        ),
    )
    bitbucket.error = ProviderError("bad credentials", "bitbucket", 401, ErrorCode.INVALID_REQUEST)

    with pytest.raises(ProviderError):
        await service.connect_bitbucket(store, SID, "ada@example.com", "bad")

    assert token_cache.get("bearer-1", "bitbucket") is None


@pytest.mark.asyncio
async def test_kyg_reconnect_drops_bundle_of_previous_token(service, store, token_cache) -> None:
    store.add_device_session(SID)
    await service.connect_kyg(store, SID, "ada@example.com", "pw")
    token_cache.put("bearer-1", CredentialBundle("kyg", {"KYG_TOKEN": "kyg-token"}))

    await service.connect_kyg(store, SID, "ada@example.com", "pw")

    assert token_cache.get("bearer-1", "kyg") is None


@pytest.mark.asyncio
async def test_existing_static_connection_is_reverified_when_credentials_sent(
    service, store, bitbucket
) -> None:
    store.add_device_session(SID)
    await service.connect_bitbucket(store, SID, "ada@example.com", "old")

    skipped = await service.begin_connect(store, "bitbucket", SID, ConnectCredentials())
    await service.begin_connect(
        store, "bitbucket", SID, ConnectCredentials(email="ada@example.com", api_token="new")
    )

    assert "already connected" in skipped.message
    assert bitbucket.calls[-1] == ("ada@example.com", "new")


@pytest.mark.asyncio
async def test_kyg_connect_stores_token_and_profile(service, store) -> None:
    store.add_device_session(SID)

    await service.begin_connect(
        store, "kyg", SID, ConnectCredentials(email="ada@example.com", password="pw")
    )

    row = await store.connections.get(SID, "kyg")
    assert row.access_token == "kyg-token"
    assert row.refresh_token is None
    assert row.expires_at is None
    metadata = metadata_for(row)
    assert isinstance(metadata, KygMetadata)
    assert metadata.account_id == "kyg_7"
    assert metadata.company_id == "42"
    assert metadata.roles == ["admin"]


@pytest.mark.asyncio
async def test_failed_kyg_login_keeps_prior_connection(service, store, kyg) -> None:
    store.add_device_session(SID)
    await service.connect_kyg(store, SID, "ada@example.com", "pw")
    kyg.error = ProviderError("KYG login failed", "kyg", 401, ErrorCode.INVALID_REQUEST)

    with pytest.raises(ProviderError):
        await service.connect_kyg(store, SID, "ada@example.com", "wrong")

    row = await store.connections.get(SID, "kyg")
    assert row is not None and row.access_token == "kyg-token"


@pytest.mark.asyncio
async def test_oauth_callback_stores_connection_and_consumes_state(service, store) -> None:
    outcome = await service.begin_connect(store, "jira", None, ConnectCredentials())

    result = await service.complete_oauth_callback(store, "code-1", outcome.state, "jira")

    assert result.service is ServiceName.JIRA
    assert result.device_session_id == outcome.device_session_id
    assert result.account_id == "acct-1"
    state_row = store.oauth_states.rows[outcome.state]
    assert state_row.completed_at is not None
    assert state_row.account_id == "acct-1"

    with pytest.raises(OAuthStateError) as exc_info:
        await service.complete_oauth_callback(store, "code-1", outcome.state, "jira")
    assert exc_info.value.code == ErrorCode.TOKEN_INVALID


@pytest.mark.asyncio
async def test_oauth_callback_rejects_unknown_state(service, store) -> None:
    with pytest.raises(OAuthStateError) as exc_info:
        await service.complete_oauth_callback(store, "code-1", "missing-state", None)

    assert exc_info.value.code == ErrorCode.TOKEN_INVALID
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_oauth_callback_rejects_expired_state(service, store, clock, atlassian) -> None:
    outcome = await service.begin_connect(store, "jira", None, ConnectCredentials())
    clock.advance(seconds=601)

    with pytest.raises(OAuthStateError) as exc_info:
        await service.complete_oauth_callback(store, "code-1", outcome.state, "jira")

    assert exc_info.value.code == ErrorCode.TOKEN_INVALID
    assert outcome.state not in store.oauth_states.rows
    assert atlassian.exchanged == []


@pytest.mark.asyncio
async def test_oauth_callback_rejects_unbound_state(service, store) -> None:
    state = await service._state_broker.create_state(store)

    with pytest.raises(OAuthStateError) as exc_info:
        await service.complete_oauth_callback(store, "code-1", state, None)

    assert exc_info.value.code == ErrorCode.INVALID_REQUEST
    assert state not in store.oauth_states.rows


@pytest.mark.asyncio
async def test_oauth_callback_service_mismatch_removes_state(service, store, atlassian) -> None:
    outcome = await service.begin_connect(store, "jira", None, ConnectCredentials())

    with pytest.raises(ConnectionServiceError) as exc_info:
        await service.complete_oauth_callback(store, "code-1", outcome.state, "confluence")

    assert exc_info.value.code == ErrorCode.INVALID_REQUEST
    assert exc_info.value.details == {"expected": "jira", "received": "confluence"}
    assert outcome.state not in store.oauth_states.rows
    assert atlassian.exchanged == []


@pytest.mark.asyncio
async def test_oauth_callback_exchange_failure_removes_state(service, store, atlassian) -> None:
    outcome = await service.begin_connect(store, "jira", None, ConnectCredentials())
    atlassian.exchange_error = ProviderError("exchange failed", "atlassian", 400)

    with pytest.raises(ProviderError):
        await service.complete_oauth_callback(store, "code-1", outcome.state, "jira")

    assert outcome.state not in store.oauth_states.rows


@pytest.mark.asyncio
async def test_abort_oauth_callback_removes_state(service, store) -> None:
    outcome = await service.begin_connect(store, "jira", None, ConnectCredentials())

    with pytest.raises(ProviderError) as exc_info:
        await service.abort_oauth_callback(store, outcome.state, "access_denied")

    assert exc_info.value.code == ErrorCode.PROVIDER_ERROR
    assert outcome.state not in store.oauth_states.rows


@pytest.mark.asyncio
async def test_disconnect_removes_mirror_and_closes_clients(
    service, store, client_cache, token_cache
) -> None:
    store.add_device_session(SID)
    await service.connect_atlassian(store, SID, ServiceName.JIRA, "code-1")
    jira_client, confluence_client, kyg_client = (
        _ClosableClient(),
        _ClosableClient(),
        _ClosableClient(),
    )
    await client_cache.get_or_create((SID, "jira"), _returning(jira_client))
    await client_cache.get_or_create((SID, "confluence"), _returning(confluence_client))
    await client_cache.get_or_create((SID, "kyg"), _returning(kyg_client))
    token_cache.put("bearer-1", CredentialBundle("jira", {"ATLASSIAN_ACCESS_TOKEN": "a1"}))

    removed = await service.disconnect(store, SID, "jira")

    assert removed == [ServiceName.JIRA, ServiceName.CONFLUENCE]
    assert jira_client.closed and confluence_client.closed
    assert kyg_client.closed is False
    assert token_cache.get("bearer-1", "jira") is None


@pytest.mark.asyncio
async def test_bitbucket_disconnect_drops_cached_decoded_bundle(
    service, store, token_cache
) -> None:
    store.add_device_session(SID)
    await service.begin_connect(
        store, "bitbucket", SID, ConnectCredentials(email="ada@example.com", api_token="tok")
    )
    token_cache.put(
        "bearer-1",
        CredentialBundle(
            "bitbucket", {"BITBUCKET_EMAIL": "ada@example.com", "BITBUCKET_TOKEN": "tok"}
        ),
    )

    removed = await service.disconnect(store, SID, "bitbucket")

    assert removed == [ServiceName.BITBUCKET]
    assert token_cache.get("bearer-1", "bitbucket") is None


@pytest.mark.asyncio
async def test_disconnect_unknown_session_requires_reset(service, store) -> None:
    with pytest.raises(ConnectionServiceError) as exc_info:
        await service.disconnect(store, "kaysession_0_gone", "jira")

    assert exc_info.value.code == ErrorCode.NOT_FOUND
    assert exc_info.value.details == {"session_reset_required": True}


@pytest.mark.asyncio
async def test_disconnect_without_connection_is_not_found(service, store) -> None:
    store.add_device_session(SID)

    with pytest.raises(ConnectionServiceError) as exc_info:
        await service.disconnect(store, SID, "bitbucket")

    assert exc_info.value.code == ErrorCode.NOT_FOUND
    assert exc_info.value.details == {}


@pytest.mark.asyncio
async def test_get_status_for_unknown_session_is_invalid(service, store) -> None:
    with pytest.raises(ConnectionServiceError) as exc_info:
        await service.get_status(store, "kaysession_0_gone")

    assert exc_info.value.code == ErrorCode.TOKEN_INVALID


def _returning(client: _ClosableClient):
    async def _factory() -> _ClosableClient:
        return client

    return _factory
