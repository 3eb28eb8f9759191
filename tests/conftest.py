"""Shared fixtures: an in-memory gateway store, a controllable clock, and RSA keys."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from gateway.core.jwt import JWTService
from gateway.db.store import ConnectionValues
from gateway.models import (
    CONNECTION_STATUS_ACTIVE,
    CliSession,
    Connection,
    DeviceSession,
    OAuthState,
)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime.now(UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class _MemoryDeviceSessions:
    def __init__(self, store: InMemoryGatewayStore) -> None:
        self._store = store
        self.rows: dict[str, DeviceSession] = {}

    async def add(self, row: DeviceSession) -> None:
        self.rows[row.id] = row

    async def get(self, device_session_id: str) -> DeviceSession | None:
        return self.rows.get(device_session_id)

    async def delete(self, device_session_id: str) -> bool:
        if self.rows.pop(device_session_id, None) is None:
            return False
        connections = self._store.connections.rows
        for key in [key for key in connections if key[0] == device_session_id]:
            del connections[key]
        states = self._store.oauth_states.rows
        for state in [s for s, row in states.items() if row.device_session_id == device_session_id]:
            del states[state]
        return True


class _MemoryCliSessions:
    def __init__(self) -> None:
        self.rows: list[CliSession] = []

    async def add(self, row: CliSession) -> None:
        if row.id is None:
            row.id = uuid4()
        self.rows.append(row)

    async def get_by_refresh_hash(self, refresh_token_hash: str) -> CliSession | None:
        return next((r for r in self.rows if r.hashed_refresh_token == refresh_token_hash), None)

    async def get_by_session_hash(self, session_token_hash: str) -> CliSession | None:
        return next((r for r in self.rows if r.hashed_session_token == session_token_hash), None)

    async def delete(self, row: CliSession) -> None:
        self.rows.remove(row)

    async def delete_by_session_hash(self, session_token_hash: str) -> bool:
        row = await self.get_by_session_hash(session_token_hash)
        if row is None:
            return False
        self.rows.remove(row)
        return True

    async def delete_for_device_session(self, device_session_id: str) -> int:
        owned = [row for row in self.rows if row.device_session_id == device_session_id]
        for row in owned:
            self.rows.remove(row)
        return len(owned)

    async def delete_expired(self, now: datetime) -> int:
        expired = [row for row in self.rows if row.expires_at <= now]
        for row in expired:
            self.rows.remove(row)
        return len(expired)


class _MemoryOAuthStates:
    def __init__(self) -> None:
        self.rows: dict[str, OAuthState] = {}

    async def add(self, row: OAuthState) -> None:
        self.rows[row.state] = row

    async def get(self, state: str) -> OAuthState | None:
        return self.rows.get(state)

    async def delete(self, state: str) -> bool:
        return self.rows.pop(state, None) is not None

    async def delete_expired(self, now: datetime) -> int:
        expired = [state for state, row in self.rows.items() if row.expires_at < now]
        for state in expired:
            del self.rows[state]
        return len(expired)


class _MemoryConnections:
    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self.rows: dict[tuple[str, str], Connection] = {}
        self.upserts = 0

    async def upsert(self, values: ConnectionValues) -> Connection:
        self.upserts += 1
        key = (values.device_session_id, values.service_name)
        now = self._clock()
        row = self.rows.get(key)
        if row is None:
            row = Connection(id=values.id, created_at=now)
            self.rows[key] = row
        row.device_session_id = values.device_session_id
        row.service_name = values.service_name
        row.access_token = values.access_token
        row.refresh_token = values.refresh_token
        row.expires_at = values.expires_at
        row.status = CONNECTION_STATUS_ACTIVE
        row.service_metadata = dict(values.service_metadata)
        row.updated_at = now
        return row

    async def get(self, device_session_id: str, service_name: str) -> Connection | None:
        return self.rows.get((device_session_id, service_name))

    async def list_for_session(self, device_session_id: str) -> list[Connection]:
        return [row for key, row in self.rows.items() if key[0] == device_session_id]

    async def delete(self, device_session_id: str, service_name: str) -> bool:
        return self.rows.pop((device_session_id, service_name), None) is not None


class InMemoryGatewayStore:
    """Dict-backed store honoring upsert keys and device session cascades."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock or FakeClock()
        self.device_sessions = _MemoryDeviceSessions(self)
        self.cli_sessions = _MemoryCliSessions()
        self.oauth_states = _MemoryOAuthStates()
        self.connections = _MemoryConnections(self.clock)
        self.commit_count = 0
        self.rollback_count = 0

    async def commit(self) -> None:
        self.commit_count += 1

    async def rollback(self) -> None:
        self.rollback_count += 1

    def add_device_session(self, device_session_id: str = "kaysession_1_abc") -> DeviceSession:
        now = self.clock()
        row = DeviceSession(id=device_session_id, created_at=now, updated_at=now)
        self.device_sessions.rows[row.id] = row
        return row


def _generate_rsa_keypair() -> tuple[str, str]:
    """Generate PEM-encoded RSA private/public keypair."""
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


@pytest.fixture(scope="session")
def rsa_keypair() -> tuple[str, str]:
    return _generate_rsa_keypair()


@pytest.fixture
def jwt_service(rsa_keypair: tuple[str, str]) -> JWTService:
    private_pem, public_pem = rsa_keypair
    return JWTService(private_key_pem=private_pem, public_key_pem=public_pem)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryGatewayStore:
    return InMemoryGatewayStore(clock)
