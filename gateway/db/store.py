"""Repository interface over the durable store and its SQLAlchemy implementation."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.db.session import get_session_factory
from gateway.models import (
    CONNECTION_STATUS_ACTIVE,
    CliSession,
    Connection,
    DeviceSession,
    OAuthState,
)


@dataclass(frozen=True)
class ConnectionValues:
    """Column values written by a connection upsert."""

    id: str
    device_session_id: str
    service_name: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    service_metadata: dict[str, Any] = field(default_factory=dict)


class DeviceSessionRepository(Protocol):
    """Persistence operations for device sessions."""

    async def add(self, row: DeviceSession) -> None: ...

    async def get(self, device_session_id: str) -> DeviceSession | None: ...

    async def delete(self, device_session_id: str) -> bool: ...


class CliSessionRepository(Protocol):
    """Persistence operations for CLI bearer sessions."""

    async def add(self, row: CliSession) -> None: ...

    async def get_by_refresh_hash(self, refresh_token_hash: str) -> CliSession | None: ...

    async def get_by_session_hash(self, session_token_hash: str) -> CliSession | None: ...

    async def delete(self, row: CliSession) -> None: ...

    async def delete_by_session_hash(self, session_token_hash: str) -> bool: ...

    async def delete_for_device_session(self, device_session_id: str) -> int: ...

    async def delete_expired(self, now: datetime) -> int: ...


class OAuthStateRepository(Protocol):
    """Persistence operations for OAuth state records."""

    async def add(self, row: OAuthState) -> None: ...

    async def get(self, state: str) -> OAuthState | None: ...

    async def delete(self, state: str) -> bool: ...

    async def delete_expired(self, now: datetime) -> int: ...


class ConnectionRepository(Protocol):
    """Persistence operations for service connections."""

    async def upsert(self, values: ConnectionValues) -> Connection: ...

    async def get(self, device_session_id: str, service_name: str) -> Connection | None: ...

    async def list_for_session(self, device_session_id: str) -> list[Connection]: ...

    async def delete(self, device_session_id: str, service_name: str) -> bool: ...


class GatewayStore(Protocol):
    """Unit of work exposing every repository over one transaction."""

    device_sessions: DeviceSessionRepository
    cli_sessions: CliSessionRepository
    oauth_states: OAuthStateRepository
    connections: ConnectionRepository

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


class _SqlDeviceSessions:
    """SQLAlchemy device session repository."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def add(self, row: DeviceSession) -> None:
        self._db.add(row)
        await self._db.flush()

    async def get(self, device_session_id: str) -> DeviceSession | None:
        return await self._db.get(DeviceSession, device_session_id)

    async def delete(self, device_session_id: str) -> bool:
        result = await self._db.execute(
            delete(DeviceSession).where(DeviceSession.id == device_session_id)
        )
        return bool(result.rowcount)


class _SqlCliSessions:
    """SQLAlchemy CLI session repository."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def add(self, row: CliSession) -> None:
        self._db.add(row)
        await self._db.flush()

    async def get_by_refresh_hash(self, refresh_token_hash: str) -> CliSession | None:
        statement = (
            select(CliSession)
            .where(CliSession.hashed_refresh_token == refresh_token_hash)
            .with_for_update()
        )
        result = await self._db.execute(statement)
        return result.scalar_one_or_none()

    async def get_by_session_hash(self, session_token_hash: str) -> CliSession | None:
        statement = select(CliSession).where(
            CliSession.hashed_session_token == session_token_hash
        )
        result = await self._db.execute(statement)
        return result.scalar_one_or_none()

    async def delete(self, row: CliSession) -> None:
        await self._db.delete(row)
        await self._db.flush()

    async def delete_by_session_hash(self, session_token_hash: str) -> bool:
        result = await self._db.execute(
            delete(CliSession).where(CliSession.hashed_session_token == session_token_hash)
        )
        return bool(result.rowcount)

    async def delete_for_device_session(self, device_session_id: str) -> int:
        result = await self._db.execute(
            delete(CliSession).where(CliSession.device_session_id == device_session_id)
        )
        return int(result.rowcount or 0)

    async def delete_expired(self, now: datetime) -> int:
        result = await self._db.execute(delete(CliSession).where(CliSession.expires_at <= now))
        return int(result.rowcount or 0)


class _SqlOAuthStates:
    """SQLAlchemy OAuth state repository."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def add(self, row: OAuthState) -> None:
        self._db.add(row)
        await self._db.flush()

    async def get(self, state: str) -> OAuthState | None:
        return await self._db.get(OAuthState, state)

    async def delete(self, state: str) -> bool:
        result = await self._db.execute(delete(OAuthState).where(OAuthState.state == state))
        return bool(result.rowcount)

    async def delete_expired(self, now: datetime) -> int:
        result = await self._db.execute(delete(OAuthState).where(OAuthState.expires_at < now))
        return int(result.rowcount or 0)


class _SqlConnections:
    """SQLAlchemy connection repository using native Postgres upsert."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def upsert(self, values: ConnectionValues) -> Connection:
        statement = pg_insert(Connection).values(
            id=values.id,
            device_session_id=values.device_session_id,
            service_name=values.service_name,
            access_token=values.access_token,
            refresh_token=values.refresh_token,
            expires_at=values.expires_at,
            status=CONNECTION_STATUS_ACTIVE,
            service_metadata=values.service_metadata,
        )
        statement = statement.on_conflict_do_update(
            constraint="uq_connections_device_session_service",
            set_={
                "access_token": statement.excluded.access_token,
                "refresh_token": statement.excluded.refresh_token,
                "expires_at": statement.excluded.expires_at,
                "status": statement.excluded.status,
                "service_metadata": statement.excluded.service_metadata,
                "updated_at": func.now(),
            },
        )
        statement = statement.returning(Connection).execution_options(populate_existing=True)
        result = await self._db.scalars(statement)
        return result.one()

    async def get(self, device_session_id: str, service_name: str) -> Connection | None:
        statement = select(Connection).where(
            Connection.device_session_id == device_session_id,
            Connection.service_name == service_name,
        )
        result = await self._db.execute(statement)
        return result.scalar_one_or_none()

    async def list_for_session(self, device_session_id: str) -> list[Connection]:
        statement = select(Connection).where(Connection.device_session_id == device_session_id)
        result = await self._db.execute(statement)
        return list(result.scalars().all())

    async def delete(self, device_session_id: str, service_name: str) -> bool:
        result = await self._db.execute(
            delete(Connection).where(
                Connection.device_session_id == device_session_id,
                Connection.service_name == service_name,
            )
        )
        return bool(result.rowcount)


class SqlAlchemyGatewayStore:
    """Gateway store bound to one async SQLAlchemy session."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self.device_sessions = _SqlDeviceSessions(db_session)
        self.cli_sessions = _SqlCliSessions(db_session)
        self.oauth_states = _SqlOAuthStates(db_session)
        self.connections = _SqlConnections(db_session)

    async def commit(self) -> None:
        """Commit the underlying transaction."""
        await self._db.commit()

    async def rollback(self) -> None:
        """Roll back the underlying transaction."""
        await self._db.rollback()


@asynccontextmanager
async def open_store() -> AsyncIterator[SqlAlchemyGatewayStore]:
    """Open a standalone store for background jobs and CLI commands."""
    session_factory = get_session_factory()
    async with session_factory() as db_session:
        yield SqlAlchemyGatewayStore(db_session)
