"""Per-(device session, service) credential storage and status projection."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

import structlog

from gateway.core.metadata import ConnectionMetadata, MetadataError, dump_metadata, load_metadata
from gateway.core.providers import ProviderTokens
from gateway.core.registry import (
    ServiceName,
    TokenMaterial,
    is_dependent_mirror,
    mirror_of,
    shares_credential,
)
from gateway.db.store import ConnectionValues, GatewayStore
from gateway.models import Connection

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def new_connection_id() -> str:
    """Generate an opaque connection identifier."""
    return f"conn_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


@dataclass(frozen=True)
class ServiceStatus:
    """Read-only connection summary for one service."""

    connected: bool
    user: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"connected": self.connected}
        if self.user:
            payload["user"] = self.user
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


def metadata_for(connection: Connection) -> ConnectionMetadata:
    """Parse a connection's stored metadata into its typed variant."""
    return load_metadata(connection.service_metadata)


class ConnectionStore:
    """Upsert, read, and remove connections while keeping mirrored services in step."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._now = clock or _utcnow

    async def store(
        self,
        db: GatewayStore,
        device_session_id: str,
        service_name: ServiceName,
        access_token: str,
        metadata: ConnectionMetadata,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
    ) -> Connection:
        """Upsert a connection and propagate it to a dependent mirror."""
        values = ConnectionValues(
            id=new_connection_id(),
            device_session_id=device_session_id,
            service_name=service_name.value,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            service_metadata=dump_metadata(metadata),
        )
        try:
            existing = await db.connections.get(device_session_id, values.service_name)
            previous = TokenMaterial.of(existing)
            row = await db.connections.upsert(values)
            sibling_name = mirror_of(service_name)
            if sibling_name is not None:
                sibling = await db.connections.get(device_session_id, sibling_name.value)
                if is_dependent_mirror(previous, sibling):
                    await db.connections.upsert(
                        replace(values, id=new_connection_id(), service_name=sibling_name.value)
                    )
                    logger.info(
                        "connection_mirrored",
                        device_session_id=device_session_id,
                        service=service_name.value,
                        mirror=sibling_name.value,
                    )
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        logger.info(
            "connection_stored", device_session_id=device_session_id, service=service_name.value
        )
        return row

    async def get(
        self, db: GatewayStore, device_session_id: str, service_name: ServiceName
    ) -> Connection | None:
        """Point lookup with no refresh side effects."""
        return await db.connections.get(device_session_id, service_name.value)

    async def delete(
        self, db: GatewayStore, device_session_id: str, service_name: ServiceName
    ) -> bool:
        """Delete exactly one connection row; report whether it existed."""
        try:
            removed = await db.connections.delete(device_session_id, service_name.value)
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        return removed

    async def disconnect(
        self, db: GatewayStore, device_session_id: str, service_name: ServiceName
    ) -> list[ServiceName]:
        """Delete a connection and any mirror still holding its credential."""
        removed: list[ServiceName] = []
        try:
            primary = await db.connections.get(device_session_id, service_name.value)
            if primary is None:
                return removed
            material = TokenMaterial.of(primary)
            sibling_name = mirror_of(service_name)
            if sibling_name is not None:
                sibling = await db.connections.get(device_session_id, sibling_name.value)
                if shares_credential(material, sibling):
                    await db.connections.delete(device_session_id, sibling_name.value)
                    removed.append(sibling_name)
            await db.connections.delete(device_session_id, service_name.value)
            removed.insert(0, service_name)
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        logger.info(
            "connection_disconnected",
            device_session_id=device_session_id,
            services=[service.value for service in removed],
        )
        return removed

    async def update_tokens(
        self, db: GatewayStore, connection: Connection, tokens: ProviderTokens
    ) -> Connection:
        """Persist refreshed tokens, carrying a dependent mirror along."""
        try:
            before = TokenMaterial.of(connection)
            targets = [connection]
            sibling_name = mirror_of(ServiceName(connection.service_name))
            if sibling_name is not None:
                sibling = await db.connections.get(connection.device_session_id, sibling_name.value)
                if sibling is not None and shares_credential(before, sibling):
                    targets.append(sibling)
            now = self._now()
            for row in targets:
                row.access_token = tokens.access_token
                row.refresh_token = tokens.refresh_token or row.refresh_token
                row.expires_at = tokens.expires_at
                row.updated_at = now
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        return connection

    async def get_status(
        self, db: GatewayStore, device_session_id: str
    ) -> dict[str, ServiceStatus]:
        """Project every known service onto a connected/user/metadata summary."""
        stored = await db.connections.list_for_session(device_session_id)
        rows = {row.service_name: row for row in stored}
        statuses: dict[str, ServiceStatus] = {}
        for service in ServiceName:
            row = rows.get(service.value)
            if row is None:
                statuses[service.value] = ServiceStatus(connected=False)
                continue
            try:
                metadata = metadata_for(row)
            except MetadataError:
                logger.warning(
                    "connection_metadata_unreadable",
                    device_session_id=device_session_id,
                    service=service.value,
                )
                statuses[service.value] = ServiceStatus(connected=True)
                continue
            statuses[service.value] = ServiceStatus(
                connected=True,
                user=metadata.user_summary(),
                metadata=metadata.status_metadata() or None,
            )
        return statuses


@lru_cache
def get_connection_store() -> ConnectionStore:
    """Create and cache the connection store."""
    return ConnectionStore()
