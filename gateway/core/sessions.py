"""Device session issuance and CLI bearer session lifecycle."""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from hashlib import sha256
from typing import Any

import structlog

from gateway.config import get_settings
from gateway.core.jwt import JWTService, TokenValidationError, get_jwt_service
from gateway.db.store import GatewayStore
from gateway.errors import ErrorCode, GatewayError
from gateway.models import CliSession, DeviceSession

logger = structlog.get_logger(__name__)

DEVICE_SESSION_PREFIX = "kaysession"


class SessionStateError(GatewayError):
    """Raised when a CLI session cannot be issued, refreshed, or authenticated."""


@dataclass(frozen=True)
class IssuedSession:
    """Result of a new device session with its first bearer pair."""

    device_session_id: str
    session_token: str
    refresh_token: str
    expires_at: datetime
    session_expires_at: datetime


@dataclass(frozen=True)
class RotatedSession:
    """Result of a refresh: a new session token over the same refresh token."""

    session_token: str
    refresh_token: str
    expires_at: datetime
    session_expires_at: datetime


@dataclass(frozen=True)
class AuthenticatedSession:
    """Caller identity established from a verified, unrevoked session token."""

    device_session_id: str
    claims: dict[str, Any]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def new_device_session_id() -> str:
    """Generate an opaque device session identifier."""
    return f"{DEVICE_SESSION_PREFIX}_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


class SessionManager:
    """Issue, rotate, verify, and revoke CLI sessions bound to device sessions."""

    def __init__(
        self,
        jwt_service: JWTService,
        session_token_ttl_seconds: int,
        refresh_token_ttl_seconds: int,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._jwt_service = jwt_service
        self._session_token_ttl_seconds = session_token_ttl_seconds
        self._refresh_token_ttl_seconds = refresh_token_ttl_seconds
        self._now = clock or _utcnow

    async def create_device_session(self, db: GatewayStore) -> DeviceSession:
        """Create a new anonymous device session row."""
        now = self._now()
        row = DeviceSession(id=new_device_session_id(), created_at=now, updated_at=now)
        await db.device_sessions.add(row)
        logger.info("device_session_created", device_session_id=row.id)
        return row

    async def get_device_session(
        self, db: GatewayStore, device_session_id: str | None
    ) -> DeviceSession | None:
        """Look up a device session, treating blank identifiers as missing."""
        if not device_session_id:
            return None
        return await db.device_sessions.get(device_session_id)

    async def init_session(self, db: GatewayStore, device_info: str | None = None) -> IssuedSession:
        """Create a new device session and its first session/refresh pair."""
        try:
            device_session = await self.create_device_session(db)
            issued = self._jwt_service.issue_session_token(
                device_session.id, self._session_token_ttl_seconds
            )
            raw_refresh_token = secrets.token_hex(32)
            now = self._now()
            row = CliSession(
                device_session_id=device_session.id,
                hashed_session_token=self._hash_token(issued.token),
                hashed_refresh_token=self._hash_token(raw_refresh_token),
                expires_at=now + timedelta(seconds=self._refresh_token_ttl_seconds),
                device_info=device_info,
                created_at=now,
                updated_at=now,
            )
            await db.cli_sessions.add(row)
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        return IssuedSession(
            device_session_id=device_session.id,
            session_token=issued.token,
            refresh_token=raw_refresh_token,
            expires_at=row.expires_at,
            session_expires_at=issued.expires_at,
        )

    async def refresh(self, db: GatewayStore, refresh_token: str) -> RotatedSession:
        """Issue a new session token in place; the refresh token itself is kept."""
        try:
            row = await db.cli_sessions.get_by_refresh_hash(self._hash_token(refresh_token))
            if row is None:
                raise SessionStateError("Invalid refresh token.", ErrorCode.TOKEN_INVALID)

            now = self._now()
            if now >= row.expires_at:
                await db.cli_sessions.delete(row)
                await db.commit()
                logger.info("cli_session_expired", device_session_id=row.device_session_id)
                raise SessionStateError("Refresh token has expired.", ErrorCode.TOKEN_EXPIRED)

            issued = self._jwt_service.issue_session_token(
                row.device_session_id, self._session_token_ttl_seconds
            )
            row.hashed_session_token = self._hash_token(issued.token)
            row.expires_at = now + timedelta(seconds=self._refresh_token_ttl_seconds)
            row.updated_at = now
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        logger.info("cli_session_refreshed", device_session_id=row.device_session_id)
        return RotatedSession(
            session_token=issued.token,
            refresh_token=refresh_token,
            expires_at=row.expires_at,
            session_expires_at=issued.expires_at,
        )

    async def revoke(self, db: GatewayStore, session_token: str) -> bool:
        """Delete the row for a session token whose signature is authentic."""
        try:
            self.verify(session_token)
        except TokenValidationError as exc:
            if exc.code != ErrorCode.TOKEN_EXPIRED:
                raise

        try:
            removed = await db.cli_sessions.delete_by_session_hash(self._hash_token(session_token))
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        logger.info("cli_session_revoked", removed=removed)
        return removed

    def verify(self, session_token: str) -> dict[str, Any]:
        """Check signature and expiry only."""
        return self._jwt_service.verify_token(session_token)

    async def authenticate(self, db: GatewayStore, session_token: str) -> AuthenticatedSession:
        """Verify the token and confirm its row has not been revoked."""
        claims = self.verify(session_token)
        row = await db.cli_sessions.get_by_session_hash(self._hash_token(session_token))
        if row is None:
            raise SessionStateError("Session has been revoked.", ErrorCode.TOKEN_INVALID)
        if self._now() >= row.expires_at:
            raise SessionStateError("Session has expired.", ErrorCode.TOKEN_EXPIRED)
        return AuthenticatedSession(
            device_session_id=str(claims["device_session_id"]),
            claims=claims,
        )

    async def purge_expired(self, db: GatewayStore) -> int:
        """Delete CLI sessions whose refresh window has closed."""
        try:
            deleted = await db.cli_sessions.delete_expired(self._now())
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        logger.info("cli_sessions_purged", deleted=deleted)
        return deleted

    async def teardown_device_session(self, db: GatewayStore, device_session_id: str) -> bool:
        """Delete a device session and its CLI sessions; connections and states cascade."""
        try:
            revoked = await db.cli_sessions.delete_for_device_session(device_session_id)
            removed = await db.device_sessions.delete(device_session_id)
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        logger.info(
            "device_session_deleted",
            device_session_id=device_session_id,
            removed=removed,
            revoked_cli_sessions=revoked,
        )
        return removed

    @staticmethod
    def _hash_token(raw_token: str) -> str:
        """Hash token with SHA-256 for persistent storage."""
        return sha256(raw_token.encode("utf-8")).hexdigest()


@lru_cache
def get_session_manager() -> SessionManager:
    """Create and cache the session manager."""
    settings = get_settings()
    return SessionManager(
        jwt_service=get_jwt_service(),
        session_token_ttl_seconds=settings.jwt.session_token_ttl_seconds,
        refresh_token_ttl_seconds=settings.jwt.refresh_token_ttl_seconds,
    )
