"""OAuth state broker and its background expiry sweep."""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any, Literal

import structlog

from gateway.config import get_settings
from gateway.core.token_cache import ProviderClientCache
from gateway.db.store import GatewayStore
from gateway.errors import GatewayError
from gateway.models import OAuthState

logger = structlog.get_logger(__name__)

StateStatus = Literal["pending", "complete"]


class OAuthStateError(GatewayError):
    """Raised when a callback presents an unusable state."""


@dataclass(frozen=True)
class ResolvedState:
    """Binding recorded for a live state."""

    device_session_id: str | None
    service_name: str | None


def _utcnow() -> datetime:
    return datetime.now(UTC)


class OAuthStateBroker:
    """Issue and consume single-use, time-boxed OAuth state tokens."""

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], datetime] | None = None) -> None:
        self._ttl_seconds = ttl_seconds
        self._now = clock or _utcnow

    def generate_state(self) -> str:
        """Generate an unguessable state token."""
        return secrets.token_urlsafe(32)

    async def create_state(
        self,
        db: GatewayStore,
        device_session_id: str | None = None,
        service_name: str | None = None,
    ) -> str:
        """Persist a new state, optionally pre-bound to a session and service."""
        now = self._now()
        state = self.generate_state()
        row = OAuthState(
            state=state,
            device_session_id=device_session_id,
            service_name=service_name,
            created_at=now,
            expires_at=now + timedelta(seconds=self._ttl_seconds),
        )
        try:
            await db.oauth_states.add(row)
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        return state

    async def resolve(self, db: GatewayStore, state: str) -> ResolvedState | None:
        """Return the binding of a live state; expired rows are deleted on read."""
        row = await self._load_live(db, state)
        if row is None:
            return None
        return ResolvedState(device_session_id=row.device_session_id, service_name=row.service_name)

    async def validate(self, db: GatewayStore, state: str) -> bool:
        """Return True while the state is live and unconsumed."""
        return await self._load_live(db, state) is not None

    async def remove(self, db: GatewayStore, state: str) -> bool:
        """Delete a state; safe to call for unknown states."""
        try:
            removed = await db.oauth_states.delete(state)
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        return removed

    async def complete(self, db: GatewayStore, state: str, account_id: str) -> bool:
        """Consume a live state and record the account it authorized."""
        row = await self._load_live(db, state)
        if row is None:
            return False
        row.account_id = account_id
        row.completed_at = self._now()
        await db.commit()
        return True

    async def status(self, db: GatewayStore, state: str) -> StateStatus | None:
        """Report flow progress for a polling client."""
        row = await db.oauth_states.get(state)
        if row is None or self._now() >= row.expires_at:
            return None
        return "complete" if row.completed_at is not None else "pending"

    async def sweep_expired(self, db: GatewayStore) -> int:
        """Delete every state past its expiry."""
        try:
            deleted = await db.oauth_states.delete_expired(self._now())
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        if deleted:
            logger.info("oauth_state_swept", deleted=deleted)
        return deleted

    async def _load_live(self, db: GatewayStore, state: str) -> OAuthState | None:
        """Load an unexpired, unconsumed state row."""
        if not state:
            return None
        row = await db.oauth_states.get(state)
        if row is None:
            return None
        if self._now() >= row.expires_at:
            await self.remove(db, state)
            return None
        if row.completed_at is not None:
            return None
        return row


class OAuthStateSweeper:
    """Periodically purge expired OAuth states on the running event loop.

    When a provider client cache is given, each pass also closes its expired clients.
    """

    def __init__(
        self,
        broker: OAuthStateBroker,
        store_factory: Callable[[], AbstractAsyncContextManager[GatewayStore]],
        interval_seconds: float = 300,
        client_cache: ProviderClientCache[Any] | None = None,
    ) -> None:
        self._broker = broker
        self._client_cache = client_cache
        self._store_factory = store_factory
        self._interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the sweep loop if it is not already running."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="oauth-state-sweeper")

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def sweep_once(self) -> int:
        """Run one sweep in its own store transaction."""
        async with self._store_factory() as db:
            return await self._broker.sweep_expired(db)

    async def purge_clients(self) -> int:
        """Close provider clients whose lifetime has passed."""
        if self._client_cache is None:
            return 0
        purged = await self._client_cache.purge_expired()
        if purged:
            logger.info("provider_clients_purged", purged=purged)
        return purged

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("oauth_state_sweep_failed")
            if self._client_cache is not None:
                try:
                    await self.purge_clients()
                except Exception:
                    logger.exception("provider_client_purge_failed")


@lru_cache
def get_oauth_state_broker() -> OAuthStateBroker:
    """Create and cache the OAuth state broker."""
    settings = get_settings()
    return OAuthStateBroker(ttl_seconds=settings.oauth_state.ttl_seconds)
