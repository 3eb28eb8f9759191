"""Process-local credential cache and provider client cache."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

import structlog
from cachetools import TTLCache

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CredentialBundle:
    """Named secret material for one service, ready for a downstream client."""

    service: str
    secrets: dict[str, str]

    def carries(self, value: str) -> bool:
        """Return True when any secret equals `value`."""
        return value in self.secrets.values()


class TokenCache:
    """Short-lived cache of resolved credential bundles.

    Purely advisory: entries may disappear at any time and callers re-resolve from the store.
    """

    def __init__(
        self,
        ttl_seconds: float = 300,
        maxsize: int = 1024,
        timer: Callable[[], float] | None = None,
    ) -> None:
        self._entries: TTLCache[tuple[str, str], CredentialBundle] = TTLCache(
            maxsize=maxsize, ttl=ttl_seconds, timer=timer or time.monotonic
        )

    def get(self, cache_key: str, service: str) -> CredentialBundle | None:
        return self._entries.get((cache_key, service))

    def put(self, cache_key: str, bundle: CredentialBundle) -> None:
        self._entries[(cache_key, bundle.service)] = bundle

    def invalidate(self, cache_key: str, service: str | None = None) -> int:
        """Drop entries for a cache key, optionally limited to one service."""
        keys = [
            key
            for key in list(self._entries.keys())
            if key[0] == cache_key and (service is None or key[1] == service)
        ]
        for key in keys:
            self._entries.pop(key, None)
        return len(keys)

    def invalidate_token(self, access_token: str) -> int:
        """Drop every entry built from a now-superseded access token."""
        keys = [key for key, bundle in list(self._entries.items()) if bundle.carries(access_token)]
        for key in keys:
            self._entries.pop(key, None)
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class ClosableClient(Protocol):
    """Resource that must be closed when dropped from the cache."""

    async def aclose(self) -> None: ...


ClientT = TypeVar("ClientT", bound=ClosableClient)


@dataclass
class _ClientEntry(Generic[ClientT]):
    client: ClientT
    expires_at: float


class ProviderClientCache(Generic[ClientT]):
    """TTL map of live provider clients that closes every evicted client."""

    def __init__(
        self,
        ttl_seconds: float = 1800,
        now: Callable[[], float] | None = None,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._now = now or time.monotonic
        self._entries: dict[Hashable, _ClientEntry[ClientT]] = {}
        self._lock = asyncio.Lock()

    async def get_or_create(
        self,
        key: Hashable,
        factory: Callable[[], Awaitable[ClientT]],
        ttl_seconds: float | None = None,
    ) -> ClientT:
        """Return a live cached client or build, cache, and return a new one."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._now() < entry.expires_at:
                return entry.client
            if entry is not None:
                del self._entries[key]
                await self._close(key, entry.client)

            client = await factory()
            lifetime = self._ttl_seconds
            if ttl_seconds is not None:
                lifetime = min(ttl_seconds, self._ttl_seconds)
            self._entries[key] = _ClientEntry(client=client, expires_at=self._now() + lifetime)
            return client

    async def evict(self, key: Hashable) -> bool:
        """Remove and close one client."""
        async with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return False
        await self._close(key, entry.client)
        return True

    async def evict_session(
        self, device_session_id: str, services: list[str] | None = None
    ) -> int:
        """Remove and close clients keyed by `(device_session_id, service)`."""
        async with self._lock:
            keys = [
                key
                for key in self._entries
                if isinstance(key, tuple)
                and key[0] == device_session_id
                and (services is None or key[1] in services)
            ]
            entries = [(key, self._entries.pop(key)) for key in keys]
        for key, entry in entries:
            await self._close(key, entry.client)
        return len(entries)

    async def purge_expired(self) -> int:
        """Close every client whose lifetime has passed."""
        async with self._lock:
            now = self._now()
            keys = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            entries = [(key, self._entries.pop(key)) for key in keys]
        for key, entry in entries:
            await self._close(key, entry.client)
        return len(entries)

    async def aclose(self) -> None:
        """Close and forget every cached client."""
        async with self._lock:
            entries = list(self._entries.items())
            self._entries.clear()
        for key, entry in entries:
            await self._close(key, entry.client)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    async def _close(key: Any, client: ClosableClient) -> None:
        try:
            await client.aclose()
        except Exception:
            logger.warning("provider_client_close_failed", cache_key=str(key), exc_info=True)
