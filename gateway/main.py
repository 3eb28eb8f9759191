"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from gateway.config import configure_structlog, get_settings
from gateway.core.credentials import get_provider_client_cache
from gateway.core.oauth_state import OAuthStateSweeper, get_oauth_state_broker
from gateway.core.providers import get_bitbucket_client, get_kyg_client
from gateway.db.session import dispose_engine
from gateway.db.store import open_store
from gateway.error_handlers import register_exception_handlers
from gateway.middleware.correlation_id import CorrelationIdMiddleware
from gateway.middleware.logging import LoggingMiddleware
from gateway.middleware.rate_limit import RateLimitMiddleware
from gateway.routers import connections, oauth, session

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Run the periodic OAuth state and client sweep; release pooled resources on shutdown."""
    settings = get_settings()
    sweeper = OAuthStateSweeper(
        broker=get_oauth_state_broker(),
        store_factory=open_store,
        interval_seconds=settings.oauth_state.sweep_interval_seconds,
        client_cache=get_provider_client_cache(),
    )
    sweeper.start()
    app.state.oauth_state_sweeper = sweeper
    logger.info("gateway_started", service=settings.app.service)
    try:
        yield
    finally:
        await sweeper.stop()
        await get_provider_client_cache().aclose()
        await get_bitbucket_client().aclose()
        await get_kyg_client().aclose()
        await dispose_engine()
        logger.info("gateway_stopped", service=settings.app.service)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    configure_structlog(settings)

    app = FastAPI(title=settings.app.service, lifespan=lifespan)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    register_exception_handlers(app, settings.app.environment)

    app.include_router(session.router)
    app.include_router(connections.router)
    app.include_router(oauth.router)
    return app


app = create_app()
