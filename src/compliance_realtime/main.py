"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan owns the realtime gateway: it is constructed at
startup, stored on app.state (no module-level registry), and torn down
at shutdown. Change feeds connect in the background, so the server
starts even while Postgres is unreachable and reports "degraded" on
/api/v1/health until the feeds come up.
"""

from contextlib import asynccontextmanager
from functools import partial
from typing import Mapping, Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from compliance_realtime import __version__
from compliance_realtime.api import api_router
from compliance_realtime.config import settings
from compliance_realtime.logs import configure_logging
from compliance_realtime.realtime.events import SourceKind
from compliance_realtime.realtime.feeds import ChangeFeed, PostgresChangeFeed
from compliance_realtime.realtime.gateway import RealTimeGateway

logger = structlog.get_logger()


def build_feeds() -> dict[SourceKind, ChangeFeed]:
    """One PG LISTEN feed per watched table."""
    dsn = settings.asyncpg_dsn
    return {
        SourceKind.METRICS: PostgresChangeFeed(dsn, settings.metrics_channel),
        SourceKind.ISSUES: PostgresChangeFeed(dsn, settings.issues_channel),
        SourceKind.NOTIFICATIONS: PostgresChangeFeed(dsn, settings.notifications_channel),
    }


@asynccontextmanager
async def lifespan(app: FastAPI, feeds: Optional[Mapping[SourceKind, ChangeFeed]] = None):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown. `feeds` lets tests plug in in-memory change feeds.
    """
    logger.info(
        "compliance_rt.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
        ws_path=settings.ws_path,
    )

    if feeds is None:
        feeds = build_feeds() if settings.change_feed_enabled else {}
    gateway = RealTimeGateway.from_settings(settings, feeds)

    # Redis relay is optional; without it only in-process broadcasts work
    from compliance_realtime.realtime.pubsub import BroadcastRelay, close_redis, init_redis
    if settings.redis_relay_enabled:
        try:
            redis = await init_redis()
            gateway.attach_relay(BroadcastRelay(redis, gateway.publish))
            logger.info("compliance_rt.redis_connected", url=settings.redis_url)
        except Exception as e:
            logger.warning("compliance_rt.redis_unavailable", error=str(e))

    await gateway.start()
    app.state.gateway = gateway

    yield

    # Shutdown
    logger.info("compliance_rt.shutdown")
    await gateway.stop()
    app.state.gateway = None

    await close_redis()

    if settings.change_feed_enabled:
        from compliance_realtime.db.engine import engine
        await engine.dispose()


def create_app(feeds: Optional[Mapping[SourceKind, ChangeFeed]] = None) -> FastAPI:
    """Build and return the FastAPI application."""
    configure_logging(settings.log_level, settings.log_json)

    app = FastAPI(
        title="Compliance Real-Time Service",
        description="Live compliance metric, issue and quality updates over WebSockets",
        version=__version__,
        lifespan=partial(lifespan, feeds=feeds),
    )

    # ── Middleware stack ──────────────────────────────────────
    from compliance_realtime.middleware.request_id import RequestIdMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount API routes
    app.include_router(api_router)

    # Mount WebSocket route (path is deployment config)
    from compliance_realtime.realtime.websocket import realtime_websocket
    app.add_api_websocket_route(settings.ws_path, realtime_websocket)

    return app


# Default app instance (used by uvicorn: compliance_realtime.main:app)
app = create_app()
