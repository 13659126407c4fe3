"""Health check endpoint.

Learn: Reports the realtime core's own state (accepting, connections,
per-feed status) plus reachability of the integrations that are enabled
(Postgres for change feeds, Redis for the broadcast relay). A feed that
is reconnecting shows up as "degraded" here instead of failing silently.
"""

from fastapi import APIRouter, Request
from sqlalchemy import text

from compliance_realtime import __version__
from compliance_realtime.config import settings

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        checks["realtime"] = "error: gateway not running"
    else:
        gw = gateway.health()
        checks["realtime"] = "degraded" if gw["degraded"] else "ok"
        checks["connections"] = gw["connections"]
        checks["feeds"] = gw["feeds"]

    # Check Postgres
    if settings.change_feed_enabled:
        try:
            from compliance_realtime.db.engine import engine

            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            checks["postgres"] = "ok"
        except Exception as e:
            checks["postgres"] = f"error: {e}"

    # Check Redis
    if settings.redis_relay_enabled:
        try:
            from redis.asyncio import from_url

            r = from_url(settings.redis_url)
            await r.ping()
            await r.aclose()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {e}"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k in ("server", "realtime", "postgres", "redis")
    ) else "degraded"

    return {"status": status, **checks}
