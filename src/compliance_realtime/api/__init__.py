"""API route aggregation.

All routers registered here get mounted in main.py.

Learn: Auth is applied at the include_router level using FastAPI's
dependencies parameter. This protects all routes in each router
without modifying individual handlers. Health is open.
"""

from fastapi import APIRouter, Depends

from compliance_realtime.api.health import router as health_router
from compliance_realtime.api.realtime import router as realtime_router
from compliance_realtime.auth.dependencies import get_current_user

_auth = [Depends(get_current_user)]

api_router = APIRouter(prefix="/api/v1")

# Open routes: no auth required
api_router.include_router(health_router, tags=["health"])

# Protected routes: require a valid JWT
api_router.include_router(realtime_router, tags=["realtime"], dependencies=_auth)
