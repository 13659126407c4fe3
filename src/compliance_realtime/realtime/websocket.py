"""WebSocket endpoint — real-time compliance updates for dashboard clients.

Learn: Each client connects to {settings.ws_path}?token=JWT. The handler:
1. Authenticates via JWT query param (required outside development)
2. Accepts the socket and hands it to the gateway
3. The gateway registers it, sends a welcome frame, and runs the
   inbound control protocol until the client disconnects or is evicted

The path is deployment configuration, so main.py mounts this endpoint
with add_api_websocket_route instead of a decorator.
"""

from typing import Optional

import structlog
from fastapi import WebSocket

from compliance_realtime.auth.jwt import TokenError, verify_token
from compliance_realtime.config import settings
from compliance_realtime.realtime.connection import (
    CLOSE_TRY_AGAIN_LATER,
    CLOSE_UNAUTHORIZED,
    WebSocketTransport,
)

logger = structlog.get_logger()


async def realtime_websocket(websocket: WebSocket):
    """WebSocket endpoint for real-time compliance events."""
    # ── Authentication ──────────────────────────────────────
    token = websocket.query_params.get("token")
    user_id: Optional[str] = None

    if not token and settings.environment != "development":
        await websocket.close(code=CLOSE_UNAUTHORIZED, reason="Authentication required")
        return

    if token:
        try:
            payload = verify_token(token)
        except TokenError as e:
            logger.info("realtime.auth_failed", error=str(e))
            await websocket.close(code=CLOSE_UNAUTHORIZED, reason="Invalid or expired token")
            return
        user_id = payload.get("sub")

    gateway = getattr(websocket.app.state, "gateway", None)
    if gateway is None:
        await websocket.close(code=CLOSE_TRY_AGAIN_LATER, reason="Service unavailable")
        return

    # ── Connection accepted ─────────────────────────────────
    await websocket.accept()
    await gateway.serve(WebSocketTransport(websocket), user_id=user_id)
