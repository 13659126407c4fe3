"""Request ID middleware — unique ID per HTTP request for tracing.

Learn: Every request gets an ID, either from the incoming X-Request-ID
header (so a broadcast triggered by the REST layer can be traced back to
the request that caused it) or auto-generated. The ID is bound to
structlog's contextvars so it appears in every log entry for that
request, including the realtime.update_broadcast entries, and is echoed
in the response header.

WebSocket connections don't pass through here — BaseHTTPMiddleware only
handles http scopes. They carry connection_id in their log context instead.
"""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Generate and propagate a unique request ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        try:
            response: Response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        response.headers["X-Request-ID"] = request_id
        return response
