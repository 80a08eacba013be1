"""Request ID middleware for request tracing.

This middleware adds a unique request ID to each incoming request,
enabling request tracking across logs and responses.
"""

import time
import uuid
from typing import Optional

from fastapi import Request
from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from pollgate.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)


class RequestIdMiddleware:
    """ASGI middleware to add a request ID to all requests.

    The request ID is:
    1. Extracted from X-Request-ID header if present
    2. Generated as UUID if not present
    3. Added to request.state for access in endpoints
    4. Returned in X-Request-ID response header

    This implementation uses raw ASGI middleware so endpoints receive the
    server's own `receive` callable and can observe client disconnects.
    """

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID"):
        self.app = app
        self.header_name = header_name

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = Headers(scope=scope).get(self.header_name) or str(uuid.uuid4())
        # Starlette's request.state reads from scope["state"]
        scope.setdefault("state", {})["request_id"] = request_id

        status_code: Optional[int] = None

        async def send_with_request_id(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                message.setdefault("headers", [])
                MutableHeaders(scope=message)[self.header_name] = request_id
            await send(message)

        started = time.perf_counter()
        await self.app(scope, receive, send_with_request_id)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)

        logger.debug(
            f"{scope['method']} {scope['path']} -> {status_code}",
            extra=get_log_context(
                request_id=request_id,
                path=scope["path"],
                method=scope["method"],
                status_code=status_code,
                duration_ms=duration_ms,
            ),
        )


def get_request_id(request: Request) -> str:
    """Get request ID from request state."""
    return getattr(request.state, "request_id", "unknown")
