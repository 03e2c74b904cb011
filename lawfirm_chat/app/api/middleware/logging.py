"""
Request logging middleware.

Establishes a correlation ID for every HTTP request (taken from the
X-Correlation-ID header when the caller sends one), logs the request with its
outcome and duration, and echoes the correlation ID on the response.
WebSocket traffic is not routed through this middleware; the chat socket
sets its own correlation ID per connection.
"""

import time
import uuid
from typing import Callable, Optional, Set

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ...utils.logging import clear_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Correlation ID and access logging for HTTP requests."""

    def __init__(self, app: ASGIApp, excluded_paths: Optional[Set[str]] = None):
        super().__init__(app)
        self.excluded_paths = excluded_paths or {"/health", "/favicon.ico"}
        self.logger = get_logger("middleware.context")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER.lower()) or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            self.logger.error(
                "Request processing failed",
                method=request.method,
                path=request.url.path,
                error=str(exc),
                error_type=type(exc).__name__
            )
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000

        response.headers[CORRELATION_HEADER] = correlation_id
        if request.url.path not in self.excluded_paths:
            self.logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
                client_ip=request.client.host if request.client else "unknown"
            )
        clear_correlation_id()
        return response
