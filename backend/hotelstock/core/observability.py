"""
Observability middleware.

Provides:
- Correlation ID tracking across requests
- Request/response logging with timing

Every request gets a correlation ID (taken from the X-Correlation-ID header
or generated), which is echoed back in the response headers.
"""

import time
import uuid
import logging
from contextvars import ContextVar
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware


correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

logger = logging.getLogger("hotelstock.requests")


def get_correlation_id() -> Optional[str]:
    """Get current correlation ID from context."""
    return correlation_id_var.get()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Attach a correlation ID to every request and response."""

    HEADER_NAME = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        correlation_id_var.set(correlation_id)

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log request details, timing, and response status."""

    EXCLUDED_PATHS = {"/health", "/favicon.ico"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXCLUDED_PATHS:
            return await call_next(request)

        start_time = time.time()
        correlation_id = get_correlation_id() or "no-correlation-id"

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                f"[{correlation_id}] {request.method} {request.url.path} "
                f"failed after {duration_ms:.2f}ms: {str(e)}",
                extra={
                    "correlation_id": correlation_id,
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": duration_ms,
                },
                exc_info=True,
            )
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"[{correlation_id}] {request.method} {request.url.path} "
            f"completed {response.status_code} in {duration_ms:.2f}ms",
            extra={
                "correlation_id": correlation_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return response
