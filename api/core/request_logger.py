"""
Access logging middleware.

One line per request with method, path, status, duration and client
address. Failed certificate operations are logged at WARNING/ERROR so
they stand out next to the service logs.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("proxy_tls_manager.access")

# Paths excluded from access logging to reduce noise
_EXCLUDED_PATHS = {"/health", "/docs", "/redoc", "/openapi.json", "/"}


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    """Logs every API request with its outcome and timing."""

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if path in _EXCLUDED_PATHS:
            return await call_next(request)

        start = time.monotonic()
        response: Response = await call_next(request)
        elapsed_ms = (time.monotonic() - start) * 1000

        logger.log(
            _level_for(response.status_code),
            "%s %s -> %d in %.1fms (client=%s)",
            request.method,
            path,
            response.status_code,
            elapsed_ms,
            request.client.host if request.client else "unknown",
        )
        return response
