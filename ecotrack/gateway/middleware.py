"""
Ecotrack - Request Middleware

Wraps every request with:
- A request ID (caller-supplied X-Request-ID if short enough, else a UUID)
- Hardening headers on the response
- One access log line with status and timing

Request bodies and Authorization headers are never logged.
"""

import logging
import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


logger = logging.getLogger("ecotrack.access")

MAX_REQUEST_ID_LENGTH = 64

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}


def _request_id(request: Request) -> str:
    incoming = request.headers.get("X-Request-ID", "")
    if 0 < len(incoming) <= MAX_REQUEST_ID_LENGTH:
        return incoming
    return str(uuid.uuid4())


class SecurityMiddleware(BaseHTTPMiddleware):
    """
    Tags requests for tracing and hardens every response.

    Auth responses carry tokens, so ``Cache-Control: no-store`` is added
    unless the route set its own policy (the JWKS route does).
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = _request_id(request)
        request.state.request_id = request_id

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers["X-Request-ID"] = request_id
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        response.headers.setdefault("Cache-Control", "no-store")

        logger.info(
            "%s %s -> %d (%.1f ms) [%s]",
            request.method, request.url.path, response.status_code, elapsed_ms, request_id,
        )
        return response
