"""
RequestLoggingMiddleware — one log line per relay request.

    • X-Request-ID is reused when the caller sent a well-formed one,
      otherwise generated, and always echoed on the response
    • The log context is tagged with the request id, method and endpoint,
      the dispatcher badge (X-Badge-Id, never the secret) and the alert
      id of /api/v1/alerts/{id}/... paths
    • X-Process-Time response header
    • Health checks and docs are timed but not logged
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from sos_relay.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")
_ALERT_PATH = re.compile(r"^/api/v1/alerts/(?P<alert_id>[^/]+)")
# Fixed routes under /api/v1/alerts/ that are not alert ids
_ALERT_ROUTES = frozenset({"feed", "stats", "escalation", "sms-handoff"})
_UNLOGGED_PREFIXES = ("/health", "/docs", "/redoc", "/openapi", "/favicon")


def request_id_for(request: Request) -> str:
    supplied = request.headers.get("X-Request-ID", "")
    return supplied if _REQUEST_ID.match(supplied) else uuid.uuid4().hex[:16]


def alert_id_for(path: str) -> Optional[str]:
    match = _ALERT_PATH.match(path)
    if match and match.group("alert_id") not in _ALERT_ROUTES:
        return match.group("alert_id")
    return None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag the request's log context, time it and log the outcome."""

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        request_id = request_id_for(request)
        badge_id = request.headers.get("X-Badge-Id") or None

        set_request_context(
            request_id=request_id,
            method=request.method,
            endpoint=path,
            badge_id=badge_id,
            alert_id=alert_id_for(path),
        )
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "%s %s → 500 (%.1fms)",
                request.method, path, (time.perf_counter() - start) * 1000,
                extra={"status_code": 500},
            )
            set_request_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not path.startswith(_UNLOGGED_PREFIXES):
            logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                "%s %s → %d (%.1fms)",
                request.method, path, response.status_code, duration_ms,
                extra={"duration_ms": duration_ms, "status_code": response.status_code},
            )

        set_request_context()
        return response
