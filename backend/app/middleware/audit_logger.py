"""
Audit Logger Middleware
=======================

One structured log line per request: who asked, for what, and how it went.
Synchronous export downloads also record their row and warning counts.
"""

import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.config import settings
from app.core.logging import get_logger


logger = get_logger("audit")

QUIET_PATHS = frozenset({"/health", "/metrics", "/docs", "/redoc", "/openapi.json"})


def client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class AuditLoggerMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in QUIET_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)

        event = {
            "request_id": getattr(request.state, "request_id", "unknown"),
            "method": request.method,
            "path": request.url.path,
            "query": str(request.query_params),
            "status_code": response.status_code,
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
            "client_ip": client_ip(request),
        }
        requester = request.headers.get(settings.REQUESTER_HEADER)
        if requester:
            event["requester_id"] = requester
        rows = response.headers.get("X-Export-Rows")
        if rows is not None:
            event["export_rows"] = int(rows)
            event["export_warnings"] = int(response.headers.get("X-Export-Warnings", "0"))

        status = response.status_code
        log = logger.error if status >= 500 else logger.warning if status >= 400 else logger.info
        log("request_completed", **event)
        return response
