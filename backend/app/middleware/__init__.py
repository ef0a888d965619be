"""Middleware module initialization."""

from app.middleware.audit_logger import AuditLoggerMiddleware
from app.middleware.prometheus import PrometheusMiddleware
from app.middleware.request_id import RequestIdMiddleware

__all__ = [
    "AuditLoggerMiddleware",
    "PrometheusMiddleware",
    "RequestIdMiddleware",
]
