"""
Prometheus Metrics Middleware
Collects metrics on HTTP requests plus snapshot and export pipeline counters
"""

import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from prometheus_client import Counter, Histogram
from prometheus_client import CollectorRegistry

# Create a global registry for metrics
metrics_registry = CollectorRegistry()

# HTTP Metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status'],
    registry=metrics_registry
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.075, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
    registry=metrics_registry
)

# Error Metrics
errors_total = Counter(
    'errors_total',
    'Total errors by type',
    ['error_type', 'endpoint'],
    registry=metrics_registry
)

# Snapshot Metrics
snapshots_created_total = Counter(
    'form_snapshots_created_total',
    'Total form schema snapshots created',
    registry=metrics_registry
)

snapshot_version_conflicts_total = Counter(
    'form_snapshot_version_conflicts_total',
    'Version allocations lost to a concurrent writer',
    registry=metrics_registry
)

# Export Metrics
exports_total = Counter(
    'submission_exports_total',
    'Submission exports by format, mode and outcome',
    ['format', 'mode', 'outcome'],
    registry=metrics_registry
)

export_rows = Histogram(
    'submission_export_rows',
    'Rows written per export',
    ['format'],
    buckets=(0, 10, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000),
    registry=metrics_registry
)

export_warnings_total = Counter(
    'submission_export_warnings_total',
    'Values replaced with a placeholder during encoding',
    ['format'],
    registry=metrics_registry
)

# Job Metrics
celery_tasks_total = Counter(
    'celery_tasks_total',
    'Total Celery tasks',
    ['task_name', 'status'],
    registry=metrics_registry
)

celery_task_duration_seconds = Histogram(
    'celery_task_duration_seconds',
    'Celery task duration in seconds',
    ['task_name'],
    registry=metrics_registry
)


def _endpoint_label(request: Request) -> str:
    # Label by route template so per-job paths share one series.
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Counts and times HTTP requests, labelled by route template
    (``/api/v1/exports/{job_id}/status`` rather than the concrete job id).
    """

    SKIP_ENDPOINTS = ('/health', '/metrics', '/docs', '/openapi.json', '/redoc')

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith(self.SKIP_ENDPOINTS):
            return await call_next(request)

        start_time = time.perf_counter()
        method = request.method

        try:
            response = await call_next(request)
        except Exception as exc:
            endpoint = _endpoint_label(request)
            errors_total.labels(error_type=type(exc).__name__, endpoint=endpoint).inc()
            http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(
                time.perf_counter() - start_time
            )
            raise

        duration = time.perf_counter() - start_time
        endpoint = _endpoint_label(request)
        http_requests_total.labels(method=method, endpoint=endpoint, status=response.status_code).inc()
        http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)

        response.headers["X-Response-Time"] = f"{duration:.4f}"
        return response


# Metric update functions for application events

def record_snapshot_created() -> None:
    """Record a new form schema snapshot"""
    snapshots_created_total.inc()


def record_snapshot_conflict() -> None:
    """Record a lost version allocation race"""
    snapshot_version_conflicts_total.inc()


def record_export(fmt: str, mode: str, outcome: str, rows: int = 0, warnings: int = 0) -> None:
    """Record a finished (or abandoned) export"""
    exports_total.labels(format=fmt, mode=mode, outcome=outcome).inc()
    if outcome == "complete":
        export_rows.labels(format=fmt).observe(rows)
    if warnings:
        export_warnings_total.labels(format=fmt).inc(warnings)


def record_celery_task(task_name: str, success: bool, duration: float) -> None:
    """Record a Celery task execution"""
    status = "success" if success else "failure"
    celery_tasks_total.labels(task_name=task_name, status=status).inc()
    celery_task_duration_seconds.labels(task_name=task_name).observe(duration)


def record_error(error_type: str, endpoint: str) -> None:
    """Record an application error"""
    errors_total.labels(error_type=error_type, endpoint=endpoint).inc()
