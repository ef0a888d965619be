"""
Metrics API Route
Serves the HTTP, snapshot and export counters in Prometheus text format.
"""

from fastapi import APIRouter, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from app.middleware.prometheus import metrics_registry

router = APIRouter(tags=["metrics"])


@router.get("/metrics", include_in_schema=False)
async def metrics():
    payload = generate_latest(metrics_registry)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
