"""
CHEFS Export Service
====================

FastAPI entry point: snapshot and export routes, the metrics endpoint,
middleware and the error body renderer.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.responses import RedirectResponse

from app.api.v1.router import api_router
from app.api.v1.metrics import router as metrics_router
from app.core.config import settings
from app.core.database import engine, create_db_and_tables
from app.core.exceptions import ExportServiceError
from app.core.logging import configure_logging
from app.middleware.audit_logger import AuditLoggerMiddleware
from app.middleware.prometheus import PrometheusMiddleware, record_error
from app.middleware.request_id import RequestIdMiddleware
from app.schemas.base import ErrorResponse


logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"

# Headers browsers may read from a synchronous export download.
EXPOSED_HEADERS = ["Content-Disposition", "X-Export-Rows", "X-Export-Warnings", "X-Request-ID"]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    managed = settings.APP_ENV != "test"
    if managed:
        try:
            await create_db_and_tables()
        except Exception as e:
            logger.warning("Skipping table creation, database unavailable: %s", e)

    yield

    if managed:
        await engine.dispose()


async def export_service_error_handler(request: Request, exc: ExportServiceError) -> JSONResponse:
    """Render an ``ExportServiceError`` as ``ErrorResponse``; server-side ones are logged and counted."""
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.detail)
        record_error(type(exc).__name__, request.url.path)
    body = ErrorResponse(detail=exc.detail, code=exc.code, errors=exc.errors or None)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True))


def _install_middleware(app: FastAPI) -> None:
    # Last added runs first: Prometheus -> RequestId -> Audit -> CORS.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )
    app.add_middleware(AuditLoggerMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(PrometheusMiddleware)


def _install_routes(app: FastAPI) -> None:
    @app.get("/health", tags=["Health"])
    async def health_check():
        return {
            "status": "healthy",
            "app": settings.APP_NAME,
            "version": SERVICE_VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/", include_in_schema=False)
    async def root_redirect():
        return RedirectResponse(url="/docs")

    app.include_router(metrics_router)
    app.include_router(api_router, prefix=settings.API_PREFIX)


def create_application() -> FastAPI:
    configure_logging()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Form schema snapshots and submission exports",
        version=SERVICE_VERSION,
        openapi_url=f"{settings.API_PREFIX}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.add_exception_handler(ExportServiceError, export_service_error_handler)
    _install_middleware(app)
    _install_routes(app)
    return app


app = create_application()
