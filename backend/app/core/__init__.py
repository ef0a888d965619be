"""Core module initialization."""

from app.core.config import settings
from app.core.database import engine, get_db, async_session_factory
from app.core.exceptions import (
    ExportServiceError,
    ValidationError,
    NotFoundError,
    ConflictError,
    UnsupportedFormatError,
    StorageError,
    EncodingError,
    ExportTimeoutError,
    ExportCancelledError,
    ExportNotReadyError,
    ExportFailedError,
    ExportExpiredError,
)

__all__ = [
    "settings",
    "engine",
    "get_db",
    "async_session_factory",
    "ExportServiceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "UnsupportedFormatError",
    "StorageError",
    "EncodingError",
    "ExportTimeoutError",
    "ExportCancelledError",
    "ExportNotReadyError",
    "ExportFailedError",
    "ExportExpiredError",
]
