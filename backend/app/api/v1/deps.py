"""
Shared API dependencies.
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.database import get_db, get_session_factory
from app.services.export_coordinator import ExportContext


async def get_requester_id(request: Request) -> str:
    """Caller identity from the requester header; authentication happens upstream."""
    requester_id = (request.headers.get(settings.REQUESTER_HEADER) or "").strip()
    if not requester_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {settings.REQUESTER_HEADER} header",
        )
    request.state.user_id = requester_id
    return requester_id


async def get_optional_requester_id(request: Request) -> Optional[str]:
    requester_id = (request.headers.get(settings.REQUESTER_HEADER) or "").strip()
    return requester_id or None


async def get_export_context(
    request: Request,
    requester_id: str = Depends(get_requester_id),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> ExportContext:
    return ExportContext(
        requester_id=requester_id,
        session=db,
        session_factory=session_factory,
        request_id=getattr(request.state, "request_id", None),
    )
