"""FastAPI dependencies."""

from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from stocksync.config import settings
from stocksync.context import SyncContext
from stocksync.services import AppServices


def get_services(request: Request) -> AppServices:
    """Services wired up in the application lifespan."""
    return request.app.state.services


def get_sync_context(services: AppServices = Depends(get_services)) -> SyncContext:
    """Fresh per-request context over the shared services."""
    return services.context()


async def get_database(
    services: AppServices = Depends(get_services),
) -> AsyncIterator[AsyncSession]:
    """Dependency for database session."""
    async with services.session_factory() as session:
        yield session


async def require_admin_api_key(
    x_admin_api_key: str = Header(..., alias="X-Admin-API-Key")
) -> None:
    """
    Dependency to require admin API key for protected endpoints.

    Args:
        x_admin_api_key: Admin API key from X-Admin-API-Key header

    Raises:
        HTTPException: 503 if no key is configured, 403 if invalid
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured"
        )

    if x_admin_api_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )
