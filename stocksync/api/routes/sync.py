"""Scan continuation API endpoints."""

import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from stocksync.api.deps import get_database, get_services, get_sync_context
from stocksync.context import SyncContext
from stocksync.db.cursor_store import CursorStore
from stocksync.ingest.errors import AuthExpiredError, CatalogSyncError
from stocksync.ingest.scanner import Scanner
from stocksync.services import AppServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


class ProgressResponse(BaseModel):
    current: int
    total: int
    percentage: int
    newInThisBatch: int
    processedInThisBatch: int
    updatedInThisBatch: int
    unchangedInThisBatch: int
    duplicatesInThisBatch: int
    failedInThisBatch: int


class SyncStepResponse(BaseModel):
    """Response model for one scan step."""
    success: bool
    message: str
    hasMore: bool
    scanCompleted: bool
    restarted: bool
    progress: ProgressResponse
    continueUrl: Optional[str]
    executionTime: float


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


def _error_response(status_code: int, start: float, error: Exception, **extra) -> JSONResponse:
    body = {
        "success": False,
        "error": type(error).__name__,
        "message": str(error),
        "retryable": getattr(error, "retryable", False),
        "executionTime": _elapsed_ms(start),
    }
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


@router.get("/next", response_model=SyncStepResponse)
async def sync_next(
    user_id: int = Query(..., description="Seller account id"),
    ctx: SyncContext = Depends(get_sync_context),
):
    """
    Advance the seller's catalog scan by one page.

    Call repeatedly (following continueUrl) until hasMore is false.
    Retryable conditions answer 200 with success=false and retryable=true.
    """
    start = time.perf_counter()
    try:
        result = await Scanner(ctx).run_step(user_id)
    except AuthExpiredError as e:
        logger.warning(f"User {user_id} must re-authenticate: {e}")
        return _error_response(401, start, e, needsAuth=True)
    except CatalogSyncError as e:
        if e.retryable:
            logger.warning(f"Retryable failure on scan step for user {user_id}: {e}")
            return _error_response(200, start, e)
        logger.error(f"Scan step failed for user {user_id}: {e}")
        return _error_response(502, start, e)
    except Exception as e:
        logger.error(f"Unexpected error on scan step for user {user_id}: {e}", exc_info=True)
        return _error_response(500, start, e)

    return SyncStepResponse(
        success=True,
        message=result.message,
        hasMore=result.has_more,
        scanCompleted=result.scan_completed,
        restarted=result.restarted,
        progress=ProgressResponse(**result.progress()),
        continueUrl=f"/sync/next?user_id={user_id}" if result.has_more else None,
        executionTime=_elapsed_ms(start),
    )


@router.post("/restart")
async def restart_sync(
    user_id: int = Query(..., description="Seller account id"),
    ctx: SyncContext = Depends(get_sync_context),
):
    """Discard the current scan; the next /sync/next starts from the first page."""
    state = await Scanner(ctx).restart(user_id, reason="manual")
    logger.info(f"Scan restarted for user {user_id} by request")
    return {
        "success": True,
        "message": "Scan restarted",
        "state": state.to_dict(),
        "continueUrl": f"/sync/next?user_id={user_id}",
    }


@router.get("/status")
async def sync_status(
    user_id: int = Query(..., description="Seller account id"),
    services: AppServices = Depends(get_services),
    db: AsyncSession = Depends(get_database),
):
    """Scan state, last full sync and gateway utilization for a seller."""
    store = CursorStore(db)
    state = await store.get_scan_state(user_id)
    last_full_sync = await store.get_last_full_sync(user_id)
    token_expires_at = await services.credentials.token_expires_at(user_id)

    lock = None
    if services.lock_manager is not None:
        lock = await services.lock_manager.get_lock_info(user_id)

    return {
        "userId": user_id,
        "scan": state.to_dict() if state else None,
        "lastFullSync": last_full_sync.isoformat() if last_full_sync else None,
        "tokenExpiresAt": token_expires_at.isoformat() if token_expires_at else None,
        "gateway": services.gateway.get_stats(),
        "lock": lock,
    }
