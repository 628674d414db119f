"""Marketplace notification intake and webhook maintenance routes."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import JSONResponse

from stocksync.api.deps import get_sync_context, require_admin_api_key
from stocksync.context import SyncContext
from stocksync.webhooks.pipeline import WebhookPipeline

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

LEGACY_PATHS = ("/webhook/notifications", "/api/webhooks/ml")


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def receive_notification(
    request: Request,
    background_tasks: BackgroundTasks,
    ctx: SyncContext = Depends(get_sync_context),
):
    """
    Acknowledge a marketplace notification.

    The body is stored and answered right away; the referenced item is
    fetched and reconciled after the response is sent.
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = None

    pipeline = WebhookPipeline(ctx)
    result = await pipeline.receive(payload, client_ip=_client_ip(request))
    if result.queued:
        background_tasks.add_task(pipeline.process_event, result.event_id)

    return JSONResponse(status_code=result.status_code, content=result.body)


router.add_api_route("/webhooks/catalog", receive_notification, methods=["POST"])
for _path in LEGACY_PATHS:
    router.add_api_route(_path, receive_notification, methods=["POST"], include_in_schema=False)


@router.get("/webhooks/stats", dependencies=[Depends(require_admin_api_key)])
async def webhook_stats(ctx: SyncContext = Depends(get_sync_context)):
    """Counts of stored webhook events by processing status."""
    return await WebhookPipeline(ctx).get_stats()


@router.post("/webhooks/replay", dependencies=[Depends(require_admin_api_key)])
async def replay_webhooks(
    limit: int = Query(50, ge=1, le=500),
    ctx: SyncContext = Depends(get_sync_context),
):
    """Run phase 2 now for pending and failed events."""
    summary = await WebhookPipeline(ctx).replay_pending(limit)
    return {"success": True, "summary": summary}


@router.post("/webhooks/cleanup", dependencies=[Depends(require_admin_api_key)])
async def cleanup_webhooks(
    days: Optional[int] = Query(None, ge=0),
    ctx: SyncContext = Depends(get_sync_context),
):
    """Delete processed events older than the retention window."""
    deleted = await WebhookPipeline(ctx).cleanup_processed(days)
    return {"success": True, "deleted": deleted}
