"""Two-phase webhook ingestion.

Phase 1 validates and stores the notification and answers right away.
Phase 2 fetches the referenced item through the gateway, reconciles it and
marks the event, either in the background right after phase 1 or later from
the replay sweep.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy import and_, delete, func, or_, select, update

from stocksync import metrics
from stocksync.context import SyncContext
from stocksync.db.cursor_store import CursorStore
from stocksync.db.models import ProcessingStatus, WebhookEvent
from stocksync.db.session import dialect_insert
from stocksync.ingest.categories import CategoryResolver
from stocksync.ingest.errors import CatalogSyncError, ItemNotFoundError
from stocksync.ingest.reconciler import Reconciler
from stocksync.notify.alert_emitter import AlertEmitter, deliver_alerts
from stocksync.webhooks.schemas import (
    IGNORED_TOPICS,
    SUPPORTED_TOPICS,
    TopicKind,
    WebhookPayload,
    classify_topic,
    to_naive_utc,
)

logger = logging.getLogger(__name__)

CLAIMABLE_STATUSES = (ProcessingStatus.PENDING, ProcessingStatus.FAILED)


@dataclass
class ReceiveResult:
    """Phase 1 outcome: the HTTP answer plus whether phase 2 should run."""

    status_code: int
    body: dict
    event_id: Optional[str] = None
    queued: bool = False


class ReconcileConflict(CatalogSyncError):
    """The product kept changing under us while applying a webhook."""

    retryable = True


@dataclass
class _Outcome:
    status: str
    result: dict = field(default_factory=dict)


class WebhookPipeline:
    """
    Receive, persist and process marketplace notifications.

    Duplicate deliveries collapse on webhook_events.event_id; phase 2 claims
    an event with a conditional UPDATE so it runs at most once at a time.
    """

    def __init__(self, ctx: SyncContext):
        self.ctx = ctx
        self.settings = ctx.settings
        self.slots = ctx.webhook_slots or asyncio.Semaphore(
            max(1, self.settings.webhook_processing_concurrency)
        )

    # Phase 1

    async def receive(self, payload: Any, client_ip: Optional[str] = None) -> ReceiveResult:
        """
        Validate and store a notification. Makes no external API calls.

        Args:
            payload: Decoded JSON body
            client_ip: Sender address, kept for auditing

        Returns:
            ReceiveResult; queued is True only for a first delivery
        """
        start = time.perf_counter()

        if not payload or not isinstance(payload, dict):
            return self._answer(start, 400, "unknown", "invalid", {
                "success": False,
                "error": "Invalid webhook data",
                "message": "Empty or non-object payload",
            })

        try:
            notification = WebhookPayload.model_validate(payload)
        except ValidationError as e:
            missing = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
            logger.warning(f"Rejected webhook with invalid fields: {missing}")
            return self._answer(start, 400, str(payload.get("topic") or "unknown"), "invalid", {
                "success": False,
                "error": "Invalid webhook data",
                "message": f"Missing or invalid fields: {', '.join(missing)}",
            })

        kind = classify_topic(notification.topic)
        if kind == TopicKind.IGNORED:
            logger.info(f"Ignoring webhook {notification.event_id} (topic {notification.topic})")
            return self._answer(start, 200, notification.topic, "ignored", {
                "success": True,
                "message": "Webhook received but ignored (topic not relevant for stock sync)",
                "webhook_id": notification.event_id,
                "ignored": True,
            })
        if kind == TopicKind.UNSUPPORTED:
            logger.warning(f"Unsupported webhook topic: {notification.topic}")
            return self._answer(start, 400, notification.topic, "invalid", {
                "success": False,
                "error": "Invalid webhook data",
                "message": f"Unsupported topic: {notification.topic}",
                "supported": sorted(SUPPORTED_TOPICS),
            })

        inserted = await self._store(notification, client_ip)
        if not inserted:
            logger.info(f"Duplicate webhook {notification.event_id} absorbed")
            return self._answer(start, 200, notification.topic, "duplicate", {
                "success": True,
                "message": "Webhook already received",
                "webhook_id": notification.event_id,
                "duplicate": True,
            }, event_id=notification.event_id)

        result = self._answer(start, 200, notification.topic, "accepted", {
            "success": True,
            "message": "Webhook received and queued for processing",
            "webhook_id": notification.event_id,
            "duplicate": False,
        }, event_id=notification.event_id)
        result.queued = True
        logger.info(
            f"Webhook {notification.event_id} stored in {result.body['processingTime']}ms "
            f"(topic {notification.topic}, user {notification.user_id})"
        )
        return result

    def _answer(
        self,
        start: float,
        status_code: int,
        topic: str,
        outcome: str,
        body: dict,
        event_id: Optional[str] = None,
    ) -> ReceiveResult:
        elapsed = time.perf_counter() - start
        body["processingTime"] = round(elapsed * 1000, 2)
        metrics.record_webhook(topic, outcome, elapsed)
        return ReceiveResult(status_code=status_code, body=body, event_id=event_id)

    async def _store(self, notification: WebhookPayload, client_ip: Optional[str]) -> bool:
        application_id = notification.application_id
        values = {
            "event_id": notification.event_id,
            "user_id": notification.user_id,
            "topic": notification.topic,
            "resource": notification.resource,
            "resource_id": notification.resource_id,
            "application_id": str(application_id) if application_id is not None else None,
            "delivery_attempts": notification.attempts,
            "sent_at": to_naive_utc(notification.sent),
            "received_at": self.ctx.now(),
            "processed": False,
            "processing_status": ProcessingStatus.PENDING,
            "processing_attempts": 0,
            "client_ip": client_ip,
        }
        async with self.ctx.session_factory() as db:
            stmt = (
                dialect_insert(db, WebhookEvent)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["event_id"])
                .returning(WebhookEvent.id)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            await db.commit()
        return row is not None

    # Phase 2

    async def process_event(self, event_id: str) -> Optional[str]:
        """
        Reconcile the item a stored notification points at.

        Never raises: failures are written back to the event so the replay
        sweep can pick it up again. At most webhook_processing_concurrency
        runs are in flight at once, counting background and replay runs.

        Returns:
            Final processing status, or None if the event could not be claimed
        """
        async with self.slots:
            return await self._run(event_id)

    async def _run(self, event_id: str) -> Optional[str]:
        event = await self._claim(event_id)
        if event is None:
            logger.debug(f"Webhook {event_id} already processed or claimed elsewhere")
            return None

        try:
            outcome = await self._process(event)
        except Exception as e:
            retryable = getattr(e, "retryable", False)
            logger.error(f"Webhook {event_id} failed (attempt {event.processing_attempts}): {e}")
            await self._mark_failed(event_id, e, retryable)
            metrics.record_webhook_processing(ProcessingStatus.FAILED)
            return ProcessingStatus.FAILED

        metrics.record_webhook_processing(outcome.status)
        return outcome.status

    async def _claim(self, event_id: str) -> Optional[WebhookEvent]:
        now = self.ctx.now()
        async with self.ctx.session_factory() as db:
            claimed = await db.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.event_id == event_id,
                    WebhookEvent.processed.is_(False),
                    WebhookEvent.processing_status.in_(CLAIMABLE_STATUSES),
                    WebhookEvent.processing_attempts < self.settings.webhook_max_attempts,
                )
                .values(
                    processing_status=ProcessingStatus.PROCESSING,
                    processing_started_at=now,
                    processing_attempts=WebhookEvent.processing_attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                await db.rollback()
                return None
            await db.commit()

            result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
            return result.scalar_one()

    async def _process(self, event: WebhookEvent) -> _Outcome:
        now = self.ctx.now()

        async with self.ctx.session_factory() as db:
            last_full_sync = await CursorStore(db).get_last_full_sync(event.user_id)
        # The boundary is scan completion, not scan start. Events older than the
        # start were already purged by init_scan; an event that arrived mid-scan
        # for an item the scan had already passed is skipped too, and that item
        # catches up on its next notification or the next full scan.
        if last_full_sync is not None and event.received_at < last_full_sync:
            logger.info(
                f"Skipping stale webhook {event.event_id}: received {event.received_at} "
                f"before full sync at {last_full_sync}"
            )
            return await self._finish(event.event_id, ProcessingStatus.SKIPPED, {
                "reason": "stale",
                "lastFullSync": last_full_sync.isoformat(),
            })

        if not event.resource_id:
            return await self._finish(event.event_id, ProcessingStatus.SKIPPED, {
                "reason": "no_resource_id",
                "resource": event.resource,
            })

        try:
            item = await self.ctx.source.fetch_item(event.user_id, event.resource_id)
        except ItemNotFoundError:
            logger.info(f"Item {event.resource_id} from webhook {event.event_id} no longer exists")
            return await self._finish(event.event_id, ProcessingStatus.COMPLETED, {
                "action": "not_found",
                "productId": event.resource_id,
            })

        retries = max(1, self.settings.webhook_update_retries)
        for attempt in range(1, retries + 1):
            async with self.ctx.session_factory() as db:
                reconciled = await Reconciler(db, event.user_id).reconcile([item], now)
                if reconciled.conflicts:
                    await db.rollback()
                    logger.debug(
                        f"Product {item.id} changed concurrently, retrying "
                        f"({attempt}/{retries})"
                    )
                    continue

                emitter = AlertEmitter(
                    db,
                    event.user_id,
                    threshold=self.settings.stock_alert_threshold,
                    cooldown_hours=self.settings.alert_cooldown_hours,
                    movement_alerts=self.settings.stock_movement_alerts_enabled,
                )
                deliveries = await emitter.emit(reconciled.changes, now)

                outcome = _Outcome(ProcessingStatus.COMPLETED, {
                    "action": "product_updated" if reconciled.changes else "unchanged",
                    "productId": item.id,
                    "finalStock": item.available_quantity,
                    **reconciled.to_dict(),
                })
                await self._mark(db, event.event_id, outcome, now)
                await db.commit()
                break
        else:
            raise ReconcileConflict(f"Product {item.id} kept changing during {retries} attempts")

        resolver = CategoryResolver(
            self.ctx.session_factory,
            self.ctx.source,
            remote_limit=self.settings.category_remote_lookup_limit,
            clock=self.ctx.clock,
        )
        await resolver.resolve(reconciled.category_ids)
        await deliver_alerts(self.ctx.notifier, deliveries)

        logger.info(f"Webhook {event.event_id} applied to {item.id} (stock {item.available_quantity})")
        return outcome

    async def _finish(self, event_id: str, status: str, result: dict) -> _Outcome:
        outcome = _Outcome(status, result)
        async with self.ctx.session_factory() as db:
            await self._mark(db, event_id, outcome, self.ctx.now())
            await db.commit()
        return outcome

    @staticmethod
    async def _mark(db, event_id: str, outcome: _Outcome, now: datetime) -> None:
        await db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.event_id == event_id,
                WebhookEvent.processing_status == ProcessingStatus.PROCESSING,
            )
            .values(
                processed=True,
                processing_status=outcome.status,
                processed_at=now,
                result=outcome.result,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )

    async def _mark_failed(self, event_id: str, error: Exception, retryable: bool) -> None:
        message = str(error)[:1000]
        async with self.ctx.session_factory() as db:
            await db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.event_id == event_id)
                .values(
                    processed=False,
                    processing_status=ProcessingStatus.FAILED,
                    last_error=message,
                    result={
                        "error": message,
                        "errorType": type(error).__name__,
                        "retryable": retryable,
                        "needsAuth": getattr(error, "needs_auth", False),
                    },
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    # Maintenance

    async def get_pending_webhooks(self, limit: int = 50) -> list[WebhookEvent]:
        """
        Unprocessed events that can still be retried, oldest first.

        Events stuck in processing past the claim timeout are released back
        to failed first, so a crashed phase 2 does not strand them.
        """
        now = self.ctx.now()
        claim_cutoff = now - timedelta(minutes=self.settings.webhook_claim_timeout_minutes)
        async with self.ctx.session_factory() as db:
            released = await db.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.processed.is_(False),
                    WebhookEvent.processing_status == ProcessingStatus.PROCESSING,
                    WebhookEvent.processing_started_at < claim_cutoff,
                )
                .values(
                    processing_status=ProcessingStatus.FAILED,
                    last_error="Processing claim timed out",
                )
                .execution_options(synchronize_session=False)
            )
            if released.rowcount:
                logger.warning(f"Released {released.rowcount} webhooks stuck in processing")

            result = await db.execute(
                select(WebhookEvent)
                .where(
                    WebhookEvent.processed.is_(False),
                    WebhookEvent.processing_status.in_(CLAIMABLE_STATUSES),
                    WebhookEvent.processing_attempts < self.settings.webhook_max_attempts,
                )
                .order_by(WebhookEvent.received_at.asc(), WebhookEvent.id.asc())
                .limit(limit)
            )
            events = list(result.scalars().all())
            await db.commit()
        return events

    async def replay_pending(self, limit: Optional[int] = None) -> dict[str, int]:
        """
        Run phase 2 for pending and failed events.

        Different items are processed concurrently, sharing the phase 2 cap
        with background runs; events for the same item run in arrival order.

        Returns:
            Count of events per final status
        """
        events = await self.get_pending_webhooks(limit or self.settings.webhook_sweep_batch_size)
        summary = {"total": len(events)}
        if not events:
            return summary

        groups: "OrderedDict[str, list[str]]" = OrderedDict()
        for event in events:
            key = f"{event.user_id}:{event.resource_id or event.event_id}"
            groups.setdefault(key, []).append(event.event_id)

        async def _run_group(event_ids: list[str]) -> list[Optional[str]]:
            return [await self.process_event(event_id) for event_id in event_ids]

        results = await asyncio.gather(*(_run_group(ids) for ids in groups.values()))
        for statuses in results:
            for status in statuses:
                key = status or "not_claimed"
                summary[key] = summary.get(key, 0) + 1

        logger.info(f"Webhook replay finished: {summary}")
        return summary

    async def cleanup_processed(self, days: Optional[int] = None) -> int:
        """
        Delete old events.

        Removes processed events, and events that ran out of attempts, received
        more than `days` ago (default webhook_retention_days).

        Returns:
            Number of rows deleted
        """
        retention = days if days is not None else self.settings.webhook_retention_days
        cutoff = self.ctx.now() - timedelta(days=retention)
        async with self.ctx.session_factory() as db:
            result = await db.execute(
                delete(WebhookEvent)
                .where(
                    WebhookEvent.received_at < cutoff,
                    or_(
                        WebhookEvent.processed.is_(True),
                        WebhookEvent.processing_attempts >= self.settings.webhook_max_attempts,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        deleted = result.rowcount or 0
        logger.info(f"Deleted {deleted} webhook events older than {retention} days")
        return deleted

    async def get_stats(self) -> dict:
        async with self.ctx.session_factory() as db:
            result = await db.execute(
                select(WebhookEvent.processing_status, func.count())
                .group_by(WebhookEvent.processing_status)
            )
            by_status = {status: count for status, count in result.all()}

            exhausted = (await db.execute(
                select(func.count()).select_from(WebhookEvent).where(
                    and_(
                        WebhookEvent.processed.is_(False),
                        WebhookEvent.processing_attempts >= self.settings.webhook_max_attempts,
                    )
                )
            )).scalar_one()

        return {
            "pendingWebhooks": by_status.get(ProcessingStatus.PENDING, 0),
            "processingWebhooks": by_status.get(ProcessingStatus.PROCESSING, 0),
            "failedWebhooks": by_status.get(ProcessingStatus.FAILED, 0),
            "completedWebhooks": by_status.get(ProcessingStatus.COMPLETED, 0),
            "skippedWebhooks": by_status.get(ProcessingStatus.SKIPPED, 0),
            "exhaustedWebhooks": exhausted,
            "totalWebhooks": sum(by_status.values()),
            "supportedTopics": sorted(SUPPORTED_TOPICS),
            "ignoredTopics": sorted(IGNORED_TOPICS),
            "timestamp": self.ctx.now().isoformat(),
        }
