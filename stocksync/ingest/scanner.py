"""Resumable full-catalog scan, one page per invocation."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from stocksync import metrics
from stocksync.context import SyncContext
from stocksync.db.cursor_store import CursorStore, ScanState
from stocksync.db.models import ScanStatus
from stocksync.ingest.categories import CategoryResolver
from stocksync.ingest.errors import CursorExpiredError, ScanInProgressError
from stocksync.ingest.reconciler import Reconciler
from stocksync.logging_config import get_logger
from stocksync.notify.alert_emitter import AlertEmitter, deliver_alerts


@dataclass
class ScanStepResult:
    """Outcome of one scan invocation."""

    user_id: int
    has_more: bool
    scan_completed: bool
    processed_in_batch: int = 0
    total_so_far: int = 0
    total_known: int = 0
    new_in_batch: int = 0
    updated_in_batch: int = 0
    unchanged_in_batch: int = 0
    duplicates_in_batch: int = 0
    restarted: bool = False
    restart_reason: Optional[str] = None
    failed_ids: list[str] = field(default_factory=list)
    alerts_fired: int = 0

    @property
    def percentage(self) -> int:
        if self.scan_completed:
            return 100
        if not self.total_known:
            return 0
        return min(100, round(self.total_so_far / self.total_known * 100))

    @property
    def message(self) -> str:
        if self.restarted:
            return f"Scan restarted ({self.restart_reason})"
        if self.scan_completed:
            return f"Scan completed: {self.total_so_far} items"
        return f"Processed {self.processed_in_batch} items ({self.total_so_far}/{self.total_known})"

    def progress(self) -> dict:
        return {
            "current": self.total_so_far,
            "total": self.total_known,
            "percentage": self.percentage,
            "newInThisBatch": self.new_in_batch,
            "processedInThisBatch": self.processed_in_batch,
            "updatedInThisBatch": self.updated_in_batch,
            "unchangedInThisBatch": self.unchanged_in_batch,
            "duplicatesInThisBatch": self.duplicates_in_batch,
            "failedInThisBatch": len(self.failed_ids),
        }


class Scanner:
    """
    Drive a seller's scan forward by exactly one page.

    State moves NOT_STARTED (no row) -> idle (fresh scan, no cursor yet)
    -> active (cursor stored) -> completed (API returned no cursor).
    Everything needed to resume lives in scan_control and scan_seen_items,
    so a killed invocation only costs the page it was working on.
    """

    def __init__(self, ctx: SyncContext):
        self.ctx = ctx
        self.settings = ctx.settings

    def _cursor_is_stale(self, state: ScanState, now: datetime) -> bool:
        if state.cursor_token is None or state.cursor_issued_at is None:
            return False
        age = now - state.cursor_issued_at
        return age > timedelta(seconds=self.settings.scan_cursor_ttl_seconds)

    async def restart(self, user_id: int, reason: str = "manual") -> ScanState:
        """Reset the user's scan so the next step starts from the first page."""
        async with self.ctx.session_factory() as db:
            state = await CursorStore(db).init_scan(user_id, self.ctx.now())
            await db.commit()
        metrics.record_scan_restart(reason)
        return state

    async def run_step(self, user_id: int) -> ScanStepResult:
        """
        Process the next page of the user's scan.

        Raises:
            ScanInProgressError: If another invocation holds the user's lock
            AuthExpiredError: If the seller must re-authenticate
            GatewayQueueTimeout, TransientUpstreamError: Retry later
        """
        lock_manager = self.ctx.lock_manager if self.settings.scan_lock_enabled else None
        run_id = uuid4().hex
        token = None
        if lock_manager is not None:
            token = await lock_manager.acquire_lock(user_id, run_id)
            if token is None:
                raise ScanInProgressError(f"A scan step for user {user_id} is already running")

        try:
            return await self._step(user_id)
        finally:
            if lock_manager is not None and token is not None:
                await lock_manager.release_lock(user_id, run_id, token)

    async def _step(self, user_id: int) -> ScanStepResult:
        log = get_logger(__name__, user_id=user_id)
        now = self.ctx.now()

        async with self.ctx.session_factory() as db:
            store = CursorStore(db)
            state = await store.get_scan_state(user_id)
            if state is None or state.status == ScanStatus.COMPLETED:
                state = await store.init_scan(user_id, now)
                await db.commit()
            elif self._cursor_is_stale(state, now):
                log.warning(
                    f"Scroll cursor for user {user_id} is older than "
                    f"{self.settings.scan_cursor_ttl_seconds}s, restarting scan"
                )
                await store.init_scan(user_id, now)
                await db.commit()
                metrics.record_scan_restart("stale_cursor")
                return self._restarted(user_id, "stale cursor")

        cursor = state.cursor_token if state.status == ScanStatus.ACTIVE else None
        try:
            page = await self.ctx.source.scan_page(user_id, cursor, self.settings.scan_page_size)
        except CursorExpiredError as e:
            if cursor is None:
                raise
            log.warning(f"Scroll cursor rejected for user {user_id}, restarting scan: {e}")
            await self.restart(user_id, reason="cursor_expired")
            return self._restarted(user_id, "cursor expired")

        async with self.ctx.session_factory() as db:
            unseen = await CursorStore(db).find_unseen(user_id, page.item_ids)
        duplicates = len(page.item_ids) - len(unseen)
        if duplicates:
            log.info(f"Page for user {user_id} repeated {duplicates} already seen items")

        if unseen and self.ctx.gateway.is_near_limit():
            await self.ctx.gateway.smart_pause()

        completed = page.cursor is None
        async with self.ctx.session_factory() as db:
            store = CursorStore(db)
            reconciler = Reconciler(db, user_id)
            reconciled = await reconciler.fetch_and_reconcile(self.ctx.source, unseen, now)

            await store.mark_seen(user_id, unseen, now)
            processed = await store.count_seen(user_id)
            total_known = max(page.total or 0, processed)

            emitter = AlertEmitter(
                db,
                user_id,
                threshold=self.settings.stock_alert_threshold,
                cooldown_hours=self.settings.alert_cooldown_hours,
                movement_alerts=self.settings.stock_movement_alerts_enabled,
            )
            deliveries = await emitter.emit(reconciled.changes, now)

            if completed:
                await store.mark_full_sync(user_id, now, processed)
                deliveries.extend(await emitter.sweep(now))

            await store.update_progress(
                user_id,
                page.cursor,
                total_known,
                processed,
                ScanStatus.COMPLETED if completed else ScanStatus.ACTIVE,
                now,
                duplicates=state.duplicates + duplicates,
            )
            await db.commit()

        metrics.record_scan_page(completed, duplicates)
        if completed:
            log.info(f"Scan completed for user {user_id}: {processed} unique items")

        resolver = CategoryResolver(
            self.ctx.session_factory,
            self.ctx.source,
            remote_limit=self.settings.category_remote_lookup_limit,
            clock=self.ctx.clock,
        )
        await resolver.resolve(reconciled.category_ids)
        await deliver_alerts(self.ctx.notifier, deliveries)

        return ScanStepResult(
            user_id=user_id,
            has_more=not completed,
            scan_completed=completed,
            processed_in_batch=len(unseen),
            total_so_far=processed,
            total_known=total_known,
            new_in_batch=reconciled.new_count,
            updated_in_batch=reconciled.updated_count,
            unchanged_in_batch=reconciled.unchanged_count,
            duplicates_in_batch=duplicates,
            failed_ids=sorted(reconciled.failed),
            alerts_fired=len(deliveries),
        )

    @staticmethod
    def _restarted(user_id: int, reason: str) -> ScanStepResult:
        return ScanStepResult(
            user_id=user_id,
            has_more=True,
            scan_completed=False,
            restarted=True,
            restart_reason=reason,
        )
