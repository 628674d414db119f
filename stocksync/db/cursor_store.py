"""Durable per-user scan progress."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stocksync.db.models import ScanControl, ScanSeenItem, ScanStatus, SyncControl, WebhookEvent
from stocksync.db.session import dialect_insert

logger = logging.getLogger(__name__)


@dataclass
class ScanState:
    """Snapshot of a scan_control row."""

    user_id: int
    cursor_token: Optional[str]
    total_known: int
    processed_count: int
    status: str
    duplicates: int = 0
    scan_started_at: Optional[datetime] = None
    cursor_issued_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "status": self.status,
            "hasCursor": self.cursor_token is not None,
            "totalKnown": self.total_known,
            "processedCount": self.processed_count,
            "duplicates": self.duplicates,
            "scanStartedAt": self.scan_started_at.isoformat() if self.scan_started_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class CursorStore:
    """
    CRUD over scan_control and its companion tables.

    Works inside the caller's session so a scan page commits its progress
    together with its product writes. Storage errors are not caught here.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_scan_state(self, user_id: int) -> Optional[ScanState]:
        result = await self.session.execute(
            select(
                ScanControl.user_id,
                ScanControl.scroll_token,
                ScanControl.total_products,
                ScanControl.processed_products,
                ScanControl.status,
                ScanControl.duplicates,
                ScanControl.scan_started_at,
                ScanControl.cursor_issued_at,
                ScanControl.updated_at,
            ).where(ScanControl.user_id == user_id)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return ScanState(
            user_id=row.user_id,
            cursor_token=row.scroll_token,
            total_known=row.total_products,
            processed_count=row.processed_products,
            status=row.status,
            duplicates=row.duplicates,
            scan_started_at=row.scan_started_at,
            cursor_issued_at=row.cursor_issued_at,
            updated_at=row.updated_at,
        )

    async def init_scan(self, user_id: int, now: datetime) -> ScanState:
        """
        Reset a user's scan to the beginning.

        Unprocessed webhook events are purged first: the new scan becomes the
        source of truth and replaying that backlog would re-apply older state.
        The seen-item set of the previous scan is cleared as well.
        """
        purged = await self.session.execute(
            delete(WebhookEvent).where(
                WebhookEvent.user_id == user_id,
                WebhookEvent.processed.is_(False),
            )
        )
        await self.session.execute(delete(ScanSeenItem).where(ScanSeenItem.user_id == user_id))

        values = {
            "scroll_token": None,
            "total_products": 0,
            "processed_products": 0,
            "duplicates": 0,
            "status": ScanStatus.IDLE,
            "scan_started_at": now,
            "cursor_issued_at": None,
            "updated_at": now,
        }
        stmt = dialect_insert(self.session, ScanControl).values(user_id=user_id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["user_id"], set_=values)
        await self.session.execute(stmt)

        logger.info(
            f"Initialized scan for user {user_id} "
            f"(purged {purged.rowcount or 0} pending webhook events)"
        )
        return ScanState(
            user_id=user_id,
            cursor_token=None,
            total_known=0,
            processed_count=0,
            status=ScanStatus.IDLE,
            scan_started_at=now,
            updated_at=now,
        )

    async def update_progress(
        self,
        user_id: int,
        cursor_token: Optional[str],
        total: int,
        processed: int,
        status: str,
        now: datetime,
        duplicates: Optional[int] = None,
    ) -> None:
        """
        Persist progress after a page.

        Raises:
            ValueError: If an active scan would be stored without a cursor
        """
        if cursor_token is None and status == ScanStatus.ACTIVE:
            raise ValueError("An active scan needs a cursor")

        values = {
            "scroll_token": cursor_token,
            "total_products": total,
            "processed_products": processed,
            "status": status,
            "cursor_issued_at": now if cursor_token is not None else None,
            "updated_at": now,
        }
        if duplicates is not None:
            values["duplicates"] = duplicates

        await self.session.execute(
            update(ScanControl).where(ScanControl.user_id == user_id).values(**values)
        )

    async def find_unseen(self, user_id: int, item_ids: Iterable[str]) -> list[str]:
        """
        Ids the current scan has not counted yet.

        Returns:
            The unseen ids in page order, without repeats
        """
        page_unique = list(dict.fromkeys(item_ids))
        if not page_unique:
            return []

        result = await self.session.execute(
            select(ScanSeenItem.item_id).where(
                ScanSeenItem.user_id == user_id,
                ScanSeenItem.item_id.in_(page_unique),
            )
        )
        already_seen = set(result.scalars().all())
        return [item_id for item_id in page_unique if item_id not in already_seen]

    async def mark_seen(self, user_id: int, item_ids: list[str], now: datetime) -> None:
        if not item_ids:
            return
        stmt = dialect_insert(self.session, ScanSeenItem).values(
            [{"user_id": user_id, "item_id": item_id, "seen_at": now} for item_id in item_ids]
        )
        await self.session.execute(stmt.on_conflict_do_nothing())

    async def count_seen(self, user_id: int) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(ScanSeenItem).where(ScanSeenItem.user_id == user_id)
        )
        return result.scalar_one()

    async def mark_full_sync(self, user_id: int, now: datetime, products_count: int) -> None:
        """Record a completed full scan."""
        values = {"last_full_sync": now, "products_count": products_count, "updated_at": now}
        stmt = dialect_insert(self.session, SyncControl).values(user_id=user_id, **values)
        stmt = stmt.on_conflict_do_update(index_elements=["user_id"], set_=values)
        await self.session.execute(stmt)

    async def get_last_full_sync(self, user_id: int) -> Optional[datetime]:
        result = await self.session.execute(
            select(SyncControl.last_full_sync).where(SyncControl.user_id == user_id)
        )
        return result.scalar_one_or_none()
