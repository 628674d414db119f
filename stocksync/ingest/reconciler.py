"""Diff fetched catalog items against stored products and write only changes."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stocksync import metrics
from stocksync.db.models import Product
from stocksync.db.session import dialect_insert
from stocksync.ingest.base import CatalogItem, CatalogSource

logger = logging.getLogger(__name__)

COMPARED_FIELDS = ("title", "sku", "available_quantity", "price", "status")

PRODUCT_STATUSES = {"active", "paused", "closed", "inactive"}

SKU_ATTRIBUTE_IDS = {"SELLER_SKU", "SKU"}

SITE_DOMAINS = {
    "MLA": "com.ar",
    "MLM": "com.mx",
    "MLB": "com.br",
    "MLC": "cl",
    "MCO": "com.co",
}

PRICE_QUANTUM = Decimal("0.01")


def extract_sku(item: CatalogItem) -> Optional[str]:
    """
    Find the seller SKU of an item.

    Checks seller_sku, then attributes whose id is SELLER_SKU/SKU or whose
    name mentions "sku". Returns None when the item has no SKU.
    """
    if item.seller_sku:
        return item.seller_sku

    for attribute in item.attributes:
        if attribute.id in SKU_ATTRIBUTE_IDS or (
            attribute.name and "sku" in attribute.name.lower()
        ):
            if attribute.value_name:
                return attribute.value_name
    return None


def build_permalink(item_id: str) -> str:
    """Listing URL derived from the item id's site prefix."""
    site = item_id[:3]
    domain = SITE_DOMAINS.get(site, "com.ar")
    return f"https://articulo.mercadolibre.{domain}/{site}-{item_id[3:]}"


def normalize_status(status: Optional[str]) -> str:
    if status in PRODUCT_STATUSES:
        return status
    # under_review, not_yet_active, payment_required and missing values
    return "inactive"


def normalize_price(price: Optional[Decimal]) -> Optional[Decimal]:
    if price is None:
        return None
    return Decimal(price).quantize(PRICE_QUANTUM)


def to_catalog_record(item: CatalogItem, user_id: int, now: datetime) -> dict:
    """Map an API item onto products columns."""
    return {
        "id": item.id,
        "user_id": user_id,
        "title": item.title,
        "sku": extract_sku(item),
        "available_quantity": max(0, item.available_quantity or 0),
        "price": normalize_price(item.price),
        "currency_id": item.currency_id,
        "status": normalize_status(item.status),
        "permalink": item.permalink or build_permalink(item.id),
        "category_id": item.category_id,
        "listing_type_id": item.listing_type_id,
        "health": item.health,
        "last_sync": now,
        "created_at": now,
        "updated_at": now,
    }


@dataclass
class StockChange:
    """A new or changed record, as seen by the alert emitter."""

    product_id: str
    title: Optional[str]
    quantity: int
    previous_quantity: Optional[int]
    status: str = "active"
    permalink: Optional[str] = None


@dataclass
class ReconcileResult:
    """Counts and details of one reconciliation batch."""

    new_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    conflicts: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    changes: list[StockChange] = field(default_factory=list)
    category_ids: set[str] = field(default_factory=set)

    def merge(self, other: "ReconcileResult") -> None:
        self.new_count += other.new_count
        self.updated_count += other.updated_count
        self.unchanged_count += other.unchanged_count
        self.conflicts.extend(other.conflicts)
        self.failed.update(other.failed)
        self.changes.extend(other.changes)
        self.category_ids |= other.category_ids

    def to_dict(self) -> dict:
        return {
            "newCount": self.new_count,
            "updatedCount": self.updated_count,
            "unchangedCount": self.unchanged_count,
            "conflicts": len(self.conflicts),
            "failed": len(self.failed),
        }


def _differs(record: dict, existing) -> bool:
    for name in COMPARED_FIELDS:
        current = getattr(existing, name)
        if name == "price":
            current = normalize_price(current)
        if record[name] != current:
            return True
    return False


class Reconciler:
    """
    Apply fetched items to the products table with minimal writes.

    Runs inside the caller's session and does not commit: the caller decides
    when the batch (and its scan progress or webhook status) becomes durable.
    """

    def __init__(self, session: AsyncSession, user_id: int):
        self.session = session
        self.user_id = user_id

    async def fetch_and_reconcile(
        self, source: CatalogSource, item_ids: list[str], now: datetime
    ) -> ReconcileResult:
        """
        Fetch details for item_ids and reconcile what came back.

        Items that fail inside the batch are logged and left out.
        """
        batch = await source.fetch_items(self.user_id, item_ids)
        for item_id, reason in batch.failed.items():
            logger.warning(f"Detail fetch failed for {item_id}: {reason}")
        if batch.failed:
            metrics.record_detail_failures(len(batch.failed))

        result = await self.reconcile(batch.items, now)
        result.failed.update(batch.failed)
        return result

    async def reconcile(self, items: list[CatalogItem], now: datetime) -> ReconcileResult:
        """
        Classify items as new, changed or unchanged and write accordingly.

        Args:
            items: Freshly fetched items
            now: Sync timestamp written on new and changed rows

        Returns:
            ReconcileResult with counts, quantity changes and write conflicts
        """
        result = ReconcileResult()
        records = {item.id: to_catalog_record(item, self.user_id, now) for item in items}
        if not records:
            return result

        existing_rows = await self.session.execute(
            select(
                Product.id,
                Product.title,
                Product.sku,
                Product.available_quantity,
                Product.price,
                Product.status,
                Product.last_sync,
            ).where(
                Product.user_id == self.user_id,
                Product.id.in_(list(records)),
            )
        )
        existing = {row.id: row for row in existing_rows.all()}

        new_records: list[dict] = []
        for item_id, record in records.items():
            current = existing.get(item_id)
            if current is None:
                new_records.append(record)
            elif _differs(record, current):
                applied = await self._apply_update(record, current.last_sync, now)
                if not applied:
                    result.conflicts.append(item_id)
                    continue
                result.updated_count += 1
                result.changes.append(
                    StockChange(
                        product_id=item_id,
                        title=record["title"],
                        quantity=record["available_quantity"],
                        previous_quantity=current.available_quantity,
                        status=record["status"],
                        permalink=record["permalink"],
                    )
                )
                if record["category_id"]:
                    result.category_ids.add(record["category_id"])
            else:
                result.unchanged_count += 1

        if new_records:
            inserted = await self._insert_new(new_records)
            for record in new_records:
                if record["id"] not in inserted:
                    result.conflicts.append(record["id"])
                    continue
                result.new_count += 1
                result.changes.append(
                    StockChange(
                        product_id=record["id"],
                        title=record["title"],
                        quantity=record["available_quantity"],
                        previous_quantity=None,
                        status=record["status"],
                        permalink=record["permalink"],
                    )
                )
                if record["category_id"]:
                    result.category_ids.add(record["category_id"])

        if result.conflicts:
            logger.info(
                f"{len(result.conflicts)} products for user {self.user_id} changed "
                f"concurrently and were left to the other writer"
            )

        metrics.record_reconciliation(
            result.new_count, result.updated_count, result.unchanged_count, len(result.conflicts)
        )
        return result

    async def _insert_new(self, records: list[dict]) -> set[str]:
        stmt = (
            dialect_insert(self.session, Product)
            .values(records)
            .on_conflict_do_nothing(index_elements=["id", "user_id"])
            .returning(Product.id)
        )
        result = await self.session.execute(stmt)
        return set(result.scalars().all())

    async def _apply_update(self, record: dict, previous_sync: datetime, now: datetime) -> bool:
        """Conditional partial update; False if another writer got there first."""
        values = {name: record[name] for name in COMPARED_FIELDS}
        values["last_sync"] = now
        values["updated_at"] = now
        result = await self.session.execute(
            update(Product)
            .where(
                Product.id == record["id"],
                Product.user_id == self.user_id,
                Product.last_sync == previous_sync,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
