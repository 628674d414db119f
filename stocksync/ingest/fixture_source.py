"""Deterministic in-memory catalog used for local runs and tests."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from stocksync.context import Clock, utcnow
from stocksync.ingest.base import (
    BatchFetchResult,
    CatalogItem,
    CatalogSource,
    CategoryInfo,
    ItemAttribute,
    ItemPage,
)
from stocksync.ingest.errors import CursorExpiredError, ItemNotFoundError, TransientUpstreamError
from stocksync.ingest.rate_limiter import RateLimitedGateway

logger = logging.getLogger(__name__)

FIXTURE_TITLES = (
    "iPhone 14 Pro Max 256GB",
    "Samsung Galaxy S23 Ultra",
    "MacBook Air M2 13",
    "PlayStation 5 Slim",
    "iPad Pro 11 M2",
    "Nintendo Switch OLED",
    "AirPods Pro 2da Gen",
    "Monitor Gamer 27 144Hz",
    "Teclado Mecanico RGB",
    "Mouse Inalambrico Ergonomico",
)

FIXTURE_CATEGORIES = {
    "MLM1055": "Celulares y Smartphones",
    "MLM1652": "Laptops",
    "MLM438566": "Consolas",
    "MLM82070": "Tablets",
    "MLM3697": "Audífonos",
    "MLM1714": "Monitores",
    "MLM418448": "Teclados",
    "MLM1696": "Mouses",
}

CURSOR_PREFIX = "fx"


class FixtureSource(CatalogSource):
    """
    Generated seller catalog with the same paging behaviour as the real API.

    Items are derived from their index, so two instances with the same size
    produce the same catalog. Cursors embed their issue time and expire
    after cursor_ttl_seconds, like the API's scroll ids.
    """

    name = "fixture"

    def __init__(
        self,
        gateway: RateLimitedGateway,
        size: int = 1230,
        page_duplicates: int = 0,
        cursor_ttl_seconds: int = 300,
        clock: Clock = utcnow,
    ):
        self.gateway = gateway
        self.page_duplicates = page_duplicates
        self.cursor_ttl = timedelta(seconds=cursor_ttl_seconds)
        self.clock = clock
        self.items: dict[str, CatalogItem] = {}
        self.order: list[str] = []
        self.failing_items: set[str] = set()
        self.category_lookup_fails = False
        self.scan_calls = 0
        self.detail_calls = 0
        self.category_calls = 0

        for index in range(size):
            item = self._generate(index)
            self.items[item.id] = item
            self.order.append(item.id)

    @staticmethod
    def _generate(index: int) -> CatalogItem:
        item_id = f"MLM{100000000 + index}"
        category_id = list(FIXTURE_CATEGORIES)[index % len(FIXTURE_CATEGORIES)]

        if index % 29 == 0:
            status = "closed"
        elif index % 13 == 0:
            status = "paused"
        else:
            status = "active"

        seller_sku = None
        attributes = [ItemAttribute(id="BRAND", name="Marca", value_name="Generic")]
        if index % 3 == 0:
            seller_sku = f"SKU-{index:05d}"
        elif index % 3 == 1:
            attributes.append(
                ItemAttribute(id="SELLER_SKU", name="SKU", value_name=f"ATTR-{index:05d}")
            )

        return CatalogItem(
            id=item_id,
            title=f"{FIXTURE_TITLES[index % len(FIXTURE_TITLES)]} #{index}",
            available_quantity=(index * 7) % 40,
            price=Decimal(1000 + (index * 37) % 5000) + Decimal("0.99"),
            currency_id="MXN",
            status=status,
            permalink=f"https://articulo.mercadolibre.com.mx/MLM-{100000000 + index}",
            category_id=category_id,
            listing_type_id="gold_special" if index % 2 else "gold_pro",
            health=round(0.5 + (index % 50) / 100, 2),
            seller_sku=seller_sku,
            attributes=attributes,
        )

    # Mutators used to simulate catalog changes

    def set_quantity(self, item_id: str, quantity: int) -> None:
        self.items[item_id] = self.items[item_id].model_copy(
            update={"available_quantity": quantity}
        )

    def set_price(self, item_id: str, price: Decimal) -> None:
        self.items[item_id] = self.items[item_id].model_copy(update={"price": price})

    def set_status(self, item_id: str, status: str) -> None:
        self.items[item_id] = self.items[item_id].model_copy(update={"status": status})

    # Cursor encoding

    def _encode_cursor(self, offset: int) -> str:
        return f"{CURSOR_PREFIX}:{offset}:{self.clock().isoformat()}"

    def _decode_cursor(self, cursor: str) -> int:
        try:
            prefix, offset, issued = cursor.split(":", 2)
            if prefix != CURSOR_PREFIX:
                raise ValueError(prefix)
            issued_at = datetime.fromisoformat(issued)
            offset_value = int(offset)
        except ValueError:
            raise CursorExpiredError("Unrecognized scroll cursor")

        if self.clock() - issued_at > self.cursor_ttl:
            raise CursorExpiredError("Scroll cursor expired")
        return offset_value

    # CatalogSource

    async def scan_page(self, user_id: int, cursor: Optional[str], limit: int) -> ItemPage:
        async def _call() -> ItemPage:
            self.scan_calls += 1
            offset = self._decode_cursor(cursor) if cursor else 0
            ids = list(self.order[offset:offset + limit])
            if self.page_duplicates and offset > 0:
                start = max(0, offset - self.page_duplicates)
                ids = list(self.order[start:offset]) + ids

            next_offset = offset + limit
            next_cursor = self._encode_cursor(next_offset) if next_offset < len(self.order) else None
            return ItemPage(item_ids=ids, cursor=next_cursor, total=len(self.order))

        return await self.gateway.execute_call(_call)

    async def fetch_items(self, user_id: int, item_ids: list[str]) -> BatchFetchResult:
        async def _call() -> BatchFetchResult:
            self.detail_calls += 1
            result = BatchFetchResult()
            for item_id in item_ids:
                if item_id in self.failing_items:
                    result.failed[item_id] = "HTTP 500"
                elif item_id not in self.items:
                    result.failed[item_id] = "HTTP 404"
                else:
                    result.items.append(self.items[item_id])
            return result

        if not item_ids:
            return BatchFetchResult()
        return await self.gateway.execute_call(_call)

    async def fetch_item(self, user_id: int, item_id: str) -> CatalogItem:
        async def _call() -> CatalogItem:
            self.detail_calls += 1
            if item_id in self.failing_items:
                raise TransientUpstreamError(f"item {item_id}: HTTP 500")
            if item_id not in self.items:
                raise ItemNotFoundError(f"item {item_id}: not found")
            return self.items[item_id]

        return await self.gateway.execute_call(_call)

    async def fetch_category(self, category_id: str) -> Optional[CategoryInfo]:
        async def _call() -> Optional[CategoryInfo]:
            self.category_calls += 1
            if self.category_lookup_fails:
                raise TransientUpstreamError(f"category {category_id}: HTTP 503")
            name = FIXTURE_CATEGORIES.get(category_id)
            return CategoryInfo(id=category_id, name=name) if name else None

        return await self.gateway.execute_call(_call)
