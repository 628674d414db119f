"""Catalog source backed by the marketplace REST API."""

import asyncio
import logging
from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from stocksync.config import settings
from stocksync.ingest.base import (
    BatchFetchResult,
    CatalogItem,
    CatalogSource,
    CategoryInfo,
    ItemPage,
)
from stocksync.ingest.errors import (
    ItemNotFoundError,
    RateLimitedError,
    TransientUpstreamError,
    UpstreamRequestError,
)
from stocksync.ingest.http_client import request_json
from stocksync.ingest.rate_limiter import RateLimitedGateway
from stocksync.ingest.tokens import CredentialStore

logger = logging.getLogger(__name__)

# Fields requested from the multiget endpoint
ITEM_ATTRIBUTES = (
    "id",
    "title",
    "available_quantity",
    "price",
    "currency_id",
    "status",
    "permalink",
    "seller_sku",
    "listing_type_id",
    "health",
    "category_id",
    "attributes",
)


class _Paging(BaseModel):
    model_config = ConfigDict(extra="ignore")

    total: Optional[int] = None


class _ScanResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    results: list[str] = Field(default_factory=list)
    scroll_id: Optional[str] = None
    paging: _Paging = Field(default_factory=_Paging)


class _MultigetEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: int
    body: Optional[dict] = None


class MarketplaceSource(CatalogSource):
    """Real API implementation of CatalogSource."""

    name = "marketplace"

    def __init__(
        self,
        gateway: RateLimitedGateway,
        credentials: CredentialStore,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
    ):
        self.gateway = gateway
        self.credentials = credentials
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.batch_size = batch_size or settings.detail_batch_size
        self.concurrency = concurrency or settings.detail_fetch_concurrency
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=settings.api_timeout_seconds,
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _auth_headers(self, user_id: int) -> dict[str, str]:
        token = await self.credentials.get_access_token(user_id)
        return {"Authorization": f"Bearer {token}"}

    async def _get(self, path: str, context: str, params: Optional[dict] = None,
                   headers: Optional[dict] = None):
        return await self.gateway.execute_call(
            request_json, self._get_client(), "GET", path, context,
            params=params, headers=headers,
        )

    async def scan_page(self, user_id: int, cursor: Optional[str], limit: int) -> ItemPage:
        headers = await self._auth_headers(user_id)
        params: dict = {"search_type": "scan", "limit": limit}
        if cursor:
            params["scroll_id"] = cursor

        data = await self._get(
            f"/users/{user_id}/items/search", f"scan user {user_id}",
            params=params, headers=headers,
        )
        try:
            page = _ScanResponse.model_validate(data)
        except ValidationError as e:
            raise TransientUpstreamError(f"scan user {user_id}: malformed page: {e}") from e

        # The scan endpoint signals the end with an empty result list
        next_cursor = page.scroll_id if page.results else None
        return ItemPage(item_ids=page.results, cursor=next_cursor, total=page.paging.total)

    async def _fetch_chunk(
        self, chunk: list[str], headers: dict, semaphore: asyncio.Semaphore
    ) -> BatchFetchResult:
        result = BatchFetchResult()
        async with semaphore:
            try:
                data = await self._get(
                    "/items", f"multiget {len(chunk)} items",
                    params={"ids": ",".join(chunk), "attributes": ",".join(ITEM_ATTRIBUTES)},
                    headers=headers,
                )
            except (TransientUpstreamError, RateLimitedError, UpstreamRequestError) as e:
                logger.warning(f"Multiget failed for {len(chunk)} items: {e}")
                for item_id in chunk:
                    result.failed[item_id] = str(e)
                return result

        if not isinstance(data, list):
            for item_id in chunk:
                result.failed[item_id] = "malformed multiget response"
            return result

        returned: set[str] = set()
        for position, raw in enumerate(data):
            try:
                entry = _MultigetEntry.model_validate(raw)
            except ValidationError:
                continue
            body = entry.body or {}
            item_id = body.get("id") or (chunk[position] if position < len(chunk) else None)
            if item_id is None:
                continue
            returned.add(item_id)
            if entry.code != 200:
                result.failed[item_id] = f"HTTP {entry.code}"
                continue
            try:
                result.items.append(CatalogItem.model_validate(body))
            except ValidationError as e:
                result.failed[item_id] = f"invalid item payload: {e.error_count()} errors"

        for item_id in chunk:
            if item_id not in returned:
                result.failed.setdefault(item_id, "missing from multiget response")
        return result

    async def fetch_items(self, user_id: int, item_ids: list[str]) -> BatchFetchResult:
        if not item_ids:
            return BatchFetchResult()

        headers = await self._auth_headers(user_id)
        semaphore = asyncio.Semaphore(self.concurrency)
        chunks = [
            item_ids[i:i + self.batch_size] for i in range(0, len(item_ids), self.batch_size)
        ]
        outcomes = await asyncio.gather(
            *(self._fetch_chunk(chunk, headers, semaphore) for chunk in chunks),
            return_exceptions=True,
        )

        merged = BatchFetchResult()
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                # Auth, queue timeouts and the like abort the whole batch
                raise outcome
            merged.items.extend(outcome.items)
            merged.failed.update(outcome.failed)
        return merged

    async def fetch_item(self, user_id: int, item_id: str) -> CatalogItem:
        headers = await self._auth_headers(user_id)
        data = await self._get(
            f"/items/{item_id}", f"item {item_id}",
            params={"attributes": ",".join(ITEM_ATTRIBUTES)}, headers=headers,
        )
        try:
            return CatalogItem.model_validate(data)
        except ValidationError as e:
            raise TransientUpstreamError(f"item {item_id}: malformed payload") from e

    async def fetch_category(self, category_id: str) -> Optional[CategoryInfo]:
        try:
            data = await self._get(f"/categories/{category_id}", f"category {category_id}")
        except ItemNotFoundError:
            return None
        try:
            return CategoryInfo.model_validate(data)
        except ValidationError:
            return None
