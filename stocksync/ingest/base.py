"""Catalog source interface and the typed records it returns."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ItemAttribute(BaseModel):
    """One entry of an item's attributes list."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    name: Optional[str] = None
    value_name: Optional[str] = None


class CatalogItem(BaseModel):
    """Item detail as returned by the marketplace. Unknown fields are dropped."""

    model_config = ConfigDict(extra="ignore")

    id: str
    title: Optional[str] = None
    available_quantity: Optional[int] = 0
    price: Optional[Decimal] = None
    currency_id: Optional[str] = None
    status: Optional[str] = None
    permalink: Optional[str] = None
    category_id: Optional[str] = None
    listing_type_id: Optional[str] = None
    health: Optional[float] = None
    seller_sku: Optional[str] = None
    attributes: list[ItemAttribute] = Field(default_factory=list)


class CategoryInfo(BaseModel):
    """Category lookup result."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str


@dataclass
class ItemPage:
    """One page of a user's item enumeration.

    A None cursor means the enumeration is finished.
    """

    item_ids: list[str]
    cursor: Optional[str]
    total: Optional[int] = None


@dataclass
class BatchFetchResult:
    """Details fetched for a list of ids; failures are keyed by item id."""

    items: list[CatalogItem] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


class CatalogSource(ABC):
    """Access to a seller's catalog. Every call is metered by the gateway."""

    name: str = "base"

    @abstractmethod
    async def scan_page(
        self, user_id: int, cursor: Optional[str], limit: int
    ) -> ItemPage:
        """
        Fetch one page of item identifiers.

        Args:
            user_id: Seller account id
            cursor: Cursor returned by the previous page, None to start
            limit: Page size

        Raises:
            CursorExpiredError: If the cursor is no longer accepted
            AuthExpiredError: If the seller must re-authenticate
        """

    @abstractmethod
    async def fetch_items(self, user_id: int, item_ids: list[str]) -> BatchFetchResult:
        """Fetch details for many items using batch requests."""

    @abstractmethod
    async def fetch_item(self, user_id: int, item_id: str) -> CatalogItem:
        """
        Fetch a single item.

        Raises:
            ItemNotFoundError: If the item does not exist
        """

    @abstractmethod
    async def fetch_category(self, category_id: str) -> Optional[CategoryInfo]:
        """Look up a category name, None if unknown."""

    async def close(self) -> None:
        """Release network resources."""
        return None
