"""Inbound marketplace notification payloads."""

import hashlib
import re
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

SUPPORTED_TOPICS = frozenset({
    "items",
    "items_prices",
    "stock-location",
    "stock-locations",  # the marketplace sends both spellings
})

IGNORED_TOPICS = frozenset({
    "orders_v2",
    "shipments",
    "messages",
    "price_suggestion",
    "fbm_stock_operations",
    "questions",
})

RESOURCE_PATTERN = re.compile(r"/(user-products|items)/([^/?]+)")


class TopicKind:
    SUPPORTED = "supported"
    IGNORED = "ignored"
    UNSUPPORTED = "unsupported"


def classify_topic(topic: str) -> str:
    if topic in SUPPORTED_TOPICS:
        return TopicKind.SUPPORTED
    if topic in IGNORED_TOPICS:
        return TopicKind.IGNORED
    return TopicKind.UNSUPPORTED


def extract_resource_id(resource: str) -> Optional[str]:
    """
    Pull the entity id out of a notification resource.

    /items/MLA123456789 and /user-products/MLAU123/stock both carry it in
    the second path segment.
    """
    match = RESOURCE_PATTERN.search(resource)
    if match:
        return match.group(2)
    return None


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class WebhookPayload(BaseModel):
    """Notification body. Unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    notification_id: Optional[str] = Field(default=None, alias="_id")
    topic: str = Field(min_length=1)
    resource: str = Field(min_length=1)
    user_id: int
    sent: datetime
    attempts: int = Field(ge=0)
    application_id: Optional[Union[int, str]] = None
    received: Optional[datetime] = None

    @property
    def event_id(self) -> str:
        """Idempotency key: the marketplace id, or a digest of the delivery."""
        if self.notification_id:
            return self.notification_id
        raw = f"{self.user_id}:{self.topic}:{self.resource}:{self.sent.isoformat()}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    @property
    def resource_id(self) -> Optional[str]:
        return extract_resource_id(self.resource)
