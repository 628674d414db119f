"""Discord webhook delivery for stock alerts."""

import logging
from datetime import datetime
from typing import TYPE_CHECKING

import httpx

from stocksync.db.models import AlertType

if TYPE_CHECKING:
    from stocksync.notify.alert_emitter import AlertDelivery

logger = logging.getLogger(__name__)

ALERT_COLORS = {
    AlertType.OUT_OF_STOCK: 0xFF0000,
    AlertType.LOW_STOCK: 0xFFA500,
}


class DiscordNotifier:
    """Discord webhook client for sending stock alerts."""

    def __init__(self, webhook_url: str, client: httpx.AsyncClient | None = None):
        self.webhook_url = webhook_url
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def build_payload(self, delivery: "AlertDelivery") -> dict:
        label = "Out of stock" if delivery.alert_type == AlertType.OUT_OF_STOCK else "Low stock"
        embed = {
            "title": f"{label}: {delivery.title or delivery.product_id}",
            "color": ALERT_COLORS.get(delivery.alert_type, 0xFFA500),
            "fields": [
                {"name": "Available", "value": str(delivery.quantity), "inline": True},
                {"name": "Threshold", "value": str(delivery.threshold), "inline": True},
            ],
            "footer": {"text": f"Item: {delivery.product_id} | Seller: {delivery.user_id}"},
            "timestamp": datetime.utcnow().isoformat(),
        }
        if delivery.permalink:
            embed["url"] = delivery.permalink

        return {"embeds": [embed], "username": "Stock Sync"}

    async def send_stock_alert(self, delivery: "AlertDelivery") -> str | None:
        """
        Send a stock alert to Discord.

        Args:
            delivery: Fired alert

        Returns:
            Discord message ID if returned, None otherwise
        """
        client = await self._get_client()
        response = await client.post(
            self.webhook_url, json=self.build_payload(delivery), params={"wait": "true"}
        )
        response.raise_for_status()

        message_id = None
        if response.content:
            data = response.json()
            message_id = data.get("id")

        logger.info(f"Sent Discord {delivery.alert_type} alert for {delivery.product_id}")
        return message_id
