"""Low-stock and out-of-stock alert decisions with a per-product cooldown."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stocksync import metrics
from stocksync.db.models import AlertType, Product, StockAlert
from stocksync.ingest.reconciler import StockChange

if TYPE_CHECKING:
    from stocksync.notify.discord import DiscordNotifier

logger = logging.getLogger(__name__)


@dataclass
class AlertDelivery:
    """An alert that fired and should reach the notifier after commit."""

    product_id: str
    user_id: int
    alert_type: str
    quantity: int
    threshold: int
    title: Optional[str] = None
    permalink: Optional[str] = None


def evaluate(quantity: int, threshold: int) -> Optional[str]:
    """
    Classify a quantity against the threshold.

    Returns:
        OUT_OF_STOCK, LOW_STOCK or None
    """
    if quantity == 0:
        return AlertType.OUT_OF_STOCK
    if quantity <= threshold:
        return AlertType.LOW_STOCK
    return None


class AlertEmitter:
    """
    Decide which stock alerts fire and record them.

    The cooldown lives on products.last_alert_sent. Claiming it is a
    conditional UPDATE, so two writers racing on the same product fire once.
    """

    def __init__(
        self,
        session: AsyncSession,
        user_id: int,
        threshold: int = 5,
        cooldown_hours: int = 24,
        movement_alerts: bool = True,
    ):
        self.session = session
        self.user_id = user_id
        self.threshold = threshold
        self.cooldown = timedelta(hours=cooldown_hours)
        self.movement_alerts = movement_alerts

    async def emit(self, changes: Iterable[StockChange], now: datetime) -> list[AlertDelivery]:
        """
        Evaluate reconciled records.

        Args:
            changes: New and changed records from the reconciler
            now: Alert timestamp

        Returns:
            Alerts to hand to the notifier once the transaction commits
        """
        deliveries: list[AlertDelivery] = []
        for change in changes:
            if self.movement_alerts:
                await self._record_movement(change, now)

            if change.status != "active":
                continue
            alert_type = evaluate(change.quantity, self.threshold)
            if alert_type is None:
                continue
            delivery = await self._fire(
                change.product_id, alert_type, change.quantity, now,
                title=change.title, permalink=change.permalink,
                previous_quantity=change.previous_quantity,
            )
            if delivery:
                deliveries.append(delivery)
        return deliveries

    async def sweep(self, now: datetime) -> list[AlertDelivery]:
        """Check every active product of the user, for items the incremental path missed."""
        result = await self.session.execute(
            select(Product.id, Product.title, Product.available_quantity, Product.permalink)
            .where(
                Product.user_id == self.user_id,
                Product.status == "active",
                Product.available_quantity <= self.threshold,
                or_(
                    Product.last_alert_sent.is_(None),
                    Product.last_alert_sent <= now - self.cooldown,
                ),
            )
            .order_by(Product.available_quantity.asc(), Product.id.asc())
        )
        deliveries: list[AlertDelivery] = []
        for row in result.all():
            alert_type = evaluate(row.available_quantity, self.threshold)
            delivery = await self._fire(
                row.id, alert_type, row.available_quantity, now,
                title=row.title, permalink=row.permalink,
            )
            if delivery:
                deliveries.append(delivery)

        logger.info(
            f"Low-stock sweep for user {self.user_id}: {len(deliveries)} alerts "
            f"(threshold {self.threshold})"
        )
        return deliveries

    async def _fire(
        self,
        product_id: str,
        alert_type: str,
        quantity: int,
        now: datetime,
        title: Optional[str] = None,
        permalink: Optional[str] = None,
        previous_quantity: Optional[int] = None,
    ) -> Optional[AlertDelivery]:
        claimed = await self.session.execute(
            update(Product)
            .where(
                Product.id == product_id,
                Product.user_id == self.user_id,
                or_(
                    Product.last_alert_sent.is_(None),
                    Product.last_alert_sent <= now - self.cooldown,
                ),
            )
            .values(last_alert_sent=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.debug(f"{alert_type} for {product_id} suppressed by cooldown")
            return None

        self.session.add(
            StockAlert(
                product_id=product_id,
                user_id=self.user_id,
                alert_type=alert_type,
                quantity=quantity,
                previous_quantity=previous_quantity,
                threshold=self.threshold,
                created_at=now,
                cooldown_until=now + self.cooldown,
            )
        )
        metrics.record_stock_alert(alert_type)
        logger.info(f"{alert_type} alert for {product_id} (quantity {quantity})")
        return AlertDelivery(
            product_id=product_id,
            user_id=self.user_id,
            alert_type=alert_type,
            quantity=quantity,
            threshold=self.threshold,
            title=title,
            permalink=permalink,
        )

    async def _record_movement(self, change: StockChange, now: datetime) -> None:
        if change.previous_quantity is None or change.previous_quantity == change.quantity:
            return
        alert_type = (
            AlertType.STOCK_DECREASE
            if change.quantity < change.previous_quantity
            else AlertType.STOCK_INCREASE
        )
        self.session.add(
            StockAlert(
                product_id=change.product_id,
                user_id=self.user_id,
                alert_type=alert_type,
                quantity=change.quantity,
                previous_quantity=change.previous_quantity,
                threshold=self.threshold,
                created_at=now,
            )
        )
        metrics.record_stock_alert(alert_type)


async def deliver_alerts(
    notifier: Optional["DiscordNotifier"], deliveries: list[AlertDelivery]
) -> int:
    """
    Send fired alerts. Delivery failures are logged, never raised.

    Returns:
        Number of alerts delivered
    """
    if not deliveries:
        return 0
    if notifier is None:
        for delivery in deliveries:
            logger.info(
                f"{delivery.alert_type}: {delivery.title or delivery.product_id} "
                f"has {delivery.quantity} units"
            )
        return 0

    sent = 0
    for delivery in deliveries:
        try:
            await notifier.send_stock_alert(delivery)
            sent += 1
            metrics.record_alert_sent(True)
        except Exception as e:
            metrics.record_alert_sent(False)
            logger.error(f"Failed to deliver {delivery.alert_type} for {delivery.product_id}: {e}")
    return sent
