"""Tests for stock alert decisions and cooldown."""

import pytest
from sqlalchemy import select

from stocksync.db.models import AlertType, Product, StockAlert
from stocksync.ingest.reconciler import StockChange
from stocksync.notify.alert_emitter import AlertDelivery, AlertEmitter, deliver_alerts, evaluate
from stocksync.notify.discord import DiscordNotifier

USER_ID = 123456789


def _product(clock, item_id="MLA200", quantity=10, status="active") -> Product:
    return Product(
        id=item_id,
        user_id=USER_ID,
        title="Mochila Urbana",
        available_quantity=quantity,
        status=status,
        last_sync=clock(),
        created_at=clock(),
        updated_at=clock(),
    )


def _change(item_id="MLA200", quantity=3, previous=10, status="active") -> StockChange:
    return StockChange(
        product_id=item_id, title="Mochila Urbana", quantity=quantity,
        previous_quantity=previous, status=status,
    )


def test_evaluate():
    assert evaluate(0, 5) == AlertType.OUT_OF_STOCK
    assert evaluate(5, 5) == AlertType.LOW_STOCK
    assert evaluate(6, 5) is None


@pytest.mark.asyncio
async def test_cooldown_suppresses_then_allows(db_session, clock):
    db_session.add(_product(clock))
    await db_session.commit()
    emitter = AlertEmitter(db_session, USER_ID, threshold=5, cooldown_hours=24, movement_alerts=False)

    fired_at_t = await emitter.emit([_change(quantity=3)], clock())
    await db_session.commit()
    assert len(fired_at_t) == 1
    assert fired_at_t[0].alert_type == AlertType.LOW_STOCK

    clock.advance(hours=1)
    fired_at_t1 = await emitter.emit([_change(quantity=2, previous=3)], clock())
    await db_session.commit()
    assert fired_at_t1 == []

    clock.advance(hours=24)
    fired_at_t25 = await emitter.emit([_change(quantity=0, previous=2)], clock())
    await db_session.commit()
    assert len(fired_at_t25) == 1
    assert fired_at_t25[0].alert_type == AlertType.OUT_OF_STOCK

    alerts = (await db_session.execute(
        select(StockAlert).order_by(StockAlert.created_at)
    )).scalars().all()
    assert [a.alert_type for a in alerts] == [AlertType.LOW_STOCK, AlertType.OUT_OF_STOCK]
    assert alerts[0].cooldown_until == alerts[0].created_at + emitter.cooldown


@pytest.mark.asyncio
async def test_inactive_products_do_not_alert(db_session, clock):
    db_session.add(_product(clock, status="paused"))
    await db_session.commit()
    emitter = AlertEmitter(db_session, USER_ID, threshold=5, movement_alerts=False)

    fired = await emitter.emit([_change(quantity=0, status="paused")], clock())
    assert fired == []


@pytest.mark.asyncio
async def test_movement_alerts_are_recorded_without_delivery(db_session, clock):
    db_session.add(_product(clock, quantity=20))
    await db_session.commit()
    emitter = AlertEmitter(db_session, USER_ID, threshold=5, movement_alerts=True)

    fired = await emitter.emit([_change(quantity=15, previous=20)], clock())
    await db_session.commit()

    assert fired == []
    alert_types = (await db_session.execute(select(StockAlert.alert_type))).scalars().all()
    assert alert_types == [AlertType.STOCK_DECREASE]


@pytest.mark.asyncio
async def test_sweep_finds_low_stock_outside_cooldown(db_session, clock):
    db_session.add_all([
        _product(clock, "MLA1", quantity=0),
        _product(clock, "MLA2", quantity=4),
        _product(clock, "MLA3", quantity=50),
        _product(clock, "MLA4", quantity=1, status="closed"),
    ])
    await db_session.commit()
    emitter = AlertEmitter(db_session, USER_ID, threshold=5)

    fired = await emitter.sweep(clock())
    await db_session.commit()
    assert [(d.product_id, d.alert_type) for d in fired] == [
        ("MLA1", AlertType.OUT_OF_STOCK),
        ("MLA2", AlertType.LOW_STOCK),
    ]

    clock.advance(hours=2)
    assert await emitter.sweep(clock()) == []


class FailingNotifier:
    async def send_stock_alert(self, delivery):
        raise RuntimeError("discord down")


@pytest.mark.asyncio
async def test_delivery_failures_are_not_raised():
    delivery = AlertDelivery(
        product_id="MLA1", user_id=USER_ID, alert_type=AlertType.LOW_STOCK, quantity=2, threshold=5
    )
    assert await deliver_alerts(FailingNotifier(), [delivery]) == 0
    assert await deliver_alerts(None, [delivery]) == 0


def test_discord_payload():
    delivery = AlertDelivery(
        product_id="MLA1", user_id=USER_ID, alert_type=AlertType.OUT_OF_STOCK, quantity=0,
        threshold=5, title="Mochila Urbana", permalink="https://articulo.mercadolibre.com.ar/MLA-1",
    )
    payload = DiscordNotifier("https://discord.test/webhook").build_payload(delivery)

    embed = payload["embeds"][0]
    assert embed["title"] == "Out of stock: Mochila Urbana"
    assert embed["url"] == delivery.permalink
    assert embed["fields"][0]["value"] == "0"
