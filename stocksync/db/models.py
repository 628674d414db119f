"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from stocksync.db.encryption import EncryptedString


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ScanStatus:
    """Scan lifecycle values stored in scan_control.status."""

    IDLE = "idle"
    ACTIVE = "active"
    COMPLETED = "completed"


class ProcessingStatus:
    """Webhook processing values stored in webhook_events.processing_status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class AlertType:
    """Stock alert kinds."""

    LOW_STOCK = "LOW_STOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    STOCK_DECREASE = "STOCK_DECREASE"
    STOCK_INCREASE = "STOCK_INCREASE"


class ScanControl(Base):
    """Per-user scan progress (cursor, totals, status)."""

    __tablename__ = "scan_control"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    scroll_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_products: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_products: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duplicates: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=ScanStatus.IDLE, nullable=False)
    scan_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cursor_issued_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "scroll_token IS NOT NULL OR status != 'active'",
            name="ck_scan_control_active_has_cursor",
        ),
    )


class ScanSeenItem(Base):
    """Item identifiers already counted by the current scan of a user."""

    __tablename__ = "scan_seen_items"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    item_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    seen_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class SyncControl(Base):
    """Last completed full scan per user."""

    __tablename__ = "sync_control"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    last_full_sync: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    products_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class Product(Base):
    """Local copy of a marketplace listing owned by a seller."""

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sku: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    available_quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    currency_id: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="active", nullable=False)
    permalink: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    listing_type_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    health: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_sync: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_alert_sent: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("available_quantity >= 0", name="ck_products_quantity_non_negative"),
        Index("ix_products_user_quantity", "user_id", "available_quantity"),
    )


class Category(Base):
    """Resolved category names."""

    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    site_id: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    source: Mapped[str] = mapped_column(String(16), default="remote", nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class WebhookEvent(Base):
    """Inbound marketplace notification."""

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    topic: Mapped[str] = mapped_column(String(64), nullable=False)
    resource: Mapped[str] = mapped_column(Text, nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    application_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    delivery_attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processing_status: Mapped[str] = mapped_column(
        String(16), default=ProcessingStatus.PENDING, nullable=False
    )
    processing_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    client_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_webhook_events_user_processed", "user_id", "processed"),
        Index("ix_webhook_events_received_at", "received_at"),
    )


class StockAlert(Base):
    """Stock alert history. Rows are never updated."""

    __tablename__ = "stock_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_quantity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    threshold: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    cooldown_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_stock_alerts_user_created", "user_id", "created_at"),
    )


class UserToken(Base):
    """Marketplace OAuth tokens for a seller account."""

    __tablename__ = "user_tokens"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    access_token: Mapped[Optional[str]] = mapped_column(EncryptedString(1024), nullable=True)
    refresh_token: Mapped[Optional[str]] = mapped_column(EncryptedString(1024), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
