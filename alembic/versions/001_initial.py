"""Initial migration

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Scan progress, one row per seller
    op.create_table(
        'scan_control',
        sa.Column('user_id', sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column('scroll_token', sa.Text(), nullable=True),
        sa.Column('total_products', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_products', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('duplicates', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='idle'),
        sa.Column('scan_started_at', sa.DateTime(), nullable=True),
        sa.Column('cursor_issued_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('user_id'),
        sa.CheckConstraint(
            "scroll_token IS NOT NULL OR status != 'active'",
            name='ck_scan_control_active_has_cursor',
        ),
    )

    # Items already counted by the current scan
    op.create_table(
        'scan_seen_items',
        sa.Column('user_id', sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column('item_id', sa.String(length=32), nullable=False),
        sa.Column('seen_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('user_id', 'item_id'),
    )

    # Last completed full scan per seller
    op.create_table(
        'sync_control',
        sa.Column('user_id', sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column('last_full_sync', sa.DateTime(), nullable=True),
        sa.Column('products_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('user_id'),
    )

    # Products table
    op.create_table(
        'products',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('sku', sa.String(length=128), nullable=True),
        sa.Column('available_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('price', sa.Numeric(precision=14, scale=2), nullable=True),
        sa.Column('currency_id', sa.String(length=8), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('permalink', sa.Text(), nullable=True),
        sa.Column('category_id', sa.String(length=32), nullable=True),
        sa.Column('listing_type_id', sa.String(length=32), nullable=True),
        sa.Column('health', sa.Float(), nullable=True),
        sa.Column('last_sync', sa.DateTime(), nullable=False),
        sa.Column('last_alert_sent', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', 'user_id'),
        sa.CheckConstraint('available_quantity >= 0', name='ck_products_quantity_non_negative'),
    )

    # Category name cache
    op.create_table(
        'categories',
        sa.Column('id', sa.String(length=32), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('site_id', sa.String(length=8), nullable=True),
        sa.Column('source', sa.String(length=16), nullable=False, server_default='remote'),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    # Inbound marketplace notifications
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.String(length=128), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('topic', sa.String(length=64), nullable=False),
        sa.Column('resource', sa.Text(), nullable=False),
        sa.Column('resource_id', sa.String(length=64), nullable=True),
        sa.Column('application_id', sa.String(length=64), nullable=True),
        sa.Column('delivery_attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('received_at', sa.DateTime(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processing_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('processing_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('client_ip', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id'),
    )

    # Stock alerts table
    op.create_table(
        'stock_alerts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('alert_type', sa.String(length=32), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('previous_quantity', sa.Integer(), nullable=True),
        sa.Column('threshold', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('cooldown_until', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    # Encrypted seller credentials
    op.create_table(
        'user_tokens',
        sa.Column('user_id', sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column('access_token', sa.String(length=1024), nullable=True),
        sa.Column('refresh_token', sa.String(length=1024), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('user_id'),
    )

    # Create indexes
    op.create_index('ix_products_user_quantity', 'products', ['user_id', 'available_quantity'])
    op.create_index('ix_webhook_events_user_processed', 'webhook_events', ['user_id', 'processed'])
    op.create_index('ix_webhook_events_received_at', 'webhook_events', ['received_at'])
    op.create_index('ix_stock_alerts_product_id', 'stock_alerts', ['product_id'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_stock_alerts_product_id', table_name='stock_alerts')
    op.drop_index('ix_webhook_events_received_at', table_name='webhook_events')
    op.drop_index('ix_webhook_events_user_processed', table_name='webhook_events')
    op.drop_index('ix_products_user_quantity', table_name='products')

    # Drop tables
    op.drop_table('user_tokens')
    op.drop_table('stock_alerts')
    op.drop_table('webhook_events')
    op.drop_table('categories')
    op.drop_table('products')
    op.drop_table('sync_control')
    op.drop_table('scan_seen_items')
    op.drop_table('scan_control')
