"""initial ledger schema

Revision ID: 2026_10_17_0000
Revises:
Create Date: 2026-10-17 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_17_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


SUBSCRIPTION_STATUSES = "('trial', 'active', 'grace', 'pending_cancellation', 'canceled', 'expired', 'refunded', 'paused')"
STORES = "('mobile', 'appstore', 'web')"


def upgrade() -> None:
    """Create the subscription ledger schema."""

    # ========================================================================
    # Collaborator tables: users (projection columns only) and products
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('is_subscribed', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('subscription_status', sa.String(32), nullable=True),
        sa.Column('subscription_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('subscription_source', sa.String(16), nullable=True),
        sa.Column('subscription_plan', sa.String(255), nullable=True),
        sa.Column('active_subscription_id', UUID(as_uuid=True), nullable=True),
        sa.Column('last_payment_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('entitlement_updated_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'products',
        sa.Column('product_id', sa.String(255), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('billing_period', sa.String(16), nullable=False),
        sa.Column('price_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('google_play_product_id', sa.String(255), nullable=True),
        sa.Column('app_store_product_id', sa.String(255), nullable=True),
        sa.Column('stripe_price_id', sa.String(255), nullable=True),
        sa.Column('trial_period_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('grace_period_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('price_minor >= 0', name='ck_products_price_non_negative'),
        sa.CheckConstraint(
            "billing_period IN ('weekly', 'monthly', 'quarterly', 'yearly')",
            name='ck_products_billing_period',
        ),
    )

    op.create_index('idx_products_google_play_product_id', 'products', ['google_play_product_id'])
    op.create_index('idx_products_app_store_product_id', 'products', ['app_store_product_id'])
    op.create_index('idx_products_stripe_price_id', 'products', ['stripe_price_id'])

    # ========================================================================
    # Create subscriptions table
    # ========================================================================
    op.create_table(
        'subscriptions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('product_id', sa.String(255), sa.ForeignKey('products.product_id'), nullable=False),
        sa.Column('store_product_id', sa.String(255), nullable=True),
        sa.Column('store', sa.String(16), nullable=False),
        sa.Column('correlation_key', sa.String(4096), nullable=False),
        sa.Column('original_transaction_id', sa.String(255), nullable=True),
        sa.Column('linked_purchase_token', sa.String(4096), nullable=True),
        sa.Column('environment', sa.String(20), nullable=False, server_default='production'),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('auto_renewing', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('trial_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('grace_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.String(255), nullable=True),
        sa.Column('price_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('validation_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_validated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('price_minor >= 0', name='ck_subscriptions_price_non_negative'),
        sa.CheckConstraint('validation_attempts >= 0', name='ck_subscriptions_validation_attempts_non_negative'),
        sa.CheckConstraint(f'status IN {SUBSCRIPTION_STATUSES}', name='ck_subscriptions_status'),
        sa.CheckConstraint(f'store IN {STORES}', name='ck_subscriptions_store'),
        sa.UniqueConstraint('store', 'correlation_key', name='uq_subscriptions_store_correlation'),
    )

    op.create_index('idx_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('idx_subscriptions_status_period_end', 'subscriptions', ['status', 'current_period_end'])
    op.create_index(
        'idx_subscriptions_original_transaction_id', 'subscriptions', ['original_transaction_id'],
        postgresql_where=sa.text('original_transaction_id IS NOT NULL'),
    )

    # ========================================================================
    # Create payment_records table
    # ========================================================================
    op.create_table(
        'payment_records',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('subscription_id', UUID(as_uuid=True), sa.ForeignKey('subscriptions.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('store', sa.String(16), nullable=False),
        sa.Column('store_transaction_id', sa.String(255), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('transaction_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('original_payment_id', UUID(as_uuid=True), sa.ForeignKey('payment_records.id'), nullable=True),
        sa.Column('exported', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('exported_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('export_batch_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('store', 'store_transaction_id', name='uq_payment_records_store_transaction'),
        sa.CheckConstraint(
            "(transaction_type IN ('refund', 'partial_refund', 'chargeback', 'reversal') "
            "AND amount_minor <= 0) OR "
            "(transaction_type NOT IN ('refund', 'partial_refund', 'chargeback', 'reversal') "
            "AND amount_minor >= 0)",
            name='ck_payment_records_amount_sign',
        ),
    )

    op.create_index('idx_payment_records_user_id', 'payment_records', ['user_id'])
    op.create_index('idx_payment_records_subscription_id', 'payment_records', ['subscription_id'])
    op.create_index(
        'idx_payment_records_exported', 'payment_records', ['exported'],
        postgresql_where=sa.text('NOT exported'),
    )

    # ========================================================================
    # Create subscription_events table (append-only)
    # ========================================================================
    op.create_table(
        'subscription_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('subscription_id', UUID(as_uuid=True), sa.ForeignKey('subscriptions.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('event_kind', sa.String(32), nullable=False),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('store', sa.String(16), nullable=True),
        sa.Column('previous_status', sa.String(32), nullable=True),
        sa.Column('new_status', sa.String(32), nullable=True),
        sa.Column('period_end_before', sa.DateTime(timezone=True), nullable=True),
        sa.Column('period_end_after', sa.DateTime(timezone=True), nullable=True),
        sa.Column('applied', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('notification_id', sa.String(255), nullable=True),
        sa.Column('notification_type', sa.String(100), nullable=True),
        sa.Column('raw_notification', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('has_financial_impact', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('amount_minor', sa.BigInteger(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('payment_record_id', UUID(as_uuid=True), sa.ForeignKey('payment_records.id'), nullable=True),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('event_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    op.create_index(
        'uq_subscription_events_notification_id', 'subscription_events', ['notification_id'],
        unique=True, postgresql_where=sa.text('notification_id IS NOT NULL'),
    )
    op.create_index('idx_subscription_events_subscription_id', 'subscription_events', ['subscription_id', 'created_at'])
    op.create_index('idx_subscription_events_kind_created', 'subscription_events', ['event_kind', 'created_at'])

    # Append-only: forbid UPDATE and DELETE on the audit trail
    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_subscription_event_mutation()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION 'subscription_events is append-only';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER trg_subscription_events_append_only
        BEFORE UPDATE OR DELETE ON subscription_events
        FOR EACH ROW EXECUTE FUNCTION prevent_subscription_event_mutation();
    """)

    # ========================================================================
    # Create unresolved_notifications table (operator queue)
    # ========================================================================
    op.create_table(
        'unresolved_notifications',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('store', sa.String(16), nullable=False),
        sa.Column('correlation_key', sa.String(4096), nullable=False),
        sa.Column('store_product_id', sa.String(255), nullable=True),
        sa.Column('notification_id', sa.String(255), nullable=True),
        sa.Column('event_kind', sa.String(32), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('error_kind', sa.String(100), nullable=False),
        sa.Column('raw_notification', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('status', sa.String(16), nullable=False, server_default='open'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_subscription_id', UUID(as_uuid=True), sa.ForeignKey('subscriptions.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("status IN ('open', 'resolved')", name='ck_unresolved_notifications_status'),
    )

    op.create_index(
        'idx_unresolved_notifications_open', 'unresolved_notifications', ['created_at'],
        postgresql_where=sa.text("status = 'open'"),
    )
    op.create_index('idx_unresolved_notifications_correlation', 'unresolved_notifications', ['store', 'correlation_key'])


def downgrade() -> None:
    """Drop the subscription ledger schema."""
    op.drop_table('unresolved_notifications')
    op.execute("DROP TRIGGER IF EXISTS trg_subscription_events_append_only ON subscription_events")
    op.execute("DROP FUNCTION IF EXISTS prevent_subscription_event_mutation()")
    op.drop_table('subscription_events')
    op.drop_table('payment_records')
    op.drop_table('subscriptions')
    op.drop_table('products')
    op.drop_table('users')
