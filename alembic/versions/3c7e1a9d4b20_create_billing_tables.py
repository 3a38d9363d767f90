"""create billing tables

Revision ID: 3c7e1a9d4b20
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3c7e1a9d4b20'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create plans, coupons, subscriptions, payments and webhook ledger."""
    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('interval', sa.String(length=20), nullable=False, comment='MONTHLY|QUARTERLY|SEMIANNUAL|ANNUAL'),
        sa.Column('interval_count', sa.Integer(), nullable=False),
        sa.Column('trial_days', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('external_plan_id', sa.String(length=255), nullable=True, comment='preapproval_plan id no gateway'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )
    op.create_index(op.f('ix_subscription_plans_id'), 'subscription_plans', ['id'], unique=False)

    op.create_table(
        'coupons',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('code', sa.String(length=50), nullable=False),
        sa.Column('discount_type', sa.String(length=20), nullable=False, comment='PERCENTAGE|FIXED'),
        sa.Column('discount_value', sa.Numeric(12, 2), nullable=False),
        sa.Column('max_discount_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('applies_to_all_plans', sa.Boolean(), nullable=False),
        sa.Column('usage_count', sa.Integer(), nullable=False),
        sa.Column('total_discount_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_coupons_id'), 'coupons', ['id'], unique=False)
    op.create_index(op.f('ix_coupons_code'), 'coupons', ['code'], unique=True)

    op.create_table(
        'coupon_plan_restrictions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('coupon_id', sa.Uuid(), nullable=False),
        sa.Column('plan_id', sa.Uuid(), nullable=False),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('coupon_id', 'plan_id', name='uq_coupon_plan'),
    )
    op.create_index(
        op.f('ix_coupon_plan_restrictions_coupon_id'), 'coupon_plan_restrictions', ['coupon_id'], unique=False
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('plan_id', sa.Uuid(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, comment='PENDING|ACTIVE|PAST_DUE|CANCELED'),
        sa.Column('is_paused', sa.Boolean(), nullable=False),
        sa.Column('paused_at', sa.DateTime(), nullable=True),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('next_billing_date', sa.DateTime(), nullable=True),
        sa.Column('renewal_failures', sa.Integer(), nullable=False),
        sa.Column('renewal_attempt_date', sa.DateTime(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('cancel_reason', sa.Text(), nullable=True),
        sa.Column('external_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('external_merchant_order_id', sa.String(length=255), nullable=True),
        sa.Column('coupon_id', sa.Uuid(), nullable=True),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('original_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('metadata_json', sa.JSON(), nullable=True, comment="opaque map; 'system' selects legacy handling"),
        sa.Column('version', sa.Integer(), nullable=False, comment='compare-and-set token'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_subscriptions_id'), 'subscriptions', ['id'], unique=False)
    op.create_index(op.f('ix_subscriptions_user_id'), 'subscriptions', ['user_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_plan_id'), 'subscriptions', ['plan_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_status'), 'subscriptions', ['status'], unique=False)
    op.create_index(op.f('ix_subscriptions_next_billing_date'), 'subscriptions', ['next_billing_date'], unique=False)
    op.create_index(
        op.f('ix_subscriptions_external_subscription_id'), 'subscriptions', ['external_subscription_id'], unique=True
    )

    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, comment='PENDING|APPROVED|REJECTED|IN_PROCESS|REFUNDED|CHARGED_BACK'),
        sa.Column('external_payment_id', sa.String(length=255), nullable=True),
        sa.Column('external_status', sa.String(length=50), nullable=True),
        sa.Column('external_status_detail', sa.String(length=255), nullable=True),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('original_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('coupon_code', sa.String(length=50), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('payment_date', sa.DateTime(), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_payments_id'), 'payments', ['id'], unique=False)
    op.create_index(op.f('ix_payments_subscription_id'), 'payments', ['subscription_id'], unique=False)
    op.create_index(op.f('ix_payments_external_payment_id'), 'payments', ['external_payment_id'], unique=True)

    op.create_table(
        'coupon_usage_history',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('coupon_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=True),
        sa.Column('payment_id', sa.Uuid(), nullable=True),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('original_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id']),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_id'),
    )
    op.create_index(op.f('ix_coupon_usage_history_coupon_id'), 'coupon_usage_history', ['coupon_id'], unique=False)
    op.create_index(op.f('ix_coupon_usage_history_user_id'), 'coupon_usage_history', ['user_id'], unique=False)

    op.create_table(
        'webhook_notifications',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('source', sa.String(length=50), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('action', sa.String(length=100), nullable=True, comment='payment.created|payment.updated|...'),
        sa.Column('resource_id', sa.String(length=255), nullable=True),
        sa.Column('raw_data', sa.JSON(), nullable=True),
        sa.Column('process_status', sa.String(length=20), nullable=False, comment='pending|processed|error'),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('live_mode', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_webhook_notifications_id'), 'webhook_notifications', ['id'], unique=False)
    op.create_index(op.f('ix_webhook_notifications_event_id'), 'webhook_notifications', ['event_id'], unique=True)
    op.create_index(op.f('ix_webhook_notifications_event_type'), 'webhook_notifications', ['event_type'], unique=False)
    op.create_index(
        op.f('ix_webhook_notifications_process_status'), 'webhook_notifications', ['process_status'], unique=False
    )
    op.create_index(op.f('ix_webhook_notifications_created_at'), 'webhook_notifications', ['created_at'], unique=False)


def downgrade() -> None:
    """Drop billing tables in reverse dependency order."""
    op.drop_table('webhook_notifications')
    op.drop_table('coupon_usage_history')
    op.drop_table('payments')
    op.drop_table('subscriptions')
    op.drop_table('coupon_plan_restrictions')
    op.drop_table('coupons')
    op.drop_table('subscription_plans')
