"""Create billing tables and the webhook_events ledger

Revision ID: 001
Revises: 
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_stripe_customer_id', 'users', ['stripe_customer_id'])

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=50), nullable=False),
        sa.Column('stripe_price_id', sa.String(length=255), nullable=False),
        sa.Column('max_users', sa.Integer(), nullable=True),
        sa.Column('max_projects', sa.Integer(), nullable=True),
        sa.Column('max_storage', sa.BigInteger(), nullable=True),
        sa.Column('max_api_calls', sa.Integer(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_subscription_plans_stripe_price_id', 'subscription_plans', ['stripe_price_id'], unique=True)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.String(length=36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('subscription_plans.id'), nullable=False),
        sa.Column('stripe_subscription_id', sa.String(length=255), nullable=False),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=False),
        sa.Column('stripe_price_id', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=10), nullable=False, server_default='usd'),
        sa.Column('interval', sa.String(length=10), nullable=False, server_default='MONTH'),
        sa.Column('interval_count', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_plan_id', 'subscriptions', ['plan_id'])
    op.create_index('ix_subscriptions_stripe_subscription_id', 'subscriptions', ['stripe_subscription_id'], unique=True)
    op.create_index('ix_subscriptions_stripe_customer_id', 'subscriptions', ['stripe_customer_id'])

    op.create_table(
        'usage_quotas',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.Integer(), sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('metric_type', sa.String(length=20), nullable=False),
        sa.Column('limit_amount', sa.BigInteger(), nullable=False),
        sa.Column('current_amount', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('hard_limit', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('exceeded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('alert_threshold', sa.Integer(), nullable=True),
        sa.Column('alert_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('reset_date', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('subscription_id', 'metric_type', name='uq_usage_quotas_subscription_metric'),
    )
    op.create_index('ix_usage_quotas_subscription_id', 'usage_quotas', ['subscription_id'])

    op.create_table(
        'stripe_customers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=False),
        sa.Column('user_id', sa.String(length=36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_stripe_customers_stripe_customer_id', 'stripe_customers', ['stripe_customer_id'], unique=True)
    op.create_index('ix_stripe_customers_user_id', 'stripe_customers', ['user_id'])

    # Idempotency ledger: one row per Stripe event ID
    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('raw_payload', sa.JSON(), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_webhook_events_event_id', 'webhook_events', ['event_id'], unique=True)
    op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
    op.create_index('ix_webhook_events_processed', 'webhook_events', ['processed'])
    op.create_index('ix_webhook_events_created_at', 'webhook_events', ['created_at'])


def downgrade() -> None:
    op.drop_table('webhook_events')
    op.drop_table('stripe_customers')
    op.drop_table('usage_quotas')
    op.drop_table('subscriptions')
    op.drop_table('subscription_plans')
    op.drop_table('users')
