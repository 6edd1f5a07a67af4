"""Initial schema - profiles, subscriptions, payment_history, plans

Revision ID: 001
Revises:
Create Date: 2025-06-02

WHY: The billing mirror needs four tables:
- profiles: the role every sync path grants or revokes
- subscriptions: local copy of provider subscription state
- payment_history: every payment reported by a provider
- plans: provider plans discovered for reporting
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


PROFILE_ROLE = sa.Enum('user', 'pro', 'admin', name='profilerole')
PROVIDER = sa.Enum('stripe', 'paypal', 'paypal_legacy', name='subscriptionprovider')
STATUS = sa.Enum(
    'active', 'canceled', 'past_due', 'unpaid', 'trialing', 'paused',
    'incomplete', 'incomplete_expired', 'lifetime',
    name='subscriptionstatus',
)
TRANSACTION_TYPE = sa.Enum(
    'subscription', 'renewal', 'one_time', 'purchase', 'refund', 'payment_failed',
    name='transactiontype',
)
GATEWAY = sa.Enum('stripe', 'paypal', 'paypal_legacy', name='paymentgateway')


def upgrade() -> None:
    """
    Create the billing tables.

    WHY: (provider, provider_subscription_id) and
    payment_history.gateway_identifier are unique because every writer
    upserts or deduplicates on them.
    """
    op.create_table(
        'profiles',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('role', PROFILE_ROLE, nullable=False, server_default='user'),
        sa.Column('is_legacy_user', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_profiles_email', 'profiles', ['email'], unique=True)
    op.create_index('ix_profiles_created_at', 'profiles', ['created_at'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('provider', PROVIDER, nullable=False),
        sa.Column('provider_subscription_id', sa.String(length=255), nullable=False),
        sa.Column('provider_customer_id', sa.String(length=255), nullable=True),
        sa.Column('status', STATUS, nullable=False, server_default='active'),
        sa.Column('plan_id', sa.String(length=100), nullable=True),
        sa.Column('plan_name', sa.String(length=255), nullable=True),
        sa.Column('price_amount', sa.Integer(), nullable=True),
        sa.Column('price_currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('billing_interval', sa.String(length=20), nullable=True),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_at', sa.DateTime(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=255), nullable=True),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('trial_start', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('is_legacy', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('legacy_id', sa.String(length=100), nullable=True),
        sa.Column('legacy_data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['user_id'], ['profiles.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'provider', 'provider_subscription_id',
            name='uq_subscriptions_provider_subscription_id',
        ),
    )
    op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_provider', 'subscriptions', ['provider'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_created_at', 'subscriptions', ['created_at'])

    op.create_table(
        'payment_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('transaction_type', TRANSACTION_TYPE, nullable=False),
        sa.Column('gateway', GATEWAY, nullable=False),
        sa.Column('gateway_identifier', sa.String(length=255), nullable=True),
        sa.Column('gateway_event_id', sa.String(length=255), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('item_name', sa.String(length=255), nullable=True),
        sa.Column('redirect_status', sa.String(length=50), nullable=True),
        sa.Column('callback_status', sa.String(length=50), nullable=True),
        sa.Column('visible_for_user', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('is_legacy', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['user_id'], ['profiles.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway_identifier'),
    )
    op.create_index('ix_payment_history_id', 'payment_history', ['id'])
    op.create_index('ix_payment_history_user_id', 'payment_history', ['user_id'])
    op.create_index('ix_payment_history_transaction_type', 'payment_history', ['transaction_type'])
    op.create_index('ix_payment_history_gateway', 'payment_history', ['gateway'])
    op.create_index('ix_payment_history_redirect_status', 'payment_history', ['redirect_status'])
    op.create_index('ix_payment_history_created_at', 'payment_history', ['created_at'])

    op.create_table(
        'plans',
        sa.Column('id', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('price_amount', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('billing_interval', sa.String(length=20), nullable=True),
        sa.Column('stripe_price_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_product_id', sa.String(length=255), nullable=True),
        sa.Column('paypal_plan_id', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_legacy', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_discovered', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_plans_stripe_price_id', 'plans', ['stripe_price_id'])
    op.create_index('ix_plans_paypal_plan_id', 'plans', ['paypal_plan_id'])
    op.create_index('ix_plans_created_at', 'plans', ['created_at'])


def downgrade() -> None:
    """Drop all billing tables and their enum types."""
    op.drop_table('plans')
    op.drop_table('payment_history')
    op.drop_table('subscriptions')
    op.drop_table('profiles')

    bind = op.get_bind()
    for enum_type in (GATEWAY, TRANSACTION_TYPE, STATUS, PROVIDER, PROFILE_ROLE):
        enum_type.drop(bind, checkfirst=True)
