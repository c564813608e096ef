"""Initial schema: accounts, services, plans, subscriptions, ledger entries, coupons

Revision ID: a1c4e7f20b13
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'a1c4e7f20b13'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum labels are the Python member names, which is what SQLEnum stores
plan_type = sa.Enum('FREE', 'BASIC', 'PRO', 'PREMIUM', 'ENTERPRISE', name='plantype')
subscription_status = sa.Enum(
    'ACTIVE', 'PENDING_PAYMENT', 'PENDING_UPGRADE', 'EXPIRED', 'CANCELLED', name='subscriptionstatus'
)
ledger_entry_type = sa.Enum(
    'TOP_UP', 'SUBSCRIPTION', 'UPGRADE', 'REFUND', 'ADMIN_ADJUSTMENT', 'COUPON_REDEMPTION', name='ledgerentrytype'
)
ledger_entry_status = sa.Enum('PENDING', 'COMPLETED', 'FAILED', 'CANCELLED', name='ledgerentrystatus')
coupon_type = sa.Enum('CREDIT_TOPUP', 'SUBSCRIPTION_DISCOUNT', 'FREE_SERVICE', 'WELCOME_BONUS', name='coupontype')
coupon_status = sa.Enum('ACTIVE', 'EXPIRED', 'DISABLED', 'USED_UP', name='couponstatus')
discount_type = sa.Enum('PERCENTAGE', 'FIXED_AMOUNT', name='discounttype')


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    """Create all tables for the billing core."""
    # 1. Accounts
    op.create_table(
        'accounts',
        *_timestamps(),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('credit_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_top_up', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_spent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('ledger_sequence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('total_top_up >= 0', name='ck_accounts_total_top_up_non_negative'),
        sa.CheckConstraint('total_spent >= 0', name='ck_accounts_total_spent_non_negative'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_accounts_email'), 'accounts', ['email'], unique=True)
    op.create_index(op.f('ix_accounts_created_at'), 'accounts', ['created_at'])

    # 2. Services
    op.create_table(
        'services',
        *_timestamps(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_services_slug'), 'services', ['slug'], unique=True)

    # 3. Plans (depends on services)
    op.create_table(
        'plans',
        *_timestamps(),
        sa.Column('service_id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('plan_type', plan_type, nullable=False, server_default='BASIC'),
        sa.Column('monthly_price', sa.Integer(), nullable=False),
        sa.Column('total_quota', sa.Integer(), nullable=False),
        sa.Column('used_quota', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.CheckConstraint('used_quota >= 0', name='ck_plans_used_quota_non_negative'),
        sa.CheckConstraint('used_quota <= total_quota', name='ck_plans_used_quota_within_total'),
        sa.CheckConstraint('monthly_price >= 0', name='ck_plans_monthly_price_non_negative'),
        sa.ForeignKeyConstraint(['service_id'], ['services.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_plans_service_id'), 'plans', ['service_id'])
    op.create_index(op.f('ix_plans_is_active'), 'plans', ['is_active'])

    # 4. Subscriptions (depends on accounts, plans, services)
    op.create_table(
        'subscriptions',
        *_timestamps(),
        sa.Column('account_id', sa.UUID(), nullable=False),
        sa.Column('plan_id', sa.UUID(), nullable=False),
        sa.Column('service_id', sa.UUID(), nullable=False),
        sa.Column('status', subscription_status, nullable=False, server_default='ACTIVE'),
        sa.Column('auto_renew', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('next_billing', sa.DateTime(), nullable=True),
        sa.Column('last_billed', sa.DateTime(), nullable=True),
        sa.Column('last_charge_amount', sa.Integer(), nullable=True),
        sa.Column('monthly_price', sa.Integer(), nullable=False),
        sa.Column('failed_charges', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('grace_period_end', sa.DateTime(), nullable=True),
        sa.Column('holds_quota', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('previous_plan_id', sa.UUID(), nullable=True),
        sa.Column('upgraded_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('cancellation_reason', sa.String(), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
        sa.ForeignKeyConstraint(['service_id'], ['services.id']),
        sa.ForeignKeyConstraint(['previous_plan_id'], ['plans.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_subscriptions_account_id'), 'subscriptions', ['account_id'])
    op.create_index(op.f('ix_subscriptions_plan_id'), 'subscriptions', ['plan_id'])
    op.create_index(op.f('ix_subscriptions_service_id'), 'subscriptions', ['service_id'])
    op.create_index(op.f('ix_subscriptions_status'), 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_status_next_billing', 'subscriptions', ['status', 'next_billing'])
    op.create_index('ix_subscriptions_status_grace_end', 'subscriptions', ['status', 'grace_period_end'])

    # 5. Subscription history (depends on subscriptions)
    op.create_table(
        'subscription_history',
        *_timestamps(),
        sa.Column('subscription_id', sa.UUID(), nullable=False),
        sa.Column('event_type', sa.String(), nullable=False),
        sa.Column('old_value', sa.String(), nullable=True),
        sa.Column('new_value', sa.String(), nullable=False),
        sa.Column('reason', sa.String(), nullable=True),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_subscription_history_subscription_id'), 'subscription_history', ['subscription_id'])

    # 6. Ledger entries (depends on accounts, subscriptions)
    op.create_table(
        'ledger_entries',
        *_timestamps(),
        sa.Column('account_id', sa.UUID(), nullable=False),
        sa.Column('type', ledger_entry_type, nullable=False),
        sa.Column('status', ledger_entry_status, nullable=False, server_default='COMPLETED'),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_before', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('sequence', sa.Integer(), nullable=True),
        sa.Column('idempotency_key', sa.String(), nullable=True),
        sa.Column('subscription_id', sa.UUID(), nullable=True),
        sa.Column('payment_method', sa.String(), nullable=True),
        sa.Column('payment_reference', sa.String(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint('amount > 0', name='ck_ledger_entries_amount_positive'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('account_id', 'sequence', name='uq_ledger_entries_account_sequence'),
        sa.UniqueConstraint('idempotency_key'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_ledger_entries_account_id'), 'ledger_entries', ['account_id'])
    op.create_index(op.f('ix_ledger_entries_type'), 'ledger_entries', ['type'])
    op.create_index(op.f('ix_ledger_entries_status'), 'ledger_entries', ['status'])
    op.create_index(op.f('ix_ledger_entries_subscription_id'), 'ledger_entries', ['subscription_id'])
    op.create_index(op.f('ix_ledger_entries_payment_reference'), 'ledger_entries', ['payment_reference'])
    op.create_index('ix_ledger_entries_account_created', 'ledger_entries', ['account_id', 'created_at'])

    # 7. Coupons (depends on services)
    op.create_table(
        'coupons',
        *_timestamps(),
        sa.Column('code', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('type', coupon_type, nullable=False),
        sa.Column('status', coupon_status, nullable=False, server_default='ACTIVE'),
        sa.Column('discount_type', discount_type, nullable=True),
        sa.Column('discount_percent', sa.Integer(), nullable=True),
        sa.Column('credit_amount', sa.Integer(), nullable=True),
        sa.Column('max_uses', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_uses_per_user', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('valid_from', sa.DateTime(), nullable=False),
        sa.Column('valid_until', sa.DateTime(), nullable=True),
        sa.Column('service_id', sa.UUID(), nullable=True),
        sa.CheckConstraint('used_count >= 0', name='ck_coupons_used_count_non_negative'),
        sa.CheckConstraint('used_count <= max_uses', name='ck_coupons_used_count_within_max'),
        sa.ForeignKeyConstraint(['service_id'], ['services.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_coupons_code'), 'coupons', ['code'], unique=True)
    op.create_index(op.f('ix_coupons_type'), 'coupons', ['type'])
    op.create_index(op.f('ix_coupons_status'), 'coupons', ['status'])

    # 8. Coupon redemptions (depends on coupons, accounts, ledger entries, subscriptions)
    op.create_table(
        'coupon_redemptions',
        *_timestamps(),
        sa.Column('coupon_id', sa.UUID(), nullable=False),
        sa.Column('account_id', sa.UUID(), nullable=False),
        sa.Column('redemption_type', coupon_type, nullable=False),
        sa.Column('credit_amount', sa.Integer(), nullable=True),
        sa.Column('discount_amount', sa.Integer(), nullable=True),
        sa.Column('ledger_entry_id', sa.UUID(), nullable=True),
        sa.Column('subscription_id', sa.UUID(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('redeemed_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['coupon_id'], ['coupons.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['ledger_entry_id'], ['ledger_entries.id']),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
        sa.UniqueConstraint('coupon_id', 'account_id', name='uq_coupon_redemptions_coupon_account'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_coupon_redemptions_coupon_id'), 'coupon_redemptions', ['coupon_id'])
    op.create_index(op.f('ix_coupon_redemptions_account_id'), 'coupon_redemptions', ['account_id'])


def downgrade() -> None:
    """Drop all tables."""
    # Drop tables in reverse dependency order
    op.drop_table('coupon_redemptions')
    op.drop_table('coupons')
    op.drop_table('ledger_entries')
    op.drop_table('subscription_history')
    op.drop_table('subscriptions')
    op.drop_table('plans')
    op.drop_table('services')
    op.drop_table('accounts')

    # Drop enums
    op.execute("DROP TYPE IF EXISTS discounttype")
    op.execute("DROP TYPE IF EXISTS couponstatus")
    op.execute("DROP TYPE IF EXISTS coupontype")
    op.execute("DROP TYPE IF EXISTS ledgerentrystatus")
    op.execute("DROP TYPE IF EXISTS ledgerentrytype")
    op.execute("DROP TYPE IF EXISTS subscriptionstatus")
    op.execute("DROP TYPE IF EXISTS plantype")
