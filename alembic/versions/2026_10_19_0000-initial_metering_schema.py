"""initial metering schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SCOPE_CHECK = "scope IN ('AGENCY', 'SUBACCOUNT')"
AMOUNT = sa.Numeric(20, 6)


def _id_column() -> sa.Column:
    return sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()'))


def _created_at() -> sa.Column:
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()'))


def _updated_at() -> sa.Column:
    return sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()'))


def upgrade() -> None:
    """Create metering schema."""

    # ========================================================================
    # Subscriptions (written by the billing provider integration)
    # ========================================================================
    op.create_table(
        'subscriptions',
        _id_column(),
        sa.Column('agency_id', sa.String(255), nullable=False),
        sa.Column('plan_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint(
            "status IN ('ACTIVE', 'TRIALING', 'PAST_DUE', 'CANCELED', 'INCOMPLETE', 'UNPAID')",
            name='ck_subscriptions_status',
        ),
    )
    op.create_index('idx_subscriptions_agency_status', 'subscriptions', ['agency_id', 'status'])
    op.create_index('idx_subscriptions_period_end', 'subscriptions', ['current_period_end'])

    # ========================================================================
    # Feature catalog
    # ========================================================================
    op.create_table(
        'entitlement_features',
        sa.Column('key', sa.String(255), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(100), nullable=False),
        sa.Column('value_type', sa.String(20), nullable=False),
        sa.Column('unit', sa.String(50), nullable=True),
        sa.Column('metering', sa.String(20), nullable=False, server_default='NONE'),
        sa.Column('aggregation', sa.String(20), nullable=False, server_default='COUNT'),
        sa.Column('scope', sa.String(20), nullable=False, server_default='AGENCY'),
        sa.Column('period', sa.String(20), nullable=False, server_default='MONTHLY'),
        sa.Column('credit_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('credit_unit', sa.String(50), nullable=True),
        sa.Column('credit_expires', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('credit_priority', sa.Integer(), nullable=False, server_default='0'),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint("value_type IN ('BOOLEAN', 'INTEGER', 'DECIMAL')", name='ck_features_value_type'),
        sa.CheckConstraint("metering IN ('NONE', 'COUNT', 'SUM')", name='ck_features_metering'),
        sa.CheckConstraint("aggregation IN ('COUNT', 'SUM', 'MAX')", name='ck_features_aggregation'),
        sa.CheckConstraint(SCOPE_CHECK, name='ck_features_scope'),
        sa.CheckConstraint("period IN ('DAILY', 'WEEKLY', 'MONTHLY', 'YEARLY')", name='ck_features_period'),
    )
    op.create_index('idx_features_category', 'entitlement_features', ['category'])

    # ========================================================================
    # Plan grants
    # ========================================================================
    op.create_table(
        'plan_features',
        _id_column(),
        sa.Column('plan_id', sa.String(255), nullable=False),
        sa.Column('feature_key', sa.String(255), sa.ForeignKey('entitlement_features.key'), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_unlimited', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('included_int', sa.BigInteger(), nullable=True),
        sa.Column('included_dec', AMOUNT, nullable=True),
        sa.Column('max_int', sa.BigInteger(), nullable=True),
        sa.Column('max_dec', AMOUNT, nullable=True),
        sa.Column('enforcement', sa.String(10), nullable=False, server_default='HARD'),
        sa.Column('overage_mode', sa.String(20), nullable=False, server_default='NONE'),
        sa.Column('credit_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('recurring_credit_grant_int', sa.BigInteger(), nullable=True),
        sa.Column('recurring_credit_grant_dec', AMOUNT, nullable=True),
        sa.Column('rollover_credits', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('top_up_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('top_up_price_id', sa.String(255), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint('plan_id', 'feature_key', name='uq_plan_feature'),
        sa.CheckConstraint("enforcement IN ('HARD', 'SOFT')", name='ck_plan_features_enforcement'),
        sa.CheckConstraint(
            "overage_mode IN ('NONE', 'INTERNAL_CREDITS', 'STRIPE_METERED')",
            name='ck_plan_features_overage_mode',
        ),
    )
    op.create_index('idx_plan_features_plan', 'plan_features', ['plan_id'])

    # ========================================================================
    # Overrides
    # ========================================================================
    op.create_table(
        'entitlement_overrides',
        _id_column(),
        sa.Column('scope', sa.String(20), nullable=False),
        sa.Column('agency_id', sa.String(255), nullable=False),
        sa.Column('sub_account_id', sa.String(255), nullable=True),
        sa.Column('feature_key', sa.String(255), sa.ForeignKey('entitlement_features.key'), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=True),
        sa.Column('is_unlimited', sa.Boolean(), nullable=True),
        sa.Column('max_override_int', sa.BigInteger(), nullable=True),
        sa.Column('max_override_dec', AMOUNT, nullable=True),
        sa.Column('max_delta_int', sa.BigInteger(), nullable=True),
        sa.Column('max_delta_dec', AMOUNT, nullable=True),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        _created_at(),
        sa.CheckConstraint(SCOPE_CHECK, name='ck_overrides_scope'),
        sa.CheckConstraint('ends_at IS NULL OR ends_at >= starts_at', name='ck_overrides_window_ordered'),
    )
    op.create_index(
        'idx_overrides_tenant', 'entitlement_overrides', ['scope', 'agency_id', 'sub_account_id', 'starts_at']
    )

    # ========================================================================
    # Credit balances and ledger
    # ========================================================================
    op.create_table(
        'feature_credit_balances',
        _id_column(),
        sa.Column('scope', sa.String(20), nullable=False),
        sa.Column('agency_id', sa.String(255), nullable=False),
        sa.Column('sub_account_id', sa.String(255), nullable=False, server_default=''),
        sa.Column('feature_key', sa.String(255), nullable=False),
        sa.Column('balance', AMOUNT, nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint('balance >= 0', name='ck_credit_balance_non_negative'),
        sa.CheckConstraint(SCOPE_CHECK, name='ck_credit_balances_scope'),
        sa.UniqueConstraint(
            'scope', 'agency_id', 'sub_account_id', 'feature_key', name='uq_credit_balance_scope_feature'
        ),
    )
    op.create_index(
        'idx_credit_balances_expires_at',
        'feature_credit_balances',
        ['expires_at'],
        postgresql_where=sa.text('expires_at IS NOT NULL'),
    )

    op.create_table(
        'credit_ledger_entries',
        _id_column(),
        sa.Column('scope', sa.String(20), nullable=False),
        sa.Column('agency_id', sa.String(255), nullable=False),
        sa.Column('sub_account_id', sa.String(255), nullable=False, server_default=''),
        sa.Column('feature_key', sa.String(255), nullable=False),
        sa.Column('type', sa.String(10), nullable=False),
        sa.Column('delta', AMOUNT, nullable=False),
        sa.Column('balance_after', AMOUNT, nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('idempotency_key', sa.String(512), nullable=False),
        _created_at(),
        sa.CheckConstraint("type IN ('GRANT', 'CONSUME', 'EXPIRE', 'ADJUST')", name='ck_ledger_entry_type'),
        sa.CheckConstraint('balance_after >= 0', name='ck_ledger_balance_after_non_negative'),
        sa.UniqueConstraint('idempotency_key', name='uq_ledger_idempotency'),
    )
    op.create_index(
        'idx_ledger_scope_feature_created',
        'credit_ledger_entries',
        ['scope', 'agency_id', 'sub_account_id', 'feature_key', 'created_at'],
    )

    # ========================================================================
    # Usage events
    # ========================================================================
    op.create_table(
        'usage_events',
        _id_column(),
        sa.Column('scope', sa.String(20), nullable=False),
        sa.Column('agency_id', sa.String(255), nullable=False),
        sa.Column('sub_account_id', sa.String(255), nullable=False, server_default=''),
        sa.Column('feature_key', sa.String(255), nullable=False),
        sa.Column('quantity', AMOUNT, nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('action_key', sa.String(255), nullable=True),
        sa.Column('idempotency_key', sa.String(512), nullable=False),
        sa.Column('consumed_from_quota', AMOUNT, nullable=False),
        sa.Column('consumed_from_credit', AMOUNT, nullable=False),
        sa.Column('over_limit', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('balance_after', AMOUNT, nullable=True),
        _created_at(),
        sa.CheckConstraint('quantity > 0', name='ck_usage_quantity_positive'),
        sa.CheckConstraint('period_end > period_start', name='ck_usage_period_ordered'),
        sa.UniqueConstraint('idempotency_key', name='uq_usage_idempotency'),
    )
    op.create_index(
        'idx_usage_scope_feature_occurred',
        'usage_events',
        ['scope', 'agency_id', 'sub_account_id', 'feature_key', 'occurred_at'],
    )

    # ========================================================================
    # Memberships and tenant settings
    # ========================================================================
    op.create_table(
        'agency_memberships',
        _id_column(),
        sa.Column('agency_id', sa.String(255), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('permission_keys', JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        _created_at(),
        sa.UniqueConstraint('agency_id', 'user_id', name='uq_agency_membership'),
    )
    op.create_index('idx_agency_memberships_user', 'agency_memberships', ['user_id'])

    op.create_table(
        'sub_account_memberships',
        _id_column(),
        sa.Column('agency_id', sa.String(255), nullable=False),
        sa.Column('sub_account_id', sa.String(255), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('permission_keys', JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        _created_at(),
        sa.UniqueConstraint('sub_account_id', 'user_id', name='uq_sub_account_membership'),
    )
    op.create_index('idx_sub_account_memberships_user', 'sub_account_memberships', ['user_id'])

    op.create_table(
        'tenant_settings',
        _id_column(),
        sa.Column('scope', sa.String(20), nullable=False),
        sa.Column('agency_id', sa.String(255), nullable=False),
        sa.Column('sub_account_id', sa.String(255), nullable=False, server_default=''),
        sa.Column('settings_json', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint('scope', 'agency_id', 'sub_account_id', name='uq_tenant_settings_scope'),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('tenant_settings')
    op.drop_table('sub_account_memberships')
    op.drop_table('agency_memberships')
    op.drop_table('usage_events')
    op.drop_table('credit_ledger_entries')
    op.drop_table('feature_credit_balances')
    op.drop_table('entitlement_overrides')
    op.drop_table('plan_features')
    op.drop_table('entitlement_features')
    op.drop_table('subscriptions')
