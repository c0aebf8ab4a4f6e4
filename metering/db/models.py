"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.

Rows keyed by tenant scope store sub_account_id = '' at AGENCY scope so the
unique keys (scope, agency_id, sub_account_id, feature_key) hold on every backend.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from metering.models.api import (
    FeatureValueType,
    LimitEnforcement,
    MeterAggregation,
    MeteringScope,
    MeteringType,
    OverageMode,
    UsagePeriod,
)

AGENCY_SUB_ACCOUNT = ""

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware DateTime that always round-trips as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


Amount = Numeric(20, 6)


def _in(column: str, enum_cls: type) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ============================================================================
# Subscriptions and Plan Configuration (externally owned)
# ============================================================================


class Subscription(Base):
    """
    ORM model for subscriptions table.

    Written by the billing provider integration; read-only here.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    agency_id: Mapped[str] = mapped_column(String(255), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'TRIALING', 'PAST_DUE', 'CANCELED', 'INCOMPLETE', 'UNPAID')",
            name="ck_subscriptions_status",
        ),
        Index("idx_subscriptions_agency_status", "agency_id", "status"),
        Index("idx_subscriptions_period_end", "current_period_end"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Subscription(id={self.id}, agency_id={self.agency_id}, "
            f"plan_id={self.plan_id}, status={self.status})>"
        )


class EntitlementFeature(Base):
    """ORM model for the feature catalog."""

    __tablename__ = "entitlement_features"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    value_type: Mapped[str] = mapped_column(String(20), nullable=False)
    unit: Mapped[str | None] = mapped_column(String(50), nullable=True)
    metering: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MeteringType.NONE.value
    )
    aggregation: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MeterAggregation.COUNT.value
    )
    scope: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MeteringScope.AGENCY.value
    )
    period: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UsagePeriod.MONTHLY.value
    )

    credit_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    credit_unit: Mapped[str | None] = mapped_column(String(50), nullable=True)
    credit_expires: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    credit_priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(_in("value_type", FeatureValueType), name="ck_features_value_type"),
        CheckConstraint(_in("metering", MeteringType), name="ck_features_metering"),
        CheckConstraint(_in("aggregation", MeterAggregation), name="ck_features_aggregation"),
        CheckConstraint(_in("scope", MeteringScope), name="ck_features_scope"),
        CheckConstraint(_in("period", UsagePeriod), name="ck_features_period"),
        Index("idx_features_category", "category"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<EntitlementFeature(key={self.key}, value_type={self.value_type})>"


class PlanFeature(Base):
    """ORM model for a plan's base grant of one feature."""

    __tablename__ = "plan_features"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    plan_id: Mapped[str] = mapped_column(String(255), nullable=False)
    feature_key: Mapped[str] = mapped_column(
        String(255), ForeignKey("entitlement_features.key"), nullable=False
    )

    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_unlimited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    included_int: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    included_dec: Mapped[Decimal | None] = mapped_column(Amount, nullable=True)
    max_int: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    max_dec: Mapped[Decimal | None] = mapped_column(Amount, nullable=True)
    enforcement: Mapped[str] = mapped_column(
        String(10), nullable=False, default=LimitEnforcement.HARD.value
    )
    overage_mode: Mapped[str] = mapped_column(
        String(20), nullable=False, default=OverageMode.NONE.value
    )

    credit_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurring_credit_grant_int: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    recurring_credit_grant_dec: Mapped[Decimal | None] = mapped_column(Amount, nullable=True)
    rollover_credits: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    top_up_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    top_up_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("plan_id", "feature_key", name="uq_plan_feature"),
        CheckConstraint(_in("enforcement", LimitEnforcement), name="ck_plan_features_enforcement"),
        CheckConstraint(_in("overage_mode", OverageMode), name="ck_plan_features_overage_mode"),
        Index("idx_plan_features_plan", "plan_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<PlanFeature(plan_id={self.plan_id}, feature_key={self.feature_key})>"


class EntitlementOverride(Base):
    """ORM model for time-boxed per-tenant entitlement overrides."""

    __tablename__ = "entitlement_overrides"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    agency_id: Mapped[str] = mapped_column(String(255), nullable=False)
    sub_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    feature_key: Mapped[str] = mapped_column(
        String(255), ForeignKey("entitlement_features.key"), nullable=False
    )

    is_enabled: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    is_unlimited: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    max_override_int: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    max_override_dec: Mapped[Decimal | None] = mapped_column(Amount, nullable=True)
    max_delta_int: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    max_delta_dec: Mapped[Decimal | None] = mapped_column(Amount, nullable=True)

    starts_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(_in("scope", MeteringScope), name="ck_overrides_scope"),
        CheckConstraint(
            "ends_at IS NULL OR ends_at >= starts_at", name="ck_overrides_window_ordered"
        ),
        Index("idx_overrides_tenant", "scope", "agency_id", "sub_account_id", "starts_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<EntitlementOverride(id={self.id}, scope={self.scope}, "
            f"agency_id={self.agency_id}, feature_key={self.feature_key})>"
        )


# ============================================================================
# Credits and Usage (owned by this service)
# ============================================================================


class FeatureCreditBalance(Base):
    """
    ORM model for feature_credit_balances table.

    Denormalized running balance per (scope, agency, sub-account, feature).
    The hot row locked by every credit and usage write.
    """

    __tablename__ = "feature_credit_balances"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    agency_id: Mapped[str] = mapped_column(String(255), nullable=False)
    sub_account_id: Mapped[str] = mapped_column(
        String(255), nullable=False, default=AGENCY_SUB_ACCOUNT
    )
    feature_key: Mapped[str] = mapped_column(String(255), nullable=False)

    balance: Mapped[Decimal] = mapped_column(Amount, nullable=False, default=Decimal(0))
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_balance_non_negative"),
        CheckConstraint(_in("scope", MeteringScope), name="ck_credit_balances_scope"),
        UniqueConstraint(
            "scope",
            "agency_id",
            "sub_account_id",
            "feature_key",
            name="uq_credit_balance_scope_feature",
        ),
        Index(
            "idx_credit_balances_expires_at",
            "expires_at",
            postgresql_where=text("expires_at IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<FeatureCreditBalance(id={self.id}, feature_key={self.feature_key}, "
            f"balance={self.balance}, expires_at={self.expires_at})>"
        )


class CreditLedgerEntry(Base):
    """
    ORM model for credit_ledger_entries table.

    Append-only. Sum of delta per (scope, feature) equals the balance row.
    """

    __tablename__ = "credit_ledger_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    agency_id: Mapped[str] = mapped_column(String(255), nullable=False)
    sub_account_id: Mapped[str] = mapped_column(
        String(255), nullable=False, default=AGENCY_SUB_ACCOUNT
    )
    feature_key: Mapped[str] = mapped_column(String(255), nullable=False)

    type: Mapped[str] = mapped_column(String(10), nullable=False)
    delta: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(512), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "type IN ('GRANT', 'CONSUME', 'EXPIRE', 'ADJUST')", name="ck_ledger_entry_type"
        ),
        CheckConstraint("balance_after >= 0", name="ck_ledger_balance_after_non_negative"),
        UniqueConstraint("idempotency_key", name="uq_ledger_idempotency"),
        Index(
            "idx_ledger_scope_feature_created",
            "scope",
            "agency_id",
            "sub_account_id",
            "feature_key",
            "created_at",
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditLedgerEntry(id={self.id}, type={self.type}, "
            f"delta={self.delta}, key={self.idempotency_key})>"
        )


class UsageEvent(Base):
    """
    ORM model for usage_events table.

    One row per consumed request; stores the original result so a replay of the
    same idempotency key returns it unchanged.
    """

    __tablename__ = "usage_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    agency_id: Mapped[str] = mapped_column(String(255), nullable=False)
    sub_account_id: Mapped[str] = mapped_column(
        String(255), nullable=False, default=AGENCY_SUB_ACCOUNT
    )
    feature_key: Mapped[str] = mapped_column(String(255), nullable=False)

    quantity: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    action_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(512), nullable=False)

    consumed_from_quota: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    consumed_from_credit: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    over_limit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    balance_after: Mapped[Decimal | None] = mapped_column(Amount, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_usage_quantity_positive"),
        CheckConstraint("period_end > period_start", name="ck_usage_period_ordered"),
        UniqueConstraint("idempotency_key", name="uq_usage_idempotency"),
        Index(
            "idx_usage_scope_feature_occurred",
            "scope",
            "agency_id",
            "sub_account_id",
            "feature_key",
            "occurred_at",
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UsageEvent(id={self.id}, feature_key={self.feature_key}, "
            f"quantity={self.quantity}, key={self.idempotency_key})>"
        )


# ============================================================================
# Membership and Tenant Settings
# ============================================================================


class AgencyMembership(Base):
    """ORM model for agency members and their granted permission keys."""

    __tablename__ = "agency_memberships"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    agency_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    permission_keys: Mapped[list[str]] = mapped_column(JSONDocument, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("agency_id", "user_id", name="uq_agency_membership"),
        Index("idx_agency_memberships_user", "user_id"),
    )


class SubAccountMembership(Base):
    """ORM model for sub-account members and their granted permission keys."""

    __tablename__ = "sub_account_memberships"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    agency_id: Mapped[str] = mapped_column(String(255), nullable=False)
    sub_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    permission_keys: Mapped[list[str]] = mapped_column(JSONDocument, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("sub_account_id", "user_id", name="uq_sub_account_membership"),
        Index("idx_sub_account_memberships_user", "user_id"),
    )


class TenantSettings(Base):
    """ORM model holding one settings document per tenant scope."""

    __tablename__ = "tenant_settings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    scope: Mapped[str] = mapped_column(String(20), nullable=False)
    agency_id: Mapped[str] = mapped_column(String(255), nullable=False)
    sub_account_id: Mapped[str] = mapped_column(
        String(255), nullable=False, default=AGENCY_SUB_ACCOUNT
    )
    settings_json: Mapped[dict[str, Any]] = mapped_column(
        JSONDocument, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("scope", "agency_id", "sub_account_id", name="uq_tenant_settings_scope"),
    )
