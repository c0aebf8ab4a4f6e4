"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from metering.models.api import (
    FeatureValueType,
    LedgerEntryType,
    LimitEnforcement,
    MeterAggregation,
    MeteringScope,
    MeteringType,
    OverageMode,
    PolicyReason,
    PolicySuggestion,
    SubscriptionStatus,
    UsagePeriod,
)

ZERO = Decimal(0)


@dataclass(frozen=True)
class TenantScope:
    """Immutable billing/metering boundary - derived from request context."""

    kind: MeteringScope
    agency_id: str
    sub_account_id: str | None = None

    def __post_init__(self) -> None:
        """Validate scope shape."""
        if not self.agency_id:
            raise ValueError("agency_id cannot be empty")
        if self.kind == MeteringScope.SUBACCOUNT and not self.sub_account_id:
            raise ValueError("sub_account_id is required for SUBACCOUNT scope")
        if self.kind == MeteringScope.AGENCY and self.sub_account_id:
            raise ValueError("sub_account_id must be empty for AGENCY scope")

    @classmethod
    def agency(cls, agency_id: str) -> "TenantScope":
        return cls(kind=MeteringScope.AGENCY, agency_id=agency_id)

    @classmethod
    def sub_account(cls, agency_id: str, sub_account_id: str) -> "TenantScope":
        return cls(
            kind=MeteringScope.SUBACCOUNT, agency_id=agency_id, sub_account_id=sub_account_id
        )

    @classmethod
    def infer(cls, agency_id: str, sub_account_id: str | None) -> "TenantScope":
        """SUBACCOUNT when a sub-account id is given, else AGENCY."""
        if sub_account_id:
            return cls.sub_account(agency_id, sub_account_id)
        return cls.agency(agency_id)

    @property
    def sub_account_key(self) -> str:
        """Sub-account column value used in unique keys ('' at agency scope)."""
        return self.sub_account_id or ""


@dataclass(frozen=True)
class UsageWindow:
    """Half-open [start, end) metering window."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"Window end {self.end} must be after start {self.start}")

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end


# ============================================================================
# Entitlement Models
# ============================================================================


@dataclass(frozen=True)
class FeatureDefinition:
    """Catalog definition of a feature."""

    key: str
    name: str
    category: str
    value_type: FeatureValueType
    metering: MeteringType = MeteringType.NONE
    aggregation: MeterAggregation = MeterAggregation.COUNT
    scope: MeteringScope = MeteringScope.AGENCY
    period: UsagePeriod = UsagePeriod.MONTHLY
    description: str | None = None
    unit: str | None = None
    credit_enabled: bool = False
    credit_unit: str | None = None
    credit_expires: bool = False
    credit_priority: int = 0


@dataclass(frozen=True)
class PlanFeatureGrant:
    """Base grant of a feature by a plan."""

    plan_id: str
    feature_key: str
    is_enabled: bool = True
    is_unlimited: bool = False
    included_int: int | None = None
    included_dec: Decimal | None = None
    max_int: int | None = None
    max_dec: Decimal | None = None
    enforcement: LimitEnforcement = LimitEnforcement.HARD
    overage_mode: OverageMode = OverageMode.NONE
    credit_enabled: bool = False
    recurring_credit_grant_int: int | None = None
    recurring_credit_grant_dec: Decimal | None = None
    rollover_credits: bool = False
    top_up_enabled: bool = False
    top_up_price_id: str | None = None


@dataclass(frozen=True)
class OverrideGrant:
    """Time-boxed adjustment of a scope's entitlement."""

    feature_key: str
    starts_at: datetime
    ends_at: datetime | None = None
    is_enabled: bool | None = None
    is_unlimited: bool | None = None
    max_override_int: int | None = None
    max_override_dec: Decimal | None = None
    max_delta_int: int | None = None
    max_delta_dec: Decimal | None = None


@dataclass(frozen=True)
class EffectiveEntitlement:
    """Resolved entitlement for one feature - computed, never persisted."""

    feature_key: str
    name: str
    category: str
    description: str | None
    value_type: FeatureValueType
    unit: str | None
    metering: MeteringType
    aggregation: MeterAggregation
    scope: MeteringScope
    period: UsagePeriod
    is_enabled: bool
    is_unlimited: bool
    included_int: int | None
    included_dec: Decimal | None
    max_int: int | None
    max_dec: Decimal | None
    enforcement: LimitEnforcement
    overage_mode: OverageMode
    credit_enabled: bool
    credit_unit: str | None
    credit_expires: bool
    credit_priority: int
    recurring_credit_grant_int: int | None
    recurring_credit_grant_dec: Decimal | None
    rollover_credits: bool
    top_up_enabled: bool
    top_up_price_id: str | None

    @property
    def uses_decimal(self) -> bool:
        return self.value_type == FeatureValueType.DECIMAL

    @property
    def effective_limit(self) -> Decimal | None:
        """Max when set, otherwise included. None means no limit configured."""
        if self.uses_decimal:
            if self.max_dec is not None:
                return self.max_dec
            return self.included_dec
        if self.max_int is not None:
            return Decimal(self.max_int)
        if self.included_int is not None:
            return Decimal(self.included_int)
        return None

    @property
    def recurring_credit_grant(self) -> Decimal:
        if self.uses_decimal:
            return self.recurring_credit_grant_dec or ZERO
        return Decimal(self.recurring_credit_grant_int or 0)

    @property
    def allows_credit_overage(self) -> bool:
        return self.overage_mode == OverageMode.INTERNAL_CREDITS


@dataclass(frozen=True)
class SubscriptionState:
    """Subscription read model for an agency."""

    has_subscription: bool
    is_active: bool
    status: SubscriptionStatus | None = None
    plan_id: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    trial_ends_at: datetime | None = None


# ============================================================================
# Credit Models
# ============================================================================


@dataclass(frozen=True)
class CreditBalance:
    """Readable (non-expired) credit balance."""

    feature_key: str
    balance: Decimal
    expires_at: datetime | None
    updated_at: datetime


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable ledger entry after persistence."""

    entry_id: UUID
    scope: MeteringScope
    agency_id: str
    sub_account_id: str | None
    feature_key: str
    entry_type: LedgerEntryType
    delta: Decimal
    balance_after: Decimal
    reason: str
    idempotency_key: str
    created_at: datetime


@dataclass(frozen=True)
class GrantResult:
    """Outcome of a credit grant."""

    balance_after: Decimal
    replayed: bool = False


@dataclass(frozen=True)
class CreditConsumeResult:
    """Outcome of a direct credit consumption."""

    success: bool
    balance_after: Decimal
    replayed: bool = False


@dataclass(frozen=True)
class ExpireResult:
    """Outcome of an expiry sweep."""

    expired_count: int


@dataclass(frozen=True)
class GrantRunResult:
    """Outcome of a recurring credit grant run."""

    processed: int
    granted: int


@dataclass(frozen=True)
class ReconciliationReport:
    """Ledger sum versus stored balance for a (scope, feature)."""

    feature_key: str
    ledger_sum: Decimal
    balance: Decimal

    @property
    def consistent(self) -> bool:
        return self.ledger_sum == self.balance


# ============================================================================
# Usage Models
# ============================================================================


@dataclass(frozen=True)
class ConsumptionPlan:
    """Pure decision for a consumption - computed before any write."""

    allowed: bool
    consumed_from_quota: Decimal
    consumed_from_credit: Decimal
    over_limit: bool
    reason: PolicyReason | None = None
    remaining_quota: Decimal | None = None
    remaining_credit: Decimal | None = None


@dataclass(frozen=True)
class ConsumeResult:
    """Outcome of consume_usage."""

    allowed: bool
    consumed_from_quota: Decimal
    consumed_from_credit: Decimal
    over_limit: bool
    balance_after: Decimal | None
    reason: PolicyReason | None = None
    remaining_quota: Decimal | None = None
    remaining_credit: Decimal | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    replayed: bool = False


@dataclass(frozen=True)
class UsageSummary:
    """Current-window usage for one feature."""

    feature_key: str
    period: UsagePeriod
    window: UsageWindow
    used: Decimal
    limit: Decimal | None
    is_unlimited: bool

    @property
    def remaining(self) -> Decimal | None:
        if self.is_unlimited or self.limit is None:
            return None
        return max(self.limit - self.used, ZERO)

    @property
    def over_limit(self) -> bool:
        if self.is_unlimited or self.limit is None:
            return False
        return self.used > self.limit


# ============================================================================
# Access Models
# ============================================================================


@dataclass(frozen=True)
class AccessRequest:
    """Explicit request context for an access decision."""

    user_id: str | None
    agency_id: str
    sub_account_id: str | None = None
    required_permission_keys: tuple[str, ...] = ()
    feature_key: str | None = None
    quantity: Decimal | None = None
    require_active_subscription: bool = True

    @property
    def scope(self) -> TenantScope:
        return TenantScope.infer(self.agency_id, self.sub_account_id)


@dataclass(frozen=True)
class Decision:
    """Allow/deny decision with a machine-readable reason."""

    allowed: bool
    reason: PolicyReason | None = None
    suggestion: PolicySuggestion | None = None
    message: str | None = None
    remaining_quota: Decimal | None = None
    remaining_credit: Decimal | None = None

    @classmethod
    def allow(
        cls, remaining_quota: Decimal | None = None, remaining_credit: Decimal | None = None
    ) -> "Decision":
        return cls(
            allowed=True, remaining_quota=remaining_quota, remaining_credit=remaining_credit
        )
