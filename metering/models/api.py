"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Wire format is camelCase; Python attributes stay snake_case.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class MeteringScope(str, Enum):
    """Billing/metering boundary of a tenant."""

    AGENCY = "AGENCY"
    SUBACCOUNT = "SUBACCOUNT"


class UsagePeriod(str, Enum):
    """Metering window kinds."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class LimitEnforcement(str, Enum):
    """Whether exceeding a limit blocks (HARD) or only flags (SOFT)."""

    HARD = "HARD"
    SOFT = "SOFT"


class OverageMode(str, Enum):
    """How usage beyond the effective limit is paid for."""

    NONE = "NONE"
    INTERNAL_CREDITS = "INTERNAL_CREDITS"
    STRIPE_METERED = "STRIPE_METERED"


class FeatureValueType(str, Enum):
    """Value type of a catalog feature."""

    BOOLEAN = "BOOLEAN"
    INTEGER = "INTEGER"
    DECIMAL = "DECIMAL"


class MeteringType(str, Enum):
    """How a feature is metered."""

    NONE = "NONE"
    COUNT = "COUNT"
    SUM = "SUM"


class MeterAggregation(str, Enum):
    """Aggregation applied to metered events."""

    COUNT = "COUNT"
    SUM = "SUM"
    MAX = "MAX"


class LedgerEntryType(str, Enum):
    """Credit ledger entry types."""

    GRANT = "GRANT"
    CONSUME = "CONSUME"
    EXPIRE = "EXPIRE"
    ADJUST = "ADJUST"


class SubscriptionStatus(str, Enum):
    """Billing-provider subscription status."""

    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    INCOMPLETE = "INCOMPLETE"
    UNPAID = "UNPAID"


CURRENT_SUBSCRIPTION_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class PolicyReason(str, Enum):
    """Machine-readable denial reasons."""

    NO_SESSION = "NO_SESSION"
    NO_MEMBERSHIP = "NO_MEMBERSHIP"
    NO_PERMISSION = "NO_PERMISSION"
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    FEATURE_DISABLED = "FEATURE_DISABLED"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"


class PolicySuggestion(str, Enum):
    """Remediation hint shown next to a denial."""

    NONE = "NONE"
    TOPUP = "TOPUP"
    UPGRADE = "UPGRADE"
    CONTACT_ADMIN = "CONTACT_ADMIN"


class ClientErrorReason(str, Enum):
    """Reason codes for rejected requests."""

    BAD_REQUEST = "BAD_REQUEST"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    MISSING_IDEMPOTENCY_KEY = "MISSING_IDEMPOTENCY_KEY"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
    UNAUTHORIZED = "UNAUTHORIZED"
    UNAVAILABLE = "UNAVAILABLE"


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Usage Models
# ============================================================================


class UsageCheckRequest(CamelModel):
    """POST /v1/billing/usage/check request body."""

    agency_id: str = Field(..., min_length=1, max_length=255)
    sub_account_id: str | None = Field(None, max_length=255)
    feature_key: str = Field(..., min_length=1, max_length=255)
    # Raw value; validated by the route so the client gets INVALID_QUANTITY
    quantity: str | int | float | Decimal | None = None
    required_permission_keys: list[str] = Field(default_factory=list)
    require_active_subscription: bool = True


class UsageConsumeRequest(CamelModel):
    """POST /v1/billing/usage/consume request body."""

    agency_id: str = Field(..., min_length=1, max_length=255)
    sub_account_id: str | None = Field(None, max_length=255)
    feature_key: str = Field(..., min_length=1, max_length=255)
    # Raw value; validated by the route so the client gets INVALID_QUANTITY
    quantity: str | int | float | Decimal = 1
    # Required; validated by the service so the client gets MISSING_IDEMPOTENCY_KEY
    idempotency_key: str | None = Field(None, max_length=255)
    action_key: str | None = Field(None, max_length=255)
    required_permission_keys: list[str] = Field(default_factory=list)
    require_active_subscription: bool = True


class DecisionResponse(CamelModel):
    """Access decision returned by usage/check and embedded in denials."""

    allowed: bool
    reason: PolicyReason | None = None
    suggestion: PolicySuggestion | None = None
    message: str | None = None
    remaining_quota: Decimal | None = None
    remaining_credit: Decimal | None = None


class ConsumeResultResponse(CamelModel):
    """Outcome of a usage consumption."""

    allowed: bool
    consumed_from_quota: Decimal
    consumed_from_credit: Decimal
    over_limit: bool
    balance_after: Decimal | None = None
    reason: PolicyReason | None = None
    remaining_quota: Decimal | None = None
    remaining_credit: Decimal | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    replayed: bool = False


class UsageConsumeResponse(CamelModel):
    """POST /v1/billing/usage/consume response."""

    ok: bool
    result: ConsumeResultResponse | None = None
    reason: PolicyReason | None = None
    suggestion: PolicySuggestion | None = None
    message: str | None = None


class UsageSummaryItem(CamelModel):
    """Current-window usage for one feature."""

    feature_key: str
    period: UsagePeriod
    period_start: datetime
    period_end: datetime
    used: Decimal
    limit: Decimal | None = None
    remaining: Decimal | None = None
    is_unlimited: bool = False
    over_limit: bool = False


class UsageSummaryResponse(CamelModel):
    """GET /v1/billing/usage/summary response."""

    ok: bool = True
    scope: MeteringScope
    agency_id: str
    sub_account_id: str | None = None
    metrics: list[UsageSummaryItem]


# ============================================================================
# Entitlement Models
# ============================================================================


class EntitlementResponse(CamelModel):
    """Effective entitlement for one feature."""

    feature_key: str
    name: str
    category: str
    description: str | None = None
    value_type: FeatureValueType
    unit: str | None = None
    metering: MeteringType
    aggregation: MeterAggregation
    scope: MeteringScope
    period: UsagePeriod
    is_enabled: bool
    is_unlimited: bool
    included_int: int | None = None
    included_dec: Decimal | None = None
    max_int: int | None = None
    max_dec: Decimal | None = None
    enforcement: LimitEnforcement
    overage_mode: OverageMode
    credit_enabled: bool
    credit_unit: str | None = None
    credit_expires: bool
    credit_priority: int
    recurring_credit_grant_int: int | None = None
    recurring_credit_grant_dec: Decimal | None = None
    rollover_credits: bool
    top_up_enabled: bool
    top_up_price_id: str | None = None


class SubscriptionStateResponse(CamelModel):
    """Subscription read model for an agency."""

    has_subscription: bool
    is_active: bool
    status: SubscriptionStatus | None = None
    plan_id: str | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    trial_ends_at: datetime | None = None


class CurrentEntitlementsResponse(CamelModel):
    """GET /v1/billing/entitlements/current response."""

    scope: MeteringScope
    agency_id: str
    sub_account_id: str | None = None
    subscription: SubscriptionStateResponse
    entitlements: dict[str, EntitlementResponse]


# ============================================================================
# Credit Models
# ============================================================================


class CreditBalanceItem(CamelModel):
    """Non-expired credit balance for one feature."""

    feature_key: str
    balance: Decimal
    expires_at: datetime | None = None
    updated_at: datetime


class CreditBalanceResponse(CamelModel):
    """GET /v1/billing/credits/balance response."""

    ok: bool = True
    balances: list[CreditBalanceItem]


class LedgerEntryItem(CamelModel):
    """Credit ledger entry."""

    id: str
    feature_key: str
    type: LedgerEntryType
    delta: Decimal
    balance_after: Decimal
    reason: str
    idempotency_key: str
    created_at: datetime


class LedgerResponse(CamelModel):
    """GET /v1/billing/credits/ledger response."""

    ok: bool = True
    entries: list[LedgerEntryItem]


# ============================================================================
# Job Models
# ============================================================================


class UsageRolloverResponse(CamelModel):
    """POST /v1/jobs/billing/usage-rollover response."""

    ok: bool = True
    now: datetime
    expired_count: int


class GrantCreditsResponse(CamelModel):
    """POST /v1/jobs/billing/grant-credits response."""

    ok: bool = True
    processed: int
    granted: int


# ============================================================================
# Tenant Settings Models
# ============================================================================


class SettingsNamespaceResponse(CamelModel):
    """GET/PUT /v1/tenants/settings/{namespace} response."""

    namespace: str
    value: dict[str, Any]


class PolicyDeniedResponse(CamelModel):
    """401/403 body for a policy denial."""

    ok: bool = False
    reason: PolicyReason
    suggestion: PolicySuggestion
    message: str
    remaining_quota: Decimal | None = None
    remaining_credit: Decimal | None = None


class ErrorResponse(CamelModel):
    """Generic failure body."""

    ok: bool = False
    reason: str
    message: str | None = None


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
