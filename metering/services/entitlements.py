"""
Entitlement Resolver - Plan grants + active overrides -> effective entitlements.

Fail-closed: an agency without a current subscription resolves to an empty map.
Resolution runs fresh on every call; nothing is cached across requests.
"""

from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from metering.db.models import EntitlementFeature, EntitlementOverride, PlanFeature, Subscription
from metering.models.api import (
    CURRENT_SUBSCRIPTION_STATUSES,
    FeatureValueType,
    LimitEnforcement,
    MeterAggregation,
    MeteringScope,
    MeteringType,
    OverageMode,
    SubscriptionStatus,
    UsagePeriod,
)
from metering.models.domain import (
    EffectiveEntitlement,
    FeatureDefinition,
    OverrideGrant,
    PlanFeatureGrant,
    SubscriptionState,
    TenantScope,
)
from metering.observability.events import MeteringEvent, MeteringEventSink, default_event_sink
from metering.services.normalizer import normalize, synthesize_from_override

logger = structlog.get_logger(__name__)

_CURRENT_STATUS_VALUES = [status.value for status in CURRENT_SUBSCRIPTION_STATUSES]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class EntitlementResolver:
    """Resolves what a tenant scope is entitled to under its subscription plan."""

    def __init__(
        self, session: AsyncSession, events: MeteringEventSink = default_event_sink
    ) -> None:
        self.session = session
        self.events = events

    async def resolve_plan_id(self, agency_id: str, now: datetime | None = None) -> str | None:
        """Plan of the agency's current subscription (ACTIVE/TRIALING, period not ended)."""
        subscription = await self._find_current_subscription(agency_id, now or _utc_now())
        return subscription.plan_id if subscription else None

    async def get_subscription_state(
        self, agency_id: str, now: datetime | None = None
    ) -> SubscriptionState:
        now = now or _utc_now()
        subscription = await self._find_current_subscription(agency_id, now)
        is_active = subscription is not None
        if subscription is None:
            subscription = await self._find_latest_subscription(agency_id)
        if subscription is None:
            return SubscriptionState(has_subscription=False, is_active=False)

        return SubscriptionState(
            has_subscription=True,
            is_active=is_active,
            status=SubscriptionStatus(subscription.status),
            plan_id=subscription.plan_id,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            trial_ends_at=subscription.trial_ends_at,
        )

    async def resolve(
        self,
        scope: TenantScope,
        now: datetime | None = None,
        plan_id: str | None = None,
    ) -> dict[str, EffectiveEntitlement]:
        """
        Resolve every effective entitlement for a scope.

        Store errors propagate; a partial map is never returned.
        """
        now = now or _utc_now()
        plan_id = plan_id or await self.resolve_plan_id(scope.agency_id, now)
        if not plan_id:
            logger.debug("no_current_subscription", agency_id=scope.agency_id)
            return {}

        overrides = await self._load_active_overrides(scope, now)
        override_map: dict[str, OverrideGrant] = {}
        # Ordered by (starts_at, created_at): the most recently started override wins
        for override in overrides:
            override_map[override.feature_key] = override

        out: dict[str, EffectiveEntitlement] = {}
        for plan_feature, feature in await self._load_plan_features(plan_id):
            if feature is None:
                self.events.emit(
                    MeteringEvent.CATALOG_LOOKUP_FAILED,
                    feature_key=plan_feature.feature_key,
                    plan_id=plan_id,
                )
                continue
            out[plan_feature.feature_key] = normalize(
                _feature_to_domain(feature),
                _plan_feature_to_domain(plan_feature),
                override_map.get(plan_feature.feature_key),
            )

        for feature_key, override in override_map.items():
            if feature_key in out:
                continue
            catalog_row = await self.session.get(EntitlementFeature, feature_key)
            if catalog_row is None:
                self.events.emit(
                    MeteringEvent.CATALOG_LOOKUP_FAILED,
                    feature_key=feature_key,
                    agency_id=scope.agency_id,
                )
                continue
            out[feature_key] = synthesize_from_override(_feature_to_domain(catalog_row), override)

        return out

    async def resolve_feature(
        self, scope: TenantScope, feature_key: str, now: datetime | None = None
    ) -> EffectiveEntitlement | None:
        entitlements = await self.resolve(scope, now)
        return entitlements.get(feature_key)

    # ========================================================================
    # Queries
    # ========================================================================

    async def _find_current_subscription(
        self, agency_id: str, now: datetime
    ) -> Subscription | None:
        stmt = (
            select(Subscription)
            .where(
                Subscription.agency_id == agency_id,
                Subscription.status.in_(_CURRENT_STATUS_VALUES),
                Subscription.current_period_end > now,
            )
            .order_by(Subscription.current_period_end.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_latest_subscription(self, agency_id: str) -> Subscription | None:
        stmt = (
            select(Subscription)
            .where(Subscription.agency_id == agency_id)
            .order_by(Subscription.current_period_end.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _load_plan_features(
        self, plan_id: str
    ) -> list[tuple[PlanFeature, EntitlementFeature | None]]:
        stmt = (
            select(PlanFeature, EntitlementFeature)
            .outerjoin(EntitlementFeature, EntitlementFeature.key == PlanFeature.feature_key)
            .where(PlanFeature.plan_id == plan_id)
            .order_by(PlanFeature.feature_key)
        )
        result = await self.session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    async def _load_active_overrides(
        self, scope: TenantScope, now: datetime
    ) -> list[OverrideGrant]:
        if scope.sub_account_id:
            sub_account_filter = EntitlementOverride.sub_account_id == scope.sub_account_id
        else:
            sub_account_filter = EntitlementOverride.sub_account_id.is_(None)

        stmt = (
            select(EntitlementOverride)
            .where(
                EntitlementOverride.scope == scope.kind.value,
                EntitlementOverride.agency_id == scope.agency_id,
                sub_account_filter,
                EntitlementOverride.starts_at <= now,
                (EntitlementOverride.ends_at.is_(None)) | (EntitlementOverride.ends_at >= now),
            )
            .order_by(EntitlementOverride.starts_at, EntitlementOverride.created_at)
        )
        result = await self.session.execute(stmt)
        return [_override_to_domain(row) for row in result.scalars().all()]


# ============================================================================
# ORM -> Domain
# ============================================================================


def _feature_to_domain(row: EntitlementFeature) -> FeatureDefinition:
    return FeatureDefinition(
        key=row.key,
        name=row.name,
        category=row.category,
        description=row.description,
        value_type=FeatureValueType(row.value_type),
        unit=row.unit,
        metering=MeteringType(row.metering),
        aggregation=MeterAggregation(row.aggregation),
        scope=MeteringScope(row.scope),
        period=UsagePeriod(row.period),
        credit_enabled=row.credit_enabled,
        credit_unit=row.credit_unit,
        credit_expires=row.credit_expires,
        credit_priority=row.credit_priority,
    )


def _plan_feature_to_domain(row: PlanFeature) -> PlanFeatureGrant:
    return PlanFeatureGrant(
        plan_id=row.plan_id,
        feature_key=row.feature_key,
        is_enabled=row.is_enabled,
        is_unlimited=row.is_unlimited,
        included_int=row.included_int,
        included_dec=row.included_dec,
        max_int=row.max_int,
        max_dec=row.max_dec,
        enforcement=LimitEnforcement(row.enforcement),
        overage_mode=OverageMode(row.overage_mode),
        credit_enabled=row.credit_enabled,
        recurring_credit_grant_int=row.recurring_credit_grant_int,
        recurring_credit_grant_dec=row.recurring_credit_grant_dec,
        rollover_credits=row.rollover_credits,
        top_up_enabled=row.top_up_enabled,
        top_up_price_id=row.top_up_price_id,
    )


def _override_to_domain(row: EntitlementOverride) -> OverrideGrant:
    return OverrideGrant(
        feature_key=row.feature_key,
        starts_at=row.starts_at,
        ends_at=row.ends_at,
        is_enabled=row.is_enabled,
        is_unlimited=row.is_unlimited,
        max_override_int=row.max_override_int,
        max_override_dec=row.max_override_dec,
        max_delta_int=row.max_delta_int,
        max_delta_dec=row.max_delta_dec,
    )
