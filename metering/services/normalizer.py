"""
Entitlement Normalizer - Merges a plan grant with an active override.

Pure functions. An override alone never grants access: an override-only feature is
enabled only when the override says is_enabled=True explicitly.
"""

from decimal import Decimal
from typing import TypeVar

from metering.models.api import LimitEnforcement, OverageMode
from metering.models.domain import (
    EffectiveEntitlement,
    FeatureDefinition,
    OverrideGrant,
    PlanFeatureGrant,
)

N = TypeVar("N", int, Decimal)


def _adjusted_cap(
    plan_max: N | None, plan_included: N | None, override_max: N | None, delta: N | None
) -> N | None:
    """Override cap wins; else delta on top of the plan's limit; else the plan value."""
    if override_max is not None:
        return override_max
    if delta is not None:
        base = plan_max if plan_max is not None else plan_included
        if base is not None:
            return base + delta
    return plan_max


def normalize(
    feature: FeatureDefinition,
    plan: PlanFeatureGrant,
    override: OverrideGrant | None = None,
) -> EffectiveEntitlement:
    """Produce the effective entitlement for one plan feature."""
    is_enabled = plan.is_enabled
    is_unlimited = plan.is_unlimited
    max_int = plan.max_int
    max_dec = plan.max_dec

    if override is not None:
        if override.is_enabled is not None:
            is_enabled = override.is_enabled
        if override.is_unlimited is not None:
            is_unlimited = override.is_unlimited
        max_int = _adjusted_cap(
            plan.max_int, plan.included_int, override.max_override_int, override.max_delta_int
        )
        max_dec = _adjusted_cap(
            plan.max_dec, plan.included_dec, override.max_override_dec, override.max_delta_dec
        )

    return EffectiveEntitlement(
        feature_key=feature.key,
        name=feature.name,
        category=feature.category,
        description=feature.description,
        value_type=feature.value_type,
        unit=feature.unit,
        metering=feature.metering,
        aggregation=feature.aggregation,
        scope=feature.scope,
        period=feature.period,
        is_enabled=is_enabled,
        is_unlimited=is_unlimited,
        included_int=plan.included_int,
        included_dec=plan.included_dec,
        max_int=max_int,
        max_dec=max_dec,
        enforcement=plan.enforcement,
        overage_mode=plan.overage_mode,
        credit_enabled=plan.credit_enabled or feature.credit_enabled,
        credit_unit=feature.credit_unit,
        credit_expires=feature.credit_expires,
        credit_priority=feature.credit_priority,
        recurring_credit_grant_int=plan.recurring_credit_grant_int,
        recurring_credit_grant_dec=plan.recurring_credit_grant_dec,
        rollover_credits=plan.rollover_credits,
        top_up_enabled=plan.top_up_enabled,
        top_up_price_id=plan.top_up_price_id,
    )


def synthesize_from_override(
    feature: FeatureDefinition, override: OverrideGrant
) -> EffectiveEntitlement:
    """Effective entitlement for a feature granted only by an override."""
    return EffectiveEntitlement(
        feature_key=feature.key,
        name=feature.name,
        category=feature.category,
        description=feature.description,
        value_type=feature.value_type,
        unit=feature.unit,
        metering=feature.metering,
        aggregation=feature.aggregation,
        scope=feature.scope,
        period=feature.period,
        is_enabled=bool(override.is_enabled),
        is_unlimited=bool(override.is_unlimited),
        included_int=0,
        included_dec=Decimal(0),
        max_int=(
            override.max_override_int
            if override.max_override_int is not None
            else override.max_delta_int
        ),
        max_dec=(
            override.max_override_dec
            if override.max_override_dec is not None
            else override.max_delta_dec
        ),
        enforcement=LimitEnforcement.HARD,
        overage_mode=OverageMode.NONE,
        credit_enabled=feature.credit_enabled,
        credit_unit=feature.credit_unit,
        credit_expires=feature.credit_expires,
        credit_priority=feature.credit_priority,
        recurring_credit_grant_int=None,
        recurring_credit_grant_dec=None,
        rollover_credits=False,
        top_up_enabled=False,
        top_up_price_id=None,
    )
