"""
Tests for the entitlement normalizer (plan grant + override merge).
"""

from datetime import UTC, datetime
from decimal import Decimal

from metering.models.api import FeatureValueType, LimitEnforcement, MeteringType, OverageMode
from metering.models.domain import FeatureDefinition, OverrideGrant, PlanFeatureGrant
from metering.services.normalizer import normalize, synthesize_from_override

STARTS = datetime(2026, 1, 1, tzinfo=UTC)

EXPORTS = FeatureDefinition(
    key="exports",
    name="Exports",
    category="CRM",
    value_type=FeatureValueType.INTEGER,
    metering=MeteringType.COUNT,
    credit_enabled=True,
    credit_unit="exports",
)

STORAGE = FeatureDefinition(
    key="storage",
    name="Storage",
    category="CORE",
    value_type=FeatureValueType.DECIMAL,
    metering=MeteringType.SUM,
)


def _plan(**values) -> PlanFeatureGrant:
    return PlanFeatureGrant(plan_id="plan_test", feature_key="exports", **values)


def _override(**values) -> OverrideGrant:
    return OverrideGrant(feature_key="exports", starts_at=STARTS, **values)


class TestNormalize:
    """Plan grant merged with an optional override."""

    def test_plan_only(self):
        result = normalize(EXPORTS, _plan(included_int=100, max_int=150))

        assert result.is_enabled is True
        assert result.is_unlimited is False
        assert result.included_int == 100
        assert result.max_int == 150
        assert result.effective_limit == Decimal(150)
        assert result.credit_enabled is True  # feature-level flag
        assert result.credit_unit == "exports"

    def test_effective_limit_falls_back_to_included(self):
        result = normalize(EXPORTS, _plan(included_int=100))
        assert result.effective_limit == Decimal(100)

    def test_no_limit_configured(self):
        assert normalize(EXPORTS, _plan()).effective_limit is None

    def test_override_max_wins(self):
        result = normalize(
            EXPORTS, _plan(max_int=100), _override(max_override_int=500, max_delta_int=10)
        )
        assert result.max_int == 500

    def test_override_delta_on_max(self):
        result = normalize(EXPORTS, _plan(max_int=100), _override(max_delta_int=25))
        assert result.max_int == 125

    def test_override_delta_on_included_when_no_max(self):
        result = normalize(EXPORTS, _plan(included_int=100), _override(max_delta_int=-40))
        assert result.max_int == 60
        assert result.effective_limit == Decimal(60)

    def test_delta_without_any_plan_limit_is_ignored(self):
        result = normalize(EXPORTS, _plan(), _override(max_delta_int=10))
        assert result.max_int is None

    def test_override_flags_replace_plan_flags(self):
        result = normalize(
            EXPORTS, _plan(is_enabled=False), _override(is_enabled=True, is_unlimited=True)
        )
        assert result.is_enabled is True
        assert result.is_unlimited is True

    def test_override_without_flags_keeps_plan_flags(self):
        result = normalize(EXPORTS, _plan(is_enabled=False), _override(max_delta_int=5))
        assert result.is_enabled is False
        assert result.is_unlimited is False

    def test_override_can_disable(self):
        result = normalize(EXPORTS, _plan(), _override(is_enabled=False))
        assert result.is_enabled is False

    def test_decimal_values(self):
        plan = PlanFeatureGrant(
            plan_id="plan_test",
            feature_key="storage",
            included_dec=Decimal("5.0"),
            max_dec=Decimal("10.5"),
        )
        override = OverrideGrant(
            feature_key="storage", starts_at=STARTS, max_delta_dec=Decimal("2.25")
        )

        result = normalize(STORAGE, plan, override)

        assert result.uses_decimal is True
        assert result.max_dec == Decimal("12.75")
        assert result.effective_limit == Decimal("12.75")

    def test_plan_commercial_fields_carried(self):
        result = normalize(
            EXPORTS,
            _plan(
                enforcement=LimitEnforcement.SOFT,
                overage_mode=OverageMode.INTERNAL_CREDITS,
                recurring_credit_grant_int=50,
                rollover_credits=True,
                top_up_enabled=True,
                top_up_price_id="price_topup",
            ),
        )
        assert result.enforcement == LimitEnforcement.SOFT
        assert result.allows_credit_overage is True
        assert result.recurring_credit_grant == Decimal(50)
        assert result.rollover_credits is True
        assert result.top_up_price_id == "price_topup"


class TestSynthesizeFromOverride:
    """Features granted only by an override."""

    def test_disabled_unless_explicitly_enabled(self):
        result = synthesize_from_override(EXPORTS, _override(max_override_int=10))
        assert result.is_enabled is False

    def test_explicitly_enabled(self):
        result = synthesize_from_override(EXPORTS, _override(is_enabled=True, max_delta_int=20))

        assert result.is_enabled is True
        assert result.included_int == 0
        assert result.max_int == 20
        assert result.enforcement == LimitEnforcement.HARD
        assert result.overage_mode == OverageMode.NONE
        assert result.recurring_credit_grant == Decimal(0)

    def test_unlimited_override(self):
        result = synthesize_from_override(EXPORTS, _override(is_enabled=True, is_unlimited=True))
        assert result.is_unlimited is True

    def test_max_override_preferred_over_delta(self):
        result = synthesize_from_override(
            EXPORTS, _override(is_enabled=True, max_override_int=7, max_delta_int=3)
        )
        assert result.max_int == 7
