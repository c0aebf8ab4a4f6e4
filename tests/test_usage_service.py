"""
Tests for UsageService - the metered write path.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st
from sqlalchemy import func, select

from metering.db.models import UsageEvent
from metering.exceptions import (
    IdempotencyConflictError,
    InvalidQuantityError,
    MissingIdempotencyKeyError,
)
from metering.models.api import (
    FeatureValueType,
    LimitEnforcement,
    MeteringType,
    OverageMode,
    PolicyReason,
)
from metering.models.domain import FeatureDefinition, PlanFeatureGrant
from metering.observability.events import MeteringEvent
from metering.services.credit_ledger import CreditLedgerService
from metering.services.normalizer import normalize
from metering.services.usage import UsageService, plan_consumption

EXPORTS = FeatureDefinition(
    key="exports",
    name="Exports",
    category="CRM",
    value_type=FeatureValueType.INTEGER,
    metering=MeteringType.COUNT,
)


def _entitlement(**plan_values):
    grant = PlanFeatureGrant(plan_id="plan", feature_key="exports", **plan_values)
    return normalize(EXPORTS, grant)


async def _event_count(session) -> int:
    return (await session.execute(select(func.count()).select_from(UsageEvent))).scalar_one()


# ============================================================================
# Pure decision
# ============================================================================


class TestPlanConsumption:
    """plan_consumption decides without touching the store."""

    def test_within_limit(self):
        plan = plan_consumption(_entitlement(included_int=10), Decimal(4), Decimal(3), Decimal(0))

        assert plan.allowed is True
        assert plan.consumed_from_quota == Decimal(3)
        assert plan.consumed_from_credit == Decimal(0)
        assert plan.over_limit is False
        assert plan.remaining_quota == Decimal(3)

    def test_exactly_at_limit(self):
        plan = plan_consumption(_entitlement(included_int=10), Decimal(9), Decimal(1), Decimal(0))
        assert plan.allowed is True
        assert plan.remaining_quota == Decimal(0)

    def test_hard_limit_exceeded(self):
        plan = plan_consumption(_entitlement(included_int=10), Decimal(10), Decimal(1), Decimal(0))

        assert plan.allowed is False
        assert plan.reason == PolicyReason.LIMIT_EXCEEDED
        assert plan.consumed_from_quota == Decimal(0)

    def test_soft_limit_allows_and_flags(self):
        plan = plan_consumption(
            _entitlement(included_int=10, enforcement=LimitEnforcement.SOFT),
            Decimal(10),
            Decimal(5),
            Decimal(0),
        )

        assert plan.allowed is True
        assert plan.over_limit is True
        assert plan.consumed_from_quota == Decimal(5)

    def test_credit_covers_shortfall_only(self):
        plan = plan_consumption(
            _entitlement(included_int=10, overage_mode=OverageMode.INTERNAL_CREDITS),
            Decimal(8),
            Decimal(5),
            Decimal(100),
        )

        assert plan.allowed is True
        assert plan.consumed_from_quota == Decimal(2)
        assert plan.consumed_from_credit == Decimal(3)
        assert plan.over_limit is False
        assert plan.remaining_credit == Decimal(97)

    def test_partial_credit_is_never_drawn(self):
        plan = plan_consumption(
            _entitlement(included_int=10, overage_mode=OverageMode.INTERNAL_CREDITS),
            Decimal(10),
            Decimal(5),
            Decimal(4),
        )

        assert plan.allowed is False
        assert plan.reason == PolicyReason.INSUFFICIENT_CREDITS
        assert plan.consumed_from_credit == Decimal(0)
        assert plan.remaining_credit == Decimal(4)

    def test_stripe_metered_behaves_like_no_overage(self):
        plan = plan_consumption(
            _entitlement(included_int=1, overage_mode=OverageMode.STRIPE_METERED),
            Decimal(1),
            Decimal(1),
            Decimal(100),
        )
        assert plan.reason == PolicyReason.LIMIT_EXCEEDED

    def test_unlimited(self):
        plan = plan_consumption(
            _entitlement(included_int=1, is_unlimited=True), Decimal(1000), Decimal(50), Decimal(0)
        )
        assert plan.allowed is True
        assert plan.over_limit is False
        assert plan.remaining_quota is None

    def test_no_limit_configured_means_no_cap(self):
        plan = plan_consumption(_entitlement(), Decimal(10**9), Decimal(1), Decimal(0))
        assert plan.allowed is True


@st.composite
def consumption_inputs(draw):
    limit = draw(st.integers(min_value=0, max_value=1000))
    entitlement = _entitlement(
        included_int=limit,
        enforcement=draw(st.sampled_from(list(LimitEnforcement))),
        overage_mode=draw(st.sampled_from(list(OverageMode))),
    )
    prior = Decimal(draw(st.integers(min_value=0, max_value=1500)))
    quantity = Decimal(draw(st.integers(min_value=1, max_value=500)))
    available = Decimal(draw(st.integers(min_value=0, max_value=500)))
    return entitlement, prior, quantity, available


class TestPlanConsumptionProperties:
    """Properties that hold for every input."""

    @given(consumption_inputs())
    def test_allowed_splits_the_full_quantity(self, inputs):
        entitlement, prior, quantity, available = inputs
        plan = plan_consumption(entitlement, prior, quantity, available)

        if plan.allowed:
            assert plan.consumed_from_quota + plan.consumed_from_credit == quantity
        else:
            assert plan.consumed_from_quota == plan.consumed_from_credit == Decimal(0)

    @given(consumption_inputs())
    def test_credit_draw_never_exceeds_available(self, inputs):
        entitlement, prior, quantity, available = inputs
        plan = plan_consumption(entitlement, prior, quantity, available)

        assert Decimal(0) <= plan.consumed_from_credit <= available

    @given(consumption_inputs())
    def test_hard_limit_never_exceeded_from_quota(self, inputs):
        entitlement, prior, quantity, available = inputs
        plan = plan_consumption(entitlement, prior, quantity, available)

        if plan.allowed and entitlement.enforcement == LimitEnforcement.HARD:
            limit = entitlement.effective_limit
            assert plan.consumed_from_quota <= max(limit - prior, Decimal(0))
            assert plan.over_limit is False

    @given(consumption_inputs())
    def test_denials_carry_a_reason(self, inputs):
        entitlement, prior, quantity, available = inputs
        plan = plan_consumption(entitlement, prior, quantity, available)

        assert plan.allowed == (plan.reason is None)


# ============================================================================
# Validation
# ============================================================================


class TestValidation:
    """Rejected inputs never reach the store."""

    async def test_zero_quantity_rejected_without_store_access(self, db_session, agency_scope):
        with pytest.raises(InvalidQuantityError):
            await UsageService(db_session).consume_usage(agency_scope, "exports", 0, "k1")

        db_session.execute.assert_not_awaited()
        db_session.add.assert_not_called()
        db_session.commit.assert_not_awaited()

    async def test_missing_idempotency_key(self, db_session, agency_scope):
        with pytest.raises(MissingIdempotencyKeyError):
            await UsageService(db_session).consume_usage(agency_scope, "exports", 1, "")

        db_session.execute.assert_not_awaited()


# ============================================================================
# Consumption against the database
# ============================================================================


class TestConsumeUsage:
    """End-to-end consumption over SQLite."""

    async def test_hard_limit_allows_exactly_the_included_quota(
        self, seed, sqlite_session, now
    ):
        await seed.metered_plan(included_int=100)
        service = UsageService(sqlite_session)

        for i in range(100):
            result = await service.consume_usage(
                seed.agency_scope, "exports", 1, f"export-{i}", now=now
            )
            assert result.allowed, f"call {i} was denied"

        denied = await service.consume_usage(
            seed.agency_scope, "exports", 1, "export-100", now=now
        )

        assert denied.allowed is False
        assert denied.reason == PolicyReason.LIMIT_EXCEEDED
        assert denied.remaining_quota == Decimal(0)
        assert await _event_count(sqlite_session) == 100

    async def test_result_carries_window(self, seed, sqlite_session, now):
        await seed.metered_plan(included_int=5)

        result = await UsageService(sqlite_session).consume_usage(
            seed.agency_scope, "exports", 2, "k1", now=now
        )

        assert result.period_start == now.replace(day=1, hour=0)
        assert result.period_end == now.replace(month=4, day=1, hour=0)
        assert result.remaining_quota == Decimal(3)
        assert result.balance_after == Decimal(0)

    async def test_usage_in_previous_window_not_counted(self, seed, sqlite_session, now):
        await seed.metered_plan(included_int=3)
        service = UsageService(sqlite_session)
        last_month = now - timedelta(days=20)

        await service.consume_usage(seed.agency_scope, "exports", 3, "feb", now=last_month)
        result = await service.consume_usage(seed.agency_scope, "exports", 3, "mar", now=now)

        assert result.allowed is True

    async def test_soft_limit_flags_over_limit(self, seed, sqlite_session, now):
        await seed.metered_plan(included_int=2, enforcement=LimitEnforcement.SOFT)
        service = UsageService(sqlite_session)

        results = [
            await service.consume_usage(seed.agency_scope, "exports", 1, f"k{i}", now=now)
            for i in range(3)
        ]

        assert all(result.allowed for result in results)
        assert [result.over_limit for result in results] == [False, False, True]

    async def test_feature_not_in_plan_is_disabled(self, seed, sqlite_session, now, event_sink):
        await seed.metered_plan()
        await seed.feature(key="webhooks")

        result = await UsageService(sqlite_session, event_sink).consume_usage(
            seed.agency_scope, "webhooks", 1, "k1", now=now
        )

        assert result.allowed is False
        assert result.reason == PolicyReason.FEATURE_DISABLED
        assert event_sink.names == [MeteringEvent.USAGE_DENIED.value]

    async def test_no_subscription_is_disabled(self, seed, sqlite_session, now):
        await seed.feature()
        await seed.plan_feature(included_int=100)

        result = await UsageService(sqlite_session).consume_usage(
            seed.agency_scope, "exports", 1, "k1", now=now
        )

        assert result.reason == PolicyReason.FEATURE_DISABLED

    async def test_sub_account_usage_is_counted_separately(self, seed, sqlite_session, now):
        await seed.metered_plan(included_int=1)
        service = UsageService(sqlite_session)

        agency = await service.consume_usage(seed.agency_scope, "exports", 1, "a", now=now)
        sub_account = await service.consume_usage(
            seed.sub_account_scope, "exports", 1, "b", now=now
        )

        assert agency.allowed and sub_account.allowed


class TestCreditOverage:
    """HARD limits with INTERNAL_CREDITS overage."""

    async def _setup(self, seed, sqlite_session, now, credits: int):
        await seed.metered_plan(included_int=10, overage_mode=OverageMode.INTERNAL_CREDITS)
        if credits:
            await CreditLedgerService(sqlite_session).grant(
                seed.agency_scope, "exports", credits, "Top-up", "topup-1", now=now
            )

    async def test_shortfall_drawn_from_credits(self, seed, sqlite_session, now, event_sink):
        await self._setup(seed, sqlite_session, now, credits=5)
        service = UsageService(sqlite_session, event_sink)

        await service.consume_usage(seed.agency_scope, "exports", 8, "k1", now=now)
        result = await service.consume_usage(seed.agency_scope, "exports", 4, "k2", now=now)

        assert result.allowed is True
        assert result.consumed_from_quota == Decimal(2)
        assert result.consumed_from_credit == Decimal(2)
        assert result.over_limit is False
        assert result.balance_after == Decimal(3)
        ledger = CreditLedgerService(sqlite_session)
        assert (await ledger.find_entry("usage:k2")).delta == Decimal(-2)
        assert (await ledger.reconcile(seed.agency_scope, "exports")).consistent
        assert MeteringEvent.CREDITS_CONSUMED.value in event_sink.names

    async def test_insufficient_credits_denied_without_mutation(self, seed, sqlite_session, now):
        await self._setup(seed, sqlite_session, now, credits=2)
        service = UsageService(sqlite_session)
        await service.consume_usage(seed.agency_scope, "exports", 10, "k1", now=now)

        result = await service.consume_usage(seed.agency_scope, "exports", 3, "k2", now=now)

        assert result.allowed is False
        assert result.reason == PolicyReason.INSUFFICIENT_CREDITS
        assert result.remaining_credit == Decimal(2)
        ledger = CreditLedgerService(sqlite_session)
        assert await ledger.get_available_balance(seed.agency_scope, "exports", now) == Decimal(2)
        assert await _event_count(sqlite_session) == 1

    async def test_replay_does_not_debit_twice(self, seed, sqlite_session, now, event_sink):
        await self._setup(seed, sqlite_session, now, credits=5)
        service = UsageService(sqlite_session, event_sink)
        await service.consume_usage(seed.agency_scope, "exports", 10, "k1", now=now)

        first = await service.consume_usage(seed.agency_scope, "exports", 3, "k2", now=now)
        replay = await service.consume_usage(seed.agency_scope, "exports", 3, "k2", now=now)

        assert replay.replayed is True
        assert replay.consumed_from_credit == first.consumed_from_credit == Decimal(3)
        assert replay.balance_after == first.balance_after == Decimal(2)
        ledger = CreditLedgerService(sqlite_session)
        assert await ledger.get_available_balance(seed.agency_scope, "exports", now) == Decimal(2)
        assert await _event_count(sqlite_session) == 2
        assert event_sink.names[-1] == MeteringEvent.USAGE_REPLAYED.value


class TestIdempotency:
    """Replays return the stored result; conflicting reuse is rejected."""

    async def test_replay_counts_once(self, seed, sqlite_session, now):
        await seed.metered_plan(included_int=100)
        service = UsageService(sqlite_session)

        first = await service.consume_usage(seed.agency_scope, "exports", 5, "k1", now=now)
        replay = await service.consume_usage(seed.agency_scope, "exports", 5, "k1", now=now)

        assert first.replayed is False
        assert replay.replayed is True
        assert replay.consumed_from_quota == Decimal(5)
        assert await _event_count(sqlite_session) == 1
        [summary] = await service.get_usage_summary(seed.agency_scope, now=now)
        assert summary.used == Decimal(5)

    async def test_replay_after_limit_reached_still_succeeds(self, seed, sqlite_session, now):
        await seed.metered_plan(included_int=1)
        service = UsageService(sqlite_session)
        await service.consume_usage(seed.agency_scope, "exports", 1, "k1", now=now)

        replay = await service.consume_usage(seed.agency_scope, "exports", 1, "k1", now=now)

        assert replay.allowed is True
        assert replay.replayed is True

    async def test_key_reused_with_different_quantity(self, seed, sqlite_session, now):
        await seed.metered_plan(included_int=100)
        service = UsageService(sqlite_session)
        await service.consume_usage(seed.agency_scope, "exports", 5, "k1", now=now)

        with pytest.raises(IdempotencyConflictError):
            await service.consume_usage(seed.agency_scope, "exports", 6, "k1", now=now)

    async def test_key_reused_for_other_feature(self, seed, sqlite_session, now):
        await seed.metered_plan(included_int=100)
        await seed.feature(key="webhooks")
        await seed.plan_feature(feature_key="webhooks", included_int=100)
        service = UsageService(sqlite_session)
        await service.consume_usage(seed.agency_scope, "exports", 1, "k1", now=now)

        with pytest.raises(IdempotencyConflictError):
            await service.consume_usage(seed.agency_scope, "webhooks", 1, "k1", now=now)


class TestLostRace:
    """A writer that commits the same key between the pre-checks and the insert wins."""

    async def test_unlimited_feature_replays_winner(
        self, seed, sqlite_session, now, concurrent_winner
    ):
        await seed.metered_plan(included_int=100)
        await seed.override(scope=seed.sub_account_scope, is_unlimited=True)
        service = UsageService(sqlite_session)
        first = await service.consume_usage(seed.sub_account_scope, "exports", 1, "dup", now=now)
        concurrent_winner(service, "_find_event")

        result = await service.consume_usage(seed.sub_account_scope, "exports", 1, "dup", now=now)

        assert first.replayed is False
        assert result.allowed is True
        assert result.replayed is True
        assert await _event_count(sqlite_session) == 1

    async def test_metered_feature_replays_winner(
        self, seed, sqlite_session, now, concurrent_winner
    ):
        await seed.metered_plan(included_int=100)
        service = UsageService(sqlite_session)
        await service.consume_usage(seed.agency_scope, "exports", 5, "dup", now=now)
        concurrent_winner(service, "_find_event")

        result = await service.consume_usage(seed.agency_scope, "exports", 5, "dup", now=now)

        assert result.replayed is True
        assert result.consumed_from_quota == Decimal(5)
        [summary] = await service.get_usage_summary(seed.agency_scope, now=now)
        assert summary.used == Decimal(5)

    async def test_credit_draw_replays_winner(self, seed, sqlite_session, now, concurrent_winner):
        await seed.metered_plan(included_int=0, overage_mode=OverageMode.INTERNAL_CREDITS)
        ledger = CreditLedgerService(sqlite_session)
        await ledger.grant(seed.agency_scope, "exports", 5, "Top-up", "topup-1", now=now)
        service = UsageService(sqlite_session)
        await service.consume_usage(seed.agency_scope, "exports", 2, "dup", now=now)
        concurrent_winner(service, "_find_event")

        result = await service.consume_usage(seed.agency_scope, "exports", 2, "dup", now=now)

        assert result.replayed is True
        assert result.balance_after == Decimal(3)
        assert await ledger.get_available_balance(seed.agency_scope, "exports", now) == Decimal(3)
        assert (await ledger.reconcile(seed.agency_scope, "exports")).consistent

    async def test_key_taken_by_other_feature_conflicts(
        self, seed, sqlite_session, now, concurrent_winner
    ):
        await seed.metered_plan(included_int=100)
        await seed.feature(key="webhooks")
        await seed.plan_feature(feature_key="webhooks", included_int=100)
        service = UsageService(sqlite_session)
        await service.consume_usage(seed.agency_scope, "exports", 1, "dup", now=now)
        concurrent_winner(service, "_find_event")

        with pytest.raises(IdempotencyConflictError):
            await service.consume_usage(seed.agency_scope, "webhooks", 1, "dup", now=now)

        assert await _event_count(sqlite_session) == 1


class TestUnlimitedOverride:
    """A sub-account override lifts the plan's HARD limit for that sub-account only."""

    async def _setup(self, seed):
        await seed.metered_plan(included_int=100)
        await seed.override(scope=seed.sub_account_scope, is_unlimited=True)

    async def test_sub_account_exceeds_plan_limit(self, seed, sqlite_session, now):
        await self._setup(seed)
        service = UsageService(sqlite_session)

        results = [
            await service.consume_usage(seed.sub_account_scope, "exports", 1, f"k{i}", now=now)
            for i in range(150)
        ]

        assert all(result.allowed for result in results)
        assert not any(result.over_limit for result in results)

    @pytest.mark.slow
    async def test_ten_thousand_calls(self, seed, sqlite_session, now):
        await self._setup(seed)
        service = UsageService(sqlite_session)

        for i in range(10_000):
            result = await service.consume_usage(
                seed.sub_account_scope, "exports", 1, f"bulk-{i}", now=now
            )
            assert result.allowed

        agency = await service.consume_usage(seed.agency_scope, "exports", 101, "agency", now=now)
        assert agency.reason == PolicyReason.LIMIT_EXCEEDED


class TestEvaluateAndSummary:
    """Dry runs and current-window summaries."""

    async def test_evaluate_does_not_mutate(self, seed, sqlite_session, now):
        await seed.metered_plan(included_int=3)
        service = UsageService(sqlite_session)

        allowed = await service.evaluate(seed.agency_scope, "exports", 3, now)
        denied = await service.evaluate(seed.agency_scope, "exports", 4, now)

        assert allowed.allowed is True
        assert denied.reason == PolicyReason.LIMIT_EXCEEDED
        assert await _event_count(sqlite_session) == 0

    async def test_summary_lists_metered_features(self, seed, sqlite_session, now):
        await seed.metered_plan(included_int=10)
        await seed.feature(
            key="rebilling", value_type=FeatureValueType.BOOLEAN, metering=MeteringType.NONE
        )
        await seed.plan_feature(feature_key="rebilling")
        service = UsageService(sqlite_session)
        await service.consume_usage(seed.agency_scope, "exports", 4, "k1", now=now)

        summaries = await service.get_usage_summary(seed.agency_scope, now=now)

        assert [summary.feature_key for summary in summaries] == ["exports"]
        assert summaries[0].used == Decimal(4)
        assert summaries[0].remaining == Decimal(6)
        assert summaries[0].over_limit is False
