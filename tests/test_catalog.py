"""
Tests for the static feature catalog and its seeding.
"""

from datetime import UTC, datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from metering.db.models import EntitlementFeature, PlanFeature, Subscription
from metering.exceptions import UnknownFeatureError
from metering.models.api import (
    FeatureValueType,
    LimitEnforcement,
    OverageMode,
    SubscriptionStatus,
)
from metering.models.domain import TenantScope
from metering.registry.catalog import (
    FEATURES,
    PLAN_FEATURES,
    PlanIds,
    get_feature,
    get_plan_features,
    seed_catalog,
)
from metering.services.entitlements import EntitlementResolver


class TestCatalogLookups:
    """get_feature / get_plan_features"""

    def test_get_feature(self):
        feature = get_feature("core.agency.storage")

        assert feature.value_type == FeatureValueType.DECIMAL

    def test_unknown_feature(self):
        with pytest.raises(UnknownFeatureError) as exc_info:
            get_feature("crm.unknown")

        assert "crm.unknown" in str(exc_info.value)

    def test_plan_features(self):
        grants = {grant.feature_key: grant for grant in get_plan_features(PlanIds.STARTER)}

        exports = grants["crm.contacts.exports_month"]
        assert exports.included_int == 100
        assert exports.enforcement == LimitEnforcement.HARD
        assert exports.overage_mode == OverageMode.INTERNAL_CREDITS
        assert grants["billing.rebilling"].is_enabled is False

    def test_unknown_plan_has_no_features(self):
        assert get_plan_features("plan_missing") == []

    def test_feature_keys_unique(self):
        keys = [feature.key for feature in FEATURES]

        assert len(keys) == len(set(keys))

    def test_every_grant_references_a_catalog_feature(self):
        for grant in PLAN_FEATURES:
            assert get_feature(grant.feature_key)

    def test_grants_unique_per_plan(self):
        pairs = [(grant.plan_id, grant.feature_key) for grant in PLAN_FEATURES]

        assert len(pairs) == len(set(pairs))


class TestSeedCatalog:
    """seed_catalog against the SQLite schema."""

    async def test_seeds_everything(self, sqlite_session):
        counts = await seed_catalog(sqlite_session)

        features = await sqlite_session.scalar(select(func.count(EntitlementFeature.key)))
        grants = await sqlite_session.scalar(select(func.count(PlanFeature.id)))
        assert counts == (len(FEATURES), len(PLAN_FEATURES))
        assert features == len(FEATURES)
        assert grants == len(PLAN_FEATURES)

    async def test_rerun_is_idempotent(self, sqlite_session):
        await seed_catalog(sqlite_session)
        await seed_catalog(sqlite_session)

        grants = await sqlite_session.scalar(select(func.count(PlanFeature.id)))
        assert grants == len(PLAN_FEATURES)

    async def test_seeded_plan_resolves(self, sqlite_session):
        now = datetime(2026, 3, 15, tzinfo=UTC)
        await seed_catalog(sqlite_session)
        sqlite_session.add(
            Subscription(
                agency_id="agency-1",
                plan_id=PlanIds.BASIC,
                status=SubscriptionStatus.ACTIVE.value,
                current_period_start=datetime(2026, 3, 1, tzinfo=UTC),
                current_period_end=datetime(2026, 4, 1, tzinfo=UTC),
            )
        )
        await sqlite_session.commit()

        entitlements = await EntitlementResolver(sqlite_session).resolve(
            TenantScope.agency("agency-1"), now
        )

        assert entitlements["core.agency.subaccounts"].is_unlimited is True
        assert entitlements["core.agency.storage"].effective_limit == Decimal("25.0")
        assert entitlements["crm.contacts.exports_month"].effective_limit == Decimal(1000)
