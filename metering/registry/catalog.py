"""
Feature Catalog Registry - Static catalog of entitlement features and plan grants.

These are seeded into entitlement_features / plan_features by scripts/seed_catalog.py.
Plan IDs are the billing provider's recurring price identifiers.
"""

from dataclasses import asdict
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from metering.db.models import EntitlementFeature, PlanFeature
from metering.exceptions import UnknownFeatureError
from metering.models.api import (
    FeatureValueType,
    LimitEnforcement,
    MeterAggregation,
    MeteringScope,
    MeteringType,
    OverageMode,
    UsagePeriod,
)
from metering.models.domain import FeatureDefinition, PlanFeatureGrant

logger = structlog.get_logger(__name__)


class PlanIds:
    """Recurring price identifiers of the sellable plans."""

    STARTER = "plan_starter_monthly"
    BASIC = "plan_basic_monthly"
    ADVANCED = "plan_advanced_monthly"
    PRIORITY_SUPPORT = "addon_priority_support_monthly"


# ============================================================================
# Feature Catalog
# ============================================================================

FEATURES: tuple[FeatureDefinition, ...] = (
    # Core
    FeatureDefinition(
        key="core.agency.subaccounts",
        name="Sub-Accounts",
        description="Maximum number of sub-accounts (clients) per agency",
        category="CORE",
        value_type=FeatureValueType.INTEGER,
        unit="subaccounts",
        metering=MeteringType.COUNT,
    ),
    FeatureDefinition(
        key="core.agency.team_members",
        name="Team Members",
        description="Maximum team members allowed in the agency",
        category="CORE",
        value_type=FeatureValueType.INTEGER,
        unit="members",
        metering=MeteringType.COUNT,
    ),
    FeatureDefinition(
        key="core.agency.storage",
        name="Storage",
        description="Total file storage allocation in GB",
        category="CORE",
        value_type=FeatureValueType.DECIMAL,
        unit="GB",
        metering=MeteringType.SUM,
        aggregation=MeterAggregation.SUM,
    ),
    # CRM
    FeatureDefinition(
        key="crm.funnels.count",
        name="Funnels",
        description="Maximum funnels per sub-account",
        category="CRM",
        value_type=FeatureValueType.INTEGER,
        unit="funnels",
        metering=MeteringType.COUNT,
        scope=MeteringScope.SUBACCOUNT,
    ),
    FeatureDefinition(
        key="crm.pipelines.count",
        name="Pipelines",
        description="Maximum pipelines per sub-account",
        category="CRM",
        value_type=FeatureValueType.INTEGER,
        unit="pipelines",
        metering=MeteringType.COUNT,
        scope=MeteringScope.SUBACCOUNT,
    ),
    FeatureDefinition(
        key="crm.contacts.count",
        name="Contacts",
        description="Maximum contacts per sub-account",
        category="CRM",
        value_type=FeatureValueType.INTEGER,
        unit="contacts",
        metering=MeteringType.COUNT,
        scope=MeteringScope.SUBACCOUNT,
    ),
    FeatureDefinition(
        key="crm.contacts.exports_month",
        name="Contact Exports",
        description="Contact exports per month",
        category="CRM",
        value_type=FeatureValueType.INTEGER,
        unit="exports",
        metering=MeteringType.COUNT,
        scope=MeteringScope.SUBACCOUNT,
        credit_enabled=True,
        credit_unit="exports",
    ),
    # Billing
    FeatureDefinition(
        key="billing.rebilling",
        name="Rebilling",
        description="Resell platform usage to sub-accounts",
        category="CORE",
        value_type=FeatureValueType.BOOLEAN,
    ),
    FeatureDefinition(
        key="billing.priority_support",
        name="Priority Support",
        description="24/7 priority support",
        category="CORE",
        value_type=FeatureValueType.BOOLEAN,
    ),
    # Apps
    FeatureDefinition(
        key="apps.integrations.api_keys",
        name="API Keys",
        description="Maximum active API keys",
        category="APPS",
        value_type=FeatureValueType.INTEGER,
        unit="keys",
        metering=MeteringType.COUNT,
    ),
    FeatureDefinition(
        key="apps.webhooks.subscriptions",
        name="Webhook Subscriptions",
        description="Maximum webhook subscriptions",
        category="APPS",
        value_type=FeatureValueType.INTEGER,
        unit="subscriptions",
        metering=MeteringType.COUNT,
    ),
    FeatureDefinition(
        key="apps.webhooks.deliveries_month",
        name="Webhook Deliveries",
        description="Webhook deliveries per month",
        category="APPS",
        value_type=FeatureValueType.INTEGER,
        unit="deliveries",
        metering=MeteringType.COUNT,
        credit_enabled=True,
        credit_unit="deliveries",
        credit_expires=True,
        credit_priority=10,
    ),
    # Financial modules
    FeatureDefinition(
        key="fi.general_ledger.journal_entries",
        name="Journal Entries",
        description="Journal entries posted per month",
        category="FI",
        value_type=FeatureValueType.INTEGER,
        unit="entries",
        metering=MeteringType.SUM,
        aggregation=MeterAggregation.SUM,
        period=UsagePeriod.MONTHLY,
    ),
    FeatureDefinition(
        key="fi.configuration.number_ranges",
        name="Number Ranges",
        description="Configurable document number ranges",
        category="FI",
        value_type=FeatureValueType.BOOLEAN,
    ),
    FeatureDefinition(
        key="fi.bank_ledger.bank_accounts",
        name="Bank Ledger",
        description="Bank accounts and statement matching",
        category="FI",
        value_type=FeatureValueType.BOOLEAN,
    ),
)


def _grant(plan_id: str, feature_key: str, **values: object) -> PlanFeatureGrant:
    return PlanFeatureGrant(
        plan_id=plan_id, feature_key=feature_key, **values  # type: ignore[arg-type]
    )


HARD = LimitEnforcement.HARD
SOFT = LimitEnforcement.SOFT

PLAN_FEATURES: tuple[PlanFeatureGrant, ...] = (
    # Starter
    _grant(PlanIds.STARTER, "core.agency.subaccounts", max_int=3, enforcement=HARD),
    _grant(PlanIds.STARTER, "core.agency.team_members", max_int=2, enforcement=HARD),
    _grant(PlanIds.STARTER, "core.agency.storage", max_dec=Decimal("5.0"), enforcement=SOFT),
    _grant(PlanIds.STARTER, "crm.funnels.count", max_int=5, enforcement=HARD),
    _grant(PlanIds.STARTER, "crm.pipelines.count", is_unlimited=True),
    _grant(PlanIds.STARTER, "crm.contacts.count", max_int=500, enforcement=SOFT),
    _grant(
        PlanIds.STARTER,
        "crm.contacts.exports_month",
        included_int=100,
        enforcement=HARD,
        overage_mode=OverageMode.INTERNAL_CREDITS,
        credit_enabled=True,
        top_up_enabled=True,
    ),
    _grant(PlanIds.STARTER, "billing.rebilling", is_enabled=False),
    _grant(PlanIds.STARTER, "billing.priority_support", is_enabled=False),
    _grant(PlanIds.STARTER, "apps.integrations.api_keys", max_int=3, enforcement=HARD),
    _grant(PlanIds.STARTER, "apps.webhooks.subscriptions", max_int=5, enforcement=HARD),
    _grant(
        PlanIds.STARTER,
        "apps.webhooks.deliveries_month",
        max_int=1000,
        enforcement=SOFT,
        credit_enabled=True,
        recurring_credit_grant_int=1000,
        rollover_credits=False,
    ),
    # Basic
    _grant(PlanIds.BASIC, "core.agency.subaccounts", is_unlimited=True),
    _grant(PlanIds.BASIC, "core.agency.team_members", is_unlimited=True),
    _grant(PlanIds.BASIC, "core.agency.storage", max_dec=Decimal("25.0"), enforcement=SOFT),
    _grant(PlanIds.BASIC, "crm.funnels.count", max_int=25, enforcement=SOFT),
    _grant(PlanIds.BASIC, "crm.pipelines.count", is_unlimited=True),
    _grant(PlanIds.BASIC, "crm.contacts.count", max_int=5000, enforcement=SOFT),
    _grant(
        PlanIds.BASIC,
        "crm.contacts.exports_month",
        included_int=1000,
        enforcement=HARD,
        overage_mode=OverageMode.INTERNAL_CREDITS,
        credit_enabled=True,
        top_up_enabled=True,
    ),
    _grant(PlanIds.BASIC, "billing.rebilling", is_enabled=False),
    _grant(PlanIds.BASIC, "billing.priority_support", is_enabled=False),
    _grant(PlanIds.BASIC, "apps.integrations.api_keys", max_int=10, enforcement=HARD),
    _grant(PlanIds.BASIC, "apps.webhooks.subscriptions", max_int=25, enforcement=HARD),
    _grant(
        PlanIds.BASIC,
        "apps.webhooks.deliveries_month",
        max_int=10000,
        enforcement=SOFT,
        credit_enabled=True,
        recurring_credit_grant_int=10000,
        rollover_credits=False,
    ),
    _grant(PlanIds.BASIC, "fi.general_ledger.journal_entries", max_int=2000, enforcement=HARD),
    _grant(PlanIds.BASIC, "fi.configuration.number_ranges"),
    # Advanced
    _grant(PlanIds.ADVANCED, "core.agency.subaccounts", is_unlimited=True),
    _grant(PlanIds.ADVANCED, "core.agency.team_members", is_unlimited=True),
    _grant(PlanIds.ADVANCED, "core.agency.storage", max_dec=Decimal("100.0"), enforcement=SOFT),
    _grant(PlanIds.ADVANCED, "crm.funnels.count", is_unlimited=True),
    _grant(PlanIds.ADVANCED, "crm.pipelines.count", is_unlimited=True),
    _grant(PlanIds.ADVANCED, "crm.contacts.count", is_unlimited=True),
    _grant(PlanIds.ADVANCED, "crm.contacts.exports_month", is_unlimited=True),
    _grant(PlanIds.ADVANCED, "billing.rebilling"),
    _grant(PlanIds.ADVANCED, "billing.priority_support"),
    _grant(PlanIds.ADVANCED, "apps.integrations.api_keys", is_unlimited=True),
    _grant(PlanIds.ADVANCED, "apps.webhooks.subscriptions", is_unlimited=True),
    _grant(PlanIds.ADVANCED, "apps.webhooks.deliveries_month", is_unlimited=True),
    _grant(PlanIds.ADVANCED, "fi.general_ledger.journal_entries", is_unlimited=True),
    _grant(PlanIds.ADVANCED, "fi.configuration.number_ranges"),
    _grant(PlanIds.ADVANCED, "fi.bank_ledger.bank_accounts"),
    # Add-ons
    _grant(PlanIds.PRIORITY_SUPPORT, "billing.priority_support"),
)

_FEATURES_BY_KEY = {feature.key: feature for feature in FEATURES}


def get_feature(key: str) -> FeatureDefinition:
    """
    Look up a catalog feature.

    Raises:
        UnknownFeatureError: If the key is not in the catalog
    """
    try:
        return _FEATURES_BY_KEY[key]
    except KeyError:
        raise UnknownFeatureError(key) from None


def get_plan_features(plan_id: str) -> list[PlanFeatureGrant]:
    return [grant for grant in PLAN_FEATURES if grant.plan_id == plan_id]


# ============================================================================
# Seeding
# ============================================================================


def _feature_columns(feature: FeatureDefinition) -> dict[str, object]:
    columns = asdict(feature)
    for name in ("value_type", "metering", "aggregation", "scope", "period"):
        columns[name] = columns[name].value
    return columns


def _plan_feature_columns(grant: PlanFeatureGrant) -> dict[str, object]:
    columns = asdict(grant)
    columns["enforcement"] = grant.enforcement.value
    columns["overage_mode"] = grant.overage_mode.value
    return columns


async def seed_catalog(session: AsyncSession) -> tuple[int, int]:
    """
    Upsert the static catalog and plan grants. Returns (features, plan_features).

    Commits on success.
    """
    for feature in FEATURES:
        columns = _feature_columns(feature)
        row = await session.get(EntitlementFeature, feature.key)
        if row is None:
            session.add(EntitlementFeature(**columns))
        else:
            for name, value in columns.items():
                setattr(row, name, value)
    await session.flush()

    for grant in PLAN_FEATURES:
        columns = _plan_feature_columns(grant)
        stmt = select(PlanFeature).where(
            PlanFeature.plan_id == grant.plan_id,
            PlanFeature.feature_key == grant.feature_key,
        )
        existing = (await session.execute(stmt)).scalar_one_or_none()
        if existing is None:
            session.add(PlanFeature(**columns))
        else:
            for name, value in columns.items():
                setattr(existing, name, value)

    await session.commit()
    logger.info("catalog_seeded", features=len(FEATURES), plan_features=len(PLAN_FEATURES))
    return len(FEATURES), len(PLAN_FEATURES)
