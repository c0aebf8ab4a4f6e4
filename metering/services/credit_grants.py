"""
Recurring Credit Grants - Periodic plan credit grants for current subscriptions.

Grants land at AGENCY scope with key recurring:{agencyId}:{featureKey}:{windowStart},
so a rerun within the same window is a no-op. Without rollover the grant expires
at the end of its window.
"""

from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from metering.db.models import Subscription
from metering.models.api import CURRENT_SUBSCRIPTION_STATUSES
from metering.models.domain import GrantRunResult, TenantScope
from metering.observability.events import MeteringEventSink, default_event_sink
from metering.services.credit_ledger import CreditLedgerService
from metering.services.entitlements import EntitlementResolver
from metering.services.period import compute_window

logger = structlog.get_logger(__name__)


def recurring_grant_key(agency_id: str, feature_key: str, window_start: datetime) -> str:
    return f"recurring:{agency_id}:{feature_key}:{window_start.astimezone(UTC).isoformat()}"


class RecurringCreditGrantService:
    """Grants each current subscription's recurring plan credits once per window."""

    def __init__(
        self,
        session: AsyncSession,
        events: MeteringEventSink = default_event_sink,
        resolver: EntitlementResolver | None = None,
        ledger: CreditLedgerService | None = None,
    ) -> None:
        self.session = session
        self.resolver = resolver or EntitlementResolver(session, events)
        self.ledger = ledger or CreditLedgerService(session, events)

    async def grant_recurring_credits(self, now: datetime | None = None) -> GrantRunResult:
        now = now or datetime.now(UTC)
        stmt = (
            select(Subscription.agency_id, Subscription.plan_id)
            .where(
                Subscription.status.in_([status.value for status in CURRENT_SUBSCRIPTION_STATUSES]),
                Subscription.current_period_end > now,
            )
            .order_by(Subscription.agency_id)
        )
        subscriptions = [(row.agency_id, row.plan_id) for row in (await self.session.execute(stmt))]

        granted = 0
        for agency_id, plan_id in subscriptions:
            scope = TenantScope.agency(agency_id)
            entitlements = await self.resolver.resolve(scope, now, plan_id=plan_id)
            for feature_key, entitlement in sorted(entitlements.items()):
                amount = entitlement.recurring_credit_grant
                if not entitlement.is_enabled or amount <= 0:
                    continue

                window = compute_window(entitlement.period, now)
                result = await self.ledger.grant(
                    scope,
                    feature_key,
                    amount,
                    reason=f"Recurring plan credits ({plan_id})",
                    idempotency_key=recurring_grant_key(agency_id, feature_key, window.start),
                    expires_at=None if entitlement.rollover_credits else window.end,
                    now=now,
                )
                if not result.replayed:
                    granted += 1

        logger.info(
            "recurring_credit_grants_complete", processed=len(subscriptions), granted=granted
        )
        return GrantRunResult(processed=len(subscriptions), granted=granted)
