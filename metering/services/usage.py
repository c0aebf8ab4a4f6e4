"""
Usage Consumption Engine - The metered write path.

NO DICTIONARIES - All operations use strongly typed domain models.

consume_usage runs its read-check-write as one transaction serialized on the
(scope, feature) balance row. Expected denials are results, not exceptions.
"""

import time
from datetime import UTC, datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from metering.db.models import UsageEvent
from metering.db.retry import with_store_retry
from metering.exceptions import ConcurrencyError, IdempotencyConflictError
from metering.models.api import LedgerEntryType, LimitEnforcement, MeteringType, PolicyReason
from metering.models.domain import (
    ZERO,
    ConsumeResult,
    ConsumptionPlan,
    EffectiveEntitlement,
    TenantScope,
    UsageSummary,
    UsageWindow,
)
from metering.observability.events import MeteringEvent, MeteringEventSink, default_event_sink
from metering.observability.metrics import metrics
from metering.observability.tracing import trace_operation
from metering.services.credit_ledger import (
    CreditLedgerService,
    readable_balance,
    validate_idempotency_key,
    validate_quantity,
)
from metering.services.entitlements import EntitlementResolver
from metering.services.period import compute_window

logger = structlog.get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def plan_consumption(
    entitlement: EffectiveEntitlement,
    prior_usage: Decimal,
    quantity: Decimal,
    available_credit: Decimal,
) -> ConsumptionPlan:
    """
    Decide a consumption without touching the store.

    HARD limits draw only the shortfall from credits, and only when the credits
    cover all of it. SOFT limits always allow and flag over_limit.
    """
    if entitlement.is_unlimited:
        return ConsumptionPlan(
            allowed=True,
            consumed_from_quota=quantity,
            consumed_from_credit=ZERO,
            over_limit=False,
        )

    limit = entitlement.effective_limit
    if limit is None:
        return ConsumptionPlan(
            allowed=True,
            consumed_from_quota=quantity,
            consumed_from_credit=ZERO,
            over_limit=False,
        )

    remaining_quota = max(limit - prior_usage, ZERO)
    if prior_usage + quantity <= limit:
        return ConsumptionPlan(
            allowed=True,
            consumed_from_quota=quantity,
            consumed_from_credit=ZERO,
            over_limit=False,
            remaining_quota=remaining_quota - quantity,
        )

    shortfall = min(prior_usage + quantity - limit, quantity)

    if entitlement.enforcement == LimitEnforcement.SOFT:
        return ConsumptionPlan(
            allowed=True,
            consumed_from_quota=quantity,
            consumed_from_credit=ZERO,
            over_limit=True,
            remaining_quota=ZERO,
        )

    if entitlement.allows_credit_overage:
        if available_credit >= shortfall:
            return ConsumptionPlan(
                allowed=True,
                consumed_from_quota=quantity - shortfall,
                consumed_from_credit=shortfall,
                over_limit=False,
                remaining_quota=ZERO,
                remaining_credit=available_credit - shortfall,
            )
        return ConsumptionPlan(
            allowed=False,
            consumed_from_quota=ZERO,
            consumed_from_credit=ZERO,
            over_limit=True,
            reason=PolicyReason.INSUFFICIENT_CREDITS,
            remaining_quota=remaining_quota,
            remaining_credit=available_credit,
        )

    return ConsumptionPlan(
        allowed=False,
        consumed_from_quota=ZERO,
        consumed_from_credit=ZERO,
        over_limit=True,
        reason=PolicyReason.LIMIT_EXCEEDED,
        remaining_quota=remaining_quota,
    )


def _usage_scope_filter(scope: TenantScope, feature_key: str) -> list:
    return [
        UsageEvent.scope == scope.kind.value,
        UsageEvent.agency_id == scope.agency_id,
        UsageEvent.sub_account_id == scope.sub_account_key,
        UsageEvent.feature_key == feature_key,
    ]


class UsageService:
    """
    Records metered usage against effective entitlements and credit balances.

    Replaying an idempotency key returns the stored original result: no double
    counting of usage and no double debit of credit.
    """

    def __init__(
        self,
        session: AsyncSession,
        events: MeteringEventSink = default_event_sink,
        resolver: EntitlementResolver | None = None,
        ledger: CreditLedgerService | None = None,
    ) -> None:
        self.session = session
        self.events = events
        self.resolver = resolver or EntitlementResolver(session, events)
        self.ledger = ledger or CreditLedgerService(session, events)

    async def consume_usage(
        self,
        scope: TenantScope,
        feature_key: str,
        quantity: object,
        idempotency_key: str | None,
        action_key: str | None = None,
        now: datetime | None = None,
    ) -> ConsumeResult:
        """
        Consume metered usage.

        Validation runs before any store access.

        Raises:
            InvalidQuantityError: Quantity not finite and positive
            MissingIdempotencyKeyError: Blank key
            IdempotencyConflictError: Key already used with different inputs
            DatabaseError: Store unavailable after bounded retries
        """
        amount = validate_quantity(quantity)
        key = validate_idempotency_key(idempotency_key)
        started = time.perf_counter()

        async def attempt() -> ConsumeResult:
            return await self._consume_once(
                scope, feature_key, amount, key, action_key, now or _utc_now()
            )

        result = await with_store_retry(self.session, "consume_usage", attempt)

        if result.replayed:
            outcome = "replayed"
        elif result.allowed:
            outcome = "allowed"
        else:
            outcome = "denied"
        metrics.record_usage(
            outcome,
            result.reason.value if result.reason else None,
            time.perf_counter() - started,
        )
        return result

    async def evaluate(
        self,
        scope: TenantScope,
        feature_key: str,
        quantity: object,
        now: datetime | None = None,
        entitlement: EffectiveEntitlement | None = None,
    ) -> ConsumptionPlan:
        """Dry run of consume_usage: same decision, no lock and no mutation."""
        amount = validate_quantity(quantity)
        now = now or _utc_now()
        if entitlement is None:
            entitlement = await self.resolver.resolve_feature(scope, feature_key, now)
        if entitlement is None or not entitlement.is_enabled:
            return _feature_disabled_plan()

        window = compute_window(entitlement.period, now)
        prior = (
            ZERO
            if entitlement.is_unlimited
            else await self._sum_usage(scope, feature_key, window)
        )
        available = await self.ledger.get_available_balance(scope, feature_key, now)
        return plan_consumption(entitlement, prior, amount, available)

    async def get_usage_summary(
        self,
        scope: TenantScope,
        feature_key: str | None = None,
        now: datetime | None = None,
    ) -> list[UsageSummary]:
        """Current-window usage of every metered feature (or one) for a scope."""
        now = now or _utc_now()
        entitlements = await self.resolver.resolve(scope, now)

        summaries: list[UsageSummary] = []
        for key, entitlement in sorted(entitlements.items()):
            if feature_key is not None and key != feature_key:
                continue
            if entitlement.metering == MeteringType.NONE:
                continue
            window = compute_window(entitlement.period, now)
            summaries.append(
                UsageSummary(
                    feature_key=key,
                    period=entitlement.period,
                    window=window,
                    used=await self._sum_usage(scope, key, window),
                    limit=entitlement.effective_limit,
                    is_unlimited=entitlement.is_unlimited,
                )
            )
        return summaries

    # ========================================================================
    # Single attempt
    # ========================================================================

    async def _consume_once(
        self,
        scope: TenantScope,
        feature_key: str,
        quantity: Decimal,
        key: str,
        action_key: str | None,
        now: datetime,
    ) -> ConsumeResult:
        with trace_operation(
            "consume_usage",
            agency_id=scope.agency_id,
            sub_account_id=scope.sub_account_id,
            feature_key=feature_key,
            quantity=str(quantity),
        ) as span:
            existing = await self._find_event(key)
            if existing is not None:
                return self._replay(existing, scope, feature_key, quantity)

            entitlement = await self.resolver.resolve_feature(scope, feature_key, now)
            if entitlement is None or not entitlement.is_enabled:
                await self.session.rollback()
                return self._denied(scope, feature_key, quantity, _feature_disabled_plan(), None)

            window = compute_window(entitlement.period, now)
            row = await self.ledger.lock_balance(scope, feature_key)

            existing = await self._find_event(key)
            if existing is not None:
                try:
                    return self._replay(existing, scope, feature_key, quantity)
                finally:
                    await self.session.rollback()

            if entitlement.is_unlimited:
                plan = plan_consumption(entitlement, ZERO, quantity, ZERO)
                return await self._record(
                    scope, feature_key, quantity, key, action_key, now, window, plan, None
                )

            prior = await self._sum_usage(scope, feature_key, window)
            available = readable_balance(row, now)
            plan = plan_consumption(entitlement, prior, quantity, available)
            span.set_attribute("allowed", plan.allowed)

            if not plan.allowed:
                await self.session.rollback()
                return self._denied(scope, feature_key, quantity, plan, window, available)

            if plan.consumed_from_credit > 0:
                self.ledger.append_entry(
                    row,
                    LedgerEntryType.CONSUME,
                    -plan.consumed_from_credit,
                    reason=f"Usage overage: {feature_key}",
                    idempotency_key=f"usage:{key}",
                    now=now,
                )
                try:
                    await self.ledger.verify_balance(row, row.balance)
                except IntegrityError:
                    return await self._replay_winner(key, scope, feature_key, quantity)

            return await self._record(
                scope, feature_key, quantity, key, action_key, now, window, plan, row.balance
            )

    async def _record(
        self,
        scope: TenantScope,
        feature_key: str,
        quantity: Decimal,
        key: str,
        action_key: str | None,
        now: datetime,
        window: UsageWindow,
        plan: ConsumptionPlan,
        balance_after: Decimal | None,
    ) -> ConsumeResult:
        event = UsageEvent(
            scope=scope.kind.value,
            agency_id=scope.agency_id,
            sub_account_id=scope.sub_account_key,
            feature_key=feature_key,
            quantity=quantity,
            occurred_at=now,
            period_start=window.start,
            period_end=window.end,
            action_key=action_key,
            idempotency_key=key,
            consumed_from_quota=plan.consumed_from_quota,
            consumed_from_credit=plan.consumed_from_credit,
            over_limit=plan.over_limit,
            balance_after=balance_after,
            created_at=now,
        )
        self.session.add(event)
        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError:
            return await self._replay_winner(key, scope, feature_key, quantity)

        self.events.emit(
            MeteringEvent.USAGE_CONSUMED,
            agency_id=scope.agency_id,
            sub_account_id=scope.sub_account_id,
            feature_key=feature_key,
            quantity=quantity,
            consumed_from_quota=plan.consumed_from_quota,
            consumed_from_credit=plan.consumed_from_credit,
            over_limit=plan.over_limit,
            idempotency_key=key,
            action_key=action_key,
        )
        if plan.consumed_from_credit > 0:
            self.events.emit(
                MeteringEvent.CREDITS_CONSUMED,
                agency_id=scope.agency_id,
                sub_account_id=scope.sub_account_id,
                feature_key=feature_key,
                amount=plan.consumed_from_credit,
                balance_after=balance_after,
                idempotency_key=f"usage:{key}",
            )

        return ConsumeResult(
            allowed=True,
            consumed_from_quota=plan.consumed_from_quota,
            consumed_from_credit=plan.consumed_from_credit,
            over_limit=plan.over_limit,
            balance_after=balance_after,
            remaining_quota=plan.remaining_quota,
            remaining_credit=plan.remaining_credit,
            period_start=window.start,
            period_end=window.end,
        )

    def _denied(
        self,
        scope: TenantScope,
        feature_key: str,
        quantity: Decimal,
        plan: ConsumptionPlan,
        window: UsageWindow | None,
        available: Decimal | None = None,
    ) -> ConsumeResult:
        self.events.emit(
            MeteringEvent.USAGE_DENIED,
            agency_id=scope.agency_id,
            sub_account_id=scope.sub_account_id,
            feature_key=feature_key,
            quantity=quantity,
            reason=plan.reason,
        )
        return ConsumeResult(
            allowed=False,
            consumed_from_quota=ZERO,
            consumed_from_credit=ZERO,
            over_limit=plan.over_limit,
            balance_after=available,
            reason=plan.reason,
            remaining_quota=plan.remaining_quota,
            remaining_credit=plan.remaining_credit,
            period_start=window.start if window else None,
            period_end=window.end if window else None,
        )

    async def _replay_winner(
        self, key: str, scope: TenantScope, feature_key: str, quantity: Decimal
    ) -> ConsumeResult:
        """
        A concurrent request with the same key committed first: replay its result.

        Raises:
            IdempotencyConflictError: The key was taken by a different operation
            ConcurrencyError: The violation was not on this key; the attempt is retried
        """
        await self.session.rollback()
        winner = await self._find_event(key)
        if winner is not None:
            return self._replay(winner, scope, feature_key, quantity)
        entry = await self.ledger.find_entry(f"usage:{key}")
        if entry is not None:
            raise IdempotencyConflictError(entry.idempotency_key, entry.id)
        raise ConcurrencyError(f"usage_event:{key}")

    def _replay(
        self, event: UsageEvent, scope: TenantScope, feature_key: str, quantity: Decimal
    ) -> ConsumeResult:
        same = (
            event.scope == scope.kind.value
            and event.agency_id == scope.agency_id
            and event.sub_account_id == scope.sub_account_key
            and event.feature_key == feature_key
            and event.quantity == quantity
        )
        if not same:
            raise IdempotencyConflictError(event.idempotency_key, event.id)

        self.events.emit(
            MeteringEvent.USAGE_REPLAYED,
            agency_id=scope.agency_id,
            feature_key=feature_key,
            idempotency_key=event.idempotency_key,
        )
        return ConsumeResult(
            allowed=True,
            consumed_from_quota=event.consumed_from_quota,
            consumed_from_credit=event.consumed_from_credit,
            over_limit=event.over_limit,
            balance_after=event.balance_after,
            period_start=event.period_start,
            period_end=event.period_end,
            replayed=True,
        )

    # ========================================================================
    # Queries
    # ========================================================================

    async def _find_event(self, idempotency_key: str) -> UsageEvent | None:
        """Find usage event by idempotency key."""
        stmt = select(UsageEvent).where(UsageEvent.idempotency_key == idempotency_key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _sum_usage(
        self, scope: TenantScope, feature_key: str, window: UsageWindow
    ) -> Decimal:
        """Sum of quantities recorded in [window.start, window.end)."""
        stmt = select(func.coalesce(func.sum(UsageEvent.quantity), 0)).where(
            *_usage_scope_filter(scope, feature_key),
            UsageEvent.occurred_at >= window.start,
            UsageEvent.occurred_at < window.end,
        )
        return Decimal((await self.session.execute(stmt)).scalar_one())


def _feature_disabled_plan() -> ConsumptionPlan:
    return ConsumptionPlan(
        allowed=False,
        consumed_from_quota=ZERO,
        consumed_from_credit=ZERO,
        over_limit=False,
        reason=PolicyReason.FEATURE_DISABLED,
    )
