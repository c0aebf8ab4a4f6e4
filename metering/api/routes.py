"""
API Routes - FastAPI endpoints for entitlements, usage metering and credits.

NO DICTIONARIES - All requests/responses use Pydantic models.

Policy denials raised here (PolicyDeniedError) and client errors are mapped to
HTTP responses by the exception handlers registered in metering.main.
"""

from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from metering.api.dependencies import (
    RequestContext,
    get_read_access_gate,
    get_request_context,
    tenant_scope,
)
from metering.config import settings
from metering.db.session import get_read_db, get_write_db
from metering.exceptions import NoSessionError, policy_error_for
from metering.models.api import (
    ConsumeResultResponse,
    CreditBalanceItem,
    CreditBalanceResponse,
    CurrentEntitlementsResponse,
    DecisionResponse,
    EntitlementResponse,
    LedgerEntryItem,
    LedgerResponse,
    PolicyReason,
    SubscriptionStateResponse,
    UsageCheckRequest,
    UsageConsumeRequest,
    UsageConsumeResponse,
    UsageSummaryItem,
    UsageSummaryResponse,
)
from metering.models.domain import AccessRequest, Decision
from metering.services.access import AccessDecisionGate, require_can_perform
from metering.services.credit_ledger import (
    CreditLedgerService,
    validate_idempotency_key,
    validate_quantity,
)
from metering.services.entitlements import EntitlementResolver
from metering.services.usage import UsageService

router = APIRouter(tags=["billing"])


def _decision_response(decision: Decision) -> DecisionResponse:
    return DecisionResponse.model_validate(decision, from_attributes=True)


# ============================================================================
# Entitlements
# ============================================================================


@router.get("/v1/billing/entitlements/current", response_model=CurrentEntitlementsResponse)
async def get_current_entitlements(
    agency_id: str | None = Query(None, alias="agencyId"),
    sub_account_id: str | None = Query(None, alias="subAccountId"),
    context: RequestContext = Depends(get_request_context),
    gate: AccessDecisionGate = Depends(get_read_access_gate),
) -> CurrentEntitlementsResponse:
    """
    Effective entitlements and subscription state for a scope.

    Requires membership, the entitlements view permission and an active
    subscription. Read-only - uses the read replica.
    """
    scope = tenant_scope(agency_id, sub_account_id)
    await require_can_perform(
        gate,
        AccessRequest(
            user_id=context.user_id,
            agency_id=scope.agency_id,
            sub_account_id=scope.sub_account_id,
            required_permission_keys=(settings.entitlements_view_permission,),
        ),
    )

    resolver = gate.resolver
    subscription = await resolver.get_subscription_state(scope.agency_id)
    entitlements = await resolver.resolve(scope)

    return CurrentEntitlementsResponse(
        scope=scope.kind,
        agency_id=scope.agency_id,
        sub_account_id=scope.sub_account_id,
        subscription=SubscriptionStateResponse.model_validate(subscription, from_attributes=True),
        entitlements={
            key: EntitlementResponse.model_validate(entitlement, from_attributes=True)
            for key, entitlement in sorted(entitlements.items())
        },
    )


# ============================================================================
# Usage
# ============================================================================


@router.post("/v1/billing/usage/check", response_model=DecisionResponse)
async def check_usage(
    request: UsageCheckRequest,
    context: RequestContext = Depends(get_request_context),
    gate: AccessDecisionGate = Depends(get_read_access_gate),
) -> DecisionResponse:
    """
    Decide whether an action may proceed. Never mutates.

    Denials are returned in the body with HTTP 200; only a missing session
    is an HTTP error (401).
    """
    if not context.user_id:
        raise NoSessionError()

    decision = await gate.can_perform(
        AccessRequest(
            user_id=context.user_id,
            agency_id=request.agency_id,
            sub_account_id=request.sub_account_id,
            required_permission_keys=tuple(request.required_permission_keys),
            feature_key=request.feature_key,
            quantity=(
                validate_quantity(request.quantity)
                if request.quantity is not None
                else Decimal(1)
            ),
            require_active_subscription=request.require_active_subscription,
        )
    )
    return _decision_response(decision)


@router.post("/v1/billing/usage/consume", response_model=UsageConsumeResponse)
async def consume_usage(
    request: UsageConsumeRequest,
    context: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> UsageConsumeResponse | JSONResponse:
    """
    Gate, then record metered usage.

    Write operation - requires primary database.
    Replaying the same idempotency key returns the original result.
    """
    if not context.user_id:
        raise NoSessionError()
    quantity = validate_quantity(request.quantity)
    idempotency_key = validate_idempotency_key(request.idempotency_key)
    scope = tenant_scope(request.agency_id, request.sub_account_id)

    resolver = EntitlementResolver(db)
    ledger = CreditLedgerService(db)
    usage = UsageService(db, resolver=resolver, ledger=ledger)
    gate = AccessDecisionGate(db, resolver=resolver, usage=usage)

    await require_can_perform(
        gate,
        AccessRequest(
            user_id=context.user_id,
            agency_id=scope.agency_id,
            sub_account_id=scope.sub_account_id,
            required_permission_keys=tuple(request.required_permission_keys),
            feature_key=request.feature_key,
            require_active_subscription=request.require_active_subscription,
        ),
    )
    # Quota and credits are decided under the balance lock, after the replay check
    await db.commit()

    result = await usage.consume_usage(
        scope,
        request.feature_key,
        quantity,
        idempotency_key,
        action_key=request.action_key,
    )

    result_response = ConsumeResultResponse.model_validate(result, from_attributes=True)
    if result.allowed:
        return UsageConsumeResponse(ok=True, result=result_response)

    error = policy_error_for(
        Decision(allowed=False, reason=result.reason or PolicyReason.LIMIT_EXCEEDED)
    )
    body = UsageConsumeResponse(
        ok=False,
        result=result_response,
        reason=error.reason,
        suggestion=error.suggestion,
        message=error.message,
    )
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content=body.model_dump(mode="json", by_alias=True),
    )


@router.get("/v1/billing/usage/summary", response_model=UsageSummaryResponse)
async def get_usage_summary(
    agency_id: str | None = Query(None, alias="agencyId"),
    sub_account_id: str | None = Query(None, alias="subAccountId"),
    feature_key: str | None = Query(None, alias="featureKey"),
    context: RequestContext = Depends(get_request_context),
    gate: AccessDecisionGate = Depends(get_read_access_gate),
) -> UsageSummaryResponse:
    """Current-window usage per metered feature. Membership-gated, read-only."""
    scope = tenant_scope(agency_id, sub_account_id)
    await require_can_perform(
        gate,
        AccessRequest(
            user_id=context.user_id,
            agency_id=scope.agency_id,
            sub_account_id=scope.sub_account_id,
            require_active_subscription=False,
        ),
    )

    summaries = await gate.usage.get_usage_summary(scope, feature_key)
    return UsageSummaryResponse(
        scope=scope.kind,
        agency_id=scope.agency_id,
        sub_account_id=scope.sub_account_id,
        metrics=[
            UsageSummaryItem(
                feature_key=summary.feature_key,
                period=summary.period,
                period_start=summary.window.start,
                period_end=summary.window.end,
                used=summary.used,
                limit=summary.limit,
                remaining=summary.remaining,
                is_unlimited=summary.is_unlimited,
                over_limit=summary.over_limit,
            )
            for summary in summaries
        ],
    )


# ============================================================================
# Credits
# ============================================================================


@router.get("/v1/billing/credits/balance", response_model=CreditBalanceResponse)
async def get_credit_balance(
    agency_id: str | None = Query(None, alias="agencyId"),
    sub_account_id: str | None = Query(None, alias="subAccountId"),
    feature_key: str | None = Query(None, alias="featureKey"),
    context: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_read_db),
) -> CreditBalanceResponse:
    """Non-expired credit balances for a scope. Membership-gated, read-only."""
    scope = tenant_scope(agency_id, sub_account_id)
    await require_can_perform(
        AccessDecisionGate(db),
        AccessRequest(
            user_id=context.user_id,
            agency_id=scope.agency_id,
            sub_account_id=scope.sub_account_id,
            require_active_subscription=False,
        ),
    )

    balances = await CreditLedgerService(db).get_balances(scope, feature_key)
    return CreditBalanceResponse(
        balances=[
            CreditBalanceItem.model_validate(balance, from_attributes=True)
            for balance in balances
        ]
    )


@router.get("/v1/billing/credits/ledger", response_model=LedgerResponse)
async def get_credit_ledger(
    agency_id: str | None = Query(None, alias="agencyId"),
    sub_account_id: str | None = Query(None, alias="subAccountId"),
    feature_key: str | None = Query(None, alias="featureKey"),
    limit: int = Query(50, ge=1, le=200),
    context: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_read_db),
) -> LedgerResponse:
    """Credit ledger history, newest first. Membership-gated, read-only."""
    scope = tenant_scope(agency_id, sub_account_id)
    await require_can_perform(
        AccessDecisionGate(db),
        AccessRequest(
            user_id=context.user_id,
            agency_id=scope.agency_id,
            sub_account_id=scope.sub_account_id,
            require_active_subscription=False,
        ),
    )

    entries = await CreditLedgerService(db).list_entries(scope, feature_key, limit=limit)
    return LedgerResponse(
        entries=[
            LedgerEntryItem(
                id=str(entry.entry_id),
                feature_key=entry.feature_key,
                type=entry.entry_type,
                delta=entry.delta,
                balance_after=entry.balance_after,
                reason=entry.reason,
                idempotency_key=entry.idempotency_key,
                created_at=entry.created_at,
            )
            for entry in entries
        ]
    )
