"""
Access Decision Gate - One allow/deny decision from membership, permissions,
subscription and entitlement checks.

Read-only: the gate never mutates state. Policy denials are returned as a
Decision; only store failures and programmer errors raise.
"""

from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from metering.db.models import AgencyMembership, SubAccountMembership
from metering.exceptions import POLICY_MESSAGES, BadRequestError, policy_error_for
from metering.models.api import PolicyReason, PolicySuggestion
from metering.models.domain import AccessRequest, Decision, TenantScope
from metering.observability.events import MeteringEvent, MeteringEventSink, default_event_sink
from metering.services.entitlements import EntitlementResolver
from metering.services.usage import UsageService

logger = structlog.get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class PermissionChecker(Protocol):
    """Membership and permission collaborator consulted by the gate."""

    async def is_member(self, user_id: str, scope: TenantScope) -> bool: ...

    async def has_permissions(
        self, user_id: str, scope: TenantScope, permission_keys: Sequence[str]
    ) -> bool: ...


class MembershipDirectory:
    """
    PermissionChecker backed by the membership tables.

    Active agency members may act on every sub-account of the agency; their
    permission keys combine with any sub-account membership's keys.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def is_member(self, user_id: str, scope: TenantScope) -> bool:
        agency_membership, sub_account_membership = await self._memberships(user_id, scope)
        return agency_membership is not None or sub_account_membership is not None

    async def has_permissions(
        self, user_id: str, scope: TenantScope, permission_keys: Sequence[str]
    ) -> bool:
        if not permission_keys:
            return True
        granted = await self.granted_permissions(user_id, scope)
        return all(key in granted for key in permission_keys)

    async def granted_permissions(self, user_id: str, scope: TenantScope) -> set[str]:
        granted: set[str] = set()
        for membership in await self._memberships(user_id, scope):
            if membership is not None:
                granted.update(membership.permission_keys or [])
        return granted

    async def _memberships(
        self, user_id: str, scope: TenantScope
    ) -> tuple[AgencyMembership | None, SubAccountMembership | None]:
        agency_stmt = select(AgencyMembership).where(
            AgencyMembership.agency_id == scope.agency_id,
            AgencyMembership.user_id == user_id,
            AgencyMembership.is_active.is_(True),
        )
        agency_membership = (await self.session.execute(agency_stmt)).scalar_one_or_none()

        sub_account_membership = None
        if scope.sub_account_id:
            sub_stmt = select(SubAccountMembership).where(
                SubAccountMembership.agency_id == scope.agency_id,
                SubAccountMembership.sub_account_id == scope.sub_account_id,
                SubAccountMembership.user_id == user_id,
                SubAccountMembership.is_active.is_(True),
            )
            sub_account_membership = (await self.session.execute(sub_stmt)).scalar_one_or_none()

        return agency_membership, sub_account_membership


def _deny(
    reason: PolicyReason,
    suggestion: PolicySuggestion = PolicySuggestion.NONE,
    remaining_quota=None,
    remaining_credit=None,
) -> Decision:
    return Decision(
        allowed=False,
        reason=reason,
        suggestion=suggestion,
        message=POLICY_MESSAGES[reason],
        remaining_quota=remaining_quota,
        remaining_credit=remaining_credit,
    )


class AccessDecisionGate:
    """Ordered, short-circuiting access checks."""

    def __init__(
        self,
        session: AsyncSession,
        permissions: PermissionChecker | None = None,
        events: MeteringEventSink = default_event_sink,
        resolver: EntitlementResolver | None = None,
        usage: UsageService | None = None,
    ) -> None:
        self.session = session
        self.permissions = permissions or MembershipDirectory(session)
        self.events = events
        self.resolver = resolver or EntitlementResolver(session, events)
        self.usage = usage or UsageService(session, events, resolver=self.resolver)

    async def can_perform(self, request: AccessRequest, now: datetime | None = None) -> Decision:
        """
        Decide whether the request may proceed.

        Checks, in order: session, membership, permissions, subscription,
        feature enabled, quota/credit for the given quantity.

        Raises:
            BadRequestError: quantity given without a feature key
            InvalidQuantityError: quantity not finite and positive
        """
        decision = await self._decide(request, now or _utc_now())
        self.events.emit(
            MeteringEvent.ACCESS_DECIDED,
            user_id=request.user_id,
            agency_id=request.agency_id,
            sub_account_id=request.sub_account_id,
            feature_key=request.feature_key,
            allowed=decision.allowed,
            reason=decision.reason,
        )
        return decision

    async def _decide(self, request: AccessRequest, now: datetime) -> Decision:
        if request.quantity is not None and not request.feature_key:
            raise BadRequestError("quantity requires a feature key")

        if not request.user_id:
            return _deny(PolicyReason.NO_SESSION)

        scope = request.scope

        if not await self.permissions.is_member(request.user_id, scope):
            return _deny(PolicyReason.NO_MEMBERSHIP)

        if request.required_permission_keys and not await self.permissions.has_permissions(
            request.user_id, scope, request.required_permission_keys
        ):
            return _deny(PolicyReason.NO_PERMISSION, PolicySuggestion.CONTACT_ADMIN)

        if request.require_active_subscription:
            state = await self.resolver.get_subscription_state(scope.agency_id, now)
            if not state.is_active:
                return _deny(PolicyReason.NO_SUBSCRIPTION, PolicySuggestion.UPGRADE)

        if not request.feature_key:
            return Decision.allow()

        entitlement = await self.resolver.resolve_feature(scope, request.feature_key, now)
        if entitlement is None or not entitlement.is_enabled:
            return _deny(PolicyReason.FEATURE_DISABLED, PolicySuggestion.UPGRADE)

        if request.quantity is None:
            return Decision.allow()

        plan = await self.usage.evaluate(
            scope, request.feature_key, request.quantity, now, entitlement=entitlement
        )
        if plan.allowed:
            return Decision.allow(plan.remaining_quota, plan.remaining_credit)

        suggestion = (
            PolicySuggestion.TOPUP if entitlement.top_up_enabled else PolicySuggestion.UPGRADE
        )
        return _deny(
            plan.reason or PolicyReason.LIMIT_EXCEEDED,
            suggestion,
            remaining_quota=plan.remaining_quota,
            remaining_credit=plan.remaining_credit,
        )


async def require_can_perform(
    gate: AccessDecisionGate, request: AccessRequest, now: datetime | None = None
) -> Decision:
    """
    Run the gate and raise the typed policy error on denial.

    Raises:
        PolicyDeniedError: subclass matching the denial reason
    """
    decision = await gate.can_perform(request, now)
    if not decision.allowed:
        raise policy_error_for(decision)
    return decision
