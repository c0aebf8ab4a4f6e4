"""
Tests for AccessDecisionGate - ordered checks and remediation suggestions.
"""

from collections.abc import Sequence
from decimal import Decimal

import pytest

from metering.exceptions import (
    BadRequestError,
    FeatureDisabledError,
    InvalidQuantityError,
    NoMembershipError,
    NoSubscriptionError,
)
from metering.models.api import (
    OverageMode,
    PolicyReason,
    PolicySuggestion,
    SubscriptionStatus,
)
from metering.models.domain import AccessRequest, TenantScope
from metering.observability.events import MeteringEvent
from metering.services.access import AccessDecisionGate, MembershipDirectory, require_can_perform
from metering.services.credit_ledger import CreditLedgerService


class FakePermissions:
    """PermissionChecker double that records how often it was consulted."""

    def __init__(self, member: bool = True, permissions: Sequence[str] = ()) -> None:
        self.member = member
        self.permissions = set(permissions)
        self.calls: list[str] = []

    async def is_member(self, user_id: str, scope: TenantScope) -> bool:
        self.calls.append("is_member")
        return self.member

    async def has_permissions(
        self, user_id: str, scope: TenantScope, permission_keys: Sequence[str]
    ) -> bool:
        self.calls.append("has_permissions")
        return all(key in self.permissions for key in permission_keys)


def _request(**values) -> AccessRequest:
    values.setdefault("user_id", "user-1")
    values.setdefault("agency_id", "agency-1")
    return AccessRequest(**values)


class TestCheckOrder:
    """Checks run in order and short-circuit on the first failure."""

    async def test_no_session_checked_first(self, sqlite_session, now):
        permissions = FakePermissions(member=False)
        gate = AccessDecisionGate(sqlite_session, permissions)

        decision = await gate.can_perform(_request(user_id=None, feature_key="exports"), now)

        assert decision.reason == PolicyReason.NO_SESSION
        assert permissions.calls == []

    async def test_membership_before_permissions(self, sqlite_session, now):
        permissions = FakePermissions(member=False)
        gate = AccessDecisionGate(sqlite_session, permissions)

        decision = await gate.can_perform(
            _request(required_permission_keys=("billing.view",)), now
        )

        assert decision.reason == PolicyReason.NO_MEMBERSHIP
        assert decision.suggestion == PolicySuggestion.NONE
        assert permissions.calls == ["is_member"]

    async def test_missing_permission(self, sqlite_session, now):
        gate = AccessDecisionGate(sqlite_session, FakePermissions(permissions=["a"]))

        decision = await gate.can_perform(_request(required_permission_keys=("a", "b")), now)

        assert decision.reason == PolicyReason.NO_PERMISSION
        assert decision.suggestion == PolicySuggestion.CONTACT_ADMIN
        assert decision.message

    async def test_no_subscription(self, sqlite_session, now):
        gate = AccessDecisionGate(sqlite_session, FakePermissions())

        decision = await gate.can_perform(_request(feature_key="exports"), now)

        assert decision.reason == PolicyReason.NO_SUBSCRIPTION
        assert decision.suggestion == PolicySuggestion.UPGRADE

    async def test_subscription_not_required(self, sqlite_session, now):
        gate = AccessDecisionGate(sqlite_session, FakePermissions())

        decision = await gate.can_perform(_request(require_active_subscription=False), now)

        assert decision.allowed is True

    async def test_canceled_subscription(self, seed, sqlite_session, now):
        await seed.subscription(status=SubscriptionStatus.CANCELED)
        gate = AccessDecisionGate(sqlite_session, FakePermissions())

        decision = await gate.can_perform(_request(), now)

        assert decision.reason == PolicyReason.NO_SUBSCRIPTION

    async def test_feature_disabled(self, seed, sqlite_session, now):
        await seed.metered_plan()
        await seed.feature(key="rebilling")
        await seed.plan_feature(feature_key="rebilling", is_enabled=False)
        gate = AccessDecisionGate(sqlite_session, FakePermissions())

        disabled = await gate.can_perform(_request(feature_key="rebilling"), now)
        unknown = await gate.can_perform(_request(feature_key="not.in.plan"), now)

        assert disabled.reason == PolicyReason.FEATURE_DISABLED
        assert disabled.suggestion == PolicySuggestion.UPGRADE
        assert unknown.reason == PolicyReason.FEATURE_DISABLED

    async def test_feature_enabled_without_quantity(self, seed, sqlite_session, now):
        await seed.metered_plan(included_int=0)
        gate = AccessDecisionGate(sqlite_session, FakePermissions())

        decision = await gate.can_perform(_request(feature_key="exports"), now)

        assert decision.allowed is True
        assert decision.reason is None


class TestQuantityChecks:
    """Quota and credit checks for an explicit quantity."""

    async def test_within_quota(self, seed, sqlite_session, now):
        await seed.metered_plan(included_int=10)
        gate = AccessDecisionGate(sqlite_session, FakePermissions())

        decision = await gate.can_perform(
            _request(feature_key="exports", quantity=Decimal(4)), now
        )

        assert decision.allowed is True
        assert decision.remaining_quota == Decimal(6)

    async def test_limit_exceeded_suggests_upgrade(self, seed, sqlite_session, now):
        await seed.metered_plan(included_int=10)
        gate = AccessDecisionGate(sqlite_session, FakePermissions())

        decision = await gate.can_perform(
            _request(feature_key="exports", quantity=Decimal(11)), now
        )

        assert decision.reason == PolicyReason.LIMIT_EXCEEDED
        assert decision.suggestion == PolicySuggestion.UPGRADE
        assert decision.remaining_quota == Decimal(10)

    async def test_insufficient_credits_suggests_topup(self, seed, sqlite_session, now):
        await seed.metered_plan(
            included_int=10, overage_mode=OverageMode.INTERNAL_CREDITS, top_up_enabled=True
        )
        await CreditLedgerService(sqlite_session).grant(
            seed.agency_scope, "exports", 1, "Top-up", "topup-1", now=now
        )
        gate = AccessDecisionGate(sqlite_session, FakePermissions())

        decision = await gate.can_perform(
            _request(feature_key="exports", quantity=Decimal(12)), now
        )

        assert decision.reason == PolicyReason.INSUFFICIENT_CREDITS
        assert decision.suggestion == PolicySuggestion.TOPUP
        assert decision.remaining_credit == Decimal(1)

    async def test_quantity_without_feature_is_rejected(self, sqlite_session, now):
        gate = AccessDecisionGate(sqlite_session, FakePermissions())

        with pytest.raises(BadRequestError):
            await gate.can_perform(_request(quantity=Decimal(1)), now)

    async def test_invalid_quantity_is_rejected(self, seed, sqlite_session, now):
        await seed.metered_plan()
        gate = AccessDecisionGate(sqlite_session, FakePermissions())

        with pytest.raises(InvalidQuantityError):
            await gate.can_perform(_request(feature_key="exports", quantity=Decimal(-1)), now)


class TestMembershipDirectory:
    """Membership lookups backed by the membership tables."""

    async def test_agency_member_can_act_on_sub_accounts(self, seed, sqlite_session):
        await seed.agency_member(permission_keys=["billing.view"])
        directory = MembershipDirectory(sqlite_session)

        assert await directory.is_member(seed.user_id, seed.agency_scope)
        assert await directory.is_member(seed.user_id, seed.sub_account_scope)
        assert await directory.has_permissions(
            seed.user_id, seed.sub_account_scope, ["billing.view"]
        )

    async def test_sub_account_member_is_not_agency_member(self, seed, sqlite_session):
        await seed.sub_account_member(permission_keys=["crm.edit"])
        directory = MembershipDirectory(sqlite_session)

        assert await directory.is_member(seed.user_id, seed.sub_account_scope)
        assert not await directory.is_member(seed.user_id, seed.agency_scope)

    async def test_permissions_combine_across_memberships(self, seed, sqlite_session):
        await seed.agency_member(permission_keys=["billing.view"])
        await seed.sub_account_member(permission_keys=["crm.edit"])
        directory = MembershipDirectory(sqlite_session)

        granted = await directory.granted_permissions(seed.user_id, seed.sub_account_scope)

        assert granted == {"billing.view", "crm.edit"}
        assert not await directory.has_permissions(
            seed.user_id, seed.agency_scope, ["crm.edit"]
        )

    async def test_unknown_user(self, seed, sqlite_session):
        await seed.agency_member()

        assert not await MembershipDirectory(sqlite_session).is_member(
            "someone-else", seed.agency_scope
        )


class TestRequireCanPerform:
    """Denials become typed exceptions."""

    async def test_raises_typed_error(self, sqlite_session, now):
        gate = AccessDecisionGate(sqlite_session, FakePermissions(member=False))

        with pytest.raises(NoMembershipError) as exc_info:
            await require_can_perform(gate, _request(), now)

        assert exc_info.value.reason == PolicyReason.NO_MEMBERSHIP

    async def test_subscription_error_carries_suggestion(self, sqlite_session, now):
        gate = AccessDecisionGate(sqlite_session, FakePermissions())

        with pytest.raises(NoSubscriptionError) as exc_info:
            await require_can_perform(gate, _request(), now)

        assert exc_info.value.suggestion == PolicySuggestion.UPGRADE

    async def test_feature_disabled_error(self, seed, sqlite_session, now):
        await seed.metered_plan()
        gate = AccessDecisionGate(sqlite_session, FakePermissions())

        with pytest.raises(FeatureDisabledError):
            await require_can_perform(gate, _request(feature_key="missing"), now)

    async def test_allowed_returns_decision(self, seed, sqlite_session, now, event_sink):
        await seed.metered_plan()
        gate = AccessDecisionGate(sqlite_session, FakePermissions(), events=event_sink)

        decision = await require_can_perform(gate, _request(feature_key="exports"), now)

        assert decision.allowed is True
        [fields] = event_sink.fields_of(MeteringEvent.ACCESS_DECIDED)
        assert fields["allowed"] is True
        assert fields["feature_key"] == "exports"
