"""
Tests for the scheduler job endpoints and recurring credit grants.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from metering.models.api import SubscriptionStatus
from metering.services.credit_grants import RecurringCreditGrantService, recurring_grant_key
from metering.services.credit_ledger import CreditLedgerService

JOB_HEADERS = {"X-Job-Secret": "test-job-secret"}


@pytest.fixture
def now() -> datetime:
    return datetime.now(UTC)


class TestJobAuthentication:
    """X-Job-Secret is required on every job endpoint."""

    @pytest.mark.parametrize(
        "path", ["/v1/jobs/billing/usage-rollover", "/v1/jobs/billing/grant-credits"]
    )
    async def test_missing_secret(self, api_client, path):
        response = await api_client.post(path)

        assert response.status_code == 401
        assert response.json()["reason"] == "UNAUTHORIZED"

    async def test_wrong_secret(self, api_client):
        response = await api_client.post(
            "/v1/jobs/billing/usage-rollover", headers={"X-Job-Secret": "guess"}
        )

        assert response.status_code == 401

    async def test_unconfigured_secret_rejects_everything(self, api_client, monkeypatch):
        from metering.config import settings

        monkeypatch.setattr(settings, "jobs_secret", "")

        response = await api_client.post(
            "/v1/jobs/billing/usage-rollover", headers={"X-Job-Secret": ""}
        )

        assert response.status_code == 401


class TestUsageRolloverJob:
    """POST /v1/jobs/billing/usage-rollover"""

    async def test_expires_stale_balances(self, api_client, seed, session_factory, now):
        async with session_factory() as session:
            await CreditLedgerService(session).grant(
                seed.agency_scope,
                "exports",
                50,
                "Plan",
                "g1",
                expires_at=now - timedelta(days=1),
                now=now - timedelta(days=5),
            )

        first = await api_client.post("/v1/jobs/billing/usage-rollover", headers=JOB_HEADERS)
        second = await api_client.post("/v1/jobs/billing/usage-rollover", headers=JOB_HEADERS)

        assert first.status_code == 200
        assert first.json()["ok"] is True
        assert first.json()["expiredCount"] == 1
        assert second.json()["expiredCount"] == 0


class TestGrantCreditsJob:
    """POST /v1/jobs/billing/grant-credits"""

    async def test_grants_once_per_window(self, api_client, seed, session_factory, now):
        await seed.metered_plan(included_int=100, recurring_credit_grant_int=25)

        first = await api_client.post("/v1/jobs/billing/grant-credits", headers=JOB_HEADERS)
        second = await api_client.post("/v1/jobs/billing/grant-credits", headers=JOB_HEADERS)

        assert first.status_code == 200
        assert first.json() == {"ok": True, "processed": 1, "granted": 1}
        assert second.json() == {"ok": True, "processed": 1, "granted": 0}
        async with session_factory() as session:
            balance = await CreditLedgerService(session).get_available_balance(
                seed.agency_scope, "exports", now
            )
        assert balance == Decimal(25)


class TestRecurringCreditGrantService:
    """Recurring grants per current subscription."""

    async def test_grant_expires_at_window_end_without_rollover(self, seed, sqlite_session, now):
        await seed.metered_plan(recurring_credit_grant_int=10)

        result = await RecurringCreditGrantService(sqlite_session).grant_recurring_credits(now)

        assert result.processed == 1
        assert result.granted == 1
        [balance] = await CreditLedgerService(sqlite_session).get_balances(
            seed.agency_scope, now=now
        )
        assert balance.balance == Decimal(10)
        assert balance.expires_at == datetime(2026, 4, 1, tzinfo=UTC)
        entry = await CreditLedgerService(sqlite_session).find_entry(
            recurring_grant_key(seed.agency_id, "exports", datetime(2026, 3, 1, tzinfo=UTC))
        )
        assert entry is not None

    async def test_rollover_grant_never_expires(self, seed, sqlite_session, now):
        await seed.metered_plan(recurring_credit_grant_int=10, rollover_credits=True)

        await RecurringCreditGrantService(sqlite_session).grant_recurring_credits(now)

        [balance] = await CreditLedgerService(sqlite_session).get_balances(
            seed.agency_scope, now=now
        )
        assert balance.expires_at is None

    async def test_next_window_grants_again(self, seed, sqlite_session, now):
        await seed.metered_plan(recurring_credit_grant_int=10, rollover_credits=True)
        service = RecurringCreditGrantService(sqlite_session)

        await service.grant_recurring_credits(now)
        result = await service.grant_recurring_credits(now + timedelta(days=17))

        assert result.granted == 1
        balance = await CreditLedgerService(sqlite_session).get_available_balance(
            seed.agency_scope, "exports", now + timedelta(days=17)
        )
        assert balance == Decimal(20)

    async def test_inactive_subscriptions_skipped(self, seed, sqlite_session, now):
        await seed.feature()
        await seed.plan_feature(recurring_credit_grant_int=10)
        await seed.subscription(status=SubscriptionStatus.CANCELED)

        result = await RecurringCreditGrantService(sqlite_session).grant_recurring_credits(now)

        assert result.processed == 0
        assert result.granted == 0

    async def test_features_without_recurring_amount_skipped(self, seed, sqlite_session, now):
        await seed.metered_plan(included_int=100)

        result = await RecurringCreditGrantService(sqlite_session).grant_recurring_credits(now)

        assert result.processed == 1
        assert result.granted == 0
