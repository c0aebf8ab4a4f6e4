"""
Job Routes - Scheduler-triggered maintenance endpoints.

Authenticated with the shared X-Job-Secret header. Both jobs are idempotent:
rerunning them within the same window changes nothing.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.api.dependencies import require_job_secret
from metering.db.session import get_write_db
from metering.models.api import GrantCreditsResponse, UsageRolloverResponse
from metering.observability import trace_operation
from metering.services.credit_grants import RecurringCreditGrantService
from metering.services.credit_ledger import CreditLedgerService

logger = get_logger(__name__)
router = APIRouter(tags=["jobs"], dependencies=[Depends(require_job_secret)])


@router.post("/v1/jobs/billing/usage-rollover", response_model=UsageRolloverResponse)
async def usage_rollover(db: AsyncSession = Depends(get_write_db)) -> UsageRolloverResponse:
    """Expire every credit balance whose expiry has passed."""
    now = datetime.now(UTC)
    with trace_operation("job_usage_rollover"):
        result = await CreditLedgerService(db).expire_stale(now)

    logger.info("job_usage_rollover_complete", expired_count=result.expired_count)
    return UsageRolloverResponse(now=now, expired_count=result.expired_count)


@router.post("/v1/jobs/billing/grant-credits", response_model=GrantCreditsResponse)
async def grant_credits(db: AsyncSession = Depends(get_write_db)) -> GrantCreditsResponse:
    """Grant recurring plan credits to every current subscription."""
    with trace_operation("job_grant_credits"):
        result = await RecurringCreditGrantService(db).grant_recurring_credits()

    logger.info(
        "job_grant_credits_complete", processed=result.processed, granted=result.granted
    )
    return GrantCreditsResponse(processed=result.processed, granted=result.granted)
