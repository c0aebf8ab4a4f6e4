"""
FastAPI Dependencies - Request context, access gate and job authentication.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets
from dataclasses import dataclass

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from metering.config import settings
from metering.db.session import get_read_db, get_write_db
from metering.exceptions import BadRequestError, JobAuthenticationError
from metering.models.domain import TenantScope
from metering.services.access import AccessDecisionGate

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """
    Caller identity for one request.

    The user id is forwarded by the upstream session layer in X-User-Id; a
    missing header means there is no session.
    """

    user_id: str | None
    request_id: str | None = None


async def get_request_context(
    x_user_id: str | None = Header(None, alias="X-User-Id"),
    x_request_id: str | None = Header(None, alias="X-Request-ID"),
) -> RequestContext:
    return RequestContext(user_id=(x_user_id or "").strip() or None, request_id=x_request_id)


def tenant_scope(agency_id: str | None, sub_account_id: str | None) -> TenantScope:
    """
    Build the scope from request identifiers.

    Raises:
        BadRequestError: agency id missing
    """
    if not agency_id:
        raise BadRequestError("agencyId is required")
    return TenantScope.infer(agency_id, sub_account_id or None)


async def get_access_gate(db: AsyncSession = Depends(get_write_db)) -> AccessDecisionGate:
    """Gate over the primary database (decisions that precede writes)."""
    return AccessDecisionGate(db)


async def get_read_access_gate(db: AsyncSession = Depends(get_read_db)) -> AccessDecisionGate:
    """Gate over the read replica for read-only endpoints."""
    return AccessDecisionGate(db)


async def require_job_secret(
    x_job_secret: str | None = Header(None, alias="X-Job-Secret"),
) -> None:
    """
    Authenticate scheduler calls to /v1/jobs/*.

    Raises:
        JobAuthenticationError: secret not configured, missing or wrong
    """
    expected = settings.jobs_secret
    if not expected or not x_job_secret:
        logger.warning("job_auth_failed", reason="missing_secret")
        raise JobAuthenticationError()

    # SECURITY: constant-time comparison
    if not secrets.compare_digest(x_job_secret.encode(), expected.encode()):
        logger.warning("job_auth_failed", reason="invalid_secret")
        raise JobAuthenticationError()
