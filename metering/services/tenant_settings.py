"""
Tenant Settings Service - Typed namespaces over a per-tenant JSON document.

Each namespace is registered with a pydantic model and validated on read and on
write; unregistered namespaces are rejected.
"""

from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from metering.db.models import TenantSettings
from metering.exceptions import (
    ConcurrencyError,
    SettingsValidationError,
    UnknownSettingsNamespaceError,
)
from metering.models.api import CamelModel
from metering.models.domain import TenantScope

logger = structlog.get_logger(__name__)


# ============================================================================
# Namespace Schemas
# ============================================================================


class NumberRangeSettings(CamelModel):
    """fi.number_ranges - last issued sequence per '{rangeKey}:{periodKey}'."""

    sequences: dict[str, int] = Field(default_factory=dict)


class BankMatchingCriteria(CamelModel):
    currency: str | None = Field(None, min_length=3, max_length=3)
    amount_tolerance: float = Field(0, ge=0)
    date_window_days: int = Field(3, ge=0, le=365)
    description_contains_any: list[str] = Field(default_factory=list)
    counterparty_contains_any: list[str] = Field(default_factory=list)


class BankMatchingAction(CamelModel):
    suggested_gl_account_id: str | None = None
    posting_rule_template_id: str | None = None
    label: str | None = Field(None, max_length=64)


class BankMatchingRule(CamelModel):
    id: str = Field(..., min_length=6)
    name: str = Field(..., min_length=2, max_length=80)
    enabled: bool = True
    # Lower number = higher priority
    priority: int = Field(100, ge=0)
    criteria: BankMatchingCriteria
    action: BankMatchingAction


class BankMatchingRuleSettings(CamelModel):
    """fi.bank_ledger.matching_rules"""

    rules: list[BankMatchingRule] = Field(default_factory=list)


SETTINGS_NAMESPACES: dict[str, type[BaseModel]] = {
    "fi.number_ranges": NumberRangeSettings,
    "fi.bank_ledger.matching_rules": BankMatchingRuleSettings,
}


def namespace_model(namespace: str) -> type[BaseModel]:
    """
    Raises:
        UnknownSettingsNamespaceError: If the namespace is not registered
    """
    try:
        return SETTINGS_NAMESPACES[namespace]
    except KeyError:
        raise UnknownSettingsNamespaceError(namespace) from None


def _validate(namespace: str, value: Any) -> BaseModel:
    model = namespace_model(namespace)
    try:
        return model.model_validate(value or {})
    except ValidationError as e:
        raise SettingsValidationError(namespace, str(e)) from e


class TenantSettingsService:
    """Reads and writes typed settings namespaces for a tenant scope."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_namespace(self, scope: TenantScope, namespace: str) -> BaseModel:
        """Validated namespace value (model defaults when never written)."""
        namespace_model(namespace)
        row = await self._find(scope)
        document = row.settings_json if row else {}
        return _validate(namespace, document.get(namespace))

    async def set_namespace(self, scope: TenantScope, namespace: str, value: Any) -> BaseModel:
        """
        Validate and store one namespace, leaving the others untouched.

        Raises:
            UnknownSettingsNamespaceError: Unregistered namespace
            SettingsValidationError: Value does not match the namespace schema
        """
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json", by_alias=True)
        validated = _validate(namespace, value)

        row = await self._lock_or_create(scope)
        document = dict(row.settings_json or {})
        document[namespace] = validated.model_dump(mode="json", by_alias=True)
        row.settings_json = document
        await self.session.commit()

        logger.info(
            "tenant_settings_updated",
            agency_id=scope.agency_id,
            sub_account_id=scope.sub_account_id,
            namespace=namespace,
        )
        return validated

    async def _find(self, scope: TenantScope) -> TenantSettings | None:
        stmt = select(TenantSettings).where(
            TenantSettings.scope == scope.kind.value,
            TenantSettings.agency_id == scope.agency_id,
            TenantSettings.sub_account_id == scope.sub_account_key,
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _lock_or_create(self, scope: TenantScope) -> TenantSettings:
        stmt = (
            select(TenantSettings)
            .where(
                TenantSettings.scope == scope.kind.value,
                TenantSettings.agency_id == scope.agency_id,
                TenantSettings.sub_account_id == scope.sub_account_key,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        if row is not None:
            return row

        try:
            async with self.session.begin_nested():
                self.session.add(
                    TenantSettings(
                        scope=scope.kind.value,
                        agency_id=scope.agency_id,
                        sub_account_id=scope.sub_account_key,
                        settings_json={},
                    )
                )
        except IntegrityError:
            logger.debug("tenant_settings_created_concurrently", agency_id=scope.agency_id)

        row = (await self.session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise ConcurrencyError(f"tenant_settings:{scope.agency_id}")
        return row
