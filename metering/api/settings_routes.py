"""
Tenant Settings Routes - Typed settings namespaces per agency / sub-account.

Reads require membership; writes also require the settings manage permission.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, Query

from metering.api.dependencies import (
    RequestContext,
    get_access_gate,
    get_read_access_gate,
    get_request_context,
    tenant_scope,
)
from metering.config import settings
from metering.models.api import SettingsNamespaceResponse
from metering.models.domain import AccessRequest
from metering.services.access import AccessDecisionGate, require_can_perform
from metering.services.tenant_settings import TenantSettingsService, namespace_model

router = APIRouter(tags=["tenant-settings"])


@router.get("/v1/tenants/settings/{namespace}", response_model=SettingsNamespaceResponse)
async def get_settings_namespace(
    namespace: str,
    agency_id: str | None = Query(None, alias="agencyId"),
    sub_account_id: str | None = Query(None, alias="subAccountId"),
    context: RequestContext = Depends(get_request_context),
    gate: AccessDecisionGate = Depends(get_read_access_gate),
) -> SettingsNamespaceResponse:
    namespace_model(namespace)
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

    value = await TenantSettingsService(gate.session).get_namespace(scope, namespace)
    return SettingsNamespaceResponse(
        namespace=namespace, value=value.model_dump(mode="json", by_alias=True)
    )


@router.put("/v1/tenants/settings/{namespace}", response_model=SettingsNamespaceResponse)
async def put_settings_namespace(
    namespace: str,
    value: dict[str, Any] = Body(...),
    agency_id: str | None = Query(None, alias="agencyId"),
    sub_account_id: str | None = Query(None, alias="subAccountId"),
    context: RequestContext = Depends(get_request_context),
    gate: AccessDecisionGate = Depends(get_access_gate),
) -> SettingsNamespaceResponse:
    """
    Replace one namespace after validating it against its schema.

    Other namespaces of the tenant document are left untouched.
    """
    namespace_model(namespace)
    scope = tenant_scope(agency_id, sub_account_id)
    await require_can_perform(
        gate,
        AccessRequest(
            user_id=context.user_id,
            agency_id=scope.agency_id,
            sub_account_id=scope.sub_account_id,
            required_permission_keys=(settings.settings_manage_permission,),
            require_active_subscription=False,
        ),
    )

    stored = await TenantSettingsService(gate.session).set_namespace(scope, namespace, value)
    return SettingsNamespaceResponse(
        namespace=namespace, value=stored.model_dump(mode="json", by_alias=True)
    )
