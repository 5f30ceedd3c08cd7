"""FastAPI dependencies: resolved tenant context and scheduling services."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request

from clinic_crm.core.context import TenantContext, UserRole
from clinic_crm.scheduling.service import SchedulingServices


async def get_tenant_context(
    x_tenant_id: str = Header(..., description="Tenant resolved by the identity provider"),
    x_user_id: str = Header(..., description="Acting user id"),
    x_user_role: str = Header(UserRole.COORDINATOR.value),
) -> TenantContext:
    """Build the tenant context from identity headers set by the upstream gateway.

    Authentication happens before the request reaches this service; the
    headers are trusted as already verified.
    """
    if not x_tenant_id.strip() or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing tenant or user identity")
    try:
        role = UserRole(x_user_role.strip().upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role: {x_user_role}")
    return TenantContext(tenant_id=x_tenant_id.strip(), user_id=x_user_id.strip(), role=role)


def get_services(request: Request) -> SchedulingServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Scheduling services are not initialized")
    return services
