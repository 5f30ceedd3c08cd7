"""Doctor profile endpoints."""

from fastapi import APIRouter, Depends, Query

from clinic_crm.api.dependencies import get_services, get_tenant_context
from clinic_crm.core.context import TenantContext
from clinic_crm.scheduling.models import DoctorCreate, DoctorRecord, DoctorUpdate
from clinic_crm.scheduling.service import SchedulingServices

router = APIRouter(prefix="/doctors")


@router.post("", response_model=DoctorRecord, status_code=201)
async def create_doctor(
    body: DoctorCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    return await services.directory.create_doctor(ctx, body)


@router.get("", response_model=list[DoctorRecord])
async def list_doctors(
    include_inactive: bool = Query(False),
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    """Bookable doctors of the tenant, by display name."""
    return await services.directory.list_doctors(ctx, include_inactive=include_inactive)


@router.patch("/{doctor_id}", response_model=DoctorRecord)
async def update_doctor(
    doctor_id: str,
    body: DoctorUpdate,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    """Edit a profile; ``{"active": false}`` stops new bookings on the doctor."""
    return await services.directory.update_doctor(ctx, doctor_id, body)
