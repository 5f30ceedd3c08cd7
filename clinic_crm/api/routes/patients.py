"""Patient endpoints: records and milestone synchronization."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from clinic_crm.api.dependencies import get_services, get_tenant_context
from clinic_crm.core.context import TenantContext
from clinic_crm.scheduling.models import (
    Appointment,
    MilestoneSyncResult,
    PatientCreate,
    PatientMilestones,
    PatientRecord,
    PatientUpdate,
    SlotSyncOutcome,
)
from clinic_crm.scheduling.service import SchedulingServices

router = APIRouter(prefix="/patients")


class MilestoneSyncResponse(BaseModel):
    patient_id: str
    generated: bool = True
    ok: bool = True
    outcomes: list[SlotSyncOutcome] = []


class PatientDeleteResponse(BaseModel):
    patient_id: str
    removed_appointments: list[str] = []


def _to_response(patient_id: str, result: Optional[MilestoneSyncResult]) -> MilestoneSyncResponse:
    if result is None:
        return MilestoneSyncResponse(patient_id=patient_id, generated=False)
    return MilestoneSyncResponse(
        patient_id=result.patient_id,
        ok=result.ok,
        outcomes=result.outcomes,
    )


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@router.post("", response_model=PatientRecord, status_code=201)
async def create_patient(
    body: PatientCreate,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    """Create a patient. Without ``primary_doctor_id`` one is assigned."""
    return await services.directory.create_patient(ctx, body)


@router.get("", response_model=list[PatientRecord])
async def list_patients(
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Matches first name, last name or email"),
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    """Newest first. Doctors only see their own patients."""
    return await services.directory.list_patients(
        ctx, status=status, search=search, offset=offset, limit=limit
    )


@router.get("/{patient_id}", response_model=PatientRecord)
async def get_patient(
    patient_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    return await services.directory.get_patient(ctx, patient_id)


@router.patch("/{patient_id}", response_model=PatientRecord)
async def update_patient(
    patient_id: str,
    body: PatientUpdate,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    return await services.directory.update_patient(ctx, patient_id, body)


@router.delete("/{patient_id}", response_model=PatientDeleteResponse)
async def delete_patient(
    patient_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    """Delete a patient and their milestone-derived appointments."""
    removed = await services.directory.delete_patient(ctx, patient_id)
    return PatientDeleteResponse(patient_id=patient_id, removed_appointments=removed)


# ---------------------------------------------------------------------------
# Milestones
# ---------------------------------------------------------------------------

@router.put("/{patient_id}/milestones", response_model=MilestoneSyncResponse)
async def update_milestones(
    patient_id: str,
    body: PatientMilestones,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    """Replace the patient's milestone dates and sync their derived appointments.

    A failed slot is reported in ``outcomes``; the rest of the sync still applies.
    """
    result = await services.milestones.update_milestones(ctx, patient_id, body)
    return _to_response(patient_id, result)


@router.post("/{patient_id}/milestones/sync", response_model=MilestoneSyncResponse)
async def resync_milestones(
    patient_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    result = await services.milestones.resync(ctx, patient_id)
    return _to_response(patient_id, result)


@router.post("/{patient_id}/milestones/placeholder", response_model=MilestoneSyncResponse)
async def fill_placeholder_milestones(
    patient_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    """Generate placeholder milestones once for a patient with none."""
    result = await services.milestones.ensure_placeholder_milestones(ctx, patient_id)
    return _to_response(patient_id, result)


@router.get("/{patient_id}/appointments", response_model=list[Appointment])
async def list_patient_appointments(
    patient_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    return await services.store.list_by_patient(ctx.tenant_id, patient_id)
