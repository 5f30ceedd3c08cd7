"""Scheduling API endpoints: bookings, hold lifecycle and calendar views."""

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel

from clinic_crm.api.dependencies import get_services, get_tenant_context
from clinic_crm.core.context import TenantContext
from clinic_crm.scheduling.errors import NotFoundError, ValidationError
from clinic_crm.scheduling.models import (
    Appointment,
    AppointmentUpdate,
    AuditEntry,
    BookingRequest,
    CalendarMode,
    CalendarView,
    StatusChange,
)
from clinic_crm.scheduling.service import SchedulingServices

router = APIRouter(prefix="/scheduling")


class ReleaseResponse(BaseModel):
    released: list[str] = []
    count: int = 0


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

@router.post("/appointments", response_model=Appointment, status_code=201)
async def book_appointment(
    body: BookingRequest,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    """Book an appointment. Overlapping bookings for the doctor return 409."""
    return await services.coordinator.book_with_retry(ctx, body)


@router.get("/appointments", response_model=list[Appointment])
async def list_appointments(
    patient_id: Optional[str] = Query(None),
    doctor_id: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    """List a patient's appointments, or those overlapping ``[start, end)``."""
    if patient_id:
        return await services.store.list_by_patient(ctx.tenant_id, patient_id)
    if start is None or end is None:
        raise HTTPException(status_code=400, detail="Provide patient_id, or both start and end")
    if end <= start:
        raise ValidationError("end must be after start")
    return await services.store.list_in_range(ctx.tenant_id, start, end, doctor_id=doctor_id)


@router.get("/appointments/{appointment_id}", response_model=Appointment)
async def get_appointment(
    appointment_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    appointment = await services.store.get(ctx.tenant_id, appointment_id)
    if appointment is None:
        raise NotFoundError(f"Appointment not found: {appointment_id}")
    return appointment


@router.get("/appointments/{appointment_id}/history", response_model=list[AuditEntry])
async def appointment_history(
    appointment_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    """Audit trail of an appointment, newest first."""
    return await services.store.audit_history(ctx.tenant_id, appointment_id)


@router.patch("/appointments/{appointment_id}", response_model=Appointment)
async def update_appointment(
    appointment_id: str,
    body: AppointmentUpdate,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    return await services.coordinator.update(ctx, appointment_id, body)


@router.delete("/appointments/{appointment_id}", status_code=204)
async def delete_appointment(
    appointment_id: str,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    await services.coordinator.delete(ctx, appointment_id)
    return Response(status_code=204)


@router.post("/appointments/{appointment_id}/status", response_model=Appointment)
async def change_status(
    appointment_id: str,
    body: StatusChange,
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    """Move an appointment through its lifecycle (confirm, cancel, no-show, complete)."""
    return await services.holds.transition(ctx, appointment_id, body.status)


# ---------------------------------------------------------------------------
# Holds
# ---------------------------------------------------------------------------

@router.post("/holds/release-expired", response_model=ReleaseResponse)
async def release_expired_holds(
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    released = await services.holds.release_expired(ctx)
    return ReleaseResponse(released=released, count=len(released))


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------

@router.get("/calendar", response_model=CalendarView)
async def get_calendar(
    day: date = Query(..., description="Any day inside the requested grid"),
    mode: CalendarMode = Query(CalendarMode.WEEK),
    doctor_id: Optional[str] = Query(None),
    ctx: TenantContext = Depends(get_tenant_context),
    services: SchedulingServices = Depends(get_services),
):
    return await services.calendar.view(ctx, mode, day, doctor_id=doctor_id)
