"""CRUD repositories for the tenant-scoped clinic schema."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_crm.core.models import AppointmentDB, AuditLog, Doctor, Patient, Tenant


class TenantRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, tenant_id: str) -> Optional[Tenant]:
        return await self.session.get(Tenant, tenant_id)

    async def create(self, tenant_id: str, name: str) -> Tenant:
        tenant = Tenant(id=tenant_id, name=name)
        self.session.add(tenant)
        await self.session.flush()
        return tenant


class PatientRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, tenant_id: str, **kwargs) -> Patient:
        patient = Patient(tenant_id=tenant_id, **kwargs)
        self.session.add(patient)
        await self.session.flush()
        return patient

    async def get_by_id(self, tenant_id: str, patient_id: str) -> Optional[Patient]:
        return await self.session.get(Patient, (tenant_id, patient_id))

    async def list(
        self,
        tenant_id: str,
        primary_doctor_id: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Sequence[Patient]:
        """Newest first. *search* matches first name, last name or email."""
        stmt = select(Patient).where(Patient.tenant_id == tenant_id)
        if primary_doctor_id:
            stmt = stmt.where(Patient.primary_doctor_id == primary_doctor_id)
        if status:
            stmt = stmt.where(Patient.status == status)
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(
                or_(
                    Patient.first_name.ilike(pattern),
                    Patient.last_name.ilike(pattern),
                    Patient.email.ilike(pattern),
                )
            )
        stmt = stmt.order_by(Patient.created_at.desc(), Patient.id).offset(offset).limit(limit)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def update(self, tenant_id: str, patient_id: str, **kwargs) -> Optional[Patient]:
        """Set every given field, ``None`` included (milestones are clearable)."""
        patient = await self.get_by_id(tenant_id, patient_id)
        if not patient:
            return None
        for k, v in kwargs.items():
            setattr(patient, k, v)
        patient.updated_at = datetime.now(timezone.utc)
        await self.session.flush()
        return patient

    async def delete(self, tenant_id: str, patient_id: str) -> bool:
        patient = await self.get_by_id(tenant_id, patient_id)
        if not patient:
            return False
        await self.session.delete(patient)
        await self.session.flush()
        return True


class DoctorRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, tenant_id: str, **kwargs) -> Doctor:
        doctor = Doctor(tenant_id=tenant_id, **kwargs)
        self.session.add(doctor)
        await self.session.flush()
        return doctor

    async def get_by_id(self, tenant_id: str, doctor_id: str) -> Optional[Doctor]:
        return await self.session.get(Doctor, (tenant_id, doctor_id))

    async def lock(self, tenant_id: str, doctor_id: str) -> Optional[Doctor]:
        """Load the doctor row with a row-level write lock held until commit."""
        stmt = (
            select(Doctor)
            .where(Doctor.tenant_id == tenant_id, Doctor.id == doctor_id)
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_user(self, tenant_id: str, user_id: str) -> Optional[Doctor]:
        stmt = (
            select(Doctor)
            .where(Doctor.tenant_id == tenant_id, Doctor.user_id == user_id)
            .order_by(Doctor.active.desc(), Doctor.id)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list(self, tenant_id: str, active_only: bool = True) -> Sequence[Doctor]:
        stmt = select(Doctor).where(Doctor.tenant_id == tenant_id)
        if active_only:
            stmt = stmt.where(Doctor.active.is_(True))
        stmt = stmt.order_by(Doctor.display_name, Doctor.id)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def update(self, tenant_id: str, doctor_id: str, **kwargs) -> Optional[Doctor]:
        doctor = await self.get_by_id(tenant_id, doctor_id)
        if not doctor:
            return None
        for k, v in kwargs.items():
            setattr(doctor, k, v)
        await self.session.flush()
        return doctor


class AppointmentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, tenant_id: str, **kwargs) -> AppointmentDB:
        appt = AppointmentDB(tenant_id=tenant_id, **kwargs)
        self.session.add(appt)
        await self.session.flush()
        return appt

    async def get_by_id(self, tenant_id: str, appointment_id: str) -> Optional[AppointmentDB]:
        return await self.session.get(AppointmentDB, (tenant_id, appointment_id))

    async def list_overlapping(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        doctor_id: Optional[str] = None,
        ordered: bool = True,
    ) -> Sequence[AppointmentDB]:
        """Appointments whose ``[start_time, end_time)`` intersects ``[start, end)``."""
        stmt = select(AppointmentDB).where(
            AppointmentDB.tenant_id == tenant_id,
            AppointmentDB.start_time < end,
            AppointmentDB.end_time > start,
        )
        if doctor_id is not None:
            stmt = stmt.where(AppointmentDB.doctor_id == doctor_id)
        if ordered:
            stmt = stmt.order_by(AppointmentDB.start_time, AppointmentDB.id)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_by_patient(self, tenant_id: str, patient_id: str) -> Sequence[AppointmentDB]:
        stmt = (
            select(AppointmentDB)
            .where(AppointmentDB.tenant_id == tenant_id, AppointmentDB.patient_id == patient_id)
            .order_by(AppointmentDB.start_time)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_expired_holds(self, tenant_id: str, now: datetime) -> Sequence[AppointmentDB]:
        stmt = select(AppointmentDB).where(
            AppointmentDB.tenant_id == tenant_id,
            AppointmentDB.status == "HOLD",
            AppointmentDB.hold_expires_at.is_not(None),
            AppointmentDB.hold_expires_at < now,
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def update(self, tenant_id: str, appointment_id: str, **kwargs) -> Optional[AppointmentDB]:
        appt = await self.get_by_id(tenant_id, appointment_id)
        if not appt:
            return None
        for k, v in kwargs.items():
            setattr(appt, k, v)
        await self.session.flush()
        return appt

    async def delete(self, tenant_id: str, appointment_id: str) -> bool:
        appt = await self.get_by_id(tenant_id, appointment_id)
        if not appt:
            return False
        await self.session.delete(appt)
        await self.session.flush()
        return True


class AuditRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def log_action(
        self,
        tenant_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        user_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditLog:
        entry = AuditLog(
            tenant_id=tenant_id,
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id),
            details=details,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_by_resource(
        self, tenant_id: str, resource_type: str, resource_id: str, limit: int = 50
    ) -> Sequence[AuditLog]:
        stmt = (
            select(AuditLog)
            .where(
                AuditLog.tenant_id == tenant_id,
                AuditLog.resource_type == resource_type,
                AuditLog.resource_id == resource_id,
            )
            .order_by(AuditLog.timestamp.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()
