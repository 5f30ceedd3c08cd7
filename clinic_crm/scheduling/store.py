"""Appointment and patient store boundary.

The scheduling core only ever sees the pydantic models from
``clinic_crm.scheduling.models``; ORM rows are normalized here and nowhere
else. A store may own an :class:`AppointmentViewCache`; every transaction
that writes drops the tenant's cached ranges once it has committed.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

import pydantic
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinic_crm.core.models import AppointmentDB, AuditLog, Doctor, Patient
from clinic_crm.core.repository import (
    AppointmentRepository,
    AuditRepository,
    DoctorRepository,
    PatientRepository,
    TenantRepository,
)
from clinic_crm.scheduling.cache import AppointmentViewCache
from clinic_crm.scheduling.clock import ensure_utc
from clinic_crm.scheduling.errors import NotFoundError, StoreError
from clinic_crm.scheduling.models import (
    Appointment,
    AuditEntry,
    DoctorRecord,
    PatientMilestones,
    PatientRecord,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Model field -> ORM column, where they differ.
_COLUMN_NAMES = {"start": "start_time", "end": "end_time"}


def appointment_from_row(row: AppointmentDB) -> Appointment:
    """Convert a stored appointment into the strict core model."""
    try:
        return Appointment(
            id=row.id,
            tenant_id=row.tenant_id,
            patient_id=row.patient_id,
            doctor_id=row.doctor_id,
            type=row.type,
            status=row.status,
            start=row.start_time,
            end=row.end_time,
            patient_name=row.patient_name,
            room_id=row.room_id,
            notes=row.notes,
            hold_expires_at=row.hold_expires_at,
            team_ids=list(row.team_ids or []),
            auto_generated=bool(row.auto_generated),
            source=row.source,
            milestone_type=row.milestone_type,
            milestone_label=row.milestone_label,
            deposit_status=row.deposit_status,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
    except pydantic.ValidationError as exc:
        raise StoreError(f"Malformed appointment record {row.tenant_id}/{row.id}: {exc}") from exc


def patient_from_row(row: Patient) -> PatientRecord:
    return PatientRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        first_name=row.first_name,
        last_name=row.last_name,
        email=row.email,
        phone=row.phone,
        status=row.status,
        primary_doctor_id=row.primary_doctor_id,
        milestones=PatientMilestones(
            consult_date=row.consult_date,
            proposal_sent_date=row.proposal_sent_date,
            surgery_date=row.surgery_date,
            follow_up_date=row.follow_up_date,
        ),
        milestones_autofilled=bool(row.milestones_autofilled),
        created_at=row.created_at,
    )


def doctor_from_row(row: Doctor) -> DoctorRecord:
    return DoctorRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        display_name=row.display_name,
        license_no=row.license_no,
        specialties=list(row.specialties or []),
        active=bool(row.active),
        capacity=row.capacity,
    )


def _to_columns(fields: dict[str, Any]) -> dict[str, Any]:
    """Translate model-level fields into ORM column values."""
    columns: dict[str, Any] = {}
    for name, value in fields.items():
        if hasattr(value, "value"):
            value = value.value
        elif isinstance(value, datetime):
            value = ensure_utc(value)
        columns[_COLUMN_NAMES.get(name, name)] = value
    return columns


def _sorted(appointments: list[Appointment]) -> list[Appointment]:
    return sorted(appointments, key=lambda a: (a.start, a.id))


def audit_from_row(row: AuditLog) -> AuditEntry:
    return AuditEntry(
        action=row.action,
        user_id=row.user_id,
        details=row.details,
        timestamp=row.timestamp,
    )


class AppointmentTransaction:
    """Store operations bound to one open transaction for one tenant.

    ``wrote`` turns true once any appointment row was inserted, changed or
    removed; the store uses it to decide whether cached views went stale.
    """

    def __init__(self, session: AsyncSession, tenant_id: str, ordered: bool = True):
        self.session = session
        self.tenant_id = tenant_id
        self.ordered = ordered
        self.wrote = False
        self._appointments = AppointmentRepository(session)
        self._doctors = DoctorRepository(session)
        self._patients = PatientRepository(session)
        self._tenants = TenantRepository(session)
        self._audit = AuditRepository(session)

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        row = await self._appointments.get_by_id(self.tenant_id, appointment_id)
        return appointment_from_row(row) if row else None

    async def list_by_doctor_and_window(
        self, doctor_id: str, start: datetime, end: datetime
    ) -> list[Appointment]:
        """All of *doctor_id*'s bookings intersecting ``[start, end)``, start-ordered."""
        return await self.list_in_range(start, end, doctor_id=doctor_id)

    async def list_in_range(
        self, start: datetime, end: datetime, doctor_id: Optional[str] = None
    ) -> list[Appointment]:
        rows = await self._appointments.list_overlapping(
            self.tenant_id,
            ensure_utc(start),
            ensure_utc(end),
            doctor_id=doctor_id,
            ordered=self.ordered,
        )
        appointments = [appointment_from_row(r) for r in rows]
        return appointments if self.ordered else _sorted(appointments)

    async def list_by_patient(self, patient_id: str) -> list[Appointment]:
        rows = await self._appointments.list_by_patient(self.tenant_id, patient_id)
        return [appointment_from_row(r) for r in rows]

    async def list_expired_holds(self, now: datetime) -> list[Appointment]:
        rows = await self._appointments.list_expired_holds(self.tenant_id, ensure_utc(now))
        return _sorted([appointment_from_row(r) for r in rows])

    async def insert(self, appointment: Appointment) -> Appointment:
        fields = appointment.model_dump(exclude={"tenant_id"})
        row = await self._appointments.create(self.tenant_id, **_to_columns(fields))
        self.wrote = True
        return appointment_from_row(row)

    async def update(self, appointment_id: str, fields: dict[str, Any]) -> Appointment:
        row = await self._appointments.update(self.tenant_id, appointment_id, **_to_columns(fields))
        if row is None:
            raise NotFoundError(f"Appointment not found: {appointment_id}")
        self.wrote = True
        return appointment_from_row(row)

    async def upsert(self, appointment_id: str, fields: dict[str, Any]) -> tuple[Appointment, bool]:
        """Merge *fields* into the appointment, creating it if needed.

        Returns the stored appointment and whether it was created.
        """
        self.wrote = True
        row = await self._appointments.update(self.tenant_id, appointment_id, **_to_columns(fields))
        if row is not None:
            return appointment_from_row(row), False
        row = await self._appointments.create(self.tenant_id, id=appointment_id, **_to_columns(fields))
        return appointment_from_row(row), True

    async def delete(self, appointment_id: str) -> bool:
        deleted = await self._appointments.delete(self.tenant_id, appointment_id)
        if deleted:
            self.wrote = True
        return deleted

    # ------------------------------------------------------------------
    # Doctors
    # ------------------------------------------------------------------

    async def lock_doctor(self, doctor_id: str) -> Optional[DoctorRecord]:
        row = await self._doctors.lock(self.tenant_id, doctor_id)
        return doctor_from_row(row) if row else None

    async def get_doctor(self, doctor_id: str) -> Optional[DoctorRecord]:
        row = await self._doctors.get_by_id(self.tenant_id, doctor_id)
        return doctor_from_row(row) if row else None

    async def doctor_for_user(self, user_id: str) -> Optional[DoctorRecord]:
        row = await self._doctors.get_by_user(self.tenant_id, user_id)
        return doctor_from_row(row) if row else None

    async def list_doctors(self, active_only: bool = True) -> list[DoctorRecord]:
        return [doctor_from_row(r) for r in await self._doctors.list(self.tenant_id, active_only)]

    async def create_doctor(self, doctor_id: str, fields: dict[str, Any]) -> DoctorRecord:
        row = await self._doctors.create(self.tenant_id, id=doctor_id, **fields)
        return doctor_from_row(row)

    async def update_doctor(self, doctor_id: str, fields: dict[str, Any]) -> DoctorRecord:
        row = await self._doctors.update(self.tenant_id, doctor_id, **fields)
        if row is None:
            raise NotFoundError(f"Doctor not found: {doctor_id}")
        return doctor_from_row(row)

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------

    async def get_patient(self, patient_id: str) -> Optional[PatientRecord]:
        row = await self._patients.get_by_id(self.tenant_id, patient_id)
        return patient_from_row(row) if row else None

    async def list_patients(
        self,
        primary_doctor_id: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[PatientRecord]:
        rows = await self._patients.list(
            self.tenant_id,
            primary_doctor_id=primary_doctor_id,
            status=status,
            search=search,
            offset=offset,
            limit=limit,
        )
        return [patient_from_row(r) for r in rows]

    async def create_patient(self, patient_id: str, fields: dict[str, Any]) -> PatientRecord:
        row = await self._patients.create(self.tenant_id, id=patient_id, **fields)
        return patient_from_row(row)

    async def update_patient(self, patient_id: str, fields: dict[str, Any]) -> PatientRecord:
        row = await self._patients.update(self.tenant_id, patient_id, **fields)
        if row is None:
            raise NotFoundError(f"Patient not found: {patient_id}")
        return patient_from_row(row)

    async def delete_patient(self, patient_id: str) -> bool:
        return await self._patients.delete(self.tenant_id, patient_id)

    async def update_patient_milestones(
        self,
        patient_id: str,
        milestones: PatientMilestones,
        autofilled: Optional[bool] = None,
    ) -> PatientRecord:
        fields: dict[str, Any] = milestones.model_dump()
        if autofilled is not None:
            fields["milestones_autofilled"] = autofilled
        return await self.update_patient(patient_id, fields)

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    async def ensure_tenant(self, name: Optional[str] = None) -> bool:
        """Create the tenant row if missing. Returns whether it was created."""
        if await self._tenants.get_by_id(self.tenant_id) is not None:
            return False
        await self._tenants.create(self.tenant_id, name or self.tenant_id)
        return True

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def audit(
        self,
        user_id: Optional[str],
        action: str,
        resource_id: str,
        details: Optional[dict] = None,
        resource_type: str = "appointment",
    ) -> None:
        await self._audit.log_action(
            self.tenant_id,
            action,
            resource_type,
            resource_id,
            user_id=user_id,
            details=details,
        )

    async def audit_history(
        self, resource_id: str, resource_type: str = "appointment", limit: int = 50
    ) -> list[AuditEntry]:
        rows = await self._audit.get_by_resource(self.tenant_id, resource_type, resource_id, limit=limit)
        return [audit_from_row(r) for r in rows]


class AppointmentStore(ABC):
    """Transactional appointment storage with doctor/time range queries."""

    # When False the backend cannot order range results; callers still get
    # start-ordered lists because the transaction sorts client-side.
    supports_ordered_range_query: bool = True

    view_cache: Optional[AppointmentViewCache] = None

    @abstractmethod
    async def run_atomic(
        self,
        tenant_id: str,
        fn: Callable[[AppointmentTransaction], Awaitable[T]],
    ) -> T:
        """Run *fn* inside one transaction; commit on return, roll back on raise.

        Infrastructure failures surface as :class:`StoreError`; exceptions
        raised by *fn* propagate unchanged after rollback. Committed
        appointment writes invalidate ``view_cache`` for the tenant.
        """

    def _after_commit(self, tx: AppointmentTransaction) -> None:
        if tx.wrote and self.view_cache is not None:
            self.view_cache.invalidate(tx.tenant_id)

    async def get(self, tenant_id: str, appointment_id: str) -> Optional[Appointment]:
        return await self.run_atomic(tenant_id, lambda tx: tx.get(appointment_id))

    async def list_by_doctor_and_window(
        self, tenant_id: str, doctor_id: str, start: datetime, end: datetime
    ) -> list[Appointment]:
        return await self.run_atomic(
            tenant_id, lambda tx: tx.list_by_doctor_and_window(doctor_id, start, end)
        )

    async def list_in_range(
        self, tenant_id: str, start: datetime, end: datetime, doctor_id: Optional[str] = None
    ) -> list[Appointment]:
        return await self.run_atomic(
            tenant_id, lambda tx: tx.list_in_range(start, end, doctor_id=doctor_id)
        )

    async def list_by_patient(self, tenant_id: str, patient_id: str) -> list[Appointment]:
        return await self.run_atomic(tenant_id, lambda tx: tx.list_by_patient(patient_id))

    async def upsert(self, tenant_id: str, appointment_id: str, fields: dict[str, Any]) -> Appointment:
        appointment, _ = await self.run_atomic(tenant_id, lambda tx: tx.upsert(appointment_id, fields))
        return appointment

    async def delete(self, tenant_id: str, appointment_id: str) -> bool:
        return await self.run_atomic(tenant_id, lambda tx: tx.delete(appointment_id))

    async def get_patient(self, tenant_id: str, patient_id: str) -> Optional[PatientRecord]:
        return await self.run_atomic(tenant_id, lambda tx: tx.get_patient(patient_id))

    async def get_doctor(self, tenant_id: str, doctor_id: str) -> Optional[DoctorRecord]:
        return await self.run_atomic(tenant_id, lambda tx: tx.get_doctor(doctor_id))

    async def audit_history(
        self, tenant_id: str, resource_id: str, resource_type: str = "appointment"
    ) -> list[AuditEntry]:
        return await self.run_atomic(
            tenant_id, lambda tx: tx.audit_history(resource_id, resource_type=resource_type)
        )


class SQLClinicStore(AppointmentStore):
    """SQLAlchemy-backed store for appointments, doctors and patients."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        supports_ordered_range_query: bool = True,
        view_cache: Optional[AppointmentViewCache] = None,
    ):
        self._session_factory = session_factory
        self.supports_ordered_range_query = supports_ordered_range_query
        self.view_cache = view_cache if view_cache is not None else AppointmentViewCache()

    async def run_atomic(
        self,
        tenant_id: str,
        fn: Callable[[AppointmentTransaction], Awaitable[T]],
    ) -> T:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    tx = AppointmentTransaction(
                        session, tenant_id, ordered=self.supports_ordered_range_query
                    )
                    result = await fn(tx)
        except SQLAlchemyError as exc:
            logger.warning("Store transaction failed for tenant %s: %s", tenant_id, exc)
            raise StoreError(f"Store operation failed: {exc}") from exc
        self._after_commit(tx)
        return result
