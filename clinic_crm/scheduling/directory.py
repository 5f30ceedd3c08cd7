"""Patient and doctor records of a tenant.

New patients get a primary doctor when the caller names none: a DOCTOR
creating a patient becomes its primary doctor, anyone else gets the first
active doctor of the tenant, and with no doctors on file the acting user id
is recorded. Milestone-derived appointments are booked on that doctor, so
profile edits that change it (or the patient's name) resync them.
"""

import logging
import uuid
from typing import Optional

from clinic_crm.config import Settings, get_settings
from clinic_crm.core.context import TenantContext, UserRole
from clinic_crm.scheduling.clock import Clock, SystemClock
from clinic_crm.scheduling.errors import NotFoundError, ValidationError
from clinic_crm.scheduling.milestones import MilestoneSynchronizer
from clinic_crm.scheduling.models import (
    DoctorCreate,
    DoctorRecord,
    DoctorUpdate,
    PatientCreate,
    PatientRecord,
    PatientUpdate,
)
from clinic_crm.scheduling.store import AppointmentStore, AppointmentTransaction

logger = logging.getLogger(__name__)


def _new_patient_id() -> str:
    return f"patient-{uuid.uuid4().hex[:12]}"


class DirectoryService:
    """Create, edit and list the patients and doctors of a tenant."""

    def __init__(
        self,
        store: AppointmentStore,
        synchronizer: MilestoneSynchronizer,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.synchronizer = synchronizer
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    async def ensure_tenant(self, tenant_id: str, name: Optional[str] = None) -> bool:
        """Create the tenant row if it does not exist yet."""

        async def _ensure(tx: AppointmentTransaction) -> bool:
            return await tx.ensure_tenant(name)

        created = await self.store.run_atomic(tenant_id, _ensure)
        if created:
            logger.info("Created tenant %s", tenant_id)
        return created

    # ------------------------------------------------------------------
    # Doctors
    # ------------------------------------------------------------------

    async def create_doctor(self, ctx: TenantContext, body: DoctorCreate) -> DoctorRecord:
        user_id = body.user_id.strip()
        if not user_id:
            raise ValidationError("user_id is required")
        doctor_id = (body.id or "").strip() or f"doctor-{user_id}"

        async def _create(tx: AppointmentTransaction) -> DoctorRecord:
            if await tx.get_doctor(doctor_id) is not None:
                raise ValidationError(f"Doctor already exists: {doctor_id}")
            now = self.clock.now()
            fields = body.model_dump(exclude={"id", "user_id"})
            doctor = await tx.create_doctor(
                doctor_id, {**fields, "user_id": user_id, "created_at": now, "updated_at": now}
            )
            await tx.audit(ctx.user_id, "doctor.create", doctor_id, resource_type="doctor")
            return doctor

        doctor = await self.store.run_atomic(ctx.tenant_id, _create)
        logger.info("Created doctor %s/%s for user %s", ctx.tenant_id, doctor.id, user_id)
        return doctor

    async def update_doctor(
        self, ctx: TenantContext, doctor_id: str, body: DoctorUpdate
    ) -> DoctorRecord:
        """Edit a doctor profile. Deactivating keeps existing bookings."""
        changes = body.changes()

        async def _update(tx: AppointmentTransaction) -> DoctorRecord:
            if not changes:
                doctor = await tx.get_doctor(doctor_id)
                if doctor is None:
                    raise NotFoundError(f"Doctor not found: {doctor_id}")
                return doctor
            doctor = await tx.update_doctor(doctor_id, {**changes, "updated_at": self.clock.now()})
            await tx.audit(
                ctx.user_id,
                "doctor.update",
                doctor_id,
                {"fields": sorted(changes)},
                resource_type="doctor",
            )
            return doctor

        return await self.store.run_atomic(ctx.tenant_id, _update)

    async def list_doctors(
        self, ctx: TenantContext, include_inactive: bool = False
    ) -> list[DoctorRecord]:
        return await self.store.run_atomic(
            ctx.tenant_id, lambda tx: tx.list_doctors(active_only=not include_inactive)
        )

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------

    async def create_patient(self, ctx: TenantContext, body: PatientCreate) -> PatientRecord:
        first_name = body.first_name.strip()
        if not first_name:
            raise ValidationError("first_name is required")

        async def _create(tx: AppointmentTransaction) -> PatientRecord:
            primary_doctor_id = await self._assign_primary_doctor(tx, ctx, body.primary_doctor_id)
            patient_id = _new_patient_id()
            now = self.clock.now()
            fields = body.model_dump(exclude={"primary_doctor_id"})
            patient = await tx.create_patient(
                patient_id,
                {
                    **fields,
                    "first_name": first_name,
                    "primary_doctor_id": primary_doctor_id,
                    "created_at": now,
                    "updated_at": now,
                },
            )
            await tx.audit(
                ctx.user_id,
                "patient.create",
                patient_id,
                {"primary_doctor_id": primary_doctor_id},
                resource_type="patient",
            )
            return patient

        patient = await self.store.run_atomic(ctx.tenant_id, _create)
        logger.info(
            "Created patient %s/%s (primary doctor %s)",
            ctx.tenant_id,
            patient.id,
            patient.primary_doctor_id,
        )
        return patient

    async def get_patient(self, ctx: TenantContext, patient_id: str) -> PatientRecord:
        patient = await self.store.get_patient(ctx.tenant_id, patient_id)
        if patient is None:
            raise NotFoundError(f"Patient not found: {patient_id}")
        return patient

    async def list_patients(
        self,
        ctx: TenantContext,
        status: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[PatientRecord]:
        """Newest first. Doctors only see the patients they are primary for."""

        async def _list(tx: AppointmentTransaction) -> list[PatientRecord]:
            primary_doctor_id = None
            if ctx.role == UserRole.DOCTOR:
                primary_doctor_id = await self._own_doctor_id(tx, ctx)
            return await tx.list_patients(
                primary_doctor_id=primary_doctor_id,
                status=status,
                search=search.strip() if search else None,
                offset=offset,
                limit=limit,
            )

        return await self.store.run_atomic(ctx.tenant_id, _list)

    async def update_patient(
        self, ctx: TenantContext, patient_id: str, body: PatientUpdate
    ) -> PatientRecord:
        changes = body.changes()
        if "first_name" in changes and not (changes["first_name"] or "").strip():
            raise ValidationError("first_name must not be empty")

        async def _update(tx: AppointmentTransaction) -> tuple[PatientRecord, bool]:
            current = await tx.get_patient(patient_id)
            if current is None:
                raise NotFoundError(f"Patient not found: {patient_id}")
            if not changes:
                return current, False
            new_doctor = changes.get("primary_doctor_id")
            if new_doctor and new_doctor != current.primary_doctor_id:
                await self._require_active_doctor(tx, new_doctor)

            updated = await tx.update_patient(patient_id, changes)
            await tx.audit(
                ctx.user_id,
                "patient.update",
                patient_id,
                {"fields": sorted(changes)},
                resource_type="patient",
            )
            resync = updated.milestones.has_any() and (
                updated.primary_doctor_id != current.primary_doctor_id
                or updated.display_name != current.display_name
            )
            return updated, resync

        patient, resync = await self.store.run_atomic(ctx.tenant_id, _update)
        if resync:
            await self.synchronizer.sync(ctx, patient)
        return patient

    async def delete_patient(self, ctx: TenantContext, patient_id: str) -> list[str]:
        """Delete a patient with its milestone-derived appointments.

        Bookings made by hand stay on the calendar. Returns the ids of the
        derived appointments removed.
        """

        async def _delete(tx: AppointmentTransaction) -> list[str]:
            if await tx.get_patient(patient_id) is None:
                raise NotFoundError(f"Patient not found: {patient_id}")
            removed = [a.id for a in await tx.list_by_patient(patient_id) if a.auto_generated]
            for appointment_id in removed:
                await tx.delete(appointment_id)
            await tx.delete_patient(patient_id)
            await tx.audit(
                ctx.user_id,
                "patient.delete",
                patient_id,
                {"derived_appointments": removed},
                resource_type="patient",
            )
            return removed

        removed = await self.store.run_atomic(ctx.tenant_id, _delete)
        logger.info(
            "Deleted patient %s/%s and %d derived appointment(s)",
            ctx.tenant_id,
            patient_id,
            len(removed),
        )
        return removed

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _assign_primary_doctor(
        self, tx: AppointmentTransaction, ctx: TenantContext, requested: Optional[str]
    ) -> str:
        if requested and requested.strip():
            doctor = await self._require_active_doctor(tx, requested.strip())
            return doctor.id
        if ctx.role == UserRole.DOCTOR:
            return await self._own_doctor_id(tx, ctx)
        active = await tx.list_doctors(active_only=True)
        return active[0].id if active else ctx.user_id

    async def _own_doctor_id(self, tx: AppointmentTransaction, ctx: TenantContext) -> str:
        own = await tx.doctor_for_user(ctx.user_id)
        return own.id if own else ctx.user_id

    async def _require_active_doctor(
        self, tx: AppointmentTransaction, doctor_id: str
    ) -> DoctorRecord:
        doctor = await tx.get_doctor(doctor_id)
        if doctor is None:
            raise NotFoundError(f"Doctor not found: {doctor_id}")
        if not doctor.active:
            raise ValidationError(f"Doctor {doctor_id} is not active")
        return doctor
