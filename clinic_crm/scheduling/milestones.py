"""Patient milestone to calendar appointment synchronization.

Each of a patient's four milestone dates maps to exactly one derived
appointment whose id is ``<patient_id>-<suffix>``. Syncing upserts the
derived appointment when the date is set and deletes it when the date is
cleared, so running it repeatedly is idempotent. Derived appointments skip
conflict detection and always reflect the milestone data, overwriting any
manual edits to the fields the sync owns.
"""

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from clinic_crm.config import Settings, get_settings
from clinic_crm.core.context import TenantContext
from clinic_crm.scheduling.clock import Clock, SystemClock, clinic_tzinfo
from clinic_crm.scheduling.errors import NotFoundError, StoreError
from clinic_crm.scheduling.models import (
    Appointment,
    AppointmentSource,
    AppointmentStatus,
    AppointmentType,
    MilestoneKey,
    MilestoneSyncResult,
    PatientMilestones,
    PatientRecord,
    SlotSyncAction,
    SlotSyncOutcome,
)
from clinic_crm.scheduling.store import AppointmentStore, AppointmentTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MilestoneSlot:
    """Fixed calendar placement for one milestone."""

    key: MilestoneKey
    label: str
    type: AppointmentType
    id_suffix: str
    hour: int
    duration_minutes: int


MILESTONE_SLOTS: tuple[MilestoneSlot, ...] = (
    MilestoneSlot(MilestoneKey.CONSULT_DATE, "Consultation", AppointmentType.CONSULT, "consult", 9, 60),
    MilestoneSlot(MilestoneKey.PROPOSAL_SENT_DATE, "Proposal Sent", AppointmentType.PROPOSAL, "proposal", 10, 30),
    MilestoneSlot(MilestoneKey.SURGERY_DATE, "Surgery", AppointmentType.SURGERY, "surgery", 11, 240),
    MilestoneSlot(MilestoneKey.FOLLOW_UP_DATE, "Follow-up", AppointmentType.FOLLOWUP, "followup", 15, 45),
)


def derived_appointment_id(patient_id: str, slot: MilestoneSlot) -> str:
    return f"{patient_id}-{slot.id_suffix}"


# ----------------------------------------------------------------------
# Placeholder milestones
# ----------------------------------------------------------------------

def seeded_random(seed: str) -> float:
    """Deterministic value in ``[0, 1)`` derived from *seed*."""
    h = 0
    for ch in seed:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000  # signed 32-bit
    value = abs(math.sin(h) * 10000)
    return value - math.floor(value)


def seeded_randint(seed: str, low: int, high: int) -> int:
    """Deterministic integer in ``[low, high]``."""
    return math.floor(seeded_random(seed) * (high - low + 1)) + low


def generate_placeholder_milestones(patient_id: str, base_date: date) -> PatientMilestones:
    """Plausible milestone dates for a patient that has none yet."""
    offset = seeded_randint(f"{patient_id}-base", 0, 60)
    consult = base_date + timedelta(days=offset)
    return PatientMilestones(
        consult_date=consult,
        proposal_sent_date=consult + timedelta(days=5 + seeded_randint(f"{patient_id}-proposal", 0, 5)),
        surgery_date=consult + timedelta(days=25 + seeded_randint(f"{patient_id}-surgery", 0, 15)),
        follow_up_date=consult + timedelta(days=55 + seeded_randint(f"{patient_id}-follow", 0, 15)),
    )


# ----------------------------------------------------------------------
# Synchronizer
# ----------------------------------------------------------------------

class MilestoneSynchronizer:
    """Keeps a patient's derived appointments in line with their milestones."""

    def __init__(
        self,
        store: AppointmentStore,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    def slot_interval(self, day: date, slot: MilestoneSlot) -> tuple[datetime, datetime]:
        """UTC ``[start, end)`` of *slot* on *day* in the clinic's timezone."""
        tz = clinic_tzinfo(self.settings.clinic_timezone)
        start = datetime.combine(day, time(hour=slot.hour), tzinfo=tz).astimezone(timezone.utc)
        return start, start + timedelta(minutes=slot.duration_minutes)

    async def sync(
        self,
        ctx: TenantContext,
        patient: PatientRecord,
        milestones: Optional[PatientMilestones] = None,
    ) -> MilestoneSyncResult:
        """Upsert or delete the four derived appointments for *patient*.

        Each slot runs in its own transaction; a store failure on one slot is
        recorded in the result and does not stop the others.
        """
        milestones = milestones or patient.milestones
        doctor_id = patient.primary_doctor_id or ctx.user_id
        now = self.clock.now()

        result = MilestoneSyncResult(patient_id=patient.id)
        for slot in MILESTONE_SLOTS:
            appointment_id = derived_appointment_id(patient.id, slot)
            try:
                action = await self.store.run_atomic(
                    ctx.tenant_id,
                    lambda tx, slot=slot: self._sync_slot(
                        tx, ctx, patient, slot, milestones.get(slot.key), doctor_id, now
                    ),
                )
                result.outcomes.append(
                    SlotSyncOutcome(milestone=slot.key, appointment_id=appointment_id, action=action)
                )
            except StoreError as exc:
                logger.warning(
                    "Milestone sync failed for %s/%s (%s): %s",
                    ctx.tenant_id,
                    appointment_id,
                    slot.key.value,
                    exc,
                )
                result.outcomes.append(
                    SlotSyncOutcome(
                        milestone=slot.key,
                        appointment_id=appointment_id,
                        action=SlotSyncAction.FAILED,
                        error=str(exc),
                    )
                )

        if result.failed:
            logger.warning(
                "Milestone sync for patient %s finished with %d failed slot(s)",
                patient.id,
                len(result.failed),
            )
        return result

    async def _sync_slot(
        self,
        tx: AppointmentTransaction,
        ctx: TenantContext,
        patient: PatientRecord,
        slot: MilestoneSlot,
        day: Optional[date],
        doctor_id: str,
        now: datetime,
    ) -> SlotSyncAction:
        appointment_id = derived_appointment_id(patient.id, slot)

        if day is None:
            if await tx.delete(appointment_id):
                await tx.audit(ctx.user_id, "milestone.delete", appointment_id, {"milestone": slot.key.value})
                return SlotSyncAction.DELETED
            return SlotSyncAction.ABSENT

        desired = self._derived_fields(patient, slot, day, doctor_id, now)
        current = await tx.get(appointment_id)

        if current is None:
            appointment = Appointment(
                id=appointment_id,
                tenant_id=ctx.tenant_id,
                deposit_status="PENDING" if slot.type == AppointmentType.SURGERY else None,
                created_at=now,
                updated_at=now,
                **desired,
            )
            await tx.insert(appointment)
            await tx.audit(ctx.user_id, "milestone.create", appointment_id, {"milestone": slot.key.value})
            return SlotSyncAction.CREATED

        if all(getattr(current, name) == value for name, value in desired.items()):
            return SlotSyncAction.UNCHANGED

        await tx.update(appointment_id, {**desired, "updated_at": now})
        await tx.audit(ctx.user_id, "milestone.update", appointment_id, {"milestone": slot.key.value})
        return SlotSyncAction.UPDATED

    def _derived_fields(
        self,
        patient: PatientRecord,
        slot: MilestoneSlot,
        day: date,
        doctor_id: str,
        now: datetime,
    ) -> dict[str, Any]:
        start, end = self.slot_interval(day, slot)
        status = AppointmentStatus.COMPLETED if end < now else AppointmentStatus.CONFIRMED
        return {
            "patient_id": patient.id,
            "doctor_id": doctor_id,
            "patient_name": patient.display_name,
            "type": slot.type,
            "status": status,
            "start": start,
            "end": end,
            "hold_expires_at": None,
            "team_ids": [],
            "notes": slot.label,
            "auto_generated": True,
            "source": AppointmentSource.PATIENT_MILESTONE,
            "milestone_type": slot.key,
            "milestone_label": slot.label,
        }


# ----------------------------------------------------------------------
# Milestone edit workflow
# ----------------------------------------------------------------------

class MilestoneService:
    """Patient milestone writes, each followed by a synchronization pass."""

    def __init__(
        self,
        store: AppointmentStore,
        synchronizer: MilestoneSynchronizer,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.synchronizer = synchronizer
        self.settings = settings or get_settings()

    async def update_milestones(
        self,
        ctx: TenantContext,
        patient_id: str,
        milestones: PatientMilestones,
    ) -> MilestoneSyncResult:
        async def _write(tx: AppointmentTransaction) -> PatientRecord:
            patient = await tx.update_patient_milestones(patient_id, milestones)
            await tx.audit(
                ctx.user_id,
                "patient.milestones",
                patient_id,
                milestones.model_dump(mode="json"),
                resource_type="patient",
            )
            return patient

        patient = await self.store.run_atomic(ctx.tenant_id, _write)
        return await self.synchronizer.sync(ctx, patient)

    async def resync(self, ctx: TenantContext, patient_id: str) -> MilestoneSyncResult:
        patient = await self.store.get_patient(ctx.tenant_id, patient_id)
        if patient is None:
            raise NotFoundError(f"Patient not found: {patient_id}")
        return await self.synchronizer.sync(ctx, patient)

    async def ensure_placeholder_milestones(
        self, ctx: TenantContext, patient_id: str
    ) -> Optional[MilestoneSyncResult]:
        """Fill in placeholder milestones once for a patient that has none.

        Returns ``None`` when nothing was generated: the patient already has
        milestone data, was auto-filled before, or placeholders are disabled.
        """
        if not self.settings.placeholder_milestones_enabled:
            return None

        async def _fill(tx: AppointmentTransaction) -> Optional[PatientRecord]:
            patient = await tx.get_patient(patient_id)
            if patient is None:
                raise NotFoundError(f"Patient not found: {patient_id}")
            if patient.milestones.has_any() or patient.milestones_autofilled:
                return None
            generated = generate_placeholder_milestones(patient.id, self.settings.placeholder_base_date)
            updated = await tx.update_patient_milestones(patient_id, generated, autofilled=True)
            await tx.audit(
                ctx.user_id,
                "patient.milestones_placeholder",
                patient_id,
                generated.model_dump(mode="json"),
                resource_type="patient",
            )
            return updated

        patient = await self.store.run_atomic(ctx.tenant_id, _fill)
        if patient is None:
            return None
        logger.info("Generated placeholder milestones for patient %s/%s", ctx.tenant_id, patient_id)
        return await self.synchronizer.sync(ctx, patient)
