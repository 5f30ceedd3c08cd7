"""Booking transaction coordinator.

Every write that can change a doctor's occupied time runs as one atomic
unit against the store: lock the doctor, read that doctor's bookings in the
conflict window, run the conflict check, then write. The read always happens
inside the same transaction as the write, so two concurrent attempts at an
overlapping slot cannot both commit.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from clinic_crm.config import Settings, get_settings
from clinic_crm.core.context import TenantContext
from clinic_crm.scheduling.clock import Clock, SystemClock
from clinic_crm.scheduling.conflicts import conflict_window, find_conflicts
from clinic_crm.scheduling.errors import (
    ConflictError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from clinic_crm.scheduling.holds import hold_expiry_for
from clinic_crm.scheduling.models import (
    DEFAULT_DURATION_MINUTES,
    NON_BLOCKING_STATUSES,
    Appointment,
    AppointmentStatus,
    AppointmentUpdate,
    BookingRequest,
)
from clinic_crm.scheduling.store import AppointmentStore, AppointmentTransaction

logger = logging.getLogger(__name__)

# Statuses a new booking may be created in.
CREATABLE_STATUSES = frozenset(
    {AppointmentStatus.HOLD, AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED}
)


def _new_appointment_id() -> str:
    return uuid.uuid4().hex


class BookingCoordinator:
    """Creates and edits user-scheduled appointments with conflict detection."""

    def __init__(
        self,
        store: AppointmentStore,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def book(self, ctx: TenantContext, request: BookingRequest) -> Appointment:
        """Atomically create an appointment if its slot is free.

        Raises:
            ValidationError: malformed request (checked before any store access).
            NotFoundError: unknown doctor or patient.
            ConflictError: the doctor already has an overlapping booking.
            StoreError: transient store failure; nothing was written.
        """
        start, end = self._validate_booking(request)

        async def _create(tx: AppointmentTransaction) -> Appointment:
            doctor = await tx.lock_doctor(request.doctor_id)
            if doctor is None:
                raise NotFoundError(f"Doctor not found: {request.doctor_id}")
            if not doctor.active:
                raise ValidationError(f"Doctor {request.doctor_id} is not active")
            patient = await tx.get_patient(request.patient_id)
            if patient is None:
                raise NotFoundError(f"Patient not found: {request.patient_id}")

            now = self.clock.now()
            await self._ensure_free(tx, doctor.id, start, end, now)

            hold_expires_at = None
            if request.status == AppointmentStatus.HOLD:
                hold_expires_at = request.hold_expires_at or hold_expiry_for(
                    now, self.settings.hold_ttl_hours
                )
                if hold_expires_at <= now:
                    raise ValidationError("hold_expires_at must be in the future")

            appointment = Appointment(
                id=_new_appointment_id(),
                tenant_id=ctx.tenant_id,
                patient_id=request.patient_id,
                doctor_id=doctor.id,
                type=request.type,
                status=request.status,
                start=start,
                end=end,
                patient_name=request.patient_name or patient.display_name,
                room_id=request.room_id,
                notes=request.notes,
                hold_expires_at=hold_expires_at,
                team_ids=list(request.team_ids),
                created_at=now,
                updated_at=now,
            )
            saved = await tx.insert(appointment)
            await tx.audit(
                ctx.user_id,
                "appointment.create",
                saved.id,
                {"doctor_id": saved.doctor_id, "start": start.isoformat(), "end": end.isoformat()},
            )
            return saved

        saved = await self.store.run_atomic(ctx.tenant_id, _create)
        logger.info(
            "Booked %s %s for doctor %s at %s (tenant %s)",
            saved.type.value,
            saved.id,
            saved.doctor_id,
            saved.start.isoformat(),
            ctx.tenant_id,
        )
        return saved

    async def book_with_retry(self, ctx: TenantContext, request: BookingRequest) -> Appointment:
        """:meth:`book`, retried with exponential backoff on :class:`StoreError` only."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(StoreError),
            stop=stop_after_attempt(self.settings.store_retry_attempts),
            wait=wait_exponential(
                multiplier=self.settings.store_retry_backoff_seconds,
                max=self.settings.store_retry_max_backoff_seconds,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                appointment = await self.book(ctx, request)
        return appointment

    # ------------------------------------------------------------------
    # Edit / delete
    # ------------------------------------------------------------------

    async def update(
        self,
        ctx: TenantContext,
        appointment_id: str,
        update: AppointmentUpdate,
    ) -> Appointment:
        """Apply field edits. Time or doctor changes are conflict-checked.

        Moving only ``start`` keeps the appointment's duration.
        """
        changes = update.changes()
        if "doctor_id" in changes and not (changes["doctor_id"] or "").strip():
            raise ValidationError("doctor_id must not be empty")
        if changes.get("start") and changes.get("end"):
            self._validate_interval(changes["start"], changes["end"])

        async def _edit(tx: AppointmentTransaction) -> Appointment:
            current = await tx.get(appointment_id)
            if current is None:
                raise NotFoundError(f"Appointment not found: {appointment_id}")
            if not changes:
                return current

            start = changes.get("start") or current.start
            end = changes.get("end")
            if end is None:
                end = start + (current.end - current.start) if "start" in changes else current.end
            self._validate_interval(start, end)
            doctor_id = changes.get("doctor_id") or current.doctor_id

            now = self.clock.now()
            reassigned = doctor_id != current.doctor_id
            if reassigned:
                doctor = await tx.lock_doctor(doctor_id)
                if doctor is None:
                    raise NotFoundError(f"Doctor not found: {doctor_id}")
                if not doctor.active:
                    raise ValidationError(f"Doctor {doctor_id} is not active")

            moved = reassigned or (start, end) != (current.start, current.end)
            if moved and current.status not in NON_BLOCKING_STATUSES:
                if not reassigned:
                    await tx.lock_doctor(doctor_id)
                await self._ensure_free(tx, doctor_id, start, end, now, exclude_id=current.id)

            fields = {**changes, "start": start, "end": end, "doctor_id": doctor_id, "updated_at": now}
            updated = await tx.update(appointment_id, fields)
            await tx.audit(
                ctx.user_id,
                "appointment.update",
                appointment_id,
                {"fields": sorted(changes)},
            )
            return updated

        return await self.store.run_atomic(ctx.tenant_id, _edit)

    async def delete(self, ctx: TenantContext, appointment_id: str) -> None:
        async def _delete(tx: AppointmentTransaction) -> None:
            if not await tx.delete(appointment_id):
                raise NotFoundError(f"Appointment not found: {appointment_id}")
            await tx.audit(ctx.user_id, "appointment.delete", appointment_id)

        await self.store.run_atomic(ctx.tenant_id, _delete)
        logger.info("Deleted appointment %s/%s", ctx.tenant_id, appointment_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate_booking(self, request: BookingRequest) -> tuple[datetime, datetime]:
        if not request.patient_id.strip():
            raise ValidationError("patient_id is required")
        if not request.doctor_id.strip():
            raise ValidationError("doctor_id is required")
        if request.status not in CREATABLE_STATUSES:
            raise ValidationError(f"Cannot create an appointment with status {request.status.value}")

        start = request.start
        if request.end is not None:
            end = request.end
        else:
            minutes = request.duration_minutes
            if minutes is None:
                minutes = DEFAULT_DURATION_MINUTES[request.type]
            end = start + timedelta(minutes=minutes)
        self._validate_interval(start, end)
        return start, end

    def _validate_interval(self, start: datetime, end: datetime) -> None:
        if end <= start:
            raise ValidationError("Appointment end must be after its start")
        minimum = timedelta(minutes=self.settings.min_appointment_minutes)
        if end - start < minimum:
            raise ValidationError(
                f"Duration must be at least {self.settings.min_appointment_minutes} minutes"
            )

    async def _ensure_free(
        self,
        tx: AppointmentTransaction,
        doctor_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
        exclude_id: Optional[str] = None,
    ) -> None:
        margin = timedelta(hours=self.settings.conflict_window_margin_hours)
        window_start, window_end = conflict_window(start, end, margin)
        existing = await tx.list_by_doctor_and_window(doctor_id, window_start, window_end)
        expiry_cutoff = now if self.settings.hold_expiry_frees_slot else None
        clashes = find_conflicts(start, end, existing, now=expiry_cutoff, exclude_id=exclude_id)
        if clashes:
            logger.info(
                "Slot conflict for doctor %s at %s - %s (blocked by %s)",
                doctor_id,
                start.isoformat(),
                end.isoformat(),
                ", ".join(c.id for c in clashes),
            )
            raise ConflictError(doctor_id, start, end)
