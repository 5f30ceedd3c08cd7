"""Hold lifecycle and status transitions."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from clinic_crm.config import Settings, get_settings
from clinic_crm.core.context import TenantContext
from clinic_crm.scheduling.clock import Clock, SystemClock
from clinic_crm.scheduling.conflicts import conflict_window, find_conflicts, is_hold_expired
from clinic_crm.scheduling.errors import ConflictError, NotFoundError, ValidationError
from clinic_crm.scheduling.models import Appointment, AppointmentStatus
from clinic_crm.scheduling.store import AppointmentStore, AppointmentTransaction

logger = logging.getLogger(__name__)

S = AppointmentStatus

STATUS_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    S.HOLD: frozenset({S.CONFIRMED, S.CANCELLED, S.NO_SHOW}),
    S.CONFIRMED: frozenset({S.COMPLETED, S.CANCELLED, S.NO_SHOW}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.NO_SHOW: frozenset(),
}


def hold_expiry_for(created_at: datetime, ttl_hours: int) -> datetime:
    return created_at + timedelta(hours=ttl_hours)


def effective_status(appointment: Appointment, now: datetime) -> AppointmentStatus:
    """Status as readers should interpret it; expired holds read as cancelled."""
    if is_hold_expired(appointment, now):
        return AppointmentStatus.CANCELLED
    return appointment.status


class HoldManager:
    """Moves appointments through their lifecycle.

    Holds are provisional bookings that block their slot until
    ``hold_expires_at``. Nothing sweeps them in the background; expiry is
    evaluated whenever a reader looks at the hold, and
    :meth:`release_expired` materializes it on demand.
    """

    def __init__(
        self,
        store: AppointmentStore,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    async def transition(
        self,
        ctx: TenantContext,
        appointment_id: str,
        target: AppointmentStatus,
    ) -> Appointment:
        """Move an appointment to *target*, enforcing :data:`STATUS_TRANSITIONS`.

        Confirming a hold that has already expired re-checks the slot, since
        another booking may have taken it in the meantime.
        """

        async def _apply(tx: AppointmentTransaction) -> Appointment:
            current = await tx.get(appointment_id)
            if current is None:
                raise NotFoundError(f"Appointment not found: {appointment_id}")
            if current.status == target:
                return current
            if target not in STATUS_TRANSITIONS[current.status]:
                raise ValidationError(
                    f"Cannot change appointment status from {current.status.value} to {target.value}"
                )

            now = self.clock.now()
            if (
                target == S.CONFIRMED
                and self.settings.hold_expiry_frees_slot
                and is_hold_expired(current, now)
            ):
                await self._recheck_slot(tx, current, now)

            updated = await tx.update(
                appointment_id,
                {"status": target, "hold_expires_at": None, "updated_at": now},
            )
            await tx.audit(
                ctx.user_id,
                "appointment.status",
                appointment_id,
                {"from": current.status.value, "to": target.value},
            )
            return updated

        updated = await self.store.run_atomic(ctx.tenant_id, _apply)
        logger.info(
            "Appointment %s/%s is now %s", ctx.tenant_id, appointment_id, updated.status.value
        )
        return updated

    async def confirm(self, ctx: TenantContext, appointment_id: str) -> Appointment:
        return await self.transition(ctx, appointment_id, S.CONFIRMED)

    async def cancel(self, ctx: TenantContext, appointment_id: str) -> Appointment:
        return await self.transition(ctx, appointment_id, S.CANCELLED)

    async def mark_no_show(self, ctx: TenantContext, appointment_id: str) -> Appointment:
        return await self.transition(ctx, appointment_id, S.NO_SHOW)

    async def complete(self, ctx: TenantContext, appointment_id: str) -> Appointment:
        return await self.transition(ctx, appointment_id, S.COMPLETED)

    async def release_expired(self, ctx: TenantContext) -> list[str]:
        """Mark every expired hold in the tenant as cancelled. Returns their ids."""

        async def _release(tx: AppointmentTransaction) -> list[str]:
            now = self.clock.now()
            released: list[str] = []
            for hold in await tx.list_expired_holds(now):
                await tx.update(
                    hold.id,
                    {"status": S.CANCELLED, "hold_expires_at": None, "updated_at": now},
                )
                await tx.audit(
                    ctx.user_id,
                    "appointment.hold_expired",
                    hold.id,
                    {"hold_expires_at": hold.hold_expires_at.isoformat()},
                )
                released.append(hold.id)
            return released

        released = await self.store.run_atomic(ctx.tenant_id, _release)
        if released:
            logger.info("Released %d expired holds for tenant %s", len(released), ctx.tenant_id)
        return released

    async def _recheck_slot(
        self, tx: AppointmentTransaction, hold: Appointment, now: datetime
    ) -> None:
        await tx.lock_doctor(hold.doctor_id)
        margin = timedelta(hours=self.settings.conflict_window_margin_hours)
        window_start, window_end = conflict_window(hold.start, hold.end, margin)
        existing = await tx.list_by_doctor_and_window(hold.doctor_id, window_start, window_end)
        if find_conflicts(hold.start, hold.end, existing, now=now, exclude_id=hold.id):
            raise ConflictError(
                hold.doctor_id,
                hold.start,
                hold.end,
                "Hold expired and its slot has since been booked",
            )
