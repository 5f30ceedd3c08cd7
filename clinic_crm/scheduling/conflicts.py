"""Conflict detection for doctor bookings.

Intervals are half-open: ``[start, end)``. Two bookings that merely touch
(one ends exactly when the other starts) do not conflict.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional

from clinic_crm.scheduling.models import (
    NON_BLOCKING_STATUSES,
    Appointment,
    AppointmentStatus,
)


def intervals_overlap(s1: datetime, e1: datetime, s2: datetime, e2: datetime) -> bool:
    return s1 < e2 and s2 < e1


def is_hold_expired(appointment: Appointment, now: datetime) -> bool:
    return (
        appointment.status == AppointmentStatus.HOLD
        and appointment.hold_expires_at is not None
        and appointment.hold_expires_at < now
    )


def blocks_slot(appointment: Appointment, now: Optional[datetime] = None) -> bool:
    """Whether *appointment* occupies its doctor's time.

    Cancelled and no-show bookings never block. When *now* is given, holds
    past their expiry are treated as released.
    """
    if appointment.status in NON_BLOCKING_STATUSES:
        return False
    if now is not None and is_hold_expired(appointment, now):
        return False
    return True


def find_conflicts(
    start: datetime,
    end: datetime,
    existing: Iterable[Appointment],
    now: Optional[datetime] = None,
    exclude_id: Optional[str] = None,
) -> list[Appointment]:
    """Return the bookings in *existing* that overlap ``[start, end)``.

    *existing* must already be restricted to one doctor.
    """
    return [
        appt
        for appt in existing
        if appt.id != exclude_id
        and blocks_slot(appt, now)
        and intervals_overlap(start, end, appt.start, appt.end)
    ]


def has_conflict(
    start: datetime,
    end: datetime,
    existing: Iterable[Appointment],
    now: Optional[datetime] = None,
    exclude_id: Optional[str] = None,
) -> bool:
    return bool(find_conflicts(start, end, existing, now=now, exclude_id=exclude_id))


def conflict_window(start: datetime, end: datetime, margin: timedelta) -> tuple[datetime, datetime]:
    """Range to query for bookings that could collide with ``[start, end)``.

    The window always covers the candidate's full duration, so multi-day
    bookings are checked against everything they span.
    """
    return start - margin, end + margin
