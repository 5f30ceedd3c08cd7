"""Derived calendar views (day / week / month grids)."""

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterator, Optional

from clinic_crm.config import Settings, get_settings
from clinic_crm.core.context import TenantContext
from clinic_crm.scheduling.clock import Clock, SystemClock, clinic_tzinfo
from clinic_crm.scheduling.holds import effective_status
from clinic_crm.scheduling.models import (
    Appointment,
    CalendarDay,
    CalendarEntry,
    CalendarMode,
    CalendarView,
)
from clinic_crm.scheduling.store import AppointmentStore

logger = logging.getLogger(__name__)


def calendar_range(mode: CalendarMode, anchor: date) -> tuple[date, date]:
    """First day and exclusive last day of the grid containing *anchor*.

    Weeks start on Sunday.
    """
    if mode == CalendarMode.DAY:
        return anchor, anchor + timedelta(days=1)
    if mode == CalendarMode.WEEK:
        start = anchor - timedelta(days=(anchor.weekday() + 1) % 7)
        return start, start + timedelta(days=7)
    start = anchor.replace(day=1)
    if start.month == 12:
        return start, start.replace(year=start.year + 1, month=1)
    return start, start.replace(month=start.month + 1)


def days_covered(
    appointment: Appointment, tz: tzinfo, first_day: date, last_day: date
) -> Iterator[date]:
    """Local days in ``[first_day, last_day)`` that *appointment* occupies.

    An appointment ending exactly at midnight does not occupy the next day.
    """
    day = max(appointment.start.astimezone(tz).date(), first_day)
    end_day = (appointment.end.astimezone(tz) - timedelta(microseconds=1)).date()
    end_day = min(end_day, last_day - timedelta(days=1))
    while day <= end_day:
        yield day
        day += timedelta(days=1)


class CalendarService:
    """Builds calendar grids from the appointment store.

    Range reads go through the store's view cache when it has one.
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

    async def view(
        self,
        ctx: TenantContext,
        mode: CalendarMode,
        anchor: date,
        doctor_id: Optional[str] = None,
    ) -> CalendarView:
        tz = clinic_tzinfo(self.settings.clinic_timezone)
        first_day, last_day = calendar_range(mode, anchor)
        start = datetime.combine(first_day, time.min, tzinfo=tz).astimezone(timezone.utc)
        end = datetime.combine(last_day, time.min, tzinfo=tz).astimezone(timezone.utc)

        appointments = await self._load(ctx.tenant_id, start, end, doctor_id)
        now = self.clock.now()

        days: dict[date, CalendarDay] = {}
        current = first_day
        while current < last_day:
            days[current] = CalendarDay(day=current)
            current += timedelta(days=1)

        for appt in appointments:
            entry = CalendarEntry(appointment=appt, effective_status=effective_status(appt, now))
            for day in days_covered(appt, tz, first_day, last_day):
                days[day].entries.append(entry)

        return CalendarView(
            mode=mode,
            start=start,
            end=end,
            doctor_id=doctor_id,
            days=list(days.values()),
        )

    async def day(self, ctx: TenantContext, anchor: date, doctor_id: Optional[str] = None) -> CalendarView:
        return await self.view(ctx, CalendarMode.DAY, anchor, doctor_id)

    async def week(self, ctx: TenantContext, anchor: date, doctor_id: Optional[str] = None) -> CalendarView:
        return await self.view(ctx, CalendarMode.WEEK, anchor, doctor_id)

    async def month(self, ctx: TenantContext, anchor: date, doctor_id: Optional[str] = None) -> CalendarView:
        return await self.view(ctx, CalendarMode.MONTH, anchor, doctor_id)

    async def _load(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        doctor_id: Optional[str],
    ) -> list[Appointment]:
        cache = self.store.view_cache
        if cache is None:
            return await self.store.list_in_range(tenant_id, start, end, doctor_id=doctor_id)

        key = (tenant_id, start, end, doctor_id)
        cached = cache.get(key)
        if cached is not None:
            return cached
        generation = cache.generation(tenant_id)
        appointments = await self.store.list_in_range(tenant_id, start, end, doctor_id=doctor_id)
        cache.put(key, appointments, generation)
        return appointments
