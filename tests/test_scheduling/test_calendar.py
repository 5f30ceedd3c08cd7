"""Tests for calendar grids and the view cache."""

from datetime import date, timedelta

import pytest

from clinic_crm.scheduling.cache import AppointmentViewCache
from clinic_crm.scheduling.calendar import calendar_range
from clinic_crm.scheduling.models import (
    AppointmentStatus,
    BookingRequest,
    CalendarMode,
    PatientMilestones,
)
from clinic_crm.scheduling.service import SchedulingServices
from clinic_crm.scheduling.store import SQLClinicStore
from tests.conftest import NOW, TENANT, at


def _booking(start, doctor_id="doc-d", hours=1, **kwargs) -> BookingRequest:
    return BookingRequest(
        patient_id="pat-1", doctor_id=doctor_id, start=start, end=start + timedelta(hours=hours), **kwargs
    )


class TestCalendarRange:
    @pytest.mark.parametrize(
        "anchor", [date(2024, 5, 19), date(2024, 5, 22), date(2024, 5, 25)]
    )
    def test_week_starts_on_sunday(self, anchor):
        assert calendar_range(CalendarMode.WEEK, anchor) == (date(2024, 5, 19), date(2024, 5, 26))

    def test_day(self):
        assert calendar_range(CalendarMode.DAY, date(2024, 5, 22)) == (
            date(2024, 5, 22),
            date(2024, 5, 23),
        )

    def test_month(self):
        assert calendar_range(CalendarMode.MONTH, date(2024, 2, 14)) == (
            date(2024, 2, 1),
            date(2024, 3, 1),
        )

    def test_december_rolls_over(self):
        assert calendar_range(CalendarMode.MONTH, date(2024, 12, 31)) == (
            date(2024, 12, 1),
            date(2025, 1, 1),
        )


class TestCalendarView:
    async def test_week_buckets_by_day(self, services, ctx):
        await services.coordinator.book(ctx, _booking(at(9, day=21)))
        await services.coordinator.book(ctx, _booking(at(14, day=22), doctor_id="doc-e"))

        view = await services.calendar.week(ctx, date(2024, 5, 20))

        assert [d.day for d in view.days] == [date(2024, 5, 19) + timedelta(days=i) for i in range(7)]
        counts = {d.day: len(d.entries) for d in view.days}
        assert counts[date(2024, 5, 21)] == 1
        assert counts[date(2024, 5, 22)] == 1
        assert sum(counts.values()) == 2

    async def test_doctor_filter(self, services, ctx):
        await services.coordinator.book(ctx, _booking(at(9)))
        await services.coordinator.book(ctx, _booking(at(9), doctor_id="doc-e"))

        view = await services.calendar.day(ctx, date(2024, 5, 21), doctor_id="doc-e")

        entries = view.days[0].entries
        assert [e.appointment.doctor_id for e in entries] == ["doc-e"]

    async def test_tenant_scoped(self, services, ctx, other_ctx):
        await services.coordinator.book(ctx, _booking(at(9)))
        view = await services.calendar.day(other_ctx, date(2024, 5, 21))
        assert view.days[0].entries == []

    async def test_entries_are_start_ordered(self, services, ctx):
        for hour in (15, 9, 12):
            await services.coordinator.book(ctx, _booking(at(hour)))

        view = await services.calendar.day(ctx, date(2024, 5, 21))
        assert [e.appointment.start.hour for e in view.days[0].entries] == [9, 12, 15]

    async def test_appointment_spanning_grid_start_shows_on_first_day(self, services, ctx):
        await services.coordinator.book(ctx, _booking(at(22, day=18), hours=4))

        view = await services.calendar.week(ctx, date(2024, 5, 20))
        assert len(view.days[0].entries) == 1

    async def test_expired_hold_reads_as_cancelled(self, services, ctx, clock):
        await services.coordinator.book(ctx, _booking(at(9), hold_expires_at=NOW + timedelta(hours=1)))
        clock.advance(hours=2)

        view = await services.calendar.day(ctx, date(2024, 5, 21))
        entry = view.days[0].entries[0]
        assert entry.appointment.status == AppointmentStatus.HOLD
        assert entry.effective_status == AppointmentStatus.CANCELLED

    async def test_month_view(self, services, ctx):
        await services.coordinator.book(ctx, _booking(at(9, day=31)))
        view = await services.calendar.month(ctx, date(2024, 5, 2))

        assert len(view.days) == 31
        assert len(view.days[-1].entries) == 1


class TestMultiDayEntries:
    async def test_listed_on_every_day_it_covers(self, services, ctx):
        appt = await services.coordinator.book(ctx, _booking(at(20, day=21), hours=30))

        view = await services.calendar.week(ctx, date(2024, 5, 20))

        days = [d.day for d in view.days if any(e.appointment.id == appt.id for e in d.entries)]
        assert days == [date(2024, 5, 21), date(2024, 5, 22), date(2024, 5, 23)]

    async def test_ending_at_midnight_stays_on_its_day(self, services, ctx):
        await services.coordinator.book(ctx, _booking(at(22, day=21), hours=2))

        view = await services.calendar.week(ctx, date(2024, 5, 20))

        counts = {d.day: len(d.entries) for d in view.days}
        assert counts[date(2024, 5, 21)] == 1
        assert counts[date(2024, 5, 22)] == 0


class FakeTimer:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _key(tenant=TENANT):
    return (tenant, at(0), at(0, day=22), None)


class TestAppointmentViewCache:
    def test_entries_expire_after_ttl(self):
        timer = FakeTimer()
        cache = AppointmentViewCache(ttl_seconds=5, timer=timer)
        cache.put(_key(), [], cache.generation(TENANT))

        timer.now += 4.9
        assert cache.get(_key()) == []
        timer.now += 0.2
        assert cache.get(_key()) is None
        assert len(cache) == 0

    def test_least_recently_used_entry_is_evicted(self):
        cache = AppointmentViewCache(max_entries=2)
        keys = [(TENANT, at(h), at(h + 1), None) for h in (8, 9, 10)]
        cache.put(keys[0], [], 0)
        cache.put(keys[1], [], 0)
        cache.get(keys[0])
        cache.put(keys[2], [], 0)

        assert len(cache) == 2
        assert cache.get(keys[1]) is None
        assert cache.get(keys[0]) == []

    def test_read_started_before_a_write_is_not_cached(self):
        cache = AppointmentViewCache()
        generation = cache.generation(TENANT)
        cache.invalidate(TENANT)

        cache.put(_key(), [], generation)
        assert cache.get(_key()) is None

    def test_zero_ttl_disables(self):
        cache = AppointmentViewCache(ttl_seconds=0)
        cache.put(_key(), [], 0)
        assert len(cache) == 0


class TestViewCache:
    async def test_writes_invalidate_cached_ranges(self, services, ctx):
        first = await services.calendar.day(ctx, date(2024, 5, 21))
        assert first.days[0].entries == []
        assert len(services.cache) == 1

        await services.coordinator.book(ctx, _booking(at(9)))
        assert len(services.cache) == 0

        second = await services.calendar.day(ctx, date(2024, 5, 21))
        assert len(second.days[0].entries) == 1

    async def test_invalidation_is_per_tenant(self, services, ctx, other_ctx):
        await services.calendar.day(ctx, date(2024, 5, 21))
        await services.calendar.day(other_ctx, date(2024, 5, 21))
        assert len(services.cache) == 2

        await services.coordinator.book(other_ctx, _booking(at(9)))
        assert len(services.cache) == 1

    async def test_milestone_sync_invalidates(self, services, ctx):
        await services.calendar.day(ctx, date(2024, 6, 3))
        await services.milestones.update_milestones(
            ctx, "pat-1", PatientMilestones(consult_date=date(2024, 6, 3))
        )

        view = await services.calendar.day(ctx, date(2024, 6, 3))
        assert [e.appointment.id for e in view.days[0].entries] == ["pat-1-consult"]

    async def test_booking_from_another_service_set_is_visible(self, services, store, clock, settings, ctx):
        other = SchedulingServices.create(store, clock=clock, settings=settings)
        assert (await services.calendar.day(ctx, date(2024, 5, 21))).days[0].entries == []

        await other.coordinator.book(ctx, _booking(at(9)))

        view = await services.calendar.day(ctx, date(2024, 5, 21))
        assert len(view.days[0].entries) == 1

    async def test_store_delete_is_visible(self, services, store, ctx):
        appt = await services.coordinator.book(ctx, _booking(at(9)))
        assert len((await services.calendar.day(ctx, date(2024, 5, 21))).days[0].entries) == 1

        assert await store.delete(ctx.tenant_id, appt.id)

        view = await services.calendar.day(ctx, date(2024, 5, 21))
        assert view.days[0].entries == []

    async def test_store_upsert_is_visible(self, services, store, ctx):
        appt = await services.coordinator.book(ctx, _booking(at(9)))
        await services.calendar.day(ctx, date(2024, 5, 21))

        await store.upsert(ctx.tenant_id, appt.id, {"notes": "moved room"})

        view = await services.calendar.day(ctx, date(2024, 5, 21))
        assert view.days[0].entries[0].appointment.notes == "moved room"

    async def test_reads_do_not_invalidate(self, services, store, ctx):
        await services.calendar.day(ctx, date(2024, 5, 21))
        await store.list_in_range(ctx.tenant_id, at(0), at(23))
        assert len(services.cache) == 1

    async def test_other_process_writes_show_up_after_ttl(
        self, session_factory, seed_data, clock, settings, ctx
    ):
        timer = FakeTimer()
        reader = SchedulingServices.create(
            SQLClinicStore(session_factory, view_cache=AppointmentViewCache(ttl_seconds=5, timer=timer)),
            clock=clock,
            settings=settings,
        )
        writer = SchedulingServices.create(SQLClinicStore(session_factory), clock=clock, settings=settings)

        await reader.calendar.day(ctx, date(2024, 5, 21))
        await writer.coordinator.book(ctx, _booking(at(9)))

        timer.now += 5
        view = await reader.calendar.day(ctx, date(2024, 5, 21))
        assert len(view.days[0].entries) == 1
