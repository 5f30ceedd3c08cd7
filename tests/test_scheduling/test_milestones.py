"""Tests for milestone-derived appointments and placeholder milestones."""

from datetime import date, datetime, timedelta, timezone

import pytest

from clinic_crm.scheduling.errors import NotFoundError, StoreError
from clinic_crm.scheduling.milestones import (
    MILESTONE_SLOTS,
    MilestoneService,
    MilestoneSynchronizer,
    generate_placeholder_milestones,
    seeded_randint,
    seeded_random,
)
from clinic_crm.scheduling.models import (
    AppointmentSource,
    AppointmentStatus,
    AppointmentType,
    AppointmentUpdate,
    BookingRequest,
    MilestoneKey,
    PatientMilestones,
    SlotSyncAction,
)
from clinic_crm.scheduling.store import AppointmentStore


class FailOnCallStore(AppointmentStore):
    """Raises StoreError on the listed (1-based) transaction numbers."""

    def __init__(self, inner: AppointmentStore, fail_on: set[int]):
        self.inner = inner
        self.fail_on = fail_on
        self.calls = 0

    async def run_atomic(self, tenant_id, fn):
        self.calls += 1
        if self.calls in self.fail_on:
            raise StoreError("simulated write failure")
        return await self.inner.run_atomic(tenant_id, fn)


def _actions(result) -> dict[MilestoneKey, SlotSyncAction]:
    return {o.milestone: o.action for o in result.outcomes}


def utc(year, month, day, hour, minute=0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


class TestSync:
    async def test_surgery_date_creates_derived_appointment(self, services, ctx, store):
        result = await services.milestones.update_milestones(
            ctx, "pat-1", PatientMilestones(surgery_date=date(2024, 7, 10))
        )

        assert result.ok
        assert _actions(result) == {
            MilestoneKey.CONSULT_DATE: SlotSyncAction.ABSENT,
            MilestoneKey.PROPOSAL_SENT_DATE: SlotSyncAction.ABSENT,
            MilestoneKey.SURGERY_DATE: SlotSyncAction.CREATED,
            MilestoneKey.FOLLOW_UP_DATE: SlotSyncAction.ABSENT,
        }

        appt = await store.get(ctx.tenant_id, "pat-1-surgery")
        assert appt.start == utc(2024, 7, 10, 11)
        assert appt.end == utc(2024, 7, 10, 15)
        assert appt.type == AppointmentType.SURGERY
        assert appt.status == AppointmentStatus.CONFIRMED
        assert appt.doctor_id == "doc-d"
        assert appt.patient_name == "Ana Lopez"
        assert appt.auto_generated is True
        assert appt.source == AppointmentSource.PATIENT_MILESTONE
        assert appt.milestone_type == MilestoneKey.SURGERY_DATE
        assert appt.milestone_label == "Surgery"
        assert appt.deposit_status == "PENDING"
        assert appt.hold_expires_at is None

    async def test_slot_placements(self, services, ctx, store):
        day = date(2024, 7, 1)
        await services.milestones.update_milestones(
            ctx,
            "pat-1",
            PatientMilestones(
                consult_date=day, proposal_sent_date=day, surgery_date=day, follow_up_date=day
            ),
        )

        listed = await store.list_by_patient(ctx.tenant_id, "pat-1")
        placements = {a.id: (a.start.hour, a.duration_minutes) for a in listed}
        assert placements == {
            "pat-1-consult": (9, 60),
            "pat-1-proposal": (10, 30),
            "pat-1-surgery": (11, 240),
            "pat-1-followup": (15, 45),
        }
        assert (await store.get(ctx.tenant_id, "pat-1-consult")).deposit_status is None

    async def test_past_milestone_is_completed(self, services, ctx, store):
        await services.milestones.update_milestones(
            ctx, "pat-1", PatientMilestones(consult_date=date(2024, 5, 1))
        )
        appt = await store.get(ctx.tenant_id, "pat-1-consult")
        assert appt.status == AppointmentStatus.COMPLETED

    async def test_milestone_today_in_progress_is_confirmed(self, services, ctx, store):
        # NOW is 12:00; the surgery slot runs 11:00-15:00
        await services.milestones.update_milestones(
            ctx, "pat-1", PatientMilestones(surgery_date=date(2024, 5, 20))
        )
        appt = await store.get(ctx.tenant_id, "pat-1-surgery")
        assert appt.status == AppointmentStatus.CONFIRMED

    async def test_sync_is_idempotent(self, services, ctx, store):
        milestones = PatientMilestones(consult_date=date(2024, 6, 3), surgery_date=date(2024, 7, 10))
        await services.milestones.update_milestones(ctx, "pat-1", milestones)
        before = await store.list_by_patient(ctx.tenant_id, "pat-1")

        again = await services.milestones.resync(ctx, "pat-1")

        assert _actions(again)[MilestoneKey.CONSULT_DATE] == SlotSyncAction.UNCHANGED
        assert _actions(again)[MilestoneKey.SURGERY_DATE] == SlotSyncAction.UNCHANGED
        assert await store.list_by_patient(ctx.tenant_id, "pat-1") == before

    async def test_clearing_one_milestone_deletes_only_that_appointment(self, services, ctx, store):
        await services.milestones.update_milestones(
            ctx,
            "pat-1",
            PatientMilestones(consult_date=date(2024, 6, 3), surgery_date=date(2024, 7, 10)),
        )

        result = await services.milestones.update_milestones(
            ctx, "pat-1", PatientMilestones(surgery_date=date(2024, 7, 10))
        )

        assert _actions(result)[MilestoneKey.CONSULT_DATE] == SlotSyncAction.DELETED
        assert _actions(result)[MilestoneKey.SURGERY_DATE] == SlotSyncAction.UNCHANGED
        remaining = await store.list_by_patient(ctx.tenant_id, "pat-1")
        assert [a.id for a in remaining] == ["pat-1-surgery"]

    async def test_moving_a_date_updates_in_place(self, services, ctx, store):
        await services.milestones.update_milestones(
            ctx, "pat-1", PatientMilestones(follow_up_date=date(2024, 8, 1))
        )
        result = await services.milestones.update_milestones(
            ctx, "pat-1", PatientMilestones(follow_up_date=date(2024, 8, 15))
        )

        assert _actions(result)[MilestoneKey.FOLLOW_UP_DATE] == SlotSyncAction.UPDATED
        appt = await store.get(ctx.tenant_id, "pat-1-followup")
        assert appt.start == utc(2024, 8, 15, 15)

    async def test_manual_edit_is_overwritten(self, services, ctx, store):
        await services.milestones.update_milestones(
            ctx, "pat-1", PatientMilestones(surgery_date=date(2024, 7, 10))
        )
        await services.coordinator.update(ctx, "pat-1-surgery", AppointmentUpdate(notes="moved by hand"))

        result = await services.milestones.resync(ctx, "pat-1")

        assert _actions(result)[MilestoneKey.SURGERY_DATE] == SlotSyncAction.UPDATED
        assert (await store.get(ctx.tenant_id, "pat-1-surgery")).notes == "Surgery"

    async def test_derived_appointments_skip_conflict_detection(self, services, ctx, store):
        await services.coordinator.book(
            ctx,
            BookingRequest(
                patient_id="pat-2",
                doctor_id="doc-d",
                start=utc(2024, 7, 10, 12),
                end=utc(2024, 7, 10, 13),
                status=AppointmentStatus.CONFIRMED,
            ),
        )

        result = await services.milestones.update_milestones(
            ctx, "pat-1", PatientMilestones(surgery_date=date(2024, 7, 10))
        )
        assert _actions(result)[MilestoneKey.SURGERY_DATE] == SlotSyncAction.CREATED

    async def test_patient_without_primary_doctor_uses_acting_user(self, services, ctx, store):
        await services.milestones.update_milestones(
            ctx, "pat-2", PatientMilestones(consult_date=date(2024, 6, 3))
        )
        appt = await store.get(ctx.tenant_id, "pat-2-consult")
        assert appt.doctor_id == ctx.user_id

    async def test_unknown_patient(self, services, ctx):
        with pytest.raises(NotFoundError):
            await services.milestones.update_milestones(
                ctx, "pat-missing", PatientMilestones(consult_date=date(2024, 6, 3))
            )
        with pytest.raises(NotFoundError):
            await services.milestones.resync(ctx, "pat-missing")

    async def test_failed_slot_does_not_stop_others(self, store, clock, settings, ctx):
        # call 1 writes the patient; calls 2-5 are the four slots, surgery is the third
        flaky = FailOnCallStore(store, fail_on={4})
        synchronizer = MilestoneSynchronizer(flaky, clock=clock, settings=settings)
        service = MilestoneService(flaky, synchronizer, settings=settings)
        day = date(2024, 7, 1)

        result = await service.update_milestones(
            ctx,
            "pat-1",
            PatientMilestones(
                consult_date=day, proposal_sent_date=day, surgery_date=day, follow_up_date=day
            ),
        )

        assert not result.ok
        assert [o.milestone for o in result.failed] == [MilestoneKey.SURGERY_DATE]
        assert "simulated" in result.failed[0].error
        stored = {a.id for a in await store.list_by_patient(ctx.tenant_id, "pat-1")}
        assert stored == {"pat-1-consult", "pat-1-proposal", "pat-1-followup"}

        # a later pass repairs the missing slot
        retry = await service.resync(ctx, "pat-1")
        assert _actions(retry)[MilestoneKey.SURGERY_DATE] == SlotSyncAction.CREATED

    async def test_clinic_timezone_places_slots_in_local_time(self, store, clock, settings, ctx):
        local = settings.model_copy(update={"clinic_timezone": "America/New_York"})
        synchronizer = MilestoneSynchronizer(store, clock=clock, settings=local)

        start, end = synchronizer.slot_interval(date(2024, 7, 10), MILESTONE_SLOTS[2])

        assert start == utc(2024, 7, 10, 15)  # 11:00 EDT
        assert end - start == timedelta(hours=4)


class TestPlaceholders:
    def test_seeded_random_is_deterministic_and_bounded(self):
        values = [seeded_random(f"patient-{i}-base") for i in range(50)]
        assert values == [seeded_random(f"patient-{i}-base") for i in range(50)]
        assert all(0 <= v < 1 for v in values)
        assert len(set(values)) > 40

    def test_seeded_randint_bounds(self):
        for i in range(100):
            assert 0 <= seeded_randint(f"seed-{i}", 0, 5) <= 5

    def test_generated_dates_are_ordered(self):
        base = date(2025, 8, 1)
        for patient_id in ("pat-1", "pat-2", "p-xyz", "x"):
            m = generate_placeholder_milestones(patient_id, base)
            assert base <= m.consult_date <= base + timedelta(days=60)
            assert 5 <= (m.proposal_sent_date - m.consult_date).days <= 10
            assert 25 <= (m.surgery_date - m.consult_date).days <= 40
            assert 55 <= (m.follow_up_date - m.consult_date).days <= 70

    def test_same_patient_same_dates(self):
        base = date(2025, 8, 1)
        assert generate_placeholder_milestones("pat-1", base) == generate_placeholder_milestones(
            "pat-1", base
        )

    async def test_fills_patient_without_milestones_once(self, services, ctx, store):
        result = await services.milestones.ensure_placeholder_milestones(ctx, "pat-2")

        assert result is not None
        assert all(o.action == SlotSyncAction.CREATED for o in result.outcomes)
        patient = await store.get_patient(ctx.tenant_id, "pat-2")
        assert patient.milestones_autofilled
        assert patient.milestones == generate_placeholder_milestones("pat-2", date(2025, 8, 1))

        # cleared later by a user: never regenerated
        await services.milestones.update_milestones(ctx, "pat-2", PatientMilestones())
        assert await services.milestones.ensure_placeholder_milestones(ctx, "pat-2") is None
        assert await store.list_by_patient(ctx.tenant_id, "pat-2") == []

    async def test_existing_milestones_are_not_overwritten(self, services, ctx, store):
        await services.milestones.update_milestones(
            ctx, "pat-1", PatientMilestones(consult_date=date(2024, 6, 3))
        )

        assert await services.milestones.ensure_placeholder_milestones(ctx, "pat-1") is None
        patient = await store.get_patient(ctx.tenant_id, "pat-1")
        assert patient.milestones == PatientMilestones(consult_date=date(2024, 6, 3))

    async def test_disabled(self, store, clock, settings, ctx):
        off = settings.model_copy(update={"placeholder_milestones_enabled": False})
        synchronizer = MilestoneSynchronizer(store, clock=clock, settings=off)
        service = MilestoneService(store, synchronizer, settings=off)

        assert await service.ensure_placeholder_milestones(ctx, "pat-2") is None

    async def test_unknown_patient(self, services, ctx):
        with pytest.raises(NotFoundError):
            await services.milestones.ensure_placeholder_milestones(ctx, "pat-missing")
