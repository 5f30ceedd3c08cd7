"""Wiring of the scheduling components around one store."""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinic_crm.config import Settings, get_settings
from clinic_crm.scheduling.booking import BookingCoordinator
from clinic_crm.scheduling.cache import AppointmentViewCache
from clinic_crm.scheduling.calendar import CalendarService
from clinic_crm.scheduling.clock import Clock, SystemClock
from clinic_crm.scheduling.directory import DirectoryService
from clinic_crm.scheduling.holds import HoldManager
from clinic_crm.scheduling.milestones import MilestoneService, MilestoneSynchronizer
from clinic_crm.scheduling.store import AppointmentStore, SQLClinicStore


def build_store(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
) -> SQLClinicStore:
    """SQL store with a view cache sized from *settings*."""
    settings = settings or get_settings()
    cache = AppointmentViewCache(
        ttl_seconds=settings.calendar_cache_ttl_seconds,
        max_entries=settings.calendar_cache_max_entries,
    )
    return SQLClinicStore(session_factory, view_cache=cache)


@dataclass
class SchedulingServices:
    store: AppointmentStore
    coordinator: BookingCoordinator
    holds: HoldManager
    synchronizer: MilestoneSynchronizer
    milestones: MilestoneService
    directory: DirectoryService
    calendar: CalendarService

    @property
    def cache(self) -> Optional[AppointmentViewCache]:
        return self.store.view_cache

    @classmethod
    def create(
        cls,
        store: AppointmentStore,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ) -> "SchedulingServices":
        """Build every component around *store* with a shared clock and settings."""
        clock = clock or SystemClock()
        settings = settings or get_settings()
        synchronizer = MilestoneSynchronizer(store, clock=clock, settings=settings)
        return cls(
            store=store,
            coordinator=BookingCoordinator(store, clock=clock, settings=settings),
            holds=HoldManager(store, clock=clock, settings=settings),
            synchronizer=synchronizer,
            milestones=MilestoneService(store, synchronizer, settings=settings),
            directory=DirectoryService(store, synchronizer, clock=clock, settings=settings),
            calendar=CalendarService(store, clock=clock, settings=settings),
        )
