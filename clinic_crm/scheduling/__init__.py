"""Scheduling and conflict engine for the clinic CRM."""

from clinic_crm.scheduling.booking import BookingCoordinator
from clinic_crm.scheduling.cache import AppointmentViewCache
from clinic_crm.scheduling.calendar import CalendarService
from clinic_crm.scheduling.clock import FixedClock, SystemClock
from clinic_crm.scheduling.conflicts import has_conflict, intervals_overlap
from clinic_crm.scheduling.directory import DirectoryService
from clinic_crm.scheduling.errors import (
    ConflictError,
    NotFoundError,
    SchedulingError,
    StoreError,
    ValidationError,
)
from clinic_crm.scheduling.holds import HoldManager
from clinic_crm.scheduling.milestones import MilestoneService, MilestoneSynchronizer
from clinic_crm.scheduling.models import (
    Appointment,
    AppointmentStatus,
    AppointmentType,
    AppointmentUpdate,
    BookingRequest,
    DoctorCreate,
    PatientCreate,
    PatientMilestones,
)
from clinic_crm.scheduling.service import SchedulingServices, build_store
from clinic_crm.scheduling.store import AppointmentStore, SQLClinicStore

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "AppointmentStore",
    "AppointmentType",
    "AppointmentUpdate",
    "AppointmentViewCache",
    "BookingCoordinator",
    "BookingRequest",
    "CalendarService",
    "ConflictError",
    "DirectoryService",
    "DoctorCreate",
    "FixedClock",
    "HoldManager",
    "MilestoneService",
    "MilestoneSynchronizer",
    "NotFoundError",
    "PatientCreate",
    "PatientMilestones",
    "SQLClinicStore",
    "SchedulingError",
    "SchedulingServices",
    "StoreError",
    "SystemClock",
    "ValidationError",
    "build_store",
    "has_conflict",
    "intervals_overlap",
]
