"""Pydantic models for the scheduling core."""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from clinic_crm.scheduling.clock import ensure_utc


class AppointmentType(str, Enum):
    """Kinds of clinic appointments."""

    CONSULT = "CONSULT"
    SURGERY = "SURGERY"
    FOLLOWUP = "FOLLOWUP"
    PROPOSAL = "PROPOSAL"


class AppointmentStatus(str, Enum):
    """Appointment lifecycle statuses."""

    HOLD = "HOLD"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


# Statuses that never occupy a slot.
NON_BLOCKING_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW})

DEFAULT_DURATION_MINUTES: dict[AppointmentType, int] = {
    AppointmentType.CONSULT: 60,
    AppointmentType.SURGERY: 240,
    AppointmentType.FOLLOWUP: 30,
    AppointmentType.PROPOSAL: 30,
}


class AppointmentSource(str, Enum):
    PATIENT_MILESTONE = "PATIENT_MILESTONE"


class MilestoneKey(str, Enum):
    """The four per-patient treatment milestones."""

    CONSULT_DATE = "consultDate"
    PROPOSAL_SENT_DATE = "proposalSentDate"
    SURGERY_DATE = "surgeryDate"
    FOLLOW_UP_DATE = "followUpDate"


def _utc_or_none(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


class Appointment(BaseModel):
    """A scheduled doctor booking as seen by the core."""

    id: str
    tenant_id: str
    patient_id: str
    doctor_id: str
    type: AppointmentType
    status: AppointmentStatus
    start: datetime
    end: datetime
    patient_name: Optional[str] = None
    room_id: Optional[str] = None
    notes: Optional[str] = None
    hold_expires_at: Optional[datetime] = None
    team_ids: list[str] = Field(default_factory=list)
    auto_generated: bool = False
    source: Optional[AppointmentSource] = None
    milestone_type: Optional[MilestoneKey] = None
    milestone_label: Optional[str] = None
    deposit_status: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("start", "end", "created_at", "updated_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("hold_expires_at")
    @classmethod
    def _optional_to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _utc_or_none(value)

    @model_validator(mode="after")
    def _check_interval(self) -> "Appointment":
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


class BookingRequest(BaseModel):
    """Proposed appointment fields submitted by a scheduler.

    When ``end`` is omitted it is derived from ``duration_minutes``, or from
    the default duration of ``type``.
    """

    patient_id: str
    doctor_id: str
    type: AppointmentType = AppointmentType.CONSULT
    status: AppointmentStatus = AppointmentStatus.HOLD
    start: datetime
    end: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    patient_name: Optional[str] = None
    room_id: Optional[str] = None
    notes: Optional[str] = None
    team_ids: list[str] = Field(default_factory=list)
    hold_expires_at: Optional[datetime] = None

    @field_validator("start")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("end", "hold_expires_at")
    @classmethod
    def _optional_to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _utc_or_none(value)


class AppointmentUpdate(BaseModel):
    """Field edits to an existing appointment. Unset fields are left alone."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    doctor_id: Optional[str] = None
    type: Optional[AppointmentType] = None
    patient_name: Optional[str] = None
    room_id: Optional[str] = None
    notes: Optional[str] = None
    team_ids: Optional[list[str]] = None

    @field_validator("start", "end")
    @classmethod
    def _optional_to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _utc_or_none(value)

    def changes(self) -> dict:
        """Fields the caller set. Explicit nulls only clear optional fields."""
        changes = {}
        for name, value in self.model_dump(exclude_unset=True).items():
            if value is None and name not in _CLEARABLE_FIELDS:
                continue
            changes[name] = value
        return changes


_CLEARABLE_FIELDS = frozenset({"patient_name", "room_id", "notes"})


class StatusChange(BaseModel):
    status: AppointmentStatus


class PatientMilestones(BaseModel):
    """Key treatment dates; any of them may be absent."""

    consult_date: Optional[date] = None
    proposal_sent_date: Optional[date] = None
    surgery_date: Optional[date] = None
    follow_up_date: Optional[date] = None

    def get(self, key: MilestoneKey) -> Optional[date]:
        return getattr(self, _MILESTONE_FIELDS[key])

    def has_any(self) -> bool:
        return any(self.get(key) is not None for key in MilestoneKey)


_MILESTONE_FIELDS: dict[MilestoneKey, str] = {
    MilestoneKey.CONSULT_DATE: "consult_date",
    MilestoneKey.PROPOSAL_SENT_DATE: "proposal_sent_date",
    MilestoneKey.SURGERY_DATE: "surgery_date",
    MilestoneKey.FOLLOW_UP_DATE: "follow_up_date",
}


class PatientRecord(BaseModel):
    """A patient as the core reads it."""

    id: str
    tenant_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: Optional[str] = None
    primary_doctor_id: Optional[str] = None
    milestones: PatientMilestones = Field(default_factory=PatientMilestones)
    milestones_autofilled: bool = False
    created_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def _optional_to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _utc_or_none(value)

    @property
    def display_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.id


class PatientCreate(BaseModel):
    """New patient fields. ``primary_doctor_id`` is assigned when omitted."""

    first_name: str
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: str = "new-lead"
    primary_doctor_id: Optional[str] = None


class PatientUpdate(BaseModel):
    """Patient profile edits. Milestones are edited through their own workflow."""

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: Optional[str] = None
    primary_doctor_id: Optional[str] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class DoctorRecord(BaseModel):
    """A bookable resource."""

    id: str
    tenant_id: str
    user_id: str
    display_name: Optional[str] = None
    license_no: Optional[str] = None
    specialties: list[str] = Field(default_factory=list)
    active: bool = True
    capacity: Optional[int] = None


class DoctorCreate(BaseModel):
    """New doctor profile; ``id`` defaults to ``doctor-<user_id>``."""

    user_id: str
    id: Optional[str] = None
    display_name: Optional[str] = None
    license_no: Optional[str] = None
    specialties: list[str] = Field(default_factory=list)
    capacity: Optional[int] = Field(default=None, ge=0)
    active: bool = True


class DoctorUpdate(BaseModel):
    display_name: Optional[str] = None
    license_no: Optional[str] = None
    specialties: Optional[list[str]] = None
    capacity: Optional[int] = Field(default=None, ge=0)
    active: Optional[bool] = None

    def changes(self) -> dict:
        return {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}


class AuditEntry(BaseModel):
    """One audit trail record for a resource."""

    action: str
    user_id: Optional[str] = None
    details: Optional[dict] = None
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class SlotSyncAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    ABSENT = "absent"
    FAILED = "failed"


class SlotSyncOutcome(BaseModel):
    milestone: MilestoneKey
    appointment_id: str
    action: SlotSyncAction
    error: Optional[str] = None


class MilestoneSyncResult(BaseModel):
    """Per-slot summary of one synchronization pass."""

    patient_id: str
    outcomes: list[SlotSyncOutcome] = []

    @property
    def failed(self) -> list[SlotSyncOutcome]:
        return [o for o in self.outcomes if o.action == SlotSyncAction.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed


class CalendarMode(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class CalendarEntry(BaseModel):
    appointment: Appointment
    effective_status: AppointmentStatus


class CalendarDay(BaseModel):
    day: date
    entries: list[CalendarEntry] = []


class CalendarView(BaseModel):
    """A derived calendar grid over ``[start, end)``."""

    mode: CalendarMode
    start: datetime
    end: datetime
    doctor_id: Optional[str] = None
    days: list[CalendarDay] = []
