"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from clinic_crm.config import Settings
from clinic_crm.core.context import TenantContext, UserRole
from clinic_crm.core.database import create_engine_for_url, create_session_factory, init_db
from clinic_crm.core.models import Doctor, Patient, Tenant
from clinic_crm.scheduling.clock import FixedClock
from clinic_crm.scheduling.models import (
    Appointment,
    AppointmentStatus,
    AppointmentType,
)
from clinic_crm.scheduling.service import SchedulingServices
from clinic_crm.scheduling.store import SQLClinicStore

# Monday 2024-05-20, noon UTC
NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)

TENANT = "clinic-a"
OTHER_TENANT = "clinic-b"


def at(hour: int, minute: int = 0, day: int = 21, month: int = 5) -> datetime:
    """A UTC datetime in 2024 (defaults to the day after NOW)."""
    return datetime(2024, month, day, hour, minute, tzinfo=timezone.utc)


def make_appointment(
    id: str = "appt-1",
    start: datetime | None = None,
    end: datetime | None = None,
    status: AppointmentStatus = AppointmentStatus.CONFIRMED,
    doctor_id: str = "doc-d",
    **overrides,
) -> Appointment:
    """An in-memory appointment for pure conflict tests."""
    start = start or at(9)
    end = end or start + timedelta(hours=1)
    return Appointment(
        id=id,
        tenant_id=overrides.pop("tenant_id", TENANT),
        patient_id=overrides.pop("patient_id", "pat-1"),
        doctor_id=doctor_id,
        type=overrides.pop("type", AppointmentType.CONSULT),
        status=status,
        start=start,
        end=end,
        created_at=overrides.pop("created_at", NOW),
        updated_at=overrides.pop("updated_at", NOW),
        **overrides,
    )


# ---------------------------------------------------------------------------
# Settings, clock, identity
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    """Settings isolated from any local .env file, with instant retries."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        clinic_timezone="UTC",
        store_retry_backoff_seconds=0,
        store_retry_max_backoff_seconds=0,
    )


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def ctx():
    return TenantContext(tenant_id=TENANT, user_id="user-coordinator", role=UserRole.COORDINATOR)


@pytest.fixture
def other_ctx():
    return TenantContext(tenant_id=OTHER_TENANT, user_id="user-b", role=UserRole.OWNER)


# ---------------------------------------------------------------------------
# Database: file-backed SQLite so concurrent transactions really contend
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'clinic.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def seed_data(session_factory):
    """Two tenants. clinic-a has doctors doc-d, doc-e and inactive doc-x."""
    async with session_factory() as session:
        async with session.begin():
            session.add_all([
                Tenant(id=TENANT, name="Clinic A"),
                Tenant(id=OTHER_TENANT, name="Clinic B"),
            ])
            session.add_all([
                Doctor(tenant_id=TENANT, id="doc-d", user_id="user-d", display_name="Dr. Diaz"),
                Doctor(tenant_id=TENANT, id="doc-e", user_id="user-e", display_name="Dr. Evans"),
                Doctor(tenant_id=TENANT, id="doc-x", user_id="user-x", display_name="Dr. Gone", active=False),
                Doctor(tenant_id=OTHER_TENANT, id="doc-d", user_id="user-bd", display_name="Dr. Other"),
            ])
            session.add_all([
                Patient(
                    tenant_id=TENANT,
                    id="pat-1",
                    first_name="Ana",
                    last_name="Lopez",
                    primary_doctor_id="doc-d",
                ),
                Patient(tenant_id=TENANT, id="pat-2", first_name="Ben", last_name="Kim"),
                Patient(tenant_id=OTHER_TENANT, id="pat-1", first_name="Cora", last_name="West"),
            ])
    return {"tenants": [TENANT, OTHER_TENANT], "doctors": ["doc-d", "doc-e", "doc-x"]}


@pytest.fixture
def store(session_factory, seed_data):
    return SQLClinicStore(session_factory)


@pytest.fixture
def services(store, clock, settings):
    return SchedulingServices.create(store, clock=clock, settings=settings)
