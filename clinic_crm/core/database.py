"""Database engine and async session factory."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from clinic_crm.core.models import Base, Doctor, Patient, Tenant

logger = logging.getLogger(__name__)


def create_engine_for_url(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine.

    SQLite transactions start with ``BEGIN IMMEDIATE`` so the database write
    lock is held from the first read of a booking transaction to its commit.
    """
    if url.startswith("sqlite"):
        ensure_sqlite_directory(url)
        engine = create_async_engine(url, echo=echo)

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_driver_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_async_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        echo=echo,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (dev only)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


def ensure_sqlite_directory(url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)


async def seed_demo(session_factory: async_sessionmaker[AsyncSession]) -> dict[str, str]:
    """Create a demo tenant with one doctor and one patient if not yet present."""
    tenant_id = "demo-clinic"
    doctor_id = "doctor-demo"
    patient_id = "patient-demo"

    async with session_factory() as session:
        async with session.begin():
            if await session.get(Tenant, tenant_id) is None:
                session.add(Tenant(id=tenant_id, name="Demo Clinic"))
                session.add(
                    Doctor(
                        tenant_id=tenant_id,
                        id=doctor_id,
                        user_id="demo-doctor",
                        display_name="Dr. Smith",
                        license_no="MD-12345",
                        specialties=["Hair Transplant", "Cosmetic Surgery"],
                        capacity=40,
                    )
                )
                session.add(
                    Patient(
                        tenant_id=tenant_id,
                        id=patient_id,
                        first_name="Jane",
                        last_name="Doe",
                        primary_doctor_id=doctor_id,
                    )
                )
                logger.info("Seeded demo tenant: %s", tenant_id)

    return {"tenant_id": tenant_id, "doctor_id": doctor_id, "patient_id": patient_id}
