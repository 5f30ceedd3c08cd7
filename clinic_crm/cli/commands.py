"""CLI commands for the clinic CRM."""

import asyncio
from datetime import date, datetime
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from clinic_crm.config import get_settings
from clinic_crm.core.context import TenantContext, UserRole
from clinic_crm.scheduling.errors import SchedulingError
from clinic_crm.scheduling.models import (
    AppointmentStatus,
    AppointmentType,
    BookingRequest,
    CalendarMode,
    CalendarView,
    DoctorCreate,
    PatientCreate,
)
from clinic_crm.scheduling.service import SchedulingServices

app = typer.Typer(
    name="clinic-crm",
    help="Multi-tenant clinic scheduling: bookings, holds and patient milestones",
    add_completion=False,
)
console = Console()

T = TypeVar("T")

_STATUS_STYLE = {
    AppointmentStatus.HOLD: "yellow",
    AppointmentStatus.CONFIRMED: "green",
    AppointmentStatus.COMPLETED: "blue",
    AppointmentStatus.CANCELLED: "dim",
    AppointmentStatus.NO_SHOW: "red",
}


async def _with_services(fn: Callable[[SchedulingServices], Awaitable[T]]) -> T:
    """Run *fn* against a store bound to a fresh engine, disposed afterwards."""
    from clinic_crm.core.database import create_engine_for_url, create_session_factory, init_db
    from clinic_crm.scheduling.service import build_store

    settings = get_settings()
    engine = create_engine_for_url(settings.database_url)
    try:
        await init_db(engine)
        store = build_store(create_session_factory(engine), settings)
        services = SchedulingServices.create(store, settings=settings)
        return await fn(services)
    finally:
        await engine.dispose()


def _run(fn: Callable[[SchedulingServices], Awaitable[T]]) -> T:
    try:
        return asyncio.run(_with_services(fn))
    except SchedulingError as e:
        console.print(f"[red]{type(e).__name__}: {e}[/red]")
        raise typer.Exit(1)


def _context(tenant: str, user: str, role: str) -> TenantContext:
    try:
        return TenantContext(tenant_id=tenant, user_id=user, role=UserRole(role.upper()))
    except ValueError as e:
        console.print(f"[red]Invalid tenant context: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
):
    """Start the REST API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port

    console.print(f"Starting clinic CRM API server on {host}:{port}")
    uvicorn.run(
        "clinic_crm.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


@app.command()
def init_db():
    """Create the database schema."""
    from clinic_crm.core.database import create_engine_for_url, init_db as create_schema

    async def _init() -> None:
        engine = create_engine_for_url(get_settings().database_url)
        try:
            await create_schema(engine)
        finally:
            await engine.dispose()

    asyncio.run(_init())
    console.print("[green]Database schema ready[/green]")


@app.command()
def seed_demo():
    """Create a demo tenant with one doctor and one patient."""
    from clinic_crm.core.database import (
        create_engine_for_url,
        create_session_factory,
        init_db as create_schema,
        seed_demo as seed,
    )

    async def _seed() -> dict[str, str]:
        engine = create_engine_for_url(get_settings().database_url)
        try:
            await create_schema(engine)
            return await seed(create_session_factory(engine))
        finally:
            await engine.dispose()

    ids = asyncio.run(_seed())
    table = Table(title="Demo data")
    table.add_column("Kind")
    table.add_column("Id")
    for kind, value in ids.items():
        table.add_row(kind, value)
    console.print(table)


@app.command()
def book(
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    patient: str = typer.Option(..., "--patient", help="Patient id"),
    doctor: str = typer.Option(..., "--doctor", "-d", help="Doctor id"),
    start: datetime = typer.Option(..., "--start", help="Start time (ISO 8601, UTC if no offset)"),
    appointment_type: AppointmentType = typer.Option(AppointmentType.CONSULT, "--type"),
    duration: Optional[int] = typer.Option(None, "--duration", help="Duration in minutes"),
    confirm: bool = typer.Option(False, "--confirm", help="Book as CONFIRMED instead of HOLD"),
    user: str = typer.Option("cli", "--user", "-u", help="Acting user id"),
    role: str = typer.Option(UserRole.COORDINATOR.value, "--role"),
):
    """Book an appointment, failing if the doctor is already booked."""
    ctx = _context(tenant, user, role)
    request = BookingRequest(
        patient_id=patient,
        doctor_id=doctor,
        type=appointment_type,
        status=AppointmentStatus.CONFIRMED if confirm else AppointmentStatus.HOLD,
        start=start,
        duration_minutes=duration,
    )

    async def _book(services: SchedulingServices):
        return await services.coordinator.book_with_retry(ctx, request)

    appointment = _run(_book)
    console.print(
        f"[green]Booked {appointment.type.value} {appointment.id}[/green] "
        f"{appointment.start.isoformat()} - {appointment.end.isoformat()} "
        f"({appointment.status.value})"
    )


@app.command()
def calendar(
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    day: Optional[str] = typer.Option(None, "--day", help="Anchor day (YYYY-MM-DD), default today"),
    mode: CalendarMode = typer.Option(CalendarMode.WEEK, "--mode", "-m"),
    doctor: Optional[str] = typer.Option(None, "--doctor", "-d", help="Only this doctor"),
    user: str = typer.Option("cli", "--user", "-u", help="Acting user id"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show the calendar grid around a day."""
    ctx = _context(tenant, user, UserRole.COORDINATOR.value)
    try:
        anchor = date.fromisoformat(day) if day else date.today()
    except ValueError:
        console.print(f"[red]Invalid day: {day}[/red]")
        raise typer.Exit(1)

    async def _view(services: SchedulingServices) -> CalendarView:
        return await services.calendar.view(ctx, mode, anchor, doctor_id=doctor)

    view = _run(_view)
    if output_json:
        console.print_json(view.model_dump_json())
        return
    _display_calendar(view)


def _display_calendar(view: CalendarView):
    table = Table(title=f"{view.mode.value.title()} of {view.days[0].day.isoformat()}")
    table.add_column("Day")
    table.add_column("Time")
    table.add_column("Doctor")
    table.add_column("Patient")
    table.add_column("Type")
    table.add_column("Status")

    count = 0
    for bucket in view.days:
        for entry in bucket.entries:
            appt = entry.appointment
            style = _STATUS_STYLE.get(entry.effective_status, "white")
            table.add_row(
                bucket.day.isoformat(),
                f"{appt.start:%H:%M}-{appt.end:%H:%M}",
                appt.doctor_id,
                appt.patient_name or appt.patient_id,
                appt.type.value,
                f"[{style}]{entry.effective_status.value}[/{style}]",
            )
            count += 1

    if count:
        console.print(table)
    else:
        console.print("[yellow]No appointments in range[/yellow]")


@app.command()
def sync_milestones(
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    patient: str = typer.Argument(..., help="Patient id"),
    placeholder: bool = typer.Option(
        False, "--placeholder", help="Generate placeholder dates first if the patient has none"
    ),
    user: str = typer.Option("cli", "--user", "-u", help="Acting user id"),
):
    """Re-derive a patient's milestone appointments."""
    ctx = _context(tenant, user, UserRole.COORDINATOR.value)

    async def _sync(services: SchedulingServices):
        if placeholder:
            generated = await services.milestones.ensure_placeholder_milestones(ctx, patient)
            if generated is not None:
                return generated
        return await services.milestones.resync(ctx, patient)

    result = _run(_sync)

    table = Table(title=f"Milestone sync: {patient}")
    table.add_column("Milestone")
    table.add_column("Appointment")
    table.add_column("Action")
    for outcome in result.outcomes:
        action = outcome.action.value
        if outcome.error:
            action = f"[red]{action}: {outcome.error}[/red]"
        table.add_row(outcome.milestone.value, outcome.appointment_id, action)
    console.print(table)

    if not result.ok:
        raise typer.Exit(1)


@app.command()
def release_holds(
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    user: str = typer.Option("cli", "--user", "-u", help="Acting user id"),
):
    """Cancel holds whose expiry has passed."""
    ctx = _context(tenant, user, UserRole.COORDINATOR.value)

    async def _release(services: SchedulingServices) -> list[str]:
        return await services.holds.release_expired(ctx)

    released = _run(_release)
    console.print(f"[green]Released {len(released)} expired hold(s)[/green]")
    for appointment_id in released:
        console.print(f"  {appointment_id}")


@app.command()
def create_tenant(
    tenant: str = typer.Argument(..., help="Tenant id"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name"),
):
    """Register a tenant (clinic)."""

    async def _create(services: SchedulingServices) -> bool:
        return await services.directory.ensure_tenant(tenant, name)

    if _run(_create):
        console.print(f"[green]Created tenant {tenant}[/green]")
    else:
        console.print(f"[yellow]Tenant {tenant} already exists[/yellow]")


@app.command()
def add_doctor(
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    doctor_user: str = typer.Option(..., "--doctor-user", help="User id of the doctor"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Display name"),
    license_no: Optional[str] = typer.Option(None, "--license", help="License number"),
    specialty: list[str] = typer.Option([], "--specialty", help="Specialty (repeatable)"),
    capacity: Optional[int] = typer.Option(None, "--capacity"),
    user: str = typer.Option("cli", "--user", "-u", help="Acting user id"),
):
    """Add a bookable doctor to a tenant."""
    ctx = _context(tenant, user, UserRole.ADMIN.value)
    body = DoctorCreate(
        user_id=doctor_user,
        display_name=name,
        license_no=license_no,
        specialties=specialty,
        capacity=capacity,
    )

    async def _add(services: SchedulingServices):
        return await services.directory.create_doctor(ctx, body)

    doctor = _run(_add)
    console.print(f"[green]Added doctor {doctor.id}[/green] ({doctor.display_name or doctor.user_id})")


@app.command()
def list_doctors(
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    include_inactive: bool = typer.Option(False, "--all", help="Include inactive doctors"),
    user: str = typer.Option("cli", "--user", "-u", help="Acting user id"),
):
    """List the doctors of a tenant."""
    ctx = _context(tenant, user, UserRole.ADMIN.value)

    async def _list(services: SchedulingServices):
        return await services.directory.list_doctors(ctx, include_inactive=include_inactive)

    doctors = _run(_list)
    if not doctors:
        console.print("[yellow]No doctors found[/yellow]")
        return

    table = Table(title=f"Doctors of {tenant}")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("User")
    table.add_column("Active")
    for doctor in doctors:
        active = "[green]yes[/green]" if doctor.active else "[dim]no[/dim]"
        table.add_row(doctor.id, doctor.display_name or "-", doctor.user_id, active)
    console.print(table)


@app.command()
def add_patient(
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    first_name: str = typer.Option(..., "--first-name"),
    last_name: Optional[str] = typer.Option(None, "--last-name"),
    email: Optional[str] = typer.Option(None, "--email"),
    phone: Optional[str] = typer.Option(None, "--phone"),
    doctor: Optional[str] = typer.Option(None, "--doctor", "-d", help="Primary doctor id"),
    user: str = typer.Option("cli", "--user", "-u", help="Acting user id"),
    role: str = typer.Option(UserRole.COORDINATOR.value, "--role"),
):
    """Create a patient; a primary doctor is assigned when --doctor is omitted."""
    ctx = _context(tenant, user, role)
    body = PatientCreate(
        first_name=first_name,
        last_name=last_name,
        email=email,
        phone=phone,
        primary_doctor_id=doctor,
    )

    async def _add(services: SchedulingServices):
        return await services.directory.create_patient(ctx, body)

    patient = _run(_add)
    console.print(
        f"[green]Created patient {patient.id}[/green] {patient.display_name} "
        f"(primary doctor {patient.primary_doctor_id})"
    )


@app.command()
def list_patients(
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    status: Optional[str] = typer.Option(None, "--status"),
    search: Optional[str] = typer.Option(None, "--search", "-s"),
    limit: int = typer.Option(50, "--limit"),
    user: str = typer.Option("cli", "--user", "-u", help="Acting user id"),
    role: str = typer.Option(UserRole.COORDINATOR.value, "--role"),
):
    """List patients, newest first."""
    ctx = _context(tenant, user, role)

    async def _list(services: SchedulingServices):
        return await services.directory.list_patients(ctx, status=status, search=search, limit=limit)

    patients = _run(_list)
    if not patients:
        console.print("[yellow]No patients found[/yellow]")
        return

    table = Table(title=f"Patients of {tenant}")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Primary doctor")
    for patient in patients:
        table.add_row(
            patient.id,
            patient.display_name,
            patient.status or "-",
            patient.primary_doctor_id or "-",
        )
    console.print(table)


@app.command()
def version():
    """Show version information."""
    from clinic_crm import __version__

    console.print(f"Clinic CRM v{__version__}")


if __name__ == "__main__":
    app()
