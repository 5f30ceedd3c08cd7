"""Tests for CLI commands."""

import json

import pytest
from typer.testing import CliRunner

from clinic_crm.cli.commands import app
from clinic_crm.config import get_settings

runner = CliRunner()

TENANT = ["--tenant", "demo-clinic"]


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    """Point the CLI at a throwaway SQLite file."""
    db_path = tmp_path / "cli" / "crm.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("STORE_RETRY_BACKOFF_SECONDS", "0")
    get_settings.cache_clear()
    yield db_path
    get_settings.cache_clear()


def _book(start: str, patient: str = "patient-demo"):
    return runner.invoke(
        app,
        ["book"] + TENANT + ["--patient", patient, "--doctor", "doctor-demo", "--start", start],
    )


class TestVersionCommand:
    def test_version_command(self):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert "Clinic CRM" in result.stdout
        assert "0.1.0" in result.stdout


class TestDatabaseCommands:
    def test_init_db_creates_file(self, database):
        result = runner.invoke(app, ["init-db"])

        assert result.exit_code == 0
        assert "schema ready" in result.stdout
        assert database.exists()

    def test_seed_demo(self):
        result = runner.invoke(app, ["seed-demo"])

        assert result.exit_code == 0
        assert "demo-clinic" in result.stdout
        assert "doctor-demo" in result.stdout


class TestSchedulingCommands:
    @pytest.fixture(autouse=True)
    def seeded(self):
        assert runner.invoke(app, ["seed-demo"]).exit_code == 0

    def test_book_then_conflict(self):
        first = _book("2030-01-07T09:00:00")
        assert first.exit_code == 0
        assert "Booked" in first.stdout

        second = _book("2030-01-07T09:30:00")
        assert second.exit_code == 1
        assert "ConflictError" in second.stdout

    def test_book_unknown_doctor(self):
        result = runner.invoke(
            app,
            ["book"] + TENANT + ["--patient", "patient-demo", "--doctor", "nobody", "--start", "2030-01-07T09:00:00"],
        )
        assert result.exit_code == 1
        assert "NotFoundError" in result.stdout

    def test_calendar_json(self):
        _book("2030-01-07T09:00:00")

        result = runner.invoke(app, ["calendar"] + TENANT + ["--day", "2030-01-07", "--mode", "day", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["mode"] == "day"
        assert len(data["days"][0]["entries"]) == 1

    def test_calendar_empty(self):
        result = runner.invoke(app, ["calendar"] + TENANT + ["--day", "2030-02-01"])
        assert result.exit_code == 0
        assert "No appointments" in result.stdout

    def test_calendar_invalid_day(self):
        result = runner.invoke(app, ["calendar"] + TENANT + ["--day", "not-a-day"])
        assert result.exit_code == 1

    def test_sync_milestones_with_placeholder(self):
        result = runner.invoke(app, ["sync-milestones", "patient-demo", "--placeholder"] + TENANT)

        assert result.exit_code == 0
        assert result.stdout.count("created") == 4

    def test_sync_unknown_patient(self):
        result = runner.invoke(app, ["sync-milestones", "nobody"] + TENANT)
        assert result.exit_code == 1
        assert "NotFoundError" in result.stdout

    def test_release_holds(self):
        result = runner.invoke(app, ["release-holds"] + TENANT)
        assert result.exit_code == 0
        assert "Released 0" in result.stdout


class TestDirectoryCommands:
    def test_create_tenant_twice(self):
        first = runner.invoke(app, ["create-tenant", "north-clinic", "--name", "North"])
        assert first.exit_code == 0
        assert "Created tenant north-clinic" in first.stdout

        second = runner.invoke(app, ["create-tenant", "north-clinic"])
        assert second.exit_code == 0
        assert "already exists" in second.stdout

    def test_add_and_list_doctors(self):
        runner.invoke(app, ["seed-demo"])

        added = runner.invoke(
            app,
            ["add-doctor"] + TENANT + ["--doctor-user", "user-fox", "--name", "Dr. Fox", "--specialty", "Surgery"],
        )
        assert added.exit_code == 0
        assert "Added doctor doctor-user-fox" in added.stdout

        duplicate = runner.invoke(app, ["add-doctor"] + TENANT + ["--doctor-user", "user-fox"])
        assert duplicate.exit_code == 1
        assert "ValidationError" in duplicate.stdout

        listed = runner.invoke(app, ["list-doctors"] + TENANT)
        assert listed.exit_code == 0
        assert "Dr. Fox" in listed.stdout
        assert "Dr. Smith" in listed.stdout

    def test_add_and_list_patients(self):
        runner.invoke(app, ["seed-demo"])

        added = runner.invoke(
            app,
            ["add-patient"] + TENANT + ["--first-name", "Maya", "--last-name", "Cruz", "--doctor", "doctor-demo"],
        )
        assert added.exit_code == 0
        assert "Maya Cruz" in added.stdout
        assert "doctor-demo" in added.stdout

        found = runner.invoke(app, ["list-patients"] + TENANT + ["--search", "cruz"])
        assert found.exit_code == 0
        assert "Maya Cruz" in found.stdout

        missing = runner.invoke(app, ["list-patients"] + TENANT + ["--search", "nobody"])
        assert "No patients found" in missing.stdout

    def test_add_patient_unknown_doctor(self):
        runner.invoke(app, ["seed-demo"])

        result = runner.invoke(app, ["add-patient"] + TENANT + ["--first-name", "Lee", "--doctor", "nobody"])

        assert result.exit_code == 1
        assert "NotFoundError" in result.stdout
