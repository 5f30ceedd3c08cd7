"""Tests for health endpoints."""

import pytest
from fastapi.testclient import TestClient
from unittest.mock import MagicMock

from clinic_crm.api.app import create_app


@pytest.fixture
def client():
    """Test client for an app whose services were never wired."""
    return TestClient(create_app())


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["service"] == "clinic-crm"

    def test_readiness_without_services(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "not_ready"

    def test_readiness_with_services(self):
        client = TestClient(create_app(services=MagicMock()))
        response = client.get("/health/ready")

        assert response.json() == {"status": "ready", "services": True}

    def test_scheduling_route_without_services(self, client):
        response = client.get(
            "/api/v1/scheduling/appointments/abc",
            headers={"X-Tenant-Id": "clinic-a", "X-User-Id": "u1"},
        )
        assert response.status_code == 503
