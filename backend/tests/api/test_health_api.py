"""Health, readiness and request correlation tests."""

import pytest

pytestmark = pytest.mark.integration


def test_health(api_client):
    response = api_client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "payguard"}


def test_health_returns_503_while_draining(api_client):
    api_client.app.state.shutting_down = True

    response = api_client.get("/api/health")

    assert response.status_code == 503
    assert response.json()["status"] == "shutting_down"


def test_ready_checks_database_and_redis(api_client):
    response = api_client.get("/api/ready")

    assert response.status_code == 200
    assert response.json() == {"status": "ready", "checks": {"database": True, "redis": True}}


def test_request_id_is_generated(api_client):
    response = api_client.get("/api/health")
    assert response.headers.get("X-Request-ID")


def test_request_id_is_echoed(api_client):
    response = api_client.get("/api/health", headers={"X-Request-ID": "req-abc-123"})
    assert response.headers["X-Request-ID"] == "req-abc-123"


def test_error_responses_carry_debug_id(api_client):
    response = api_client.post("/api/billing/records/00000000-0000-0000-0000-000000000000/retry")

    assert response.status_code == 404
    assert response.json()["debug_id"]
