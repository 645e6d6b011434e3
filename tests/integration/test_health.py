"""Integration tests for health check endpoints."""

from unittest.mock import patch

from fastapi.testclient import TestClient


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    def test_health_returns_200(self, client: TestClient) -> None:
        """Test that /health endpoint returns 200 status."""
        response = client.get("/health")
        assert response.status_code == 200

    def test_health_returns_healthy_status(self, client: TestClient) -> None:
        """Test that /health endpoint returns healthy status."""
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["timestamp"] is not None
        assert data["version"] == "0.1.0"


class TestReadinessEndpoint:
    """Tests for /health/ready endpoint."""

    def test_readiness_returns_200_when_healthy(self, client: TestClient) -> None:
        """Test that /health/ready returns 200 when the database answers."""
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_readiness_includes_database_check(self, client: TestClient) -> None:
        """Test that the database check is reported with its latency."""
        data = client.get("/health/ready").json()

        db_check = next(c for c in data["checks"] if c["name"] == "database")
        assert db_check["healthy"] is True
        assert db_check["latency_ms"] is not None

    def test_local_catalog_is_not_checked(self, client: TestClient) -> None:
        """Test that the remote catalog check is skipped for the built-in whitelist."""
        data = client.get("/health/ready").json()

        assert [c["name"] for c in data["checks"]] == ["database"]

    def test_readiness_returns_503_when_database_unhealthy(self, client: TestClient) -> None:
        """Test that /health/ready returns 503 with the error when the database is down."""
        with patch(
            "src.api.routes.health.check_database_connection",
            return_value={"healthy": False, "error": "Connection timeout"},
        ):
            response = client.get("/health/ready")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "unhealthy"
        db_check = next(c for c in data["checks"] if c["name"] == "database")
        assert db_check["healthy"] is False
        assert db_check["error"] == "Connection timeout"


class TestErrorResponseSchema:
    """Tests for error response schema compliance."""

    def test_unexpected_error_is_formatted(self, client: TestClient) -> None:
        """Test that unhandled exceptions become a 500 in the standard format."""
        with patch(
            "src.api.routes.health.check_database_connection",
            side_effect=Exception("Test error"),
        ):
            response = client.get("/health/ready")

        assert response.status_code == 500
        data = response.json()
        assert data["error"] == "internal_error"
        assert data["message"] == "An unexpected error occurred"
        assert "timestamp" in data
