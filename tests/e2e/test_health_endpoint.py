"""End-to-end tests for health endpoint."""


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_endpoint_returns_200(self, test_client):
        """Test GET /health returns 200."""
        response = test_client.get("/health")

        assert response.status_code == 200

    def test_health_endpoint_response_format(self, test_client):
        """Test health endpoint response format."""
        data = test_client.get("/health").json()

        assert data["status"] == "ok"
        assert data["content_fetcher"] in ("firecrawl", "crawler")
        assert data["pending_indexing_tasks"] == 0
        assert "environment" in data
