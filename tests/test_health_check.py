from modules.core.models import EventStatus, OutboxEvent


class TestHealthCheck:
    def test_health_check_returns_200(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert "services" in data

    def test_health_check_reports_database_status(self, client):
        data = client.get("/health").json()
        assert data["services"]["database"]["status"] == "up"
        assert "response_time_ms" in data["services"]["database"]

    def test_health_check_reports_cache_status(self, client):
        data = client.get("/health").json()
        assert data["services"]["cache"]["status"] == "up"
        assert "response_time_ms" in data["services"]["cache"]

    def test_health_check_reports_outbox_backlog(self, client):
        OutboxEvent.objects.create(
            event_type="OrderStatusChanged", payload={}, aggregate_id="a", topic="orders"
        )
        OutboxEvent.objects.create(
            event_type="OrderStatusChanged",
            payload={},
            aggregate_id="b",
            topic="orders",
            status=EventStatus.PUBLISHED,
        )

        data = client.get("/health").json()

        assert data["services"]["outbox"] == {"status": "up", "backlog": 1}
