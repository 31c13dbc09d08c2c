import logging
import uuid

import pytest
import structlog


class TestCorrelationIdMiddleware:
    def test_returns_provided_request_id(self, client):
        custom_id = "my-custom-request-id-123"
        response = client.get("/health", HTTP_X_REQUEST_ID=custom_id)
        assert response["X-Request-ID"] == custom_id

    def test_generates_uuid7_when_no_request_id(self, client):
        response = client.get("/health")
        request_id = response["X-Request-ID"]
        parsed = uuid.UUID(request_id)
        assert parsed.version == 7
        assert str(parsed) == request_id

    def test_correlation_id_in_logs(self, client, caplog):
        custom_id = "log-test-correlation-456"
        with caplog.at_level(logging.INFO):
            client.get("/health", HTTP_X_REQUEST_ID=custom_id)
        found = any(custom_id in record.getMessage() for record in caplog.records)
        assert found, (
            f"correlation_id '{custom_id}' not found in log records: "
            f"{[r.getMessage() for r in caplog.records]}"
        )

    def test_request_context_is_cleared_after_response(self, client):
        client.get("/health", HTTP_X_REQUEST_ID="short-lived-id")
        assert structlog.contextvars.get_contextvars() == {}


class TestSensitiveDataMasking:
    @pytest.mark.parametrize(
        ("key", "value", "secret"),
        [
            ("phone", "+5511987654321", "5511987654321"),
            ("data", "password='s3cret123'", "s3cret123"),
            ("header", "token=abc123xyz", "abc123xyz"),
            ("url", "phone=1&apikey=987654&text=hi", "987654"),
            ("auth", "Authorization: Bearer-xyz", "Bearer-xyz"),
        ],
    )
    def test_value_is_masked(self, key, value, secret):
        from config.settings import mask_sensitive_data

        result = mask_sensitive_data(None, None, {"event": "test", key: value})
        assert secret not in result[key]
        assert "***MASKED***" in result[key]

    def test_non_sensitive_data_unchanged(self):
        from config.settings import mask_sensitive_data

        event_dict = {"event": "order.placed", "order_number": "RW-20260101-ABC123"}
        result = mask_sensitive_data(None, None, event_dict)
        assert result["order_number"] == "RW-20260101-ABC123"
        assert result["event"] == "order.placed"

    def test_non_string_values_untouched(self):
        from config.settings import mask_sensitive_data

        result = mask_sensitive_data(None, None, {"event": "x", "count": 5511987654321})
        assert result["count"] == 5511987654321
