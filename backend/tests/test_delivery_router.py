"""
Delivery API tests.

The background delivery task is always patched out; these tests cover
webhook auth, request validation and the immediate 202 response.
"""

import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

# Ensure env vars are set before importing anything that triggers app imports
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")
os.environ.setdefault("DELIVERY_WEBHOOK_SECRET", "test-webhook-secret")

from fastapi.testclient import TestClient

from app.main import app

SECRET_HEADERS = {"X-Webhook-Secret": "test-webhook-secret"}


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def mock_run():
    with patch("app.routers.delivery.run_delivery_in_background", new_callable=AsyncMock) as mocked:
        yield mocked


class TestWebhookAuth:

    def test_missing_secret_rejected(self, client, mock_run):
        response = client.post("/api/delivery/order-completed", json={"order_ids": ["order-1"]})
        assert response.status_code == 401
        mock_run.assert_not_called()

    def test_wrong_secret_rejected(self, client, mock_run):
        response = client.post(
            "/api/delivery/order-completed",
            json={"order_ids": ["order-1"]},
            headers={"X-Webhook-Secret": "nope"},
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid webhook secret"
        mock_run.assert_not_called()

    def test_unconfigured_secret_rejects_everything(self, client, mock_run):
        with patch.dict(os.environ, {"DELIVERY_WEBHOOK_SECRET": ""}):
            response = client.post(
                "/api/delivery/order-completed",
                json={"order_ids": ["order-1"]},
                headers={"X-Webhook-Secret": ""},
            )
        assert response.status_code == 401
        assert response.json()["detail"] == "Webhook secret not configured"


class TestOrderCompleted:

    def test_schedules_delivery_and_returns_202(self, client, mock_run):
        response = client.post(
            "/api/delivery/order-completed",
            json={"order_ids": ["order-1", " order-2 ", "order-1"]},
            headers=SECRET_HEADERS,
        )

        assert response.status_code == 202
        assert response.json() == {"accepted": True, "order_count": 2}
        mock_run.assert_awaited_once_with(["order-1", "order-2"])

    @pytest.mark.parametrize("body", [{}, {"order_ids": []}, {"order_ids": ["  "]}, {"order_ids": "order-1"}])
    def test_invalid_body_returns_422(self, client, mock_run, body):
        response = client.post("/api/delivery/order-completed", json=body, headers=SECRET_HEADERS)
        assert response.status_code == 422
        mock_run.assert_not_called()

    def test_too_many_orders_returns_422(self, client, mock_run):
        body = {"order_ids": [f"order-{i}" for i in range(51)]}
        response = client.post("/api/delivery/order-completed", json=body, headers=SECRET_HEADERS)
        assert response.status_code == 422


class TestResendOrder:

    def test_resend_schedules_single_order(self, client, mock_run):
        response = client.post("/api/delivery/orders/order-9/resend", headers=SECRET_HEADERS)

        assert response.status_code == 202
        assert response.json() == {"accepted": True, "order_count": 1}
        mock_run.assert_awaited_once_with(["order-9"])

    def test_resend_requires_secret(self, client, mock_run):
        response = client.post("/api/delivery/orders/order-9/resend")
        assert response.status_code == 401
        mock_run.assert_not_called()


class TestHealth:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_storage_health_ok(self, client):
        admin = MagicMock()
        bucket = MagicMock()
        bucket.name = "product-files"
        admin.storage.list_buckets.return_value = [bucket]

        with patch("app.main.get_supabase_admin", return_value=admin):
            response = client.get("/health/storage")

        assert response.status_code == 200
        assert response.json()["bucket"] == "product-files"

    def test_storage_health_missing_bucket(self, client):
        admin = MagicMock()
        admin.storage.list_buckets.return_value = []

        with patch("app.main.get_supabase_admin", return_value=admin):
            response = client.get("/health/storage")

        assert response.status_code == 503

    def test_storage_health_without_client(self, client):
        with patch("app.main.get_supabase_admin", return_value=None):
            response = client.get("/health/storage")

        assert response.status_code == 503
