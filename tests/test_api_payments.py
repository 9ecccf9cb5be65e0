"""
Tests for the payment HTTP API and the provider webhook endpoint
"""
import pytest

from orderpay.db.models import Order, OrderStatus, Payment, PaymentStatus
from tests.conftest import auth_headers, fetch, signed_webhook


class TestPaymentEndpoints:

    @pytest.mark.integration
    async def test_initiate_then_reuse(self, test_client, order_factory):
        order = await order_factory(user_id=1)

        first = await test_client.post(
            "/api/payments/initiate", json={"order_id": order.id}, headers=auth_headers(1)
        )
        second = await test_client.post(
            "/api/payments/initiate", json={"order_id": order.id}, headers=auth_headers(1)
        )

        assert first.status_code == 201
        assert first.json()["reused"] is False
        assert first.json()["redirect_url"].endswith(f"/pay/{first.json()['payment_id']}")
        assert second.status_code == 200
        assert second.json()["reused"] is True
        assert second.json()["payment_id"] == first.json()["payment_id"]

    @pytest.mark.integration
    async def test_initiate_for_paid_order_conflicts(self, test_client, order_factory):
        order = await order_factory(user_id=1, status=OrderStatus.PAID)

        response = await test_client.post(
            "/api/payments/initiate", json={"order_id": order.id}, headers=auth_headers(1)
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ERR_2003"

    @pytest.mark.integration
    async def test_status_and_cancel(self, test_client, order_factory, payment_factory):
        order = await order_factory(user_id=1)
        payment = await payment_factory(order)

        status = await test_client.get(f"/api/payments/{payment.id}/status", headers=auth_headers(1))
        cancelled = await test_client.post(f"/api/payments/{payment.id}/cancel", headers=auth_headers(1))
        again = await test_client.post(f"/api/payments/{payment.id}/cancel", headers=auth_headers(1))

        assert status.json()["status"] == "PENDING"
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "CANCELLED"
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "ERR_3002"

    @pytest.mark.integration
    async def test_status_of_foreign_payment_is_not_found(self, test_client, order_factory, payment_factory):
        order = await order_factory(user_id=1)
        payment = await payment_factory(order)

        response = await test_client.get(f"/api/payments/{payment.id}/status", headers=auth_headers(2))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_3001"


class TestWebhookEndpoint:

    @pytest.mark.integration
    async def test_signed_success_is_acknowledged_and_applied(
        self, test_client, order_factory, payment_factory, session_factory
    ):
        order = await order_factory(user_id=1)
        payment = await payment_factory(order)
        body, headers = signed_webhook({
            "payment_id": payment.id,
            "order_id": order.id,
            "status": "SUCCESS",
            "transaction_id": "MPESA-123",
        })

        response = await test_client.post("/api/payments/webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert "processed_at" in response.json()
        assert (await fetch(session_factory, Payment, payment.id)).status == PaymentStatus.SUCCESS
        assert (await fetch(session_factory, Order, order.id)).status == OrderStatus.PAID

    @pytest.mark.integration
    async def test_replayed_delivery_changes_nothing(
        self, test_client, order_factory, payment_factory, session_factory, metrics
    ):
        order = await order_factory(user_id=1)
        payment = await payment_factory(order)
        body, headers = signed_webhook({
            "payment_id": payment.id,
            "order_id": order.id,
            "status": "SUCCESS",
            "transaction_id": "MPESA-123",
        })

        await test_client.post("/api/payments/webhook", content=body, headers=headers)
        response = await test_client.post("/api/payments/webhook", content=body, headers=headers)

        assert response.status_code == 200
        assert (await fetch(session_factory, Order, order.id)).version == 2
        assert metrics.webhook_outcomes("applied") == 1
        assert metrics.webhook_outcomes("duplicate") == 1

    @pytest.mark.integration
    async def test_bad_signature_rejected_without_side_effects(
        self, test_client, order_factory, payment_factory, session_factory
    ):
        order = await order_factory(user_id=1)
        payment = await payment_factory(order)
        body, headers = signed_webhook({
            "payment_id": payment.id, "order_id": order.id, "status": "SUCCESS",
        })
        headers["X-Webhook-Signature"] = "sha256=" + "0" * 64

        response = await test_client.post("/api/payments/webhook", content=body, headers=headers)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "ERR_4001"
        assert (await fetch(session_factory, Payment, payment.id)).status == PaymentStatus.PENDING

    @pytest.mark.integration
    async def test_signed_but_malformed_body(self, test_client):
        body, headers = signed_webhook({"payment_id": "pay_1", "status": "SUCCESS"})

        response = await test_client.post("/api/payments/webhook", content=body, headers=headers)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_1001"
