"""
HTTP API tests for the payment routes.
"""

import httpx
import pytest
import pytest_asyncio

from flightpay.acquirers.base import OrderResult
from flightpay.main import create_application
from flightpay.models.payment import PaymentStatus
from flightpay.schemas.common import ErrorResponse

from conftest import VALID_SIGNATURE, webhook_body


@pytest_asyncio.fixture
async def client(service, session_factory):
    application = create_application(service=service, session_factory=session_factory)
    transport = httpx.ASGITransport(app=application)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def started_payment(client, make_booking):
    async def _start():
        booking_id = await make_booking(amount="1000.00")
        response = await client.post(
            "/payments",
            json={"booking_id": booking_id, "customer_email": "asha@example.com", "customer_name": "Asha Rao"},
        )
        assert response.status_code == 201
        return booking_id, response.json()

    return _start


class TestPaymentRoutes:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_create_payment(self, started_payment):
        _, body = await started_payment()

        assert body["status"] == "PENDING"
        assert body["acquirer_code"] == "FAKEPAY"
        assert body["checkout_url"].startswith("https://fakepay.test/pay/")
        assert body["checkout_payload"]["order_id"] == "order_1"

    @pytest.mark.asyncio
    async def test_create_payment_unknown_booking(self, client):
        response = await client.post("/payments", json={"booking_id": "missing"})

        assert response.status_code == 404
        assert response.json() == {"detail": "booking missing not found", "code": "PAYMENT_002"}

    @pytest.mark.asyncio
    async def test_create_payment_twice_conflicts(self, client, started_payment):
        booking_id, _ = await started_payment()

        response = await client.post("/payments", json={"booking_id": booking_id})

        assert response.status_code == 409
        assert response.json()["code"] == "PAYMENT_016"

    @pytest.mark.asyncio
    async def test_create_payment_rejects_bad_email(self, client, make_booking):
        booking_id = await make_booking()
        response = await client.post("/payments", json={"booking_id": booking_id, "customer_email": "not-an-email"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_gateway_error_hides_gateway_message(self, client, acquirer, make_booking):
        acquirer.order_failure = OrderResult(
            success=False, error_code="BAD_REQUEST_ERROR", error_message="merchant account suspended"
        )
        booking_id = await make_booking()

        response = await client.post("/payments", json={"booking_id": booking_id})

        assert response.status_code == 502
        assert response.json() == {"detail": "Payment gateway error, please try again", "code": "PAYMENT_007"}

    @pytest.mark.asyncio
    async def test_callback_and_status(self, client, started_payment):
        _, body = await started_payment()
        reference = body["reference"]

        response = await client.post(
            "/payments/callback",
            json={"reference": reference, "signature": VALID_SIGNATURE, "order_id": body["checkout_payload"]["order_id"]},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "SUCCESS"

        status_response = await client.get(f"/payments/{reference}/status")
        assert status_response.json() == {
            "reference": reference,
            "status": "SUCCESS",
            "message": "Payment completed successfully",
            "requires_review": False,
        }

    @pytest.mark.asyncio
    async def test_forged_callback(self, client, started_payment):
        _, body = await started_payment()

        response = await client.post(
            "/payments/callback", json={"reference": body["reference"], "signature": "forged", "order_id": "order_1"}
        )

        assert response.status_code == 400
        assert response.json()["code"] == "PAYMENT_006"

    @pytest.mark.asyncio
    async def test_expired_callback(self, client, clock, started_payment):
        _, body = await started_payment()
        clock.advance(minutes=30)

        response = await client.post(
            "/payments/callback",
            json={"reference": body["reference"], "signature": VALID_SIGNATURE, "order_id": "order_1"},
        )

        assert response.status_code == 410
        assert response.json()["code"] == "PAYMENT_004"

    @pytest.mark.asyncio
    async def test_unknown_reference_status(self, client):
        response = await client.get("/payments/PAY-20260301-UNKNOWN000/status")
        assert response.status_code == 404
        assert response.json()["code"] == "PAYMENT_003"

    @pytest.mark.asyncio
    async def test_error_body_is_documented(self, client):
        response = await client.get("/payments/PAY-20260301-UNKNOWN000")
        schema = (await client.get("/openapi.json")).json()

        assert ErrorResponse.model_validate(response.json()).code == "PAYMENT_003"
        documented = schema["paths"]["/payments/{reference}/status"]["get"]["responses"]
        assert documented["404"]["content"]["application/json"]["schema"] == {"$ref": "#/components/schemas/ErrorResponse"}
        assert set(schema["components"]["schemas"]["ErrorResponse"]["required"]) == {"detail", "code"}

    @pytest.mark.asyncio
    async def test_refund_flow(self, client, started_payment):
        _, body = await started_payment()
        reference = body["reference"]
        await client.post(
            "/payments/callback",
            json={"reference": reference, "signature": VALID_SIGNATURE, "order_id": "order_1", "payment_id": "pay_1"},
        )

        partial = await client.post(f"/payments/{reference}/refund", json={"amount": "400.00", "reason": "change"})
        full = await client.post(f"/payments/{reference}/refund", json={"amount": "600.00", "reason": "cancel"})
        extra = await client.post(f"/payments/{reference}/refund", json={"amount": "1.00", "reason": "again"})

        assert partial.json()["status"] == "PARTIAL_REFUND"
        assert full.json()["status"] == "REFUNDED"
        assert full.json()["refunded_amount"] == "1000.00"
        assert extra.status_code == 409
        assert extra.json()["code"] == "PAYMENT_014"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-5", "1.234"])
    async def test_refund_rejects_bad_amounts(self, client, started_payment, amount):
        _, body = await started_payment()

        response = await client.post(f"/payments/{body['reference']}/refund", json={"amount": amount, "reason": "x"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_get_and_list_payments(self, client, started_payment):
        booking_id, body = await started_payment()

        single = await client.get(f"/payments/{body['reference']}")
        listing = await client.get(f"/payments/booking/{booking_id}")

        assert single.json()["booking_id"] == booking_id
        assert single.json()["refunded_amount"] == "0.00"
        assert [item["reference"] for item in listing.json()] == [body["reference"]]

    @pytest.mark.asyncio
    async def test_reconcile_refunds_route(self, client, started_payment):
        _, body = await started_payment()

        response = await client.post(f"/payments/{body['reference']}/reconcile-refunds")

        assert response.status_code == 200
        assert response.json()["status"] == "PENDING"


class TestWebhookRoute:
    """The webhook endpoint always answers 200."""

    @pytest.mark.asyncio
    async def test_valid_webhook(self, client, service, started_payment):
        _, body = await started_payment()

        response = await client.post(
            "/payments/webhook/fakepay",
            content=webhook_body(event="payment.captured", status="captured", order_id="order_1", payment_id="pay_9"),
            headers={"X-Fake-Signature": VALID_SIGNATURE},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert (await service.get_payment(body["reference"])).status is PaymentStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_tampered_webhook_still_acknowledged(self, client, service, started_payment):
        _, body = await started_payment()

        response = await client.post(
            "/payments/webhook/FAKEPAY",
            content=webhook_body(event="payment.captured", status="captured", order_id="order_1"),
            headers={"X-Fake-Signature": "tampered"},
        )

        assert response.status_code == 200
        assert (await service.get_payment(body["reference"])).status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_acquirer_acknowledged(self, client):
        response = await client.post("/payments/webhook/paypal", content=b"{}")
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_unexpected_failure_acknowledged(self, client):
        response = await client.post(
            "/payments/webhook/FAKEPAY", content=b"not json", headers={"X-Fake-Signature": VALID_SIGNATURE}
        )
        assert response.status_code == 200


class TestStatusMappingRoutes:
    @pytest.mark.asyncio
    async def test_upsert_list_and_toggle(self, client):
        created = await client.put(
            "/acquirer-status-mappings",
            json={"acquirer_code": "razorpay", "acquirer_status": "Authorized", "canonical_status": "success"},
        )
        assert created.status_code == 200
        assert created.json()["acquirer_code"] == "RAZORPAY"
        assert created.json()["canonical_status"] == "SUCCESS"

        toggled = await client.patch("/acquirer-status-mappings/RAZORPAY/authorized", json={"is_active": False})
        assert toggled.json()["is_active"] is False

        listing = await client.get("/acquirer-status-mappings/razorpay")
        assert [item["acquirer_status"] for item in listing.json()] == ["authorized"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("canonical", ["DONE", "unmapped"])
    async def test_upsert_rejects_invalid_canonical(self, client, canonical):
        response = await client.put(
            "/acquirer-status-mappings",
            json={"acquirer_code": "STRIPE", "acquirer_status": "open", "canonical_status": canonical},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_toggle_missing_mapping(self, client):
        response = await client.patch("/acquirer-status-mappings/STRIPE/open", json={"is_active": True})
        assert response.status_code == 404
