"""
Razorpay Acquirer Adapter

Integrates the Razorpay Orders and Payments REST APIs. Orders are opened
server-side and completed in Razorpay Checkout; the browser callback carries a
signature over ``order_id|payment_id`` and webhooks are signed over the raw
request body.
"""

import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from flightpay.core.logging import get_logger

from .base import (
    AcquirerClient,
    AcquirerCredentials,
    CaptureResult,
    OrderResult,
    PaymentIntent,
    RefundListResult,
    RefundRecord,
    RefundRequest,
    RefundResult,
    StatusResult,
    VerificationResult,
    WebhookResult,
    from_minor_units,
    to_minor_units,
)

logger = get_logger(__name__)


WEBHOOK_EVENT_STATUSES = {
    "payment.authorized": "authorized",
    "payment.captured": "captured",
    "payment.failed": "failed",
    "order.paid": "paid",
}

REFUND_STATUS_BY_KIND = {
    "full": "refunded",
    "partial": "partial_refund",
}


def compute_signature(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayAdapter(AcquirerClient):
    """Razorpay acquirer adapter."""

    code = "RAZORPAY"
    signature_header = "X-Razorpay-Signature"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 20.0,
        merchant_name: str = "FlightPay",
    ):
        """
        Initialize Razorpay adapter.

        Args:
            http_client: Shared async HTTP client
            base_url: Razorpay API root
            timeout: Per-request timeout in seconds
            merchant_name: Name shown in Razorpay Checkout
        """
        super().__init__(http_client, base_url=base_url, timeout=timeout)
        self.merchant_name = merchant_name

    def _auth(self, credentials: AcquirerCredentials) -> httpx.BasicAuth:
        self.check_credentials(credentials)
        return httpx.BasicAuth(credentials.api_key, credentials.api_secret)

    async def create_order(self, intent: PaymentIntent, credentials: AcquirerCredentials) -> OrderResult:
        """
        Create a Razorpay order.

        The payment reference is sent as the order ``receipt`` so the order can
        be found again with :meth:`lookup_order`.

        Args:
            intent: Payment attempt details
            credentials: Key id and key secret

        Returns:
            OrderResult with the order id and a Razorpay Checkout options payload
        """
        notes = {
            "reference": intent.reference,
            "booking_id": intent.booking_id,
        }
        if intent.customer.email:
            notes["customer_email"] = intent.customer.email

        body = {
            "amount": to_minor_units(intent.amount, intent.currency),
            "currency": intent.currency.upper(),
            "receipt": intent.reference,
            "notes": notes,
        }
        response = await self._call("POST", "/orders", operation="create_order", json=body, auth=self._auth(credentials))
        if not response.ok:
            return OrderResult(
                success=False,
                error_code=response.error_code,
                error_message=response.error_message,
                retryable=response.retryable,
                raw_response=response.payload or None,
            )

        order = response.payload
        checkout_payload = {
            "key": credentials.api_key,
            "order_id": order["id"],
            "amount": order.get("amount", body["amount"]),
            "currency": order.get("currency", body["currency"]),
            "name": self.merchant_name,
            "description": intent.description or f"Booking {intent.booking_id}",
            "prefill": {
                "name": intent.customer.name or "",
                "email": intent.customer.email or "",
                "contact": intent.customer.phone or "",
            },
            "notes": notes,
            "callback_url": intent.callback_url,
        }
        logger.info("razorpay.order.created", reference=intent.reference, order_id=order["id"])
        return OrderResult(
            success=True,
            acquirer_order_id=order["id"],
            acquirer_status=order.get("status"),
            checkout_payload=checkout_payload,
            raw_response=order,
        )

    async def verify_payment(
        self,
        callback_data: Mapping[str, Any],
        credentials: AcquirerCredentials,
    ) -> VerificationResult:
        """
        Verify a Razorpay Checkout callback.

        The signature is HMAC-SHA256 over ``order_id|payment_id`` keyed with
        the key secret. On a match the payment is fetched to read its real
        status instead of trusting the callback.

        Args:
            callback_data: ``razorpay_order_id``, ``razorpay_payment_id`` and ``razorpay_signature``
            credentials: Key id and key secret

        Returns:
            VerificationResult
        """
        self.check_credentials(credentials)
        order_id = callback_data.get("razorpay_order_id")
        payment_id = callback_data.get("razorpay_payment_id")
        signature = callback_data.get("razorpay_signature")
        if not (order_id and payment_id and signature):
            return VerificationResult(
                success=True,
                verified=False,
                error_code="missing_fields",
                error_message="razorpay_order_id, razorpay_payment_id and razorpay_signature are required",
            )

        expected = compute_signature(credentials.api_secret, f"{order_id}|{payment_id}".encode("utf-8"))
        if not hmac.compare_digest(expected, str(signature).lower()):
            logger.warning("razorpay.callback.signature_mismatch", order_id=order_id)
            return VerificationResult(success=True, verified=False, error_code="signature_mismatch")

        response = await self._call(
            "GET", f"/payments/{payment_id}", operation="fetch_payment", auth=self._auth(credentials)
        )
        if not response.ok:
            return VerificationResult(
                success=False,
                verified=True,
                acquirer_order_id=order_id,
                acquirer_payment_id=payment_id,
                error_code=response.error_code,
                error_message=response.error_message,
                retryable=response.retryable,
            )

        payment = response.payload
        if payment.get("order_id") not in (None, order_id):
            logger.warning("razorpay.callback.order_mismatch", order_id=order_id, payment_id=payment_id)
            return VerificationResult(success=True, verified=False, error_code="order_mismatch", raw_response=payment)

        return VerificationResult(
            success=True,
            verified=True,
            acquirer_status=payment.get("status"),
            acquirer_order_id=order_id,
            acquirer_payment_id=payment_id,
            acquirer_transaction_id=self._transaction_id(payment),
            payment_method=payment.get("method"),
            raw_response=payment,
        )

    async def check_status(self, acquirer_order_id: str, credentials: AcquirerCredentials) -> StatusResult:
        auth = self._auth(credentials)
        order_response = await self._call("GET", f"/orders/{acquirer_order_id}", operation="fetch_order", auth=auth)
        if not order_response.ok:
            return StatusResult(
                success=False,
                acquirer_order_id=acquirer_order_id,
                error_code=order_response.error_code,
                error_message=order_response.error_message,
                retryable=order_response.retryable,
            )
        order = order_response.payload

        payments_response = await self._call(
            "GET", f"/orders/{acquirer_order_id}/payments", operation="fetch_order_payments", auth=auth
        )
        if not payments_response.ok:
            return StatusResult(
                success=False,
                acquirer_order_id=acquirer_order_id,
                error_code=payments_response.error_code,
                error_message=payments_response.error_message,
                retryable=payments_response.retryable,
            )

        payment = self._select_payment(payments_response.payload.get("items") or [])
        if payment is None:
            return StatusResult(
                success=True,
                acquirer_status=order.get("status"),
                acquirer_order_id=acquirer_order_id,
                raw_response={"order": order},
            )

        status = payment.get("status")
        refunded_minor = payment.get("amount_refunded") or 0
        currency = payment.get("currency") or order.get("currency") or "INR"
        refund_status = REFUND_STATUS_BY_KIND.get(payment.get("refund_status") or "")
        if refund_status is not None:
            status = refund_status
        return StatusResult(
            success=True,
            acquirer_status=status,
            acquirer_order_id=acquirer_order_id,
            acquirer_payment_id=payment.get("id"),
            acquirer_transaction_id=self._transaction_id(payment),
            payment_method=payment.get("method"),
            refunded_amount=from_minor_units(refunded_minor, currency) if refunded_minor else None,
            raw_response={"order": order, "payment": payment},
        )

    async def process_refund(self, request: RefundRequest, credentials: AcquirerCredentials) -> RefundResult:
        body = {
            "amount": to_minor_units(request.amount, request.currency),
            "speed": "normal",
            "notes": {"reference": request.reference, "reason": request.reason or ""},
        }
        if request.idempotency_key:
            body["receipt"] = request.idempotency_key

        response = await self._call(
            "POST",
            f"/payments/{request.acquirer_payment_id}/refund",
            operation="refund",
            json=body,
            auth=self._auth(credentials),
        )
        if not response.ok:
            return RefundResult(
                success=False,
                error_code=response.error_code,
                error_message=response.error_message,
                retryable=response.retryable,
                raw_response=response.payload or None,
            )

        refund = response.payload
        status = refund.get("status")
        return RefundResult(
            success=status != "failed",
            refund_id=refund.get("id"),
            acquirer_status=status,
            amount=from_minor_units(refund.get("amount", body["amount"]), request.currency),
            error_code="refund_failed" if status == "failed" else None,
            raw_response=refund,
        )

    async def list_refunds(self, acquirer_payment_id: str, credentials: AcquirerCredentials) -> RefundListResult:
        response = await self._call(
            "GET", f"/payments/{acquirer_payment_id}/refunds", operation="list_refunds", auth=self._auth(credentials)
        )
        if not response.ok:
            return RefundListResult(
                success=False,
                error_code=response.error_code,
                error_message=response.error_message,
                retryable=response.retryable,
            )
        refunds = [
            RefundRecord(
                refund_id=item["id"],
                amount=from_minor_units(item.get("amount", 0), item.get("currency") or "INR"),
                acquirer_status=item.get("status"),
                failed=item.get("status") == "failed",
            )
            for item in response.payload.get("items") or []
        ]
        return RefundListResult(success=True, refunds=refunds)

    async def handle_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        credentials: AcquirerCredentials,
    ) -> WebhookResult:
        """
        Verify and parse a Razorpay webhook.

        Args:
            raw_body: Request body exactly as received
            signature: ``X-Razorpay-Signature`` header value
            credentials: Must carry the webhook secret

        Returns:
            WebhookResult; unsupported events come back verified with no status
        """
        credentials.require(self.code, "webhook_secret")
        if not signature:
            return WebhookResult(verified=False, error_message="missing signature header")

        expected = compute_signature(credentials.webhook_secret, raw_body)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            return WebhookResult(verified=False, error_message="signature mismatch")

        try:
            body = json.loads(raw_body)
        except ValueError:
            return WebhookResult(verified=True, error_message="malformed payload")

        event = body.get("event")
        payload = body.get("payload") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}
        order = (payload.get("order") or {}).get("entity") or {}
        refund = (payload.get("refund") or {}).get("entity") or {}

        status = WEBHOOK_EVENT_STATUSES.get(event)
        refunded_amount: Optional[Decimal] = None
        if event == "refund.processed":
            status = REFUND_STATUS_BY_KIND.get(payment.get("refund_status") or "")
            refunded_minor = payment.get("amount_refunded")
            if refunded_minor:
                refunded_amount = from_minor_units(refunded_minor, payment.get("currency") or "INR")

        return WebhookResult(
            verified=True,
            event=event,
            acquirer_status=status,
            acquirer_order_id=payment.get("order_id") or order.get("id"),
            acquirer_payment_id=payment.get("id") or refund.get("payment_id"),
            refunded_amount=refunded_amount,
            payload=body,
        )

    async def capture_payment(
        self,
        acquirer_payment_id: str,
        amount: Decimal,
        currency: str,
        credentials: AcquirerCredentials,
    ) -> CaptureResult:
        response = await self._call(
            "POST",
            f"/payments/{acquirer_payment_id}/capture",
            operation="capture",
            json={"amount": to_minor_units(amount, currency), "currency": currency.upper()},
            auth=self._auth(credentials),
        )
        if not response.ok:
            return CaptureResult(
                success=False,
                error_code=response.error_code,
                error_message=response.error_message,
                retryable=response.retryable,
                raw_response=response.payload or None,
            )
        return CaptureResult(success=True, acquirer_status=response.payload.get("status"), raw_response=response.payload)

    async def lookup_order(self, reference: str, credentials: AcquirerCredentials) -> Optional[str]:
        response = await self._call(
            "GET", "/orders", operation="lookup_order", params={"receipt": reference}, auth=self._auth(credentials)
        )
        if not response.ok:
            return None
        items = response.payload.get("items") or []
        return items[0].get("id") if items else None

    @staticmethod
    def _select_payment(items: list) -> Optional[Dict[str, Any]]:
        if not items:
            return None
        for item in items:
            if item.get("status") == "captured":
                return item
        return max(items, key=lambda item: item.get("created_at") or 0)

    @staticmethod
    def _transaction_id(payment: Dict[str, Any]) -> Optional[str]:
        acquirer_data = payment.get("acquirer_data") or {}
        return acquirer_data.get("bank_transaction_id") or acquirer_data.get("rrn") or acquirer_data.get("upi_transaction_id")
