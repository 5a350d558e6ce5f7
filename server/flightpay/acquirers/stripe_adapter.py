"""
Stripe Acquirer Adapter

Integrates Stripe Checkout Sessions, Payment Intents and Refunds through the
Stripe SDK's async client. Webhook signatures are verified with the SDK too.
"""

import json
from decimal import Decimal
from typing import Any, Awaitable, Dict, Mapping, Optional, Tuple

import stripe

from flightpay.core.logging import get_logger

from .base import (
    NETWORK_ERROR,
    AcquirerClient,
    AcquirerCredentials,
    CaptureResult,
    GatewayResponse,
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
    "checkout.session.async_payment_succeeded": "succeeded",
    "checkout.session.async_payment_failed": "payment_failed",
    "checkout.session.expired": "expired",
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "payment_failed",
    "payment_intent.canceled": "canceled",
    "payment_intent.processing": "processing",
}

FAILED_REFUND_STATUSES = frozenset({"failed", "canceled"})

# Card declines and invalid requests are final; everything here may succeed on retry.
RETRYABLE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def _expandable_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("id")
    return value


class StripeAdapter(AcquirerClient):
    """Stripe acquirer adapter."""

    code = "STRIPE"
    signature_header = "Stripe-Signature"
    required_credentials = ("api_secret",)

    def __init__(
        self,
        stripe_http_client: Optional[stripe.HTTPClient] = None,
        *,
        base_url: str = "https://api.stripe.com",
        timeout: float = 20.0,
        webhook_tolerance: int = 300,
    ):
        """
        Initialize Stripe adapter.

        Args:
            stripe_http_client: Transport for the SDK; an async httpx client by default
            base_url: Stripe API host, without the ``/v1`` prefix
            timeout: Per-request timeout in seconds
            webhook_tolerance: Maximum age in seconds of a signed webhook timestamp
        """
        super().__init__(None, base_url=base_url, timeout=timeout)
        self.stripe_http_client = stripe_http_client or stripe.HTTPXClient(timeout=timeout)
        self.webhook_tolerance = webhook_tolerance
        self._clients: Dict[str, stripe.StripeClient] = {}

    def _client(self, credentials: AcquirerCredentials) -> stripe.StripeClient:
        self.check_credentials(credentials)
        client = self._clients.get(credentials.api_secret)
        if client is None:
            client = stripe.StripeClient(
                credentials.api_secret,
                base_addresses={"api": self.base_url},
                http_client=self.stripe_http_client,
                max_network_retries=0,
            )
            self._clients[credentials.api_secret] = client
        return client

    async def _request(self, operation: str, call: Awaitable[Any]) -> GatewayResponse:
        """
        Await one SDK call and classify the outcome.

        Connection failures, rate limits and Stripe-side errors are retryable;
        card errors and invalid requests are definitive rejections.
        """
        try:
            obj = await call
        except stripe.StripeError as exc:
            return self._failure(operation, exc)
        return GatewayResponse(ok=True, status_code=200, payload=obj.to_dict())

    def _failure(self, operation: str, exc: stripe.StripeError) -> GatewayResponse:
        body = exc.json_body if isinstance(exc.json_body, dict) else {}
        error = body.get("error") if isinstance(body.get("error"), dict) else {}
        if isinstance(exc, stripe.APIConnectionError):
            error_code = NETWORK_ERROR
        else:
            error_code = exc.code or error.get("code") or (f"http_{exc.http_status}" if exc.http_status else None)
        logger.warning(
            "acquirer.request.failed",
            acquirer=self.code,
            operation=operation,
            status_code=exc.http_status,
            error_type=type(exc).__name__,
            error_code=error_code,
        )
        return GatewayResponse(
            ok=False,
            status_code=exc.http_status,
            payload=body,
            error_code=error_code or "stripe_error",
            error_message=exc.user_message or f"{self.code} {operation} failed",
            retryable=isinstance(exc, RETRYABLE_ERRORS),
        )

    async def create_order(self, intent: PaymentIntent, credentials: AcquirerCredentials) -> OrderResult:
        """
        Create a Stripe Checkout Session.

        Args:
            intent: Payment attempt details
            credentials: Secret key (and publishable key for the browser)

        Returns:
            OrderResult whose order id is the Checkout Session id
        """
        metadata = {"reference": intent.reference, "booking_id": intent.booking_id}
        success_url = intent.success_url or ""
        if success_url and "{CHECKOUT_SESSION_ID}" not in success_url:
            separator = "&" if "?" in success_url else "?"
            success_url = f"{success_url}{separator}session_id={{CHECKOUT_SESSION_ID}}"

        params = {
            "mode": "payment",
            "client_reference_id": intent.reference,
            "customer_email": intent.customer.email,
            "success_url": success_url or None,
            "cancel_url": intent.cancel_url,
            "line_items": [
                {
                    "quantity": 1,
                    "price_data": {
                        "currency": intent.currency.lower(),
                        "unit_amount": to_minor_units(intent.amount, intent.currency),
                        "product_data": {"name": intent.description or f"Booking {intent.booking_id}"},
                    },
                }
            ],
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        response = await self._request(
            "create_order",
            self._client(credentials).v1.checkout.sessions.create_async(
                params=params, options={"idempotency_key": f"{intent.reference}-order"}
            ),
        )
        if not response.ok:
            return OrderResult(
                success=False,
                error_code=response.error_code,
                error_message=response.error_message,
                retryable=response.retryable,
                raw_response=response.payload or None,
            )

        session = response.payload
        logger.info("stripe.session.created", reference=intent.reference, session_id=session["id"])
        return OrderResult(
            success=True,
            acquirer_order_id=session["id"],
            acquirer_status=session.get("status"),
            checkout_payload={
                "session_id": session["id"],
                "checkout_url": session.get("url"),
                "publishable_key": credentials.api_key,
            },
            raw_response=session,
        )

    async def verify_payment(
        self,
        callback_data: Mapping[str, Any],
        credentials: AcquirerCredentials,
    ) -> VerificationResult:
        """
        Verify a Checkout return by retrieving the session server-side.

        Stripe does not sign browser redirects, so a callback is authentic only
        if the session it names exists under our account.

        Args:
            callback_data: Must contain ``session_id``
            credentials: Secret key

        Returns:
            VerificationResult
        """
        session_id = callback_data.get("session_id")
        if not session_id:
            return VerificationResult(
                success=True, verified=False, error_code="missing_fields", error_message="session_id is required"
            )

        response = await self._fetch_session(session_id, credentials)
        if not response.ok:
            if response.status_code == 404:
                return VerificationResult(success=True, verified=False, error_code=response.error_code)
            return VerificationResult(
                success=False,
                verified=False,
                error_code=response.error_code,
                error_message=response.error_message,
                retryable=response.retryable,
            )

        session = response.payload
        status, payment_intent, charge = self._session_state(session)
        return VerificationResult(
            success=True,
            verified=True,
            acquirer_status=status,
            acquirer_order_id=session.get("id"),
            acquirer_payment_id=_expandable_id(session.get("payment_intent")),
            acquirer_transaction_id=_expandable_id(charge) if charge else None,
            payment_method=self._payment_method(payment_intent),
            raw_response=session,
        )

    async def check_status(self, acquirer_order_id: str, credentials: AcquirerCredentials) -> StatusResult:
        if acquirer_order_id.startswith("pi_"):
            response = await self._request(
                "fetch_payment_intent",
                self._client(credentials).v1.payment_intents.retrieve_async(
                    acquirer_order_id, params={"expand": ["latest_charge"]}
                ),
            )
            if not response.ok:
                return self._status_failure(acquirer_order_id, response)
            payment_intent = response.payload
            charge = payment_intent.get("latest_charge")
            status, refunded_minor = self._intent_state(payment_intent)
            return StatusResult(
                success=True,
                acquirer_status=status,
                acquirer_order_id=acquirer_order_id,
                acquirer_payment_id=payment_intent.get("id"),
                acquirer_transaction_id=_expandable_id(charge),
                payment_method=self._payment_method(payment_intent),
                refunded_amount=self._refunded(refunded_minor, payment_intent.get("currency")),
                raw_response=payment_intent,
            )

        response = await self._fetch_session(acquirer_order_id, credentials)
        if not response.ok:
            return self._status_failure(acquirer_order_id, response)
        session = response.payload
        status, payment_intent, charge = self._session_state(session)
        refunded_minor = charge.get("amount_refunded") if isinstance(charge, dict) else None
        return StatusResult(
            success=True,
            acquirer_status=status,
            acquirer_order_id=session.get("id"),
            acquirer_payment_id=_expandable_id(session.get("payment_intent")),
            acquirer_transaction_id=_expandable_id(charge) if charge else None,
            payment_method=self._payment_method(payment_intent),
            refunded_amount=self._refunded(refunded_minor, session.get("currency")),
            raw_response=session,
        )

    async def process_refund(self, request: RefundRequest, credentials: AcquirerCredentials) -> RefundResult:
        amount_minor = to_minor_units(request.amount, request.currency)
        response = await self._request(
            "refund",
            self._client(credentials).v1.refunds.create_async(
                params={
                    "payment_intent": request.acquirer_payment_id,
                    "amount": amount_minor,
                    "metadata": {"reference": request.reference, "reason": request.reason},
                },
                options={"idempotency_key": request.idempotency_key} if request.idempotency_key else None,
            ),
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
        failed = status in FAILED_REFUND_STATUSES
        return RefundResult(
            success=not failed,
            refund_id=refund.get("id"),
            acquirer_status=status,
            amount=from_minor_units(refund.get("amount", amount_minor), request.currency),
            error_code=refund.get("failure_reason") or ("refund_failed" if failed else None),
            raw_response=refund,
        )

    async def list_refunds(self, acquirer_payment_id: str, credentials: AcquirerCredentials) -> RefundListResult:
        response = await self._request(
            "list_refunds",
            self._client(credentials).v1.refunds.list_async(
                params={"payment_intent": acquirer_payment_id, "limit": 100}
            ),
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
                amount=from_minor_units(item.get("amount", 0), item.get("currency") or "usd"),
                acquirer_status=item.get("status"),
                failed=item.get("status") in FAILED_REFUND_STATUSES,
            )
            for item in response.payload.get("data") or []
        ]
        return RefundListResult(success=True, refunds=refunds)

    async def handle_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        credentials: AcquirerCredentials,
    ) -> WebhookResult:
        """
        Verify and parse a Stripe webhook.

        Args:
            raw_body: Request body exactly as received
            signature: ``Stripe-Signature`` header value
            credentials: Must carry the endpoint signing secret

        Returns:
            WebhookResult; unsupported events come back verified with no status
        """
        credentials.require(self.code, "webhook_secret")
        if not signature:
            return WebhookResult(verified=False, error_message="missing signature header")

        try:
            payload_text = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload_text, signature, credentials.webhook_secret, self.webhook_tolerance
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
            return WebhookResult(verified=False, error_message=str(exc))

        try:
            event = json.loads(payload_text)
        except ValueError:
            return WebhookResult(verified=True, error_message="malformed payload")

        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        result = WebhookResult(verified=True, event=event_type, payload=event)

        if event_type and event_type.startswith("checkout.session."):
            result.acquirer_order_id = obj.get("id")
            result.acquirer_payment_id = _expandable_id(obj.get("payment_intent"))
            if event_type == "checkout.session.completed":
                result.acquirer_status = "paid" if obj.get("payment_status") == "paid" else "processing"
            else:
                result.acquirer_status = WEBHOOK_EVENT_STATUSES.get(event_type)
        elif event_type and event_type.startswith("payment_intent."):
            result.acquirer_payment_id = obj.get("id")
            result.acquirer_status = WEBHOOK_EVENT_STATUSES.get(event_type)
        elif event_type == "charge.refunded":
            result.acquirer_payment_id = _expandable_id(obj.get("payment_intent"))
            result.acquirer_status = "refunded" if obj.get("refunded") else "partial_refunded"
            result.refunded_amount = self._refunded(obj.get("amount_refunded"), obj.get("currency"))
        return result

    async def capture_payment(
        self,
        acquirer_payment_id: str,
        amount: Decimal,
        currency: str,
        credentials: AcquirerCredentials,
    ) -> CaptureResult:
        response = await self._request(
            "capture",
            self._client(credentials).v1.payment_intents.capture_async(
                acquirer_payment_id,
                params={"amount_to_capture": to_minor_units(amount, currency)},
                options={"idempotency_key": f"{acquirer_payment_id}-capture"},
            ),
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

    async def aclose(self) -> None:
        await self.stripe_http_client.close_async()

    async def _fetch_session(self, session_id: str, credentials: AcquirerCredentials) -> GatewayResponse:
        return await self._request(
            "fetch_session",
            self._client(credentials).v1.checkout.sessions.retrieve_async(
                session_id, params={"expand": ["payment_intent.latest_charge"]}
            ),
        )

    def _session_state(self, session: Dict[str, Any]) -> Tuple[Optional[str], Optional[Dict[str, Any]], Any]:
        payment_intent = session.get("payment_intent")
        payment_intent = payment_intent if isinstance(payment_intent, dict) else None
        charge = payment_intent.get("latest_charge") if payment_intent else None

        if payment_intent is not None:
            status, _ = self._intent_state(payment_intent)
            if status in ("refunded", "partial_refunded", "succeeded"):
                return status, payment_intent, charge
        if session.get("payment_status") == "paid":
            return "paid", payment_intent, charge
        if session.get("status") == "expired":
            return "expired", payment_intent, charge
        if payment_intent is not None:
            return payment_intent.get("status"), payment_intent, charge
        return session.get("payment_status") or session.get("status"), payment_intent, charge

    @staticmethod
    def _intent_state(payment_intent: Dict[str, Any]) -> Tuple[Optional[str], Optional[int]]:
        status = payment_intent.get("status")
        charge = payment_intent.get("latest_charge")
        if status == "succeeded" and isinstance(charge, dict):
            refunded_minor = charge.get("amount_refunded") or 0
            if charge.get("refunded"):
                return "refunded", refunded_minor
            if refunded_minor:
                return "partial_refunded", refunded_minor
        return status, None

    @staticmethod
    def _payment_method(payment_intent: Optional[Dict[str, Any]]) -> Optional[str]:
        if not payment_intent:
            return None
        types = payment_intent.get("payment_method_types") or []
        return types[0] if types else None

    @staticmethod
    def _refunded(amount_minor: Optional[int], currency: Optional[str]) -> Optional[Decimal]:
        if not amount_minor:
            return None
        return from_minor_units(amount_minor, currency or "usd")

    @staticmethod
    def _status_failure(acquirer_order_id: str, response: GatewayResponse) -> StatusResult:
        return StatusResult(
            success=False,
            acquirer_order_id=acquirer_order_id,
            error_code=response.error_code,
            error_message=response.error_message,
            retryable=response.retryable,
        )
