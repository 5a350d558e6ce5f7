"""
Acquirer Client Base Classes and Interfaces

Defines the capability contract every payment acquirer integration implements,
together with the structured results those integrations return.

Expected failures (declined payments, bad signatures, gateway rejections) are
reported through result objects. Exceptions are reserved for programmer and
configuration errors such as missing credentials.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from flightpay.core.errors import AcquirerConfigurationError
from flightpay.core.logging import get_logger

logger = get_logger(__name__)


ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
        "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)

NETWORK_ERROR = "network_error"


def currency_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a major-unit amount to the integer minor units gateways expect."""
    exponent = currency_exponent(currency)
    quantum = Decimal(1).scaleb(-exponent)
    return int(Decimal(amount).quantize(quantum, rounding=ROUND_HALF_UP).scaleb(exponent))


def from_minor_units(amount: int, currency: str) -> Decimal:
    exponent = currency_exponent(currency)
    return Decimal(int(amount)).scaleb(-exponent).quantize(Decimal(1).scaleb(-exponent))


@dataclass(frozen=True)
class AcquirerCredentials:
    """Per-acquirer secrets, loaded once at startup and never mutated."""
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    webhook_secret: Optional[str] = None

    def require(self, acquirer: str, *names: str) -> None:
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise AcquirerConfigurationError(
                f"{acquirer} credentials missing: {', '.join(missing)}"
            )

    def __repr__(self) -> str:
        return f"AcquirerCredentials(api_key={self.api_key!r}, api_secret=***, webhook_secret=***)"


@dataclass
class CustomerDetails:
    """Customer information forwarded to the gateway checkout."""
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class PaymentIntent:
    """Everything an acquirer needs to open an order for one payment attempt."""
    reference: str
    booking_id: str
    amount: Decimal
    currency: str
    customer: CustomerDetails = field(default_factory=CustomerDetails)
    description: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    callback_url: Optional[str] = None


@dataclass
class OrderResult:
    """Result of order creation."""
    success: bool
    acquirer_order_id: Optional[str] = None
    acquirer_status: Optional[str] = None
    checkout_payload: Dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class VerificationResult:
    """
    Result of callback verification.

    ``success`` says whether the gateway could be consulted at all;
    ``verified`` says whether the callback proved authentic.
    """
    success: bool
    verified: bool
    acquirer_status: Optional[str] = None
    acquirer_order_id: Optional[str] = None
    acquirer_payment_id: Optional[str] = None
    acquirer_transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class StatusResult:
    """Result of a status poll."""
    success: bool
    acquirer_status: Optional[str] = None
    acquirer_order_id: Optional[str] = None
    acquirer_payment_id: Optional[str] = None
    acquirer_transaction_id: Optional[str] = None
    payment_method: Optional[str] = None
    refunded_amount: Optional[Decimal] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class RefundRequest:
    """A refund against a captured gateway payment."""
    reference: str
    acquirer_payment_id: str
    amount: Decimal
    currency: str
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass
class RefundResult:
    """Result of a refund operation."""
    success: bool
    refund_id: Optional[str] = None
    acquirer_status: Optional[str] = None
    amount: Optional[Decimal] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class RefundRecord:
    refund_id: str
    amount: Decimal
    acquirer_status: Optional[str] = None
    failed: bool = False


@dataclass
class RefundListResult:
    """Refunds the gateway holds for one payment."""
    success: bool
    supported: bool = True
    refunds: List[RefundRecord] = field(default_factory=list)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False


@dataclass
class WebhookResult:
    """Result of webhook verification and parsing."""
    verified: bool
    event: Optional[str] = None
    acquirer_status: Optional[str] = None
    acquirer_order_id: Optional[str] = None
    acquirer_payment_id: Optional[str] = None
    refunded_amount: Optional[Decimal] = None
    payload: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


@dataclass
class CaptureResult:
    """Result of a capture request."""
    success: bool
    supported: bool = True
    acquirer_status: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class GatewayResponse:
    """Normalised outcome of one HTTP exchange with a gateway."""
    ok: bool
    status_code: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False


class AcquirerClient(ABC):
    """Abstract base class for acquirer integrations."""

    code: str = ""
    signature_header: str = ""
    required_credentials: Tuple[str, ...] = ("api_key", "api_secret")

    def __init__(self, http_client: Optional[httpx.AsyncClient], *, base_url: str, timeout: float = 20.0):
        """
        Initialize the acquirer client.

        Args:
            http_client: Shared async HTTP client, or None for SDK-backed clients
            base_url: Gateway API root, without trailing slash
            timeout: Per-request timeout in seconds
        """
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def check_credentials(self, credentials: AcquirerCredentials) -> None:
        credentials.require(self.code, *self.required_credentials)

    @abstractmethod
    async def create_order(self, intent: PaymentIntent, credentials: AcquirerCredentials) -> OrderResult:
        """
        Open a gateway order for a payment attempt.

        The payment reference is passed in the gateway's own receipt or
        idempotency field so a retried call does not open a second order.

        Args:
            intent: Amount, currency, customer and redirect details
            credentials: Acquirer credentials

        Returns:
            OrderResult with the gateway order id and the checkout payload
        """

    @abstractmethod
    async def verify_payment(
        self,
        callback_data: Mapping[str, Any],
        credentials: AcquirerCredentials,
    ) -> VerificationResult:
        """
        Verify a customer-initiated callback.

        Args:
            callback_data: Gateway fields returned through the customer's browser
            credentials: Acquirer credentials

        Returns:
            VerificationResult; ``verified`` is False on a signature mismatch
        """

    @abstractmethod
    async def check_status(self, acquirer_order_id: str, credentials: AcquirerCredentials) -> StatusResult:
        """
        Poll the gateway for the current state of an order.

        Args:
            acquirer_order_id: Gateway order identifier
            credentials: Acquirer credentials

        Returns:
            StatusResult carrying the gateway's own status string
        """

    @abstractmethod
    async def process_refund(self, request: RefundRequest, credentials: AcquirerCredentials) -> RefundResult:
        """
        Refund part or all of a captured payment.

        Args:
            request: Refund details including the idempotency key
            credentials: Acquirer credentials

        Returns:
            RefundResult with the gateway refund id
        """

    @abstractmethod
    async def handle_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        credentials: AcquirerCredentials,
    ) -> WebhookResult:
        """
        Verify and parse an asynchronous gateway notification.

        The signature is checked against the raw request body exactly as
        received, never a re-serialised copy.

        Args:
            raw_body: Unparsed request body
            signature: Value of the gateway's signature header
            credentials: Acquirer credentials

        Returns:
            WebhookResult; ``verified`` is False when the signature does not match
        """

    async def capture_payment(
        self,
        acquirer_payment_id: str,
        amount: Decimal,
        currency: str,
        credentials: AcquirerCredentials,
    ) -> CaptureResult:
        return CaptureResult(
            success=False,
            supported=False,
            error_code="capture_not_supported",
            error_message=f"{self.code} does not support two-step capture",
        )

    async def list_refunds(self, acquirer_payment_id: str, credentials: AcquirerCredentials) -> RefundListResult:
        return RefundListResult(success=False, supported=False, error_code="refund_listing_not_supported")

    async def lookup_order(self, reference: str, credentials: AcquirerCredentials) -> Optional[str]:
        """Find the gateway order opened for ``reference``, if the gateway can search by receipt."""
        return None

    async def aclose(self) -> None:
        """Release transports the client owns; the shared HTTP client is closed by its creator."""

    def _extract_error(self, payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            return error.get("code"), error.get("description") or error.get("message")
        return None, None

    async def _call(self, method: str, path: str, *, operation: str, **kwargs: Any) -> GatewayResponse:
        """
        Issue one gateway request and classify the outcome.

        Transport failures, 429 and 5xx responses are retryable; any other
        4xx is a definitive rejection.
        """
        url = f"{self.base_url}{path}"
        try:
            response = await self.http_client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("acquirer.request.transport_error", acquirer=self.code, operation=operation, error=str(exc))
            return GatewayResponse(ok=False, error_code=NETWORK_ERROR, error_message=str(exc), retryable=True)

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {"data": payload}

        if response.is_success:
            return GatewayResponse(ok=True, status_code=response.status_code, payload=payload)

        error_code, error_message = self._extract_error(payload)
        retryable = response.status_code == 429 or response.status_code >= 500
        logger.warning(
            "acquirer.request.failed",
            acquirer=self.code,
            operation=operation,
            status_code=response.status_code,
            error_code=error_code,
        )
        return GatewayResponse(
            ok=False,
            status_code=response.status_code,
            payload=payload,
            error_code=error_code or f"http_{response.status_code}",
            error_message=error_message or f"{self.code} {operation} failed with HTTP {response.status_code}",
            retryable=retryable,
        )


def load_acquirer_credentials(settings: Any) -> Mapping[str, AcquirerCredentials]:
    """Build the read-only acquirer code -> credentials mapping from settings."""
    return MappingProxyType(
        {
            "RAZORPAY": AcquirerCredentials(
                api_key=settings.razorpay_key_id,
                api_secret=settings.razorpay_key_secret,
                webhook_secret=settings.razorpay_webhook_secret,
            ),
            "STRIPE": AcquirerCredentials(
                api_key=settings.stripe_publishable_key,
                api_secret=settings.stripe_secret_key,
                webhook_secret=settings.stripe_webhook_secret,
            ),
        }
    )
