from flightpay.acquirers.base import (
    AcquirerClient,
    AcquirerCredentials,
    CaptureResult,
    CustomerDetails,
    OrderResult,
    PaymentIntent,
    RefundListResult,
    RefundRecord,
    RefundRequest,
    RefundResult,
    StatusResult,
    VerificationResult,
    WebhookResult,
    load_acquirer_credentials,
)
from flightpay.acquirers.razorpay_adapter import RazorpayAdapter
from flightpay.acquirers.registry import AcquirerRegistry, build_registry
from flightpay.acquirers.stripe_adapter import StripeAdapter

__all__ = [
    "AcquirerClient",
    "AcquirerCredentials",
    "AcquirerRegistry",
    "CaptureResult",
    "CustomerDetails",
    "OrderResult",
    "PaymentIntent",
    "RazorpayAdapter",
    "RefundListResult",
    "RefundRecord",
    "RefundRequest",
    "RefundResult",
    "StatusResult",
    "StripeAdapter",
    "VerificationResult",
    "WebhookResult",
    "build_registry",
    "load_acquirer_credentials",
]
