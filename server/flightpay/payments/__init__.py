from flightpay.payments.service import (
    InitiationResult,
    PaymentService,
    RefundOutcome,
    WebhookDisposition,
    WebhookOutcome,
)

__all__ = [
    "InitiationResult",
    "PaymentService",
    "RefundOutcome",
    "WebhookDisposition",
    "WebhookOutcome",
]
