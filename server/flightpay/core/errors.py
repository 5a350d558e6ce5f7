"""
Payment error taxonomy.

Expected failures of the payment core are raised as ``PaymentServiceError``
subclasses. Each one carries a stable support code and the HTTP status the API
layer translates it to. Programmer and configuration errors derive from
``RuntimeError`` instead and are never mapped to client responses.
"""

from typing import Any, Dict, Optional


class PaymentServiceError(Exception):
    """Base class for expected payment failures."""

    code = "PAYMENT_000"
    status_code = 500
    public_message = "Payment processing error"

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None):
        self.message = message or self.public_message
        super().__init__(self.message)
        if code is not None:
            self.code = code

    @property
    def detail(self) -> str:
        """Message safe to return to API clients."""
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.detail, "code": self.code}


class ValidationError(PaymentServiceError):
    code = "PAYMENT_001"
    status_code = 400
    public_message = "Invalid payment request"


class NotFoundError(PaymentServiceError):
    status_code = 404
    public_message = "Resource not found"


class BookingNotFound(NotFoundError):
    code = "PAYMENT_002"
    public_message = "Booking not found"


class PaymentNotFound(NotFoundError):
    code = "PAYMENT_003"
    public_message = "Payment not found"


class AcquirerNotFound(NotFoundError):
    code = "PAYMENT_017"
    public_message = "Payment acquirer not supported"


class ExpiredError(PaymentServiceError):
    code = "PAYMENT_004"
    status_code = 410
    public_message = "Payment session has expired"


class SignatureInvalid(PaymentServiceError):
    code = "PAYMENT_006"
    status_code = 400
    public_message = "Payment signature verification failed"


class AcquirerError(PaymentServiceError):
    """
    The gateway rejected or failed a call.

    The gateway's own error code is kept on ``gateway_code`` for support
    diagnostics; clients only ever see ``public_message``.
    """

    code = "PAYMENT_007"
    status_code = 502
    public_message = "Payment gateway error, please try again"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        acquirer: Optional[str] = None,
        gateway_code: Optional[str] = None,
        retryable: bool = False,
        code: Optional[str] = None,
    ):
        super().__init__(message, code=code)
        self.acquirer = acquirer
        self.gateway_code = gateway_code
        self.retryable = retryable

    @property
    def detail(self) -> str:
        return self.public_message


class RefundFailed(AcquirerError):
    code = "PAYMENT_008"
    public_message = "Refund could not be processed"


class InvalidTransition(PaymentServiceError):
    code = "PAYMENT_014"
    status_code = 409
    public_message = "Payment status change not permitted"

    def __init__(self, current: Any, target: Any, message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(
            message or f"payment transition {_status_name(current)} -> {_status_name(target)} not permitted"
        )


class ConcurrentModification(PaymentServiceError):
    code = "PAYMENT_015"
    status_code = 409
    public_message = "Payment was modified concurrently, please retry"


class PaymentInProgress(PaymentServiceError):
    code = "PAYMENT_016"
    status_code = 409
    public_message = "A payment is already in progress for this booking"


class AcquirerConfigurationError(RuntimeError):
    """Acquirer credentials or settings are missing or malformed."""


class DuplicateAcquirer(RuntimeError):
    pass


class RegistryFrozen(RuntimeError):
    pass


def _status_name(status: Any) -> str:
    return getattr(status, "value", str(status))


# Support codes for gateway failures that are not a distinct exception type.
NETWORK_ERROR_CODE = "PAYMENT_012"
ALREADY_PROCESSED_CODE = "PAYMENT_005"
