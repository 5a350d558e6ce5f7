from flightpay.models.acquirer_status_mapping import AcquirerStatusMapping
from flightpay.models.booking import Booking, BookingStatus
from flightpay.models.payment import Payment, PaymentStatus
from flightpay.models.payment_audit import PaymentAuditLog, TransitionSource
from flightpay.models.payment_refund import PaymentRefund

__all__ = [
    "AcquirerStatusMapping",
    "Booking",
    "BookingStatus",
    "Payment",
    "PaymentAuditLog",
    "PaymentRefund",
    "PaymentStatus",
    "TransitionSource",
]
