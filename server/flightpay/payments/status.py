from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from flightpay.core.errors import InvalidTransition
from flightpay.core.logging import get_logger
from flightpay.models.payment import Payment, PaymentStatus

logger = get_logger(__name__)


ALLOWED_TRANSITIONS: dict[PaymentStatus, tuple[PaymentStatus, ...]] = {
    PaymentStatus.CREATED: (
        PaymentStatus.PENDING,
        PaymentStatus.PROCESSING,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    ),
    PaymentStatus.PENDING: (
        PaymentStatus.PROCESSING,
        PaymentStatus.SUCCESS,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    ),
    PaymentStatus.PROCESSING: (PaymentStatus.SUCCESS, PaymentStatus.FAILED),
    PaymentStatus.SUCCESS: (PaymentStatus.REFUNDED, PaymentStatus.PARTIAL_REFUND),
    PaymentStatus.FAILED: (PaymentStatus.PENDING,),
    PaymentStatus.CANCELLED: (),
    PaymentStatus.REFUNDED: (),
    PaymentStatus.PARTIAL_REFUND: (PaymentStatus.REFUNDED,),
}

OPEN_STATUSES = frozenset({PaymentStatus.CREATED, PaymentStatus.PENDING, PaymentStatus.PROCESSING})
SETTLED_STATUSES = frozenset(
    {
        PaymentStatus.SUCCESS,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
        PaymentStatus.REFUNDED,
        PaymentStatus.PARTIAL_REFUND,
    }
)
CAPTURED_STATUSES = frozenset({PaymentStatus.SUCCESS, PaymentStatus.PARTIAL_REFUND, PaymentStatus.REFUNDED})
REFUNDABLE_STATUSES = frozenset({PaymentStatus.SUCCESS, PaymentStatus.PARTIAL_REFUND})
REFUND_STATUSES = frozenset({PaymentStatus.REFUNDED, PaymentStatus.PARTIAL_REFUND})

STATUS_MESSAGES: dict[PaymentStatus, str] = {
    PaymentStatus.CREATED: "Payment created",
    PaymentStatus.PENDING: "Awaiting customer payment",
    PaymentStatus.PROCESSING: "Payment is being processed",
    PaymentStatus.SUCCESS: "Payment completed successfully",
    PaymentStatus.FAILED: "Payment failed",
    PaymentStatus.CANCELLED: "Payment cancelled",
    PaymentStatus.REFUNDED: "Payment refunded",
    PaymentStatus.PARTIAL_REFUND: "Payment partially refunded",
    PaymentStatus.UNMAPPED: "Unrecognised gateway status",
}


@dataclass(slots=True)
class TransitionResult:
    succeeded: bool
    reason: str | None = None


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    allowed: Iterable[PaymentStatus] | None = ALLOWED_TRANSITIONS.get(current)
    return allowed is not None and target in allowed


def apply_transition(payment: Payment, target: PaymentStatus, *, now: datetime) -> TransitionResult:
    """Move ``payment`` to ``target`` if the table allows it, stamping lifecycle timestamps."""
    current = payment.status
    if not can_transition(current, target):
        return TransitionResult(False, f"payment transition {current.value} -> {target.value} not permitted")

    if target is PaymentStatus.SUCCESS and payment.completed_at is None:
        payment.completed_at = now
    if target is PaymentStatus.FAILED:
        payment.failed_at = now
    if target in REFUND_STATUSES:
        payment.refunded_at = now

    payment.status = target
    return TransitionResult(succeeded=True)


def require_transition(payment: Payment, target: PaymentStatus, *, now: datetime) -> None:
    result = apply_transition(payment, target, now=now)
    if not result.succeeded:
        logger.warning(
            "payment.transition.rejected",
            reference=payment.reference,
            current=payment.status.value,
            target=target.value,
        )
        raise InvalidTransition(payment.status, target, result.reason)


def status_message(status: PaymentStatus) -> str:
    return STATUS_MESSAGES.get(status, status.value)
