from __future__ import annotations

import secrets
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from flightpay.acquirers.base import (
    NETWORK_ERROR,
    AcquirerClient,
    AcquirerCredentials,
    CustomerDetails,
    PaymentIntent,
    RefundRequest,
)
from flightpay.acquirers.registry import AcquirerRegistry
from flightpay.core.errors import (
    ALREADY_PROCESSED_CODE,
    NETWORK_ERROR_CODE,
    AcquirerConfigurationError,
    AcquirerError,
    BookingNotFound,
    ConcurrentModification,
    ExpiredError,
    InvalidTransition,
    PaymentInProgress,
    PaymentNotFound,
    RefundFailed,
    SignatureInvalid,
    ValidationError,
)
from flightpay.core.logging import get_logger
from flightpay.models.booking import BookingStatus
from flightpay.models.payment import Payment, PaymentStatus
from flightpay.models.payment_audit import TransitionSource
from flightpay.models.payment_refund import PaymentRefund
from flightpay.payments import repository
from flightpay.payments.booking import BOOKABLE_STATUSES, BookingGateway, SqlBookingGateway
from flightpay.payments.locks import ReferenceLocks, booking_key, payment_key
from flightpay.payments.status import (
    CAPTURED_STATUSES,
    OPEN_STATUSES,
    REFUND_STATUSES,
    REFUNDABLE_STATUSES,
    SETTLED_STATUSES,
    TransitionResult,
    apply_transition,
    require_transition,
)
from flightpay.payments.status_mapping import StatusMapper

logger = get_logger(__name__)

REFERENCE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CENT = Decimal("0.01")
ZERO = Decimal("0.00")

BOOKING_STATUS_FOR_PAYMENT = {
    PaymentStatus.SUCCESS: BookingStatus.CONFIRMED,
    PaymentStatus.FAILED: BookingStatus.FAILED,
    PaymentStatus.CANCELLED: BookingStatus.FAILED,
}


def generate_reference(now: datetime) -> str:
    suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(10))
    return f"PAY-{now:%Y%m%d}-{suffix}"


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(slots=True)
class InitiationResult:
    reference: str
    status: PaymentStatus
    acquirer_code: str
    amount: Decimal
    currency: str
    expires_at: datetime
    checkout_payload: dict[str, Any] = field(default_factory=dict)

    @property
    def checkout_url(self) -> str | None:
        return self.checkout_payload.get("checkout_url")


@dataclass(slots=True)
class RefundOutcome:
    reference: str
    refund_id: str | None
    status: PaymentStatus
    amount: Decimal
    refunded_amount: Decimal


class WebhookDisposition(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    ORPHANED = "orphaned"
    REJECTED = "rejected"


@dataclass(slots=True)
class WebhookOutcome:
    acquirer_code: str
    event: str | None
    disposition: WebhookDisposition
    reference: str | None = None
    status: PaymentStatus | None = None


class GatewayUpdate(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    UNMAPPED = "unmapped"
    REJECTED = "rejected"


WEBHOOK_DISPOSITIONS = {
    GatewayUpdate.APPLIED: WebhookDisposition.APPLIED,
    GatewayUpdate.UNCHANGED: WebhookDisposition.DUPLICATE,
    GatewayUpdate.UNMAPPED: WebhookDisposition.IGNORED,
    GatewayUpdate.REJECTED: WebhookDisposition.REJECTED,
}


class PaymentService:
    """
    Drives payments through their lifecycle against whichever acquirer they
    are bound to.

    Every status write happens under the payment's reference lock and goes
    through the transition table. Gateway calls run outside database
    transactions; the surrounding reads and writes are committed separately.
    """

    def __init__(
        self,
        *,
        registry: AcquirerRegistry,
        credentials: Mapping[str, AcquirerCredentials],
        session_factory: async_sessionmaker[AsyncSession],
        status_mapper: StatusMapper | None = None,
        bookings: BookingGateway | None = None,
        locks: ReferenceLocks | None = None,
        expiry_minutes: int = 15,
        default_acquirer: str = "RAZORPAY",
        app_url: str = "http://localhost:8000",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._credentials = credentials
        self._session_factory = session_factory
        self._mapper = status_mapper or StatusMapper()
        self._bookings = bookings or SqlBookingGateway()
        self._locks = locks or ReferenceLocks()
        self._expiry = timedelta(minutes=expiry_minutes)
        self._default_acquirer = default_acquirer
        self._app_url = app_url.rstrip("/")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return as_utc(self._clock())

    def signature_header_for(self, acquirer_code: str) -> str:
        return self._registry.resolve(acquirer_code).signature_header

    # -- operations -----------------------------------------------------------------

    async def initiate(
        self,
        booking_id: str,
        *,
        acquirer: str | None = None,
        customer: CustomerDetails | None = None,
        description: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> InitiationResult:
        client, credentials = self._client(acquirer or self._default_acquirer)
        customer = customer or CustomerDetails()

        async with self._locks.hold(booking_key(booking_id)):
            async with self._session() as session:
                async with session.begin():
                    booking = await self._bookings.get_booking(session, booking_id)
                    if booking is None:
                        raise BookingNotFound(f"booking {booking_id} not found")
                    if booking.status not in BOOKABLE_STATUSES:
                        raise ValidationError(
                            f"booking {booking_id} is {booking.status.value} and cannot take a payment",
                            code=ALREADY_PROCESSED_CODE,
                        )
                    if booking.total_amount is None or booking.total_amount <= 0:
                        raise ValidationError(f"booking {booking_id} has no payable amount")

                    now = self.now()
                    existing = await repository.get_open_payment_for_booking(session, booking_id)
                    if existing is not None:
                        if not self._is_expired(existing, now):
                            raise PaymentInProgress(
                                f"payment {existing.reference} is still open for booking {booking_id}"
                            )
                        self._require(session, existing, PaymentStatus.FAILED, source=TransitionSource.EXPIRY)
                        existing.failure_reason = "expired"
                        existing.error_code = ExpiredError.code
                        await session.flush()

                    payment = Payment(
                        reference=generate_reference(now),
                        booking_id=booking_id,
                        amount=Decimal(booking.total_amount),
                        currency=booking.currency.upper(),
                        acquirer_code=client.code,
                        status=PaymentStatus.CREATED,
                        refunded_amount=ZERO,
                        expires_at=now + self._expiry,
                        customer_email=customer.email,
                        customer_name=customer.name,
                        customer_phone=customer.phone,
                        description=description,
                        success_url=success_url or f"{self._app_url}/payments/success",
                        failure_url=cancel_url or f"{self._app_url}/payments/cancel",
                        callback_url=f"{self._app_url}/payments/callback",
                    )
                    session.add(payment)
                    try:
                        await session.flush()
                    except IntegrityError as exc:
                        raise PaymentInProgress(f"another payment is open for booking {booking_id}") from exc
                    repository.record_transition_audit(
                        session, payment, previous=None, source=TransitionSource.INITIATE
                    )
                reference = payment.reference
                logger.info("payment.created", reference=reference, booking_id=booking_id, acquirer=client.code)

                async with self._locks.hold(payment_key(reference)):
                    intent = PaymentIntent(
                        reference=reference,
                        booking_id=booking_id,
                        amount=payment.amount,
                        currency=payment.currency,
                        customer=customer,
                        description=description,
                        success_url=payment.success_url,
                        cancel_url=payment.failure_url,
                        callback_url=payment.callback_url,
                    )
                    order = await client.create_order(intent, credentials)

                    async with session.begin():
                        payment = await self._load(session, reference)
                        payment.raw_acquirer_response = order.raw_response
                        if order.success:
                            payment.acquirer_order_id = order.acquirer_order_id
                            payment.checkout_payload = order.checkout_payload
                            self._require(session, payment, PaymentStatus.PENDING, source=TransitionSource.INITIATE)
                            await self._bookings.set_booking_status(
                                session, booking_id, BookingStatus.PAYMENT_INITIATED
                            )
                        else:
                            self._require(
                                session,
                                payment,
                                PaymentStatus.FAILED,
                                source=TransitionSource.INITIATE,
                                details={"error_code": order.error_code},
                            )
                            payment.failure_reason = order.error_message
                            payment.error_code = order.error_code

        if not order.success:
            logger.warning(
                "payment.order.failed",
                reference=reference,
                acquirer=client.code,
                gateway_code=order.error_code,
                retryable=order.retryable,
            )
            raise AcquirerError(
                order.error_message,
                acquirer=client.code,
                gateway_code=order.error_code,
                retryable=order.retryable,
                code=NETWORK_ERROR_CODE if order.error_code == NETWORK_ERROR else None,
            )

        logger.info("payment.initiated", reference=reference, order_id=payment.acquirer_order_id)
        return InitiationResult(
            reference=reference,
            status=payment.status,
            acquirer_code=client.code,
            amount=payment.amount,
            currency=payment.currency,
            expires_at=as_utc(payment.expires_at),
            checkout_payload=dict(payment.checkout_payload or {}),
        )

    async def verify_callback(self, reference: str, callback_data: Mapping[str, Any]) -> Payment:
        async with self._locks.hold(payment_key(reference)):
            async with self._session() as session:
                async with session.begin():
                    payment = await self._load(session, reference)
                    if payment.status in CAPTURED_STATUSES:
                        logger.info("payment.callback.duplicate", reference=reference, status=payment.status.value)
                        return payment
                    expired = self._is_expired(payment, self.now())
                    if expired:
                        await self._fail(
                            session,
                            payment,
                            source=TransitionSource.CALLBACK,
                            reason="expired",
                            error_code=ExpiredError.code,
                        )
                    elif payment.status not in OPEN_STATUSES:
                        logger.warning(
                            "payment.callback.rejected", reference=reference, status=payment.status.value
                        )
                        raise InvalidTransition(payment.status, PaymentStatus.SUCCESS)
                if expired:
                    logger.info("payment.callback.expired", reference=reference)
                    raise ExpiredError(f"payment {reference} expired")

                client, credentials = self._client(payment.acquirer_code)
                result = await client.verify_payment(callback_data, credentials)

                signature_failed = False
                rejected: PaymentStatus | None = None
                async with session.begin():
                    payment = await self._load(session, reference)
                    if result.success and (
                        not result.verified
                        or result.acquirer_order_id is None
                        or result.acquirer_order_id != payment.acquirer_order_id
                    ):
                        signature_failed = True
                        if payment.status in OPEN_STATUSES:
                            await self._fail(
                                session,
                                payment,
                                source=TransitionSource.CALLBACK,
                                reason="signature_invalid",
                                error_code=SignatureInvalid.code,
                            )
                    elif result.success:
                        canonical = await self._mapper.resolve(session, payment.acquirer_code, result.acquirer_status)
                        self._record_gateway_fields(
                            payment,
                            payment_id=result.acquirer_payment_id,
                            transaction_id=result.acquirer_transaction_id,
                            method=result.payment_method,
                            overwrite=canonical is PaymentStatus.SUCCESS,
                        )
                        payment.raw_acquirer_response = result.raw_response
                        update = await self._apply_gateway_status(
                            session, payment, canonical, source=TransitionSource.CALLBACK
                        )
                        if update is GatewayUpdate.REJECTED:
                            rejected = canonical

        if not result.success:
            logger.warning(
                "payment.callback.verification_unavailable",
                reference=reference,
                gateway_code=result.error_code,
                retryable=result.retryable,
            )
            raise AcquirerError(
                result.error_message,
                acquirer=payment.acquirer_code,
                gateway_code=result.error_code,
                retryable=result.retryable,
                code=NETWORK_ERROR_CODE if result.error_code == NETWORK_ERROR else None,
            )
        if signature_failed:
            logger.warning("payment.callback.signature_invalid", reference=reference, error_code=result.error_code)
            raise SignatureInvalid(f"callback for payment {reference} failed verification")
        if rejected is not None:
            raise InvalidTransition(payment.status, rejected)

        logger.info("payment.callback.processed", reference=reference, status=payment.status.value)
        return payment

    async def check_status(self, reference: str) -> Payment:
        async with self._locks.hold(payment_key(reference)):
            async with self._session() as session:
                async with session.begin():
                    payment = await self._load(session, reference)
                if payment.status in SETTLED_STATUSES:
                    return payment

                client, credentials = self._client(payment.acquirer_code)
                order_id = payment.acquirer_order_id
                if order_id is None:
                    order_id = await client.lookup_order(payment.reference, credentials)
                result = await client.check_status(order_id, credentials) if order_id else None

                async with session.begin():
                    payment = await self._load(session, reference)
                    if order_id and payment.acquirer_order_id is None:
                        payment.acquirer_order_id = order_id
                        logger.info("payment.order.recovered", reference=reference, order_id=order_id)
                    if result is not None and not result.success:
                        logger.warning(
                            "payment.status.poll_failed",
                            reference=reference,
                            gateway_code=result.error_code,
                            retryable=result.retryable,
                        )
                    elif result is not None:
                        canonical = await self._mapper.resolve(session, payment.acquirer_code, result.acquirer_status)
                        self._record_gateway_fields(
                            payment,
                            payment_id=result.acquirer_payment_id,
                            transaction_id=result.acquirer_transaction_id,
                            method=result.payment_method,
                            overwrite=canonical is PaymentStatus.SUCCESS,
                        )
                        payment.raw_acquirer_response = result.raw_response
                        await self._apply_gateway_status(
                            session,
                            payment,
                            canonical,
                            source=TransitionSource.POLL,
                            refunded_amount=result.refunded_amount,
                        )
                    if self._is_expired(payment, self.now()):
                        await self._fail(
                            session,
                            payment,
                            source=TransitionSource.EXPIRY,
                            reason="expired",
                            error_code=ExpiredError.code,
                        )
        return payment

    async def process_refund(self, reference: str, amount: Any, reason: str | None = None) -> RefundOutcome:
        value = self._validate_refund_amount(amount)

        async with self._locks.hold(payment_key(reference)):
            async with self._session() as session:
                async with session.begin():
                    payment = await self._load(session, reference)
                    if payment.status not in REFUNDABLE_STATUSES:
                        logger.warning("payment.refund.rejected", reference=reference, status=payment.status.value)
                        raise InvalidTransition(
                            payment.status,
                            PaymentStatus.REFUNDED,
                            f"payment {reference} is {payment.status.value} and cannot be refunded",
                        )
                    remaining = payment.amount - payment.refunded_amount
                    if value > remaining:
                        raise ValidationError(f"refund of {value} exceeds refundable balance {remaining}")
                    if not payment.acquirer_payment_id:
                        raise ValidationError(f"payment {reference} has no captured acquirer payment")
                    ordinal = await repository.count_refunds(session, payment.id) + 1

                idempotency_key = f"{reference}-R{ordinal}"
                client, credentials = self._client(payment.acquirer_code)
                result = await client.process_refund(
                    RefundRequest(
                        reference=reference,
                        acquirer_payment_id=payment.acquirer_payment_id,
                        amount=value,
                        currency=payment.currency,
                        reason=reason,
                        idempotency_key=idempotency_key,
                    ),
                    credentials,
                )

                async with session.begin():
                    payment = await self._load(session, reference)
                    # Retryable failures leave no ledger row; the next attempt reuses this idempotency key.
                    if result.success or not result.retryable:
                        session.add(
                            PaymentRefund(
                                payment_id=payment.id,
                                acquirer_refund_id=result.refund_id,
                                amount=value,
                                reason=reason,
                                acquirer_status=result.acquirer_status,
                                idempotency_key=idempotency_key,
                                succeeded=result.success,
                                raw_response=result.raw_response,
                            )
                        )
                    if result.success:
                        refunded = payment.refunded_amount + value
                        payment.refunded_amount = refunded
                        payment.refund_reference = result.refund_id
                        target = PaymentStatus.REFUNDED if refunded == payment.amount else PaymentStatus.PARTIAL_REFUND
                        if payment.status is not target:
                            self._require(
                                session,
                                payment,
                                target,
                                source=TransitionSource.REFUND,
                                details={"refund_id": result.refund_id, "refunded_amount": str(refunded)},
                            )

        if not result.success:
            logger.warning(
                "payment.refund.failed",
                reference=reference,
                gateway_code=result.error_code,
                retryable=result.retryable,
            )
            raise RefundFailed(
                result.error_message,
                acquirer=payment.acquirer_code,
                gateway_code=result.error_code,
                retryable=result.retryable,
                code=NETWORK_ERROR_CODE if result.error_code == NETWORK_ERROR else None,
            )

        logger.info(
            "payment.refund.processed",
            reference=reference,
            refund_id=result.refund_id,
            amount=str(value),
            status=payment.status.value,
        )
        return RefundOutcome(
            reference=reference,
            refund_id=result.refund_id,
            status=payment.status,
            amount=value,
            refunded_amount=payment.refunded_amount,
        )

    async def handle_webhook(self, acquirer_code: str, raw_body: bytes, signature: str | None) -> WebhookOutcome:
        client, credentials = self._client(acquirer_code)
        result = await client.handle_webhook(raw_body, signature, credentials)
        if not result.verified:
            logger.warning("payment.webhook.signature_invalid", acquirer=client.code, error=result.error_message)
            raise SignatureInvalid(f"{client.code} webhook signature invalid")

        if result.acquirer_status is None:
            logger.info("payment.webhook.ignored", acquirer=client.code, webhook_event=result.event)
            return WebhookOutcome(client.code, result.event, WebhookDisposition.IGNORED)

        async with self._session() as session:
            async with session.begin():
                located = await repository.find_by_acquirer_ids(
                    session,
                    client.code,
                    acquirer_order_id=result.acquirer_order_id,
                    acquirer_payment_id=result.acquirer_payment_id,
                )
        if located is None:
            logger.warning(
                "payment.webhook.orphaned",
                acquirer=client.code,
                webhook_event=result.event,
                order_id=result.acquirer_order_id,
                payment_id=result.acquirer_payment_id,
            )
            return WebhookOutcome(client.code, result.event, WebhookDisposition.ORPHANED)

        reference = located.reference
        async with self._locks.hold(payment_key(reference)):
            async with self._session() as session:
                async with session.begin():
                    payment = await self._load(session, reference)
                    canonical = await self._mapper.resolve(session, client.code, result.acquirer_status)
                    if canonical is payment.status and canonical not in REFUND_STATUSES:
                        update = GatewayUpdate.UNCHANGED
                    else:
                        payment.webhook_data = result.payload
                        self._record_gateway_fields(
                            payment,
                            payment_id=result.acquirer_payment_id,
                            overwrite=canonical is PaymentStatus.SUCCESS,
                        )
                        update = await self._apply_gateway_status(
                            session,
                            payment,
                            canonical,
                            source=TransitionSource.WEBHOOK,
                            refunded_amount=result.refunded_amount,
                        )

        disposition = WEBHOOK_DISPOSITIONS[update]
        logger.info(
            "payment.webhook.processed",
            reference=reference,
            acquirer=client.code,
            webhook_event=result.event,
            disposition=disposition.value,
            status=payment.status.value,
        )
        return WebhookOutcome(client.code, result.event, disposition, reference, payment.status)

    async def reconcile_refunds(self, reference: str) -> Payment:
        """Re-derive the refunded amount from the gateway's refund records; it never goes down."""
        async with self._locks.hold(payment_key(reference)):
            async with self._session() as session:
                async with session.begin():
                    payment = await self._load(session, reference)
                if payment.status not in CAPTURED_STATUSES or not payment.acquirer_payment_id:
                    logger.info("payment.refund_reconcile.skipped", reference=reference, status=payment.status.value)
                    return payment

                client, credentials = self._client(payment.acquirer_code)
                listing = await client.list_refunds(payment.acquirer_payment_id, credentials)
                if not listing.supported:
                    logger.info("payment.refund_reconcile.unsupported", reference=reference, acquirer=client.code)
                    return payment
                if not listing.success:
                    raise AcquirerError(
                        listing.error_message,
                        acquirer=client.code,
                        gateway_code=listing.error_code,
                        retryable=listing.retryable,
                    )

                gateway_total = sum((refund.amount for refund in listing.refunds if not refund.failed), ZERO)
                async with session.begin():
                    payment = await self._load(session, reference)
                    if gateway_total > payment.amount:
                        payment.requires_review = True
                        logger.error(
                            "payment.refund_reconcile.over_refunded",
                            reference=reference,
                            gateway_total=str(gateway_total),
                            amount=str(payment.amount),
                        )
                    self._reconcile_refunded_amount(session, payment, gateway_total, source=TransitionSource.RECONCILE)

        logger.info(
            "payment.refund_reconcile.completed",
            reference=reference,
            refunded_amount=str(payment.refunded_amount),
            status=payment.status.value,
        )
        return payment

    async def expire_stale_payments(self) -> list[str]:
        async with self._session() as session:
            async with session.begin():
                candidates = await repository.list_expired_open_references(session, self.now())

        expired: list[str] = []
        for reference in candidates:
            async with self._locks.hold(payment_key(reference)):
                async with self._session() as session:
                    async with session.begin():
                        payment = await self._load(session, reference)
                        if self._is_expired(payment, self.now()):
                            await self._fail(
                                session,
                                payment,
                                source=TransitionSource.EXPIRY,
                                reason="expired",
                                error_code=ExpiredError.code,
                            )
                            expired.append(reference)
        logger.info("payment.expiry.sweep", expired=len(expired))
        return expired

    async def get_payment(self, reference: str) -> Payment:
        async with self._session() as session:
            return await self._load(session, reference, for_update=False)

    async def list_booking_payments(self, booking_id: str) -> list[Payment]:
        async with self._session() as session:
            return await repository.list_payments_for_booking(session, booking_id)

    async def aclose(self) -> None:
        await self._registry.aclose()

    # -- internals ------------------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
            except StaleDataError as exc:
                logger.warning("payment.version_conflict", error=str(exc))
                raise ConcurrentModification() from exc

    def _client(self, acquirer_code: str) -> tuple[AcquirerClient, AcquirerCredentials]:
        client = self._registry.resolve(acquirer_code)
        credentials = self._credentials.get(client.code)
        if credentials is None:
            raise AcquirerConfigurationError(f"no credentials configured for {client.code}")
        client.check_credentials(credentials)
        return client, credentials

    async def _load(self, session: AsyncSession, reference: str, *, for_update: bool = True) -> Payment:
        payment = await repository.get_payment_by_reference(session, reference, for_update=for_update)
        if payment is None:
            raise PaymentNotFound(f"payment {reference} not found")
        return payment

    def _is_expired(self, payment: Payment, now: datetime) -> bool:
        return payment.status in OPEN_STATUSES and now > as_utc(payment.expires_at)

    @staticmethod
    def _validate_refund_amount(amount: Any) -> Decimal:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError("refund amount must be a number") from exc
        if not value.is_finite() or value <= 0:
            raise ValidationError("refund amount must be greater than zero")
        if value != value.quantize(CENT):
            raise ValidationError("refund amount has more than two decimal places")
        return value

    def _transition(
        self,
        session: AsyncSession,
        payment: Payment,
        target: PaymentStatus,
        *,
        source: TransitionSource,
        details: dict | None = None,
    ) -> TransitionResult:
        previous = payment.status
        result = apply_transition(payment, target, now=self.now())
        if result.succeeded:
            self._audit(session, payment, previous, source, details)
        return result

    def _require(
        self,
        session: AsyncSession,
        payment: Payment,
        target: PaymentStatus,
        *,
        source: TransitionSource,
        details: dict | None = None,
    ) -> None:
        previous = payment.status
        require_transition(payment, target, now=self.now())
        self._audit(session, payment, previous, source, details)

    def _audit(
        self,
        session: AsyncSession,
        payment: Payment,
        previous: PaymentStatus,
        source: TransitionSource,
        details: dict | None,
    ) -> None:
        repository.record_transition_audit(session, payment, previous=previous, source=source, details=details)
        logger.info(
            "payment.transition",
            reference=payment.reference,
            previous=previous.value,
            status=payment.status.value,
            source=source.value,
        )

    async def _fail(
        self,
        session: AsyncSession,
        payment: Payment,
        *,
        source: TransitionSource,
        reason: str,
        error_code: str | None = None,
    ) -> None:
        self._require(session, payment, PaymentStatus.FAILED, source=source, details={"reason": reason})
        payment.failure_reason = reason
        payment.error_code = error_code
        await self._sync_booking(session, payment)

    async def _sync_booking(self, session: AsyncSession, payment: Payment) -> None:
        booking_status = BOOKING_STATUS_FOR_PAYMENT.get(payment.status)
        if booking_status is not None:
            await self._bookings.set_booking_status(session, payment.booking_id, booking_status)

    @staticmethod
    def _record_gateway_fields(
        payment: Payment,
        *,
        payment_id: str | None = None,
        transaction_id: str | None = None,
        method: str | None = None,
        overwrite: bool = False,
    ) -> None:
        if payment_id and (payment.acquirer_payment_id is None or overwrite):
            payment.acquirer_payment_id = payment_id
        if transaction_id and (payment.acquirer_transaction_id is None or overwrite):
            payment.acquirer_transaction_id = transaction_id
        if method and payment.payment_method is None:
            payment.payment_method = method

    async def _apply_gateway_status(
        self,
        session: AsyncSession,
        payment: Payment,
        canonical: PaymentStatus,
        *,
        source: TransitionSource,
        refunded_amount: Decimal | None = None,
    ) -> GatewayUpdate:
        """Apply a gateway-reported status if the transition table allows it; otherwise log and leave it."""
        if canonical is PaymentStatus.UNMAPPED:
            return GatewayUpdate.UNMAPPED
        if canonical in REFUND_STATUSES:
            return self._apply_refund_report(session, payment, canonical, refunded_amount, source=source)
        if payment.status is canonical:
            return GatewayUpdate.UNCHANGED
        if canonical is PaymentStatus.SUCCESS and payment.status in CAPTURED_STATUSES:
            return GatewayUpdate.UNCHANGED

        result = self._transition(session, payment, canonical, source=source)
        if not result.succeeded:
            if canonical is PaymentStatus.SUCCESS:
                payment.requires_review = True
                logger.error(
                    "payment.review_required",
                    reference=payment.reference,
                    status=payment.status.value,
                    reported=canonical.value,
                    source=source.value,
                )
            else:
                logger.warning(
                    "payment.transition.ignored",
                    reference=payment.reference,
                    status=payment.status.value,
                    reported=canonical.value,
                    source=source.value,
                )
            return GatewayUpdate.REJECTED

        if canonical is PaymentStatus.SUCCESS:
            payment.failure_reason = None
            payment.error_code = None
        elif canonical in (PaymentStatus.FAILED, PaymentStatus.CANCELLED) and payment.failure_reason is None:
            payment.failure_reason = f"acquirer reported {canonical.value.lower()}"
        await self._sync_booking(session, payment)
        return GatewayUpdate.APPLIED

    def _apply_refund_report(
        self,
        session: AsyncSession,
        payment: Payment,
        canonical: PaymentStatus,
        refunded_amount: Decimal | None,
        *,
        source: TransitionSource,
    ) -> GatewayUpdate:
        if payment.status not in CAPTURED_STATUSES:
            logger.warning(
                "payment.transition.ignored",
                reference=payment.reference,
                status=payment.status.value,
                reported=canonical.value,
                source=source.value,
            )
            return GatewayUpdate.REJECTED
        if refunded_amount is None and canonical is PaymentStatus.REFUNDED:
            refunded_amount = payment.amount
        return self._reconcile_refunded_amount(session, payment, refunded_amount, source=source)

    def _reconcile_refunded_amount(
        self,
        session: AsyncSession,
        payment: Payment,
        gateway_total: Decimal | None,
        *,
        source: TransitionSource,
    ) -> GatewayUpdate:
        local = payment.refunded_amount or ZERO
        total = local
        if gateway_total is not None:
            total = max(local, min(gateway_total, payment.amount))
        if total > local:
            payment.refunded_amount = total
        if total <= 0:
            return GatewayUpdate.UNCHANGED

        target = PaymentStatus.REFUNDED if total >= payment.amount else PaymentStatus.PARTIAL_REFUND
        if payment.status is target:
            return GatewayUpdate.APPLIED if total > local else GatewayUpdate.UNCHANGED

        result = self._transition(
            session, payment, target, source=source, details={"refunded_amount": str(total)}
        )
        if not result.succeeded:
            logger.warning(
                "payment.transition.ignored",
                reference=payment.reference,
                status=payment.status.value,
                reported=target.value,
                source=source.value,
            )
            return GatewayUpdate.REJECTED
        return GatewayUpdate.APPLIED
