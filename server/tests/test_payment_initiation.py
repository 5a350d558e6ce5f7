"""
Payment initiation tests.
"""

import asyncio
import re
from datetime import timedelta
from decimal import Decimal

import pytest

from flightpay.acquirers.base import CustomerDetails, OrderResult
from flightpay.core.errors import (
    AcquirerConfigurationError,
    AcquirerError,
    AcquirerNotFound,
    BookingNotFound,
    PaymentInProgress,
    ValidationError,
)
from flightpay.models.booking import BookingStatus
from flightpay.models.payment import PaymentStatus
from flightpay.payments.service import PaymentService
from flightpay.payments.status_mapping import StatusMapper

from conftest import FAKE_STATUS_MAP, START

REFERENCE_PATTERN = re.compile(r"^PAY-20260301-[A-HJ-NP-Z2-9]{10}$")


class TestInitiate:
    """Opening a payment for a booking."""

    @pytest.mark.asyncio
    async def test_initiate_opens_pending_payment(self, service, acquirer, make_booking, load_payment, booking_status):
        booking_id = await make_booking(amount="1000.00")

        result = await service.initiate(
            booking_id,
            customer=CustomerDetails(email="asha@example.com", name="Asha Rao", phone="+919800000000"),
            description="DEL-BOM 6E-204",
        )

        assert REFERENCE_PATTERN.match(result.reference)
        assert result.status is PaymentStatus.PENDING
        assert result.acquirer_code == "FAKEPAY"
        assert result.amount == Decimal("1000.00")
        assert result.currency == "INR"
        assert result.expires_at == START + timedelta(minutes=15)
        assert result.checkout_url == "https://fakepay.test/pay/order_1"
        assert acquirer.calls["create_order"] == 1

        payment = await load_payment(result.reference)
        assert payment.acquirer_order_id == "order_1"
        assert payment.customer_email == "asha@example.com"
        assert payment.refunded_amount == Decimal("0.00")
        assert payment.callback_url == "https://flights.test/payments/callback"
        assert await booking_status(booking_id) is BookingStatus.PAYMENT_INITIATED

    @pytest.mark.asyncio
    async def test_initiate_records_audit_trail(self, service, make_booking, audit_trail):
        booking_id = await make_booking()

        result = await service.initiate(booking_id)

        assert await audit_trail(result.reference) == [
            (None, "CREATED", "initiate"),
            ("CREATED", "PENDING", "initiate"),
        ]

    @pytest.mark.asyncio
    async def test_unknown_booking(self, service, acquirer):
        with pytest.raises(BookingNotFound) as exc_info:
            await service.initiate("missing-booking")
        assert exc_info.value.code == "PAYMENT_002"
        assert acquirer.calls["create_order"] == 0

    @pytest.mark.asyncio
    async def test_confirmed_booking_cannot_pay_again(self, service, make_booking):
        booking_id = await make_booking(status=BookingStatus.CONFIRMED)

        with pytest.raises(ValidationError) as exc_info:
            await service.initiate(booking_id)

        assert exc_info.value.code == "PAYMENT_005"

    @pytest.mark.asyncio
    async def test_unknown_acquirer(self, service, make_booking):
        booking_id = await make_booking()
        with pytest.raises(AcquirerNotFound):
            await service.initiate(booking_id, acquirer="PAYPAL")

    @pytest.mark.asyncio
    async def test_missing_credentials_is_configuration_error(self, registry, session_factory, clock, make_booking):
        service = PaymentService(
            registry=registry,
            credentials={},
            session_factory=session_factory,
            status_mapper=StatusMapper(FAKE_STATUS_MAP),
            default_acquirer="FAKEPAY",
            clock=clock,
        )
        booking_id = await make_booking()

        with pytest.raises(AcquirerConfigurationError):
            await service.initiate(booking_id)


class TestSinglePaymentInFlight:
    """At most one open payment per booking."""

    @pytest.mark.asyncio
    async def test_second_initiate_rejected_while_open(self, service, acquirer, make_booking):
        booking_id = await make_booking()
        await service.initiate(booking_id)

        with pytest.raises(PaymentInProgress) as exc_info:
            await service.initiate(booking_id)

        assert exc_info.value.status_code == 409
        assert acquirer.calls["create_order"] == 1

    @pytest.mark.asyncio
    async def test_expired_attempt_replaced_with_new_reference(
        self, service, clock, make_booking, load_payment, audit_trail
    ):
        booking_id = await make_booking()
        first = await service.initiate(booking_id)
        clock.advance(minutes=16)

        second = await service.initiate(booking_id)

        assert second.reference != first.reference
        assert second.status is PaymentStatus.PENDING
        stale = await load_payment(first.reference)
        assert stale.status is PaymentStatus.FAILED
        assert stale.failure_reason == "expired"
        assert (await audit_trail(first.reference))[-1] == ("PENDING", "FAILED", "expiry")

    @pytest.mark.asyncio
    async def test_retry_after_failed_attempt_uses_new_reference(self, service, acquirer, make_booking):
        booking_id = await make_booking()
        acquirer.order_failure = OrderResult(success=False, error_code="BAD_REQUEST_ERROR", error_message="bad amount")
        with pytest.raises(AcquirerError):
            await service.initiate(booking_id)

        acquirer.order_failure = None
        retry = await service.initiate(booking_id)

        payments = await service.list_booking_payments(booking_id)
        assert len(payments) == 2
        assert {payment.status for payment in payments} == {PaymentStatus.FAILED, PaymentStatus.PENDING}
        assert retry.reference in {payment.reference for payment in payments}


class TestGatewayFailures:
    @pytest.mark.asyncio
    async def test_rejected_order_fails_payment(self, service, acquirer, make_booking, load_payment, booking_status):
        booking_id = await make_booking()
        acquirer.order_failure = OrderResult(
            success=False,
            error_code="BAD_REQUEST_ERROR",
            error_message="amount exceeds maximum",
            raw_response={"error": {"code": "BAD_REQUEST_ERROR"}},
        )

        with pytest.raises(AcquirerError) as exc_info:
            await service.initiate(booking_id)

        error = exc_info.value
        assert error.code == "PAYMENT_007"
        assert error.gateway_code == "BAD_REQUEST_ERROR"
        assert error.retryable is False
        assert "amount exceeds maximum" not in error.detail

        payments = await service.list_booking_payments(booking_id)
        payment = await load_payment(payments[0].reference)
        assert payment.status is PaymentStatus.FAILED
        assert payment.error_code == "BAD_REQUEST_ERROR"
        assert await booking_status(booking_id) is BookingStatus.PENDING

    @pytest.mark.asyncio
    async def test_network_error_is_retryable(self, service, acquirer, make_booking):
        booking_id = await make_booking()
        acquirer.order_failure = OrderResult(
            success=False, error_code="network_error", error_message="timed out", retryable=True
        )

        with pytest.raises(AcquirerError) as exc_info:
            await service.initiate(booking_id)

        assert exc_info.value.code == "PAYMENT_012"
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_crash_after_order_leaves_payment_recoverable(self, service, acquirer, make_booking, load_payment):
        booking_id = await make_booking()
        acquirer.crash_on_order = True

        with pytest.raises(RuntimeError):
            await service.initiate(booking_id)

        payments = await service.list_booking_payments(booking_id)
        reference = payments[0].reference
        assert payments[0].status is PaymentStatus.CREATED
        assert payments[0].acquirer_order_id is None

        acquirer.recoverable_order_id = "order_lost"
        acquirer.gateway_status = "created"
        payment = await service.check_status(reference)

        assert acquirer.calls["lookup_order"] == 1
        assert payment.acquirer_order_id == "order_lost"
        assert payment.status is PaymentStatus.PENDING
        assert (await load_payment(reference)).acquirer_order_id == "order_lost"


class TestInitiateConcurrency:
    @pytest.mark.asyncio
    async def test_poll_during_order_creation_waits_for_pending(self, service, acquirer, make_booking, load_payment):
        booking_id = await make_booking()
        create_order = acquirer.create_order
        polls = []

        async def create_order_while_polled(intent, credentials):
            poll = asyncio.create_task(service.check_status(intent.reference))
            polls.append(poll)
            await asyncio.wait({poll}, timeout=0.2)
            assert not poll.done()
            return await create_order(intent, credentials)

        acquirer.create_order = create_order_while_polled

        initiated = await service.initiate(booking_id)
        polled = await polls[0]

        assert acquirer.calls["lookup_order"] == 0
        assert polled.status is PaymentStatus.PENDING
        assert polled.acquirer_order_id == "order_1"
        assert (await load_payment(initiated.reference)).status is PaymentStatus.PENDING
