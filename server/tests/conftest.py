"""
Shared test configuration and fixtures for the payment core.
"""

import asyncio
import json
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from flightpay.acquirers.base import (
    AcquirerClient,
    AcquirerCredentials,
    OrderResult,
    PaymentIntent,
    RefundListResult,
    RefundRecord,
    RefundRequest,
    RefundResult,
    StatusResult,
    VerificationResult,
    WebhookResult,
)
from flightpay.acquirers.registry import AcquirerRegistry
from flightpay.db.base import Base
from flightpay.db.session import create_session_factory
from flightpay.models.booking import Booking, BookingStatus
from flightpay.models.payment import PaymentStatus
from flightpay.payments import repository
from flightpay.payments.service import PaymentService
from flightpay.payments.status_mapping import StatusMapper


START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
VALID_SIGNATURE = "good-signature"

FAKE_STATUS_MAP = {
    "FAKEPAY": {
        "created": PaymentStatus.PENDING,
        "authorized": PaymentStatus.PROCESSING,
        "captured": PaymentStatus.SUCCESS,
        "failed": PaymentStatus.FAILED,
        "cancelled": PaymentStatus.CANCELLED,
        "refunded": PaymentStatus.REFUNDED,
        "partial_refund": PaymentStatus.PARTIAL_REFUND,
    }
}


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


class FakeAcquirer(AcquirerClient):
    """In-memory acquirer with call counters and switchable failure modes."""

    code = "FAKEPAY"
    signature_header = "X-Fake-Signature"

    def __init__(self):
        super().__init__(None, base_url="https://fakepay.test")
        self.calls: Counter = Counter()
        self.order_failure: Optional[OrderResult] = None
        self.crash_on_order = False
        self.verification_unavailable = False
        self.gateway_status = "created"
        self.gateway_payment_id: Optional[str] = None
        self.gateway_refunded: Optional[Decimal] = None
        self.status_failure = False
        self.recoverable_order_id: Optional[str] = None
        self.refund_results: List[RefundResult] = []
        self.refund_requests: List[RefundRequest] = []
        self.refund_records: List[RefundRecord] = []

    async def create_order(self, intent: PaymentIntent, credentials: AcquirerCredentials) -> OrderResult:
        self.calls["create_order"] += 1
        if self.crash_on_order:
            raise RuntimeError("acquirer connection dropped")
        if self.order_failure is not None:
            return self.order_failure
        order_id = f"order_{self.calls['create_order']}"
        return OrderResult(
            success=True,
            acquirer_order_id=order_id,
            acquirer_status="created",
            checkout_payload={"order_id": order_id, "checkout_url": f"https://fakepay.test/pay/{order_id}"},
            raw_response={"id": order_id, "receipt": intent.reference},
        )

    async def verify_payment(self, callback_data: Mapping[str, Any], credentials: AcquirerCredentials) -> VerificationResult:
        self.calls["verify_payment"] += 1
        if self.verification_unavailable:
            return VerificationResult(success=False, verified=False, error_code="network_error", retryable=True)
        if callback_data.get("signature") != VALID_SIGNATURE:
            return VerificationResult(success=True, verified=False, error_code="signature_mismatch")
        return VerificationResult(
            success=True,
            verified=True,
            acquirer_status=callback_data.get("status", "captured"),
            acquirer_order_id=callback_data.get("order_id"),
            acquirer_payment_id=callback_data.get("payment_id", "pay_1"),
            payment_method="card",
        )

    async def check_status(self, acquirer_order_id: str, credentials: AcquirerCredentials) -> StatusResult:
        self.calls["check_status"] += 1
        await asyncio.sleep(0)
        if self.status_failure:
            return StatusResult(success=False, error_code="network_error", retryable=True)
        return StatusResult(
            success=True,
            acquirer_status=self.gateway_status,
            acquirer_order_id=acquirer_order_id,
            acquirer_payment_id=self.gateway_payment_id,
            refunded_amount=self.gateway_refunded,
        )

    async def process_refund(self, request: RefundRequest, credentials: AcquirerCredentials) -> RefundResult:
        self.calls["process_refund"] += 1
        self.refund_requests.append(request)
        if self.refund_results:
            return self.refund_results.pop(0)
        return RefundResult(
            success=True,
            refund_id=f"rfnd_{self.calls['process_refund']}",
            acquirer_status="processed",
            amount=request.amount,
        )

    async def list_refunds(self, acquirer_payment_id: str, credentials: AcquirerCredentials) -> RefundListResult:
        self.calls["list_refunds"] += 1
        return RefundListResult(success=True, refunds=list(self.refund_records))

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str], credentials: AcquirerCredentials) -> WebhookResult:
        self.calls["handle_webhook"] += 1
        await asyncio.sleep(0)
        if signature != VALID_SIGNATURE:
            return WebhookResult(verified=False, error_message="signature mismatch")
        body = json.loads(raw_body)
        refunded = body.get("refunded")
        return WebhookResult(
            verified=True,
            event=body.get("event"),
            acquirer_status=body.get("status"),
            acquirer_order_id=body.get("order_id"),
            acquirer_payment_id=body.get("payment_id"),
            refunded_amount=Decimal(refunded) if refunded is not None else None,
            payload=body,
        )

    async def lookup_order(self, reference: str, credentials: AcquirerCredentials) -> Optional[str]:
        self.calls["lookup_order"] += 1
        return self.recoverable_order_id


def webhook_body(**fields: Any) -> bytes:
    return json.dumps(fields).encode("utf-8")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture
def acquirer() -> FakeAcquirer:
    return FakeAcquirer()


@pytest.fixture
def registry(acquirer) -> AcquirerRegistry:
    registry = AcquirerRegistry()
    registry.register(acquirer.code, acquirer)
    return registry.freeze()


@pytest.fixture
def credentials() -> Dict[str, AcquirerCredentials]:
    return {"FAKEPAY": AcquirerCredentials(api_key="key_test", api_secret="secret_test", webhook_secret="whsec_test")}


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def service(registry, credentials, session_factory, clock) -> PaymentService:
    return PaymentService(
        registry=registry,
        credentials=credentials,
        session_factory=session_factory,
        status_mapper=StatusMapper(FAKE_STATUS_MAP),
        expiry_minutes=15,
        default_acquirer="FAKEPAY",
        app_url="https://flights.test",
        clock=clock,
    )


@pytest.fixture
def make_booking(session_factory):
    async def _make(amount: str = "1000.00", currency: str = "INR", status: BookingStatus = BookingStatus.PENDING) -> str:
        async with session_factory() as session:
            booking = Booking(
                booking_reference=f"BK{uuid.uuid4().hex[:8].upper()}",
                total_amount=Decimal(amount),
                currency=currency,
                status=status,
            )
            session.add(booking)
            await session.commit()
            return booking.id

    return _make


@pytest.fixture
def load_payment(session_factory):
    async def _load(reference: str):
        async with session_factory() as session:
            return await repository.get_payment_by_reference(session, reference)

    return _load


@pytest.fixture
def booking_status(session_factory):
    async def _status(booking_id: str) -> BookingStatus:
        async with session_factory() as session:
            booking = await session.get(Booking, booking_id)
            return booking.status

    return _status


@pytest.fixture
def audit_trail(session_factory):
    async def _trail(reference: str) -> List[tuple]:
        async with session_factory() as session:
            entries = await repository.list_audit_entries(session, reference)
            return [(entry.from_status, entry.to_status, entry.source.value) for entry in entries]

    return _trail


@pytest.fixture
def paid_payment(service, make_booking):
    """Initiate a payment and settle it through a verified callback. Returns the reference."""

    async def _pay(amount: str = "1000.00") -> str:
        booking_id = await make_booking(amount=amount)
        initiated = await service.initiate(booking_id)
        await service.verify_callback(
            initiated.reference,
            {
                "signature": VALID_SIGNATURE,
                "order_id": initiated.checkout_payload["order_id"],
                "payment_id": "pay_captured",
            },
        )
        return initiated.reference

    return _pay
