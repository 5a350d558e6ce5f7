from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy import Boolean, DateTime, Enum as SAEnum, ForeignKey, Index, Integer, JSON, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from flightpay.db.base import Base
from flightpay.models.mixins import Identifier, TimestampMixin


class PaymentStatus(str, Enum):
    CREATED = "CREATED"
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    # Resolution result for gateway statuses nobody has mapped; never stored.
    UNMAPPED = "UNMAPPED"


OPEN_STATUS_SQL = "status IN ('CREATED', 'PENDING', 'PROCESSING')"

IMMUTABLE_FIELDS = ("reference", "booking_id", "amount", "currency", "acquirer_code")


class Payment(TimestampMixin, Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index(
            "uq_payments_open_booking",
            "booking_id",
            unique=True,
            postgresql_where=text(OPEN_STATUS_SQL),
            sqlite_where=text(OPEN_STATUS_SQL),
        ),
    )

    id: Mapped[Identifier]
    reference: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    booking_id: Mapped[str] = mapped_column(ForeignKey("bookings.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    acquirer_code: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(SAEnum(PaymentStatus), default=PaymentStatus.CREATED, nullable=False)

    acquirer_order_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    acquirer_payment_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    acquirer_transaction_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)

    refunded_amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False, default=Decimal("0.00"))
    refund_reference: Mapped[str | None] = mapped_column(String(120), nullable=True)

    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    success_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    failure_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    callback_url: Mapped[str | None] = mapped_column(String(500), nullable=True)

    checkout_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    raw_acquirer_response: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    webhook_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    requires_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    refunds: Mapped[list["PaymentRefund"]] = relationship(back_populates="payment", lazy="raise")

    @validates(*IMMUTABLE_FIELDS)
    def _validate_immutable(self, key: str, value: Any) -> Any:
        current = self.__dict__.get(key)
        if current is not None and current != value:
            raise ValueError(f"payment {key} cannot change once set")
        return value

    @validates("status")
    def _validate_status(self, key: str, value: PaymentStatus) -> PaymentStatus:
        if value is PaymentStatus.UNMAPPED:
            raise ValueError("UNMAPPED is a lookup result and cannot be stored")
        return value

    @validates("refunded_amount")
    def _validate_refunded_amount(self, key: str, value: Decimal) -> Decimal:
        if value is None or value < 0:
            raise ValueError("refunded amount must be a non-negative value")
        current = self.__dict__.get(key)
        if current is not None and value < current:
            raise ValueError("refunded amount cannot decrease")
        amount = self.__dict__.get("amount")
        if amount is not None and value > amount:
            raise ValueError("refunded amount cannot exceed the payment amount")
        return value
