from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy import Boolean, ForeignKey, JSON, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from flightpay.db.base import Base
from flightpay.models.mixins import Identifier, TimestampMixin


class PaymentRefund(TimestampMixin, Base):
    __tablename__ = "payment_refunds"
    __table_args__ = (UniqueConstraint("idempotency_key", name="uq_payment_refund_idempotency_key"),)

    id: Mapped[Identifier]
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.id"), nullable=False, index=True)
    acquirer_refund_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    acquirer_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False)
    succeeded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    raw_response: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    payment: Mapped["Payment"] = relationship(back_populates="refunds")
