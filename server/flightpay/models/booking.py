from __future__ import annotations

from decimal import Decimal
from enum import Enum

from sqlalchemy import Enum as SAEnum, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from flightpay.db.base import Base
from flightpay.models.mixins import Identifier, TimestampMixin


class BookingStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_INITIATED = "payment_initiated"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class Booking(TimestampMixin, Base):
    """Booking row owned by the booking flow; payments only read it and move its status."""

    __tablename__ = "bookings"

    id: Mapped[Identifier]
    booking_reference: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[BookingStatus] = mapped_column(SAEnum(BookingStatus), default=BookingStatus.PENDING, nullable=False)
