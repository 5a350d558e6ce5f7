from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flightpay.core.errors import BookingNotFound
from flightpay.core.logging import get_logger
from flightpay.models.booking import Booking, BookingStatus

logger = get_logger(__name__)

BOOKABLE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.PAYMENT_INITIATED, BookingStatus.FAILED})


@dataclass(frozen=True, slots=True)
class BookingSnapshot:
    id: str
    total_amount: Decimal
    currency: str
    status: BookingStatus


class BookingGateway(Protocol):
    """What the payment core needs from the booking flow. Both calls join the caller's transaction."""

    async def get_booking(self, session: AsyncSession, booking_id: str) -> BookingSnapshot | None: ...

    async def set_booking_status(self, session: AsyncSession, booking_id: str, status: BookingStatus) -> None: ...


class SqlBookingGateway:
    async def get_booking(self, session: AsyncSession, booking_id: str) -> BookingSnapshot | None:
        booking = await session.get(Booking, booking_id)
        if booking is None:
            return None
        return BookingSnapshot(
            id=booking.id,
            total_amount=booking.total_amount,
            currency=booking.currency,
            status=booking.status,
        )

    async def set_booking_status(self, session: AsyncSession, booking_id: str, status: BookingStatus) -> None:
        result = await session.execute(select(Booking).where(Booking.id == booking_id).with_for_update())
        booking = result.scalars().first()
        if booking is None:
            raise BookingNotFound(f"booking {booking_id} not found")
        if booking.status is not status:
            logger.info("booking.status.updated", booking_id=booking_id, previous=booking.status.value, status=status.value)
            booking.status = status
