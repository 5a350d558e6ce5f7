from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from flightpay.models.payment import Payment, PaymentStatus
from flightpay.models.payment_audit import PaymentAuditLog, TransitionSource
from flightpay.models.payment_refund import PaymentRefund
from flightpay.payments.status import OPEN_STATUSES


async def get_payment_by_reference(
    session: AsyncSession,
    reference: str,
    *,
    for_update: bool = False,
) -> Payment | None:
    statement = select(Payment).where(Payment.reference == reference)
    if for_update:
        statement = statement.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(statement)
    return result.scalars().first()


async def get_open_payment_for_booking(session: AsyncSession, booking_id: str) -> Payment | None:
    result = await session.execute(
        select(Payment)
        .where(Payment.booking_id == booking_id, Payment.status.in_(OPEN_STATUSES))
        .with_for_update()
    )
    return result.scalars().first()


async def find_by_acquirer_ids(
    session: AsyncSession,
    acquirer_code: str,
    *,
    acquirer_order_id: str | None = None,
    acquirer_payment_id: str | None = None,
) -> Payment | None:
    """Order id wins over payment id; both are scoped to the acquirer that issued them."""
    if acquirer_order_id:
        result = await session.execute(
            select(Payment).where(Payment.acquirer_code == acquirer_code, Payment.acquirer_order_id == acquirer_order_id)
        )
        payment = result.scalars().first()
        if payment is not None:
            return payment
    if acquirer_payment_id:
        result = await session.execute(
            select(Payment).where(
                Payment.acquirer_code == acquirer_code, Payment.acquirer_payment_id == acquirer_payment_id
            )
        )
        return result.scalars().first()
    return None


async def list_payments_for_booking(session: AsyncSession, booking_id: str) -> list[Payment]:
    result = await session.execute(
        select(Payment).where(Payment.booking_id == booking_id).order_by(Payment.created_at.desc(), Payment.id)
    )
    return list(result.scalars().all())


async def list_expired_open_references(session: AsyncSession, now: datetime) -> list[str]:
    result = await session.execute(
        select(Payment.reference).where(Payment.status.in_(OPEN_STATUSES), Payment.expires_at < now)
    )
    return list(result.scalars().all())


async def count_refunds(session: AsyncSession, payment_id: str) -> int:
    result = await session.execute(select(func.count(PaymentRefund.id)).where(PaymentRefund.payment_id == payment_id))
    return int(result.scalar_one())


async def list_refunds(session: AsyncSession, payment_id: str) -> list[PaymentRefund]:
    result = await session.execute(
        select(PaymentRefund).where(PaymentRefund.payment_id == payment_id).order_by(PaymentRefund.created_at)
    )
    return list(result.scalars().all())


async def list_audit_entries(session: AsyncSession, reference: str) -> list[PaymentAuditLog]:
    result = await session.execute(
        select(PaymentAuditLog).where(PaymentAuditLog.reference == reference).order_by(PaymentAuditLog.created_at)
    )
    return list(result.scalars().all())


def record_transition_audit(
    session: AsyncSession,
    payment: Payment,
    *,
    previous: PaymentStatus | None,
    source: TransitionSource,
    details: dict | None = None,
) -> None:
    session.add(
        PaymentAuditLog(
            payment_id=payment.id,
            reference=payment.reference,
            from_status=previous.value if previous is not None else None,
            to_status=payment.status.value,
            source=source,
            details=details or {},
        )
    )
