from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from flightpay.core.logging import get_logger
from flightpay.models.acquirer_status_mapping import AcquirerStatusMapping
from flightpay.models.payment import PaymentStatus

logger = get_logger(__name__)


STATIC_STATUS_MAPS: dict[str, dict[str, PaymentStatus]] = {
    "RAZORPAY": {
        "created": PaymentStatus.PENDING,
        "attempted": PaymentStatus.PROCESSING,
        "authorized": PaymentStatus.PROCESSING,
        "paid": PaymentStatus.SUCCESS,
        "captured": PaymentStatus.SUCCESS,
        "failed": PaymentStatus.FAILED,
        "refunded": PaymentStatus.REFUNDED,
        "partial_refund": PaymentStatus.PARTIAL_REFUND,
    },
    "STRIPE": {
        "open": PaymentStatus.PENDING,
        "unpaid": PaymentStatus.PENDING,
        "requires_payment_method": PaymentStatus.PENDING,
        "requires_confirmation": PaymentStatus.PENDING,
        "requires_action": PaymentStatus.PROCESSING,
        "processing": PaymentStatus.PROCESSING,
        "requires_capture": PaymentStatus.PROCESSING,
        "paid": PaymentStatus.SUCCESS,
        "succeeded": PaymentStatus.SUCCESS,
        "no_payment_required": PaymentStatus.SUCCESS,
        "canceled": PaymentStatus.CANCELLED,
        "payment_failed": PaymentStatus.FAILED,
        "failed": PaymentStatus.FAILED,
        "expired": PaymentStatus.FAILED,
        "refunded": PaymentStatus.REFUNDED,
        "partial_refunded": PaymentStatus.PARTIAL_REFUND,
    },
}


def _normalise(acquirer_code: str, acquirer_status: str) -> tuple[str, str]:
    return acquirer_code.strip().upper(), acquirer_status.strip().lower()


def _parse_canonical(value: str) -> PaymentStatus:
    try:
        status = PaymentStatus(value.strip().upper())
    except ValueError:
        return PaymentStatus.UNMAPPED
    return status


class StatusMapper:
    """
    Translate gateway status strings into canonical payment statuses.

    Active database rows win over the static per-gateway tables. Anything still
    unresolved comes back as ``PaymentStatus.UNMAPPED`` and is logged for
    follow-up instead of being guessed.
    """

    def __init__(self, static_maps: dict[str, dict[str, PaymentStatus]] | None = None) -> None:
        self._static_maps = static_maps if static_maps is not None else STATIC_STATUS_MAPS

    def static_status(self, acquirer_code: str, acquirer_status: str) -> PaymentStatus | None:
        code, status = _normalise(acquirer_code, acquirer_status)
        return self._static_maps.get(code, {}).get(status)

    async def resolve(
        self,
        session: AsyncSession,
        acquirer_code: str,
        acquirer_status: str | None,
    ) -> PaymentStatus:
        if not acquirer_status:
            logger.warning("payment.status.unmapped", acquirer=acquirer_code, acquirer_status=acquirer_status)
            return PaymentStatus.UNMAPPED

        code, status = _normalise(acquirer_code, acquirer_status)
        result = await session.execute(
            select(AcquirerStatusMapping.canonical_status).where(
                AcquirerStatusMapping.acquirer_code == code,
                AcquirerStatusMapping.acquirer_status == status,
                AcquirerStatusMapping.is_active.is_(True),
            )
        )
        override = result.scalars().first()
        if override is not None:
            canonical = _parse_canonical(override)
            if canonical is PaymentStatus.UNMAPPED:
                logger.warning(
                    "payment.status.mapping_invalid",
                    acquirer=code,
                    acquirer_status=status,
                    canonical_status=override,
                )
            return canonical

        canonical = self._static_maps.get(code, {}).get(status)
        if canonical is None:
            logger.warning("payment.status.unmapped", acquirer=code, acquirer_status=status)
            return PaymentStatus.UNMAPPED
        return canonical


async def list_mappings(session: AsyncSession, acquirer_code: str) -> list[AcquirerStatusMapping]:
    result = await session.execute(
        select(AcquirerStatusMapping)
        .where(AcquirerStatusMapping.acquirer_code == acquirer_code.strip().upper())
        .order_by(AcquirerStatusMapping.acquirer_status)
    )
    return list(result.scalars().all())


async def get_mapping(session: AsyncSession, acquirer_code: str, acquirer_status: str) -> AcquirerStatusMapping | None:
    code, status = _normalise(acquirer_code, acquirer_status)
    result = await session.execute(
        select(AcquirerStatusMapping).where(
            AcquirerStatusMapping.acquirer_code == code,
            AcquirerStatusMapping.acquirer_status == status,
        )
    )
    return result.scalars().first()


async def upsert_mapping(
    session: AsyncSession,
    *,
    acquirer_code: str,
    acquirer_status: str,
    canonical_status: PaymentStatus,
    description: str | None = None,
    is_active: bool = True,
) -> AcquirerStatusMapping:
    if canonical_status is PaymentStatus.UNMAPPED:
        raise ValueError("cannot map a gateway status to UNMAPPED")
    code, status = _normalise(acquirer_code, acquirer_status)
    mapping = await get_mapping(session, code, status)
    if mapping is None:
        mapping = AcquirerStatusMapping(acquirer_code=code, acquirer_status=status, canonical_status=canonical_status.value)
        session.add(mapping)
    mapping.canonical_status = canonical_status.value
    mapping.description = description
    mapping.is_active = is_active
    await session.flush()
    logger.info(
        "status_mapping.upserted",
        acquirer=code,
        acquirer_status=status,
        canonical_status=canonical_status.value,
        is_active=is_active,
    )
    return mapping


async def set_mapping_active(
    session: AsyncSession,
    acquirer_code: str,
    acquirer_status: str,
    *,
    is_active: bool,
) -> AcquirerStatusMapping | None:
    mapping = await get_mapping(session, acquirer_code, acquirer_status)
    if mapping is None:
        return None
    mapping.is_active = is_active
    await session.flush()
    logger.info("status_mapping.toggled", acquirer=mapping.acquirer_code, acquirer_status=mapping.acquirer_status, is_active=is_active)
    return mapping


async def seed_default_mappings(session: AsyncSession, *, dry_run: bool = False) -> list[tuple[str, str, PaymentStatus]]:
    """Insert rows for every static mapping that has no database row yet. Returns what was (or would be) added."""
    existing = await session.execute(select(AcquirerStatusMapping.acquirer_code, AcquirerStatusMapping.acquirer_status))
    present = {(code, status) for code, status in existing.all()}

    missing: list[tuple[str, str, PaymentStatus]] = []
    for code, statuses in STATIC_STATUS_MAPS.items():
        for status, canonical in statuses.items():
            if (code, status) not in present:
                missing.append((code, status, canonical))

    if not dry_run:
        for code, status, canonical in missing:
            session.add(
                AcquirerStatusMapping(
                    acquirer_code=code,
                    acquirer_status=status,
                    canonical_status=canonical.value,
                    description="default mapping",
                    is_active=True,
                )
            )
        await session.flush()
        logger.info("status_mapping.seeded", inserted=len(missing))
    return missing
