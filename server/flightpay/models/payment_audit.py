from __future__ import annotations

from enum import Enum

from sqlalchemy import Enum as SAEnum, ForeignKey, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from flightpay.db.base import Base
from flightpay.models.mixins import Identifier, TimestampMixin


class TransitionSource(str, Enum):
    INITIATE = "initiate"
    CALLBACK = "callback"
    POLL = "poll"
    WEBHOOK = "webhook"
    REFUND = "refund"
    EXPIRY = "expiry"
    RECONCILE = "reconcile"


class PaymentAuditLog(TimestampMixin, Base):
    __tablename__ = "payment_audit_logs"

    id: Mapped[Identifier]
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.id"), nullable=False, index=True)
    reference: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    from_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    source: Mapped[TransitionSource] = mapped_column(SAEnum(TransitionSource), nullable=False)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
