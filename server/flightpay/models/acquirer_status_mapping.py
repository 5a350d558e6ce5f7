from __future__ import annotations

from sqlalchemy import Boolean, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from flightpay.db.base import Base
from flightpay.models.mixins import Identifier, TimestampMixin


class AcquirerStatusMapping(TimestampMixin, Base):
    __tablename__ = "acquirer_status_mappings"
    __table_args__ = (
        UniqueConstraint("acquirer_code", "acquirer_status", name="uq_acquirer_status_mapping"),
    )

    id: Mapped[Identifier]
    acquirer_code: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    acquirer_status: Mapped[str] = mapped_column(String(64), nullable=False)
    # Stored as text so an operator typo resolves to UNMAPPED instead of breaking reads.
    canonical_status: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
