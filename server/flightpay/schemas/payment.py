from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from flightpay.models.payment import PaymentStatus
from flightpay.schemas.common import ORMModel, Timestamped


class PaymentCreate(BaseModel):
    booking_id: str = Field(min_length=1, max_length=36)
    acquirer: str | None = Field(default=None, max_length=32)
    customer_name: str | None = Field(default=None, max_length=255)
    customer_email: EmailStr | None = None
    customer_phone: str | None = Field(default=None, max_length=32)
    description: str | None = Field(default=None, max_length=500)
    success_url: str | None = Field(default=None, max_length=500)
    cancel_url: str | None = Field(default=None, max_length=500)


class PaymentInitiated(BaseModel):
    reference: str
    status: PaymentStatus
    acquirer_code: str
    amount: Decimal
    currency: str
    expires_at: datetime
    checkout_url: str | None = None
    checkout_payload: dict[str, Any] = Field(default_factory=dict)


class PaymentCallback(BaseModel):
    """Our reference plus whatever proof fields the gateway appended."""

    model_config = ConfigDict(extra="allow")

    reference: str = Field(min_length=1, max_length=32)

    def gateway_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class PaymentStatusRead(ORMModel):
    reference: str
    status: PaymentStatus
    message: str | None = None
    requires_review: bool = False


class PaymentRead(Timestamped):
    reference: str
    booking_id: str
    status: PaymentStatus
    amount: Decimal
    currency: str
    acquirer_code: str
    acquirer_order_id: str | None
    acquirer_payment_id: str | None
    acquirer_transaction_id: str | None
    payment_method: str | None
    refunded_amount: Decimal
    refund_reference: str | None
    failure_reason: str | None
    error_code: str | None
    requires_review: bool
    expires_at: datetime
    completed_at: datetime | None
    failed_at: datetime | None
    refunded_at: datetime | None


class RefundCreate(BaseModel):
    amount: Decimal = Field(gt=0, decimal_places=2)
    reason: str = Field(min_length=1, max_length=500)


class RefundRead(BaseModel):
    reference: str
    refund_id: str | None
    status: PaymentStatus
    amount: Decimal
    refunded_amount: Decimal


class WebhookAck(BaseModel):
    received: bool = True
