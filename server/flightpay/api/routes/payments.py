from fastapi import APIRouter, Depends, Request, status

from flightpay.acquirers.base import CustomerDetails
from flightpay.core.errors import PaymentServiceError
from flightpay.core.logging import get_logger
from flightpay.api.dependencies.services import get_payment_service
from flightpay.payments.service import PaymentService
from flightpay.payments.status import status_message
from flightpay.schemas.common import ErrorResponse
from flightpay.schemas.payment import (
    PaymentCallback,
    PaymentCreate,
    PaymentInitiated,
    PaymentRead,
    PaymentStatusRead,
    RefundCreate,
    RefundRead,
    WebhookAck,
)

logger = get_logger(__name__)

ERROR_RESPONSES = {code: {"model": ErrorResponse} for code in (400, 404, 409, 410, 500, 502)}

router = APIRouter(prefix="/payments", tags=["payments"], responses=ERROR_RESPONSES)


@router.post("", response_model=PaymentInitiated, status_code=status.HTTP_201_CREATED)
async def create_payment_endpoint(
    payload: PaymentCreate,
    service: PaymentService = Depends(get_payment_service),
) -> PaymentInitiated:
    result = await service.initiate(
        payload.booking_id,
        acquirer=payload.acquirer,
        customer=CustomerDetails(
            email=payload.customer_email,
            name=payload.customer_name,
            phone=payload.customer_phone,
        ),
        description=payload.description,
        success_url=payload.success_url,
        cancel_url=payload.cancel_url,
    )
    return PaymentInitiated(
        reference=result.reference,
        status=result.status,
        acquirer_code=result.acquirer_code,
        amount=result.amount,
        currency=result.currency,
        expires_at=result.expires_at,
        checkout_url=result.checkout_url,
        checkout_payload=result.checkout_payload,
    )


@router.post("/callback", response_model=PaymentStatusRead)
async def payment_callback_endpoint(
    payload: PaymentCallback,
    service: PaymentService = Depends(get_payment_service),
) -> PaymentStatusRead:
    payment = await service.verify_callback(payload.reference, payload.gateway_fields())
    return _status_read(payment)


@router.post("/webhook/{acquirer_code}", response_model=WebhookAck)
async def payment_webhook_endpoint(
    acquirer_code: str,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
) -> WebhookAck:
    # Gateways retry on anything but 200, so failures are logged and acknowledged.
    raw_body = await request.body()
    try:
        signature = request.headers.get(service.signature_header_for(acquirer_code))
        outcome = await service.handle_webhook(acquirer_code, raw_body, signature)
    except PaymentServiceError as exc:
        logger.warning("payment.webhook.error", acquirer=acquirer_code, code=exc.code, error=exc.message)
    except Exception:
        logger.exception("payment.webhook.unhandled", acquirer=acquirer_code)
    else:
        logger.info(
            "payment.webhook.acknowledged",
            acquirer=outcome.acquirer_code,
            disposition=outcome.disposition.value,
            reference=outcome.reference,
        )
    return WebhookAck()


@router.get("/booking/{booking_id}", response_model=list[PaymentRead])
async def list_booking_payments_endpoint(
    booking_id: str,
    service: PaymentService = Depends(get_payment_service),
) -> list[PaymentRead]:
    payments = await service.list_booking_payments(booking_id)
    return [PaymentRead.model_validate(payment) for payment in payments]


@router.get("/{reference}", response_model=PaymentRead)
async def get_payment_endpoint(
    reference: str,
    service: PaymentService = Depends(get_payment_service),
) -> PaymentRead:
    payment = await service.get_payment(reference)
    return PaymentRead.model_validate(payment)


@router.get("/{reference}/status", response_model=PaymentStatusRead)
async def payment_status_endpoint(
    reference: str,
    service: PaymentService = Depends(get_payment_service),
) -> PaymentStatusRead:
    payment = await service.check_status(reference)
    return _status_read(payment)


@router.post("/{reference}/refund", response_model=RefundRead)
async def refund_payment_endpoint(
    reference: str,
    payload: RefundCreate,
    service: PaymentService = Depends(get_payment_service),
) -> RefundRead:
    outcome = await service.process_refund(reference, payload.amount, payload.reason)
    return RefundRead(
        reference=outcome.reference,
        refund_id=outcome.refund_id,
        status=outcome.status,
        amount=outcome.amount,
        refunded_amount=outcome.refunded_amount,
    )


@router.post("/{reference}/reconcile-refunds", response_model=PaymentRead)
async def reconcile_refunds_endpoint(
    reference: str,
    service: PaymentService = Depends(get_payment_service),
) -> PaymentRead:
    payment = await service.reconcile_refunds(reference)
    return PaymentRead.model_validate(payment)


def _status_read(payment) -> PaymentStatusRead:
    return PaymentStatusRead(
        reference=payment.reference,
        status=payment.status,
        message=status_message(payment.status),
        requires_review=payment.requires_review,
    )
