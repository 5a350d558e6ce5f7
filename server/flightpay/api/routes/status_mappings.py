from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from flightpay.api.dependencies.database import get_db
from flightpay.models.payment import PaymentStatus
from flightpay.payments.status_mapping import list_mappings, set_mapping_active, upsert_mapping
from flightpay.schemas.status_mapping import StatusMappingRead, StatusMappingToggle, StatusMappingWrite


router = APIRouter(prefix="/acquirer-status-mappings", tags=["status-mappings"])


@router.get("/{acquirer_code}", response_model=list[StatusMappingRead])
async def list_mappings_endpoint(
    acquirer_code: str,
    session: AsyncSession = Depends(get_db),
) -> list[StatusMappingRead]:
    mappings = await list_mappings(session, acquirer_code)
    return [StatusMappingRead.model_validate(mapping) for mapping in mappings]


@router.put("", response_model=StatusMappingRead)
async def upsert_mapping_endpoint(
    payload: StatusMappingWrite,
    session: AsyncSession = Depends(get_db),
) -> StatusMappingRead:
    try:
        canonical = PaymentStatus(payload.canonical_status.strip().upper())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Unknown canonical status") from exc
    if canonical is PaymentStatus.UNMAPPED:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="UNMAPPED cannot be assigned")
    mapping = await upsert_mapping(
        session,
        acquirer_code=payload.acquirer_code,
        acquirer_status=payload.acquirer_status,
        canonical_status=canonical,
        description=payload.description,
        is_active=payload.is_active,
    )
    await session.commit()
    await session.refresh(mapping)
    return StatusMappingRead.model_validate(mapping)


@router.patch("/{acquirer_code}/{acquirer_status}", response_model=StatusMappingRead)
async def toggle_mapping_endpoint(
    acquirer_code: str,
    acquirer_status: str,
    payload: StatusMappingToggle,
    session: AsyncSession = Depends(get_db),
) -> StatusMappingRead:
    mapping = await set_mapping_active(session, acquirer_code, acquirer_status, is_active=payload.is_active)
    if mapping is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Status mapping not found")
    await session.commit()
    await session.refresh(mapping)
    return StatusMappingRead.model_validate(mapping)
