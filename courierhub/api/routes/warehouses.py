"""
Warehouse Routes
"""
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.api.deps import require_kyc_tier
from courierhub.core.config import settings
from courierhub.core.database import get_db
from courierhub.core.exceptions import ValidationError
from courierhub.models.company import Company, Warehouse
from courierhub.schemas.shipping import WarehouseCreate, WarehouseResponse
from courierhub.services.collaborators import FormatPincodeValidator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/warehouses", tags=["warehouses"])


@router.post("", response_model=WarehouseResponse, status_code=status.HTTP_201_CREATED)
async def create_warehouse(
    data: WarehouseCreate,
    company: Company = Depends(require_kyc_tier(settings.BOOKING_MIN_KYC_TIER)),
    db: AsyncSession = Depends(get_db),
):
    """Register a pickup location. Carrier-side registration happens lazily on first booking."""
    validation = await FormatPincodeValidator().validate_pincode(data.pincode)
    if not validation.valid:
        raise ValidationError(
            f"Invalid pincode: {data.pincode}",
            code="INVALID_PINCODE",
            details={"pincode": data.pincode},
        )

    if data.is_default:
        await db.execute(
            update(Warehouse)
            .where(Warehouse.company_id == company.id, Warehouse.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )

    warehouse = Warehouse(company_id=company.id, **data.model_dump())
    db.add(warehouse)
    await db.flush()
    await db.refresh(warehouse)

    logger.info(f"Warehouse {warehouse.id} created for company {company.id} ({warehouse.pincode})")
    return warehouse
