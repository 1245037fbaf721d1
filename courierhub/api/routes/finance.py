"""
Finance Routes

COD discrepancies, the early COD program and on-demand early remittance.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.api.deps import get_current_company
from courierhub.core.database import get_db
from courierhub.models.company import Company
from courierhub.schemas.finance import (
    DiscrepancyListResponse,
    DiscrepancyResponse,
    EarlyRemittanceResponse,
    EligibilityResponse,
    EnrollmentResponse,
    EnrollRequest,
    RemittanceBatchResponse,
    ResolveDiscrepancyRequest,
)
from courierhub.services.cod import CODReconciliationService, CODRemittanceService, EarlyCODService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/finance/cod", tags=["finance"])


# ==================== Discrepancies ====================


@router.get("/discrepancies", response_model=DiscrepancyListResponse)
async def list_discrepancies(
    status: Optional[str] = Query(None, description="detected or resolved"),
    type: Optional[str] = Query(None, description="Discrepancy type"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db),
):
    items, total = await CODReconciliationService(db).list_discrepancies(
        company.id, status=status, discrepancy_type=type, page=page, page_size=page_size
    )
    return DiscrepancyListResponse(
        items=[DiscrepancyResponse.model_validate(d) for d in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/discrepancies/{discrepancy_id}", response_model=DiscrepancyResponse)
async def get_discrepancy(
    discrepancy_id: int,
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db),
):
    return await CODReconciliationService(db).get_discrepancy(discrepancy_id, company_id=company.id)


@router.post("/discrepancies/{discrepancy_id}/resolve", response_model=DiscrepancyResponse)
async def resolve_discrepancy(
    discrepancy_id: int,
    data: ResolveDiscrepancyRequest,
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db),
):
    """
    Close a discrepancy. The adjusted amount becomes the shipment's
    authoritative collection and the shipment becomes remittable again.
    """
    return await CODReconciliationService(db).resolve_discrepancy(
        discrepancy_id,
        data.resolution_method,
        data.adjusted_amount,
        data.resolved_by,
        remarks=data.remarks,
        company_id=company.id,
    )


# ==================== Early COD Program ====================


@router.get("/early-program/eligibility", response_model=EligibilityResponse)
async def early_program_eligibility(
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db),
):
    result = await EarlyCODService(db).check_eligibility(company.id)
    return result.to_dict()


@router.post("/early-program/enroll", response_model=EnrollmentResponse)
async def early_program_enroll(
    data: EnrollRequest,
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db),
):
    return await EarlyCODService(db).enroll(company.id, data.tier)


# ==================== Remittances ====================


@router.post("/remittances/early", response_model=EarlyRemittanceResponse)
async def create_early_remittance(
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db),
):
    """Build an early remittance batch now instead of waiting for the job."""
    result = await CODRemittanceService(db).create_early_remittance_batch(company.id)
    return EarlyRemittanceResponse(
        created=result.created,
        count=result.count,
        message=result.message,
        batch=RemittanceBatchResponse.model_validate(result.batch) if result.batch else None,
    )
