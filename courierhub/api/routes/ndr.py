"""
NDR Routes

Manual resolution and seller-requested RTO for failed deliveries.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.api.deps import get_current_company
from courierhub.core.database import get_db
from courierhub.models.company import Company
from courierhub.schemas.ndr import ManualRTORequest, NDRResponse, ResolveNDRRequest, RTOResponse
from courierhub.services.collaborators import LoggingNotificationSender
from courierhub.services.ndr import NDRResolutionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ndr", tags=["ndr"])


@router.post("/{ndr_id}/resolve", response_model=NDRResponse)
async def resolve_ndr(
    ndr_id: int,
    data: ResolveNDRRequest,
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db),
):
    """Mark an NDR resolved; pending workflow actions are cancelled."""
    service = NDRResolutionService(db)
    await service.get_ndr(ndr_id, company_id=company.id)
    return await service.resolve_ndr(ndr_id, data.resolution, data.resolved_by, notes=data.notes)


@router.post("/{ndr_id}/rto", response_model=RTOResponse)
async def trigger_rto(
    ndr_id: int,
    data: ManualRTORequest,
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db),
):
    """Return the shipment to origin now instead of waiting for the workflow."""
    service = NDRResolutionService(db, notifier=LoggingNotificationSender())
    await service.get_ndr(ndr_id, company_id=company.id)
    return await service.trigger_manual_rto(ndr_id, data.reason, requested_by=f"company:{company.id}")
