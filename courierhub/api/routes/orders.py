"""
Order Routes

Shipping an order: book a quoted option, or (with quote sessions switched
off) book directly against live rates.
"""
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.api.deps import require_kyc_tier
from courierhub.core.config import settings
from courierhub.core.database import get_db
from courierhub.core.exceptions import ValidationError
from courierhub.core.feature_flags import FeatureFlags
from courierhub.models.company import Company
from courierhub.schemas.shipping import ShipmentResponse, ShipOrderRequest
from courierhub.services.booking_service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("/{order_id}/ship", response_model=ShipmentResponse, status_code=status.HTTP_201_CREATED)
async def ship_order(
    order_id: int,
    data: ShipOrderRequest,
    company: Company = Depends(require_kyc_tier(settings.BOOKING_MIN_KYC_TIER)),
    db: AsyncSession = Depends(get_db),
):
    """
    Book a shipment for an order.

    - With session_id/option_id: books the quoted option (410 if the session expired)
    - Without a session and booking:quote_sessions off: legacy direct booking
    """
    booking = BookingService(db)

    if data.session_id:
        if not data.option_id:
            raise ValidationError("option_id is required with session_id", details={"field": "option_id"})
        return await booking.book_from_quote(company.id, order_id, data.session_id, data.option_id)

    if await FeatureFlags.quote_sessions_enabled():
        raise ValidationError(
            "session_id and option_id are required; request courier options first",
            code="QUOTE_SESSION_REQUIRED",
        )

    logger.info(f"Direct booking for order {order_id} (quote sessions disabled)")
    return await booking.book_direct(company.id, order_id, data.provider, data.service_code)
