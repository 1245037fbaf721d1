"""
Quote Routes

Rate shopping across the seller's active carriers.
"""
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.api.deps import get_current_company
from courierhub.core.database import get_db
from courierhub.core.exceptions import ValidationError
from courierhub.models.company import Company
from courierhub.schemas.shipping import (
    CourierOptionsRequest,
    CourierOptionsResponse,
    options_from_session,
)
from courierhub.services.quote_engine import QuoteEngine, QuoteRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/quotes", tags=["quotes"])


@router.post("/courier-options", response_model=CourierOptionsResponse, status_code=status.HTTP_201_CREATED)
async def get_courier_options(
    data: CourierOptionsRequest,
    company: Company = Depends(get_current_company),
    db: AsyncSession = Depends(get_db),
):
    """
    Quote every active carrier and open a quote session.

    Slow providers are reported in provider_timeouts and lower the session
    confidence instead of failing the request.
    """
    engine = QuoteEngine(db)

    if data.order_id is not None:
        session = await engine.quote_order(company.id, data.order_id)
    else:
        if not data.destination_pincode or data.weight is None:
            raise ValidationError(
                "destination_pincode and weight are required without an order_id",
                details={"fields": ["destination_pincode", "weight"]},
            )
        session = await engine.generate_quotes(
            company.id,
            QuoteRequest(
                destination_pincode=data.destination_pincode,
                weight=data.weight,
                length=data.length,
                width=data.width,
                height=data.height,
                payment_mode=data.payment_mode,
                cod_amount=data.cod_amount,
                declared_value=data.declared_value,
                warehouse_id=data.warehouse_id,
            ),
        )

    return CourierOptionsResponse(
        session_id=session.session_id,
        expires_at=session.expires_at,
        options=options_from_session(session.options),
        recommendation=session.recommendation,
        confidence=session.confidence,
        provider_timeouts=session.provider_timeouts or {},
    )
