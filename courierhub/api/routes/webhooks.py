"""
Webhook Routes

Carrier status webhooks and the COD settlement webhook.

Signatures and timestamps are checked before anything is written. Once a
delivery is authenticated the route answers 200 even when the payload is
unusable or the AWB is unknown, so carriers do not retry-storm us.
"""
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.config import settings
from courierhub.core.database import get_db
from courierhub.core.exceptions import ValidationError
from courierhub.core.rate_limit import limiter
from courierhub.modules.shipping.carriers import CarrierFactory
from courierhub.modules.shipping.carriers.base import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    verify_signature,
)
from courierhub.services.cod.settlement import CODSettlementService
from courierhub.services.collaborators import LoggingNotificationSender
from courierhub.services.webhook_service import CarrierWebhookService

logger = logging.getLogger(__name__)

router = APIRouter()

INVALID_SIGNATURE = {"error": "invalid_signature", "message": "Webhook signature or timestamp rejected"}


def _parse_body(body: bytes) -> Any:
    """JSON body, or None when it is not JSON (treated as unsigned)."""
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None


@router.post("/webhooks/cod/settlement")
@limiter.limit(settings.RATE_LIMIT_WEBHOOKS)
async def handle_cod_settlement(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Carrier COD settlement notification.

    Matches each settled AWB against its remittance batch line; unmatched
    lines become discrepancies.
    """
    payload = _parse_body(await request.body())
    if payload is None or not verify_signature(
        settings.COD_SETTLEMENT_WEBHOOK_SECRET,
        payload,
        request.headers.get(SIGNATURE_HEADER),
        request.headers.get(TIMESTAMP_HEADER),
    ):
        logger.warning("[WEBHOOK] Invalid COD settlement signature")
        raise HTTPException(status_code=401, detail=INVALID_SIGNATURE)

    try:
        result = await CODSettlementService(db).handle_settlement_webhook(payload)
    except ValidationError as e:
        logger.error(f"[WEBHOOK] Rejected settlement payload: {e.message}")
        return {"success": False, "error": e.message}

    return {"success": True, **result}


@router.post("/webhooks/{carrier}")
@limiter.limit(settings.RATE_LIMIT_WEBHOOKS)
async def handle_carrier_webhook(
    carrier: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Carrier shipment status webhook.

    Returns:
        401 on a bad signature or stale timestamp
        404 for an unregistered carrier
        200 otherwise, with success=false for unusable payloads
    """
    if CarrierFactory.get_carrier_class(carrier) is None:
        raise HTTPException(status_code=404, detail=f"Unknown carrier: {carrier}")

    payload = _parse_body(await request.body())
    service = CarrierWebhookService(db, notifier=LoggingNotificationSender())

    secret = await service.webhook_secret_for(carrier, payload) if payload is not None else None
    if payload is None or not verify_signature(
        secret,
        payload,
        request.headers.get(SIGNATURE_HEADER),
        request.headers.get(TIMESTAMP_HEADER),
    ):
        logger.warning(f"[WEBHOOK] Invalid {carrier} webhook signature")
        raise HTTPException(status_code=401, detail=INVALID_SIGNATURE)

    try:
        result = await service.process(carrier, payload)
    except ValidationError as e:
        logger.error(f"[WEBHOOK] Rejected {carrier} payload: {e.message}")
        return {"success": False, "error": e.message}

    return {"success": True, **result.to_dict()}


@router.get("/webhooks/{carrier}/health")
async def carrier_webhook_health(carrier: str):
    """Liveness probe carriers hit when registering the webhook URL."""
    return {
        "carrier": carrier,
        "healthy": True,
        "registered": CarrierFactory.get_carrier_class(carrier) is not None,
    }
