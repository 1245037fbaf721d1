"""
Carrier Webhook Service

Applies a verified carrier status webhook to the matching shipment.

Outcomes:
    duplicate  - idempotency key already seen; nothing touched
    not_found  - no shipment for the AWB (route still answers 200)
    unchanged  - mapped status equals the current one; no history appended
    ignored    - the move is not allowed from the current status (a late or
                 out-of-order scan); only the idempotency row is written
    processed  - history row appended and status moved

After a processed update, NDR detection, COD reconciliation and RTO leg
tracking run as side rules. Their failures are logged and never fail the
webhook.
"""
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.database import utcnow
from courierhub.core.exceptions import NotFoundError
from courierhub.models.carrier_integration import CarrierIntegration
from courierhub.models.cod import DiscrepancySource
from courierhub.models.order import Order, OrderStatus
from courierhub.models.shipment import (
    Shipment,
    ShipmentStatus,
    ShipmentStatusHistory,
    can_transition,
)
from courierhub.models.webhook_event import WebhookEvent
from courierhub.modules.shipping.carriers import CarrierFactory
from courierhub.modules.shipping.carriers.base import (
    BaseCarrier,
    WebhookStatusUpdate,
    parse_carrier_time,
)
from courierhub.services.cod.reconciliation import CODReconciliationService
from courierhub.services.collaborators import NotificationSender
from courierhub.services.ndr.detection import NDRDetectionService
from courierhub.services.rto_service import RTOService

logger = logging.getLogger(__name__)

COLLECTED_AMOUNT_KEYS = ("cod_amount", "codAmount", "collected_amount", "collectedAmount")

NDR_CANDIDATE_STATUSES = {ShipmentStatus.NDR, ShipmentStatus.EXCEPTION}


@dataclass
class WebhookResult:
    status: str
    awb: str
    shipment_id: Optional[int] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    ndr_event_id: Optional[int] = None
    discrepancy_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


def idempotency_key(provider: str, awb: str, status: str, updated_at: Optional[str]) -> str:
    raw = f"{provider}-{awb}-{status}-{updated_at or ''}"
    return hashlib.sha256(raw.encode()).hexdigest()


def extract_collected_amount(update: WebhookStatusUpdate, payload: Dict[str, Any]) -> Optional[float]:
    for source in (update.raw, payload):
        for key in COLLECTED_AMOUNT_KEYS:
            value = source.get(key)
            if value is not None and value != "":
                return float(value)
    return None


class CarrierWebhookService:
    """Idempotent application of carrier status webhooks."""

    def __init__(self, db: AsyncSession, notifier: Optional[NotificationSender] = None):
        self.db = db
        self.notifier = notifier

    def _carrier_class(self, provider: str) -> Type[BaseCarrier]:
        carrier_cls = CarrierFactory.get_carrier_class(provider)
        if carrier_cls is None:
            raise NotFoundError(f"Unknown carrier {provider}", code="UNKNOWN_CARRIER")
        return carrier_cls

    async def webhook_secret_for(self, provider: str, payload: Any) -> Optional[str]:
        """
        Secret to verify a delivery with: the owning integration's secret when
        the AWB resolves to a shipment that has one, else the platform secret.
        """
        carrier_cls = self._carrier_class(provider)
        data = payload.get("shipment_data") if isinstance(payload, dict) else None
        awb = data.get("awb") if isinstance(data, dict) else None

        if awb:
            result = await self.db.execute(
                select(CarrierIntegration.webhook_secret)
                .join(Shipment, Shipment.company_id == CarrierIntegration.company_id)
                .where(
                    Shipment.tracking_number == str(awb),
                    CarrierIntegration.provider == carrier_cls.provider.value,
                )
                .limit(1)
            )
            secret = result.scalar_one_or_none()
            if secret:
                return secret
        return carrier_cls.platform_webhook_secret()

    async def _record(self, key: str, provider: str, update: WebhookStatusUpdate, outcome: str) -> bool:
        """Insert the idempotency row. False if a concurrent delivery got there first."""
        try:
            async with self.db.begin_nested():
                self.db.add(WebhookEvent(
                    idempotency_key=key,
                    provider=provider,
                    tracking_number=update.awb,
                    status=update.status,
                    result=outcome,
                ))
        except IntegrityError:
            return False
        return True

    async def process(self, provider: str, payload: Dict[str, Any]) -> WebhookResult:
        """
        Apply one webhook delivery.

        Raises:
            ValidationError: structurally invalid payload
            NotFoundError: unknown carrier
        """
        carrier_cls = self._carrier_class(provider)
        provider = carrier_cls.provider.value
        update = carrier_cls.parse_webhook(payload)

        key = idempotency_key(provider, update.awb, update.status, update.updated_at)
        seen = await self.db.execute(select(WebhookEvent.id).where(WebhookEvent.idempotency_key == key))
        if seen.scalar_one_or_none() is not None:
            logger.info(f"[WEBHOOK] Duplicate {provider} delivery for {update.awb} ({update.status})")
            return WebhookResult(status="duplicate", awb=update.awb)

        result = await self.db.execute(select(Shipment).where(Shipment.tracking_number == update.awb))
        shipment = result.scalar_one_or_none()
        if shipment is None:
            logger.warning(f"[WEBHOOK] {provider} update for unknown AWB {update.awb}")
            if not await self._record(key, provider, update, "not_found"):
                return WebhookResult(status="duplicate", awb=update.awb)
            return WebhookResult(status="not_found", awb=update.awb)

        mapped = carrier_cls.map_status(update.status)
        previous = shipment.status
        if mapped.value == previous:
            if not await self._record(key, provider, update, "unchanged"):
                return WebhookResult(status="duplicate", awb=update.awb)
            return WebhookResult(
                status="unchanged",
                awb=update.awb,
                shipment_id=shipment.id,
                previous_status=previous,
                new_status=previous,
            )

        if not can_transition(previous, mapped):
            logger.warning(
                f"[WEBHOOK] Ignoring {provider} {update.status} for {update.awb}: "
                f"{previous} -> {mapped.value} not allowed"
            )
            if not await self._record(key, provider, update, "ignored"):
                return WebhookResult(status="duplicate", awb=update.awb)
            return WebhookResult(
                status="ignored",
                awb=update.awb,
                shipment_id=shipment.id,
                previous_status=previous,
                new_status=previous,
            )

        if not await self._record(key, provider, update, "processed"):
            return WebhookResult(status="duplicate", awb=update.awb)

        event_time = parse_carrier_time(update.updated_at) or utcnow()
        self.db.add(ShipmentStatusHistory(
            shipment_id=shipment.id,
            status=mapped.value,
            carrier_status=update.status,
            location=update.current_location,
            description=update.description,
            source="webhook",
            timestamp=event_time,
        ))
        shipment.status = mapped.value
        if update.courier_name and not shipment.carrier_name:
            shipment.carrier_name = update.courier_name

        if mapped == ShipmentStatus.DELIVERED:
            shipment.delivered_at = event_time
            order_result = await self.db.execute(select(Order).where(Order.id == shipment.order_id))
            order = order_result.scalar_one_or_none()
            if order is not None:
                order.status = OrderStatus.DELIVERED.value

        await self.db.flush()
        logger.info(f"[WEBHOOK] {update.awb}: {previous} -> {mapped.value} ({provider} {update.status})")

        outcome = WebhookResult(
            status="processed",
            awb=update.awb,
            shipment_id=shipment.id,
            previous_status=previous,
            new_status=mapped.value,
        )
        await self._apply_side_rules(carrier_cls, shipment, mapped, update, payload, event_time, outcome)
        return outcome

    async def _apply_side_rules(
        self,
        carrier_cls: Type[BaseCarrier],
        shipment: Shipment,
        mapped: ShipmentStatus,
        update: WebhookStatusUpdate,
        payload: Dict[str, Any],
        event_time,
        outcome: WebhookResult,
    ) -> None:
        provider = carrier_cls.provider.value
        status_code = update.status_code or update.status

        if mapped in NDR_CANDIDATE_STATUSES:
            detector = NDRDetectionService(self.db, notifier=self.notifier)
            if detector.is_ndr_status(status_code, update.description, carrier_cls.ndr_patterns()):
                try:
                    ndr_event = await detector.detect_ndr(shipment, status_code, update.description, provider)
                    if ndr_event is not None:
                        outcome.ndr_event_id = ndr_event.id
                except Exception as e:
                    logger.error(f"[WEBHOOK] NDR detection failed for {update.awb}: {e}")

        if mapped == ShipmentStatus.DELIVERED and shipment.is_cod:
            collected = extract_collected_amount(update, payload)
            if collected is None:
                collected = float(shipment.cod_amount)
            try:
                reconciliation = await CODReconciliationService(self.db).reconcile_delivered_shipment(
                    shipment.id, collected, delivered_at=event_time, source=DiscrepancySource.WEBHOOK
                )
                outcome.discrepancy_id = reconciliation.discrepancy_id
            except Exception as e:
                logger.error(f"[WEBHOOK] COD reconciliation failed for {update.awb}: {e}")

        if mapped in (ShipmentStatus.RTO_INITIATED, ShipmentStatus.RTO_DELIVERED):
            try:
                await RTOService(self.db).update_rto_status(shipment, mapped)
            except Exception as e:
                logger.error(f"[WEBHOOK] RTO status update failed for {update.awb}: {e}")
