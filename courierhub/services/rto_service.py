"""
RTO Service

Return-to-origin for a shipment that cannot be delivered.

trigger_rto:
    1. reject delivered shipments and shipments already in RTO
    2. require the wallet to cover the flat RTO charge
    3. book the reverse leg (carrier API when supported, else an internal AWB)
    4. insert the RTOEvent (unique per shipment)
    5. debit the RTO charge
    6. move shipment -> rto_initiated, NDR -> rto_triggered, order -> rto
    7. notify the customer
"""
import logging
import time
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.config import settings
from courierhub.core.exceptions import (
    CarrierAPIError,
    InsufficientBalanceError,
    NotFoundError,
    StateConflictError,
)
from courierhub.models.company import WalletTransactionReason
from courierhub.models.ndr import NDREvent, NDRStatus
from courierhub.models.order import Order, OrderStatus
from courierhub.models.rto import RTOEvent, RTOStatus, RTOTriggeredBy
from courierhub.models.shipment import (
    RTO_STATUSES,
    Shipment,
    ShipmentStatus,
    ShipmentStatusHistory,
)
from courierhub.modules.shipping.carriers import CarrierFactory
from courierhub.services.collaborators import LoggingNotificationSender, NotificationSender
from courierhub.services.wallet_service import WalletService, to_money

logger = logging.getLogger(__name__)

# Carrier status -> RTO leg status
RTO_PROGRESS = {
    ShipmentStatus.RTO_INITIATED: RTOStatus.IN_TRANSIT,
    ShipmentStatus.RTO_DELIVERED: RTOStatus.DELIVERED_TO_WAREHOUSE,
}


def internal_reverse_awb(tracking_number: str) -> str:
    return f"RTO-{tracking_number}-{int(time.time() * 1000)}"


class RTOService:
    """Return-to-origin orchestration."""

    def __init__(self, db: AsyncSession, notifier: Optional[NotificationSender] = None):
        self.db = db
        self.wallet = WalletService(db)
        self.notifier = notifier or LoggingNotificationSender()

    async def _book_reverse(self, shipment: Shipment, reason: str) -> str:
        adapter = await CarrierFactory.get_company_adapter(self.db, shipment.company_id, shipment.provider)
        if adapter is not None and adapter.supports_reverse_shipment:
            try:
                result = await adapter.create_reverse_shipment(shipment.tracking_number, reason)
                return result.reverse_awb
            except (CarrierAPIError, NotImplementedError) as e:
                logger.warning(
                    f"Reverse booking via {shipment.provider} failed for {shipment.tracking_number}, "
                    f"using internal AWB: {e}"
                )
        return internal_reverse_awb(shipment.tracking_number)

    async def trigger_rto(
        self,
        shipment_id: int,
        reason: str,
        ndr_event_id: Optional[int] = None,
        triggered_by: RTOTriggeredBy = RTOTriggeredBy.AUTO,
    ) -> RTOEvent:
        """
        Start the return leg for a shipment.

        Raises:
            NotFoundError: unknown shipment
            StateConflictError: delivered, already in RTO or RTO already recorded
            InsufficientBalanceError: wallet cannot cover the RTO charge
        """
        result = await self.db.execute(select(Shipment).where(Shipment.id == shipment_id))
        shipment = result.scalar_one_or_none()
        if shipment is None:
            raise NotFoundError(f"Shipment {shipment_id} not found", details={"shipment_id": shipment_id})

        if shipment.status == ShipmentStatus.DELIVERED.value:
            raise StateConflictError(
                f"Shipment {shipment.tracking_number} is delivered, RTO not allowed",
                code="SHIPMENT_DELIVERED",
                details={"shipment_id": shipment_id},
            )
        if shipment.status in RTO_STATUSES:
            raise StateConflictError(
                f"Shipment {shipment.tracking_number} is already in RTO",
                code="RTO_ALREADY_TRIGGERED",
                details={"shipment_id": shipment_id, "status": shipment.status},
            )

        existing = await self.db.execute(select(RTOEvent.id).where(RTOEvent.shipment_id == shipment_id))
        if existing.scalar_one_or_none() is not None:
            raise StateConflictError(
                f"RTO already recorded for shipment {shipment.tracking_number}",
                code="RTO_ALREADY_TRIGGERED",
                details={"shipment_id": shipment_id},
            )

        charge = to_money(settings.RTO_FLAT_CHARGE)
        balance, _ = await self.wallet.get_balance(shipment.company_id)
        if balance < charge:
            logger.warning(
                f"Insufficient wallet balance for RTO on shipment {shipment_id}: "
                f"required {charge}, available {balance}"
            )
            raise InsufficientBalanceError(
                f"Wallet balance {balance} cannot cover RTO charge {charge}",
                required=float(charge),
                available=float(balance),
            )

        reverse_awb = await self._book_reverse(shipment, reason)

        rto_event = RTOEvent(
            shipment_id=shipment.id,
            order_id=shipment.order_id,
            company_id=shipment.company_id,
            ndr_event_id=ndr_event_id,
            reverse_awb=reverse_awb,
            rto_reason=reason,
            triggered_by=triggered_by.value,
            charges=charge,
            status=RTOStatus.INITIATED.value,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(rto_event)
        except IntegrityError:
            raise StateConflictError(
                f"RTO already recorded for shipment {shipment_id}",
                code="RTO_ALREADY_TRIGGERED",
                details={"shipment_id": shipment_id},
            )

        debit = await self.wallet.debit(
            shipment.company_id,
            charge,
            WalletTransactionReason.RTO_CHARGE,
            reference_type="rto_event",
            reference_id=rto_event.id,
            description=f"RTO charge for {shipment.tracking_number}",
        )
        rto_event.wallet_transaction_id = debit.id

        shipment.status = ShipmentStatus.RTO_INITIATED.value
        shipment.rto_event_id = rto_event.id
        self.db.add(ShipmentStatusHistory(
            shipment_id=shipment.id,
            status=ShipmentStatus.RTO_INITIATED.value,
            description=f"RTO initiated ({triggered_by.value}): {reason}. Reverse AWB {reverse_awb}",
            source="rto",
        ))

        if ndr_event_id is not None:
            ndr_result = await self.db.execute(select(NDREvent).where(NDREvent.id == ndr_event_id))
            ndr_event = ndr_result.scalar_one_or_none()
            if ndr_event is not None:
                ndr_event.status = NDRStatus.RTO_TRIGGERED.value
                ndr_event.auto_rto_triggered = triggered_by == RTOTriggeredBy.AUTO

        order_result = await self.db.execute(select(Order).where(Order.id == shipment.order_id))
        order = order_result.scalar_one_or_none()
        if order is not None:
            order.status = OrderStatus.RTO.value

        await self.db.flush()

        logger.warning(
            f"RTO triggered for shipment {shipment_id} ({shipment.tracking_number}) by {triggered_by.value}: "
            f"reverse AWB {reverse_awb}, charge {charge}, txn {debit.id}"
        )

        if order is not None:
            notification = await self.notifier.send_whatsapp(
                order.customer_phone,
                "rto_initiated",
                {
                    "customer_name": order.customer_name,
                    "order_number": order.order_number,
                    "reason": reason,
                    "reverse_awb": reverse_awb,
                },
            )
            if not notification.success:
                logger.warning(f"RTO notification failed for shipment {shipment_id}: {notification.error}")

        return rto_event

    async def update_rto_status(self, shipment: Shipment, shipment_status: ShipmentStatus) -> Optional[RTOEvent]:
        """Advance the RTO leg from a carrier status update on the forward AWB."""
        rto_status = RTO_PROGRESS.get(shipment_status)
        if rto_status is None:
            return None

        result = await self.db.execute(select(RTOEvent).where(RTOEvent.shipment_id == shipment.id))
        rto_event = result.scalar_one_or_none()
        if rto_event is None or rto_event.status == rto_status.value:
            return rto_event

        if rto_event.status == RTOStatus.DELIVERED_TO_WAREHOUSE.value:
            return rto_event

        rto_event.status = rto_status.value
        await self.db.flush()
        logger.info(f"RTO {rto_event.id} for shipment {shipment.id} -> {rto_status.value}")
        return rto_event
