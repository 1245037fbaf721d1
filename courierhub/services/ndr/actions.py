"""
NDR action executors

One executor per NDRActionType, dispatched from a single table. Every
executor returns an ActionOutcome; failures are reported, not raised, so a
workflow can record them and move on.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.exceptions import CourierHubError
from courierhub.models.ndr import NDRActionResult, NDRActionType, NDREvent
from courierhub.models.order import Order
from courierhub.models.rto import RTOTriggeredBy
from courierhub.models.shipment import Shipment
from courierhub.modules.shipping.carriers import CarrierFactory
from courierhub.services.collaborators import LoggingNotificationSender, NotificationSender
from courierhub.services.rto_service import RTOService

logger = logging.getLogger(__name__)


@dataclass
class ActionOutcome:
    action_type: str
    result: NDRActionResult
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.result == NDRActionResult.SUCCESS


@dataclass
class ActionContext:
    ndr_event: NDREvent
    shipment: Shipment
    order: Optional[Order]

    @property
    def customer_data(self) -> Dict[str, Any]:
        order = self.order
        return {
            "customer_name": order.customer_name if order else None,
            "order_number": order.order_number if order else None,
            "tracking_number": self.shipment.tracking_number,
            "ndr_reason": self.ndr_event.ndr_reason,
            "ndr_type": self.ndr_event.ndr_type,
        }


class NDRActionExecutor:
    """Runs a single workflow action against an NDR event."""

    def __init__(self, db: AsyncSession, notifier: Optional[NotificationSender] = None):
        self.db = db
        self.notifier = notifier or LoggingNotificationSender()
        self._handlers = {
            NDRActionType.CALL_CUSTOMER: self._call_customer,
            NDRActionType.SEND_WHATSAPP: self._send_whatsapp,
            NDRActionType.SEND_EMAIL: self._send_email,
            NDRActionType.UPDATE_ADDRESS: self._update_address,
            NDRActionType.REQUEST_REATTEMPT: self._request_reattempt,
            NDRActionType.TRIGGER_RTO: self._trigger_rto,
        }

    async def _load_context(self, ndr_event: NDREvent) -> ActionContext:
        result = await self.db.execute(select(Shipment).where(Shipment.id == ndr_event.shipment_id))
        shipment = result.scalar_one()
        order_result = await self.db.execute(select(Order).where(Order.id == shipment.order_id))
        return ActionContext(ndr_event=ndr_event, shipment=shipment, order=order_result.scalar_one_or_none())

    async def execute(
        self,
        action_type: str,
        ndr_event: NDREvent,
        action_config: Optional[Dict[str, Any]] = None,
    ) -> ActionOutcome:
        try:
            kind = NDRActionType(action_type)
        except ValueError:
            logger.warning(f"[NDR] Unknown action type {action_type} for NDR {ndr_event.id}")
            return ActionOutcome(
                action_type=str(action_type),
                result=NDRActionResult.FAILED,
                error=f"Unknown action type: {action_type}",
            )

        context = await self._load_context(ndr_event)
        try:
            return await self._handlers[kind](context, action_config or {})
        except CourierHubError as e:
            logger.error(f"[NDR] {kind.value} failed for NDR {ndr_event.id}: {e.code} {e.message}")
            return ActionOutcome(action_type=kind.value, result=NDRActionResult.FAILED, error=e.message)

    # ------------------------------------------------------------------
    # Customer contact
    # ------------------------------------------------------------------

    async def _notify(self, channel: str, recipient: Optional[str], context: ActionContext,
                      config: Dict[str, Any], action_type: NDRActionType) -> ActionOutcome:
        template = config.get("template") or f"ndr_{context.ndr_event.ndr_type}"
        send = getattr(self.notifier, f"send_{channel}")
        sent = await send(recipient or "", template, context.customer_data)
        if not sent.success:
            return ActionOutcome(
                action_type=action_type.value,
                result=NDRActionResult.FAILED,
                error=sent.error,
                metadata={"channel": channel},
            )
        return ActionOutcome(
            action_type=action_type.value,
            result=NDRActionResult.SUCCESS,
            metadata={"channel": channel, "message_id": sent.provider_message_id},
        )

    async def _call_customer(self, context: ActionContext, config: Dict[str, Any]) -> ActionOutcome:
        phone = context.order.customer_phone if context.order else None
        return await self._notify("call", phone, context, config, NDRActionType.CALL_CUSTOMER)

    async def _send_whatsapp(self, context: ActionContext, config: Dict[str, Any]) -> ActionOutcome:
        phone = context.order.customer_phone if context.order else None
        return await self._notify("whatsapp", phone, context, config, NDRActionType.SEND_WHATSAPP)

    async def _send_email(self, context: ActionContext, config: Dict[str, Any]) -> ActionOutcome:
        email = context.order.customer_email if context.order else None
        if not email:
            return ActionOutcome(
                action_type=NDRActionType.SEND_EMAIL.value,
                result=NDRActionResult.SKIPPED,
                error="No customer email on order",
            )
        return await self._notify("email", email, context, config, NDRActionType.SEND_EMAIL)

    # ------------------------------------------------------------------
    # Carrier / seller actions
    # ------------------------------------------------------------------

    async def _update_address(self, context: ActionContext, config: Dict[str, Any]) -> ActionOutcome:
        # Address correction needs the seller; leave it pending on the NDR log
        logger.info(f"[NDR] Address update requested from seller for NDR {context.ndr_event.id}")
        return ActionOutcome(
            action_type=NDRActionType.UPDATE_ADDRESS.value,
            result=NDRActionResult.PENDING,
            metadata={"awaiting": "seller_address_update"},
        )

    async def _request_reattempt(self, context: ActionContext, config: Dict[str, Any]) -> ActionOutcome:
        shipment = context.shipment
        adapter = await CarrierFactory.get_company_adapter(self.db, shipment.company_id, shipment.provider)
        if adapter is None or not adapter.supports_reattempt:
            return ActionOutcome(
                action_type=NDRActionType.REQUEST_REATTEMPT.value,
                result=NDRActionResult.SKIPPED,
                error=f"{shipment.provider} does not support reattempt requests",
            )

        accepted = await adapter.request_reattempt(shipment.tracking_number, config.get("remarks"))
        return ActionOutcome(
            action_type=NDRActionType.REQUEST_REATTEMPT.value,
            result=NDRActionResult.SUCCESS if accepted else NDRActionResult.FAILED,
            metadata={"provider": shipment.provider},
            error=None if accepted else "Carrier rejected reattempt request",
        )

    async def _trigger_rto(self, context: ActionContext, config: Dict[str, Any]) -> ActionOutcome:
        ndr_event = context.ndr_event
        rto_event = await RTOService(self.db, self.notifier).trigger_rto(
            context.shipment.id,
            config.get("reason") or f"NDR unresolved: {ndr_event.ndr_reason}",
            ndr_event_id=ndr_event.id,
            triggered_by=RTOTriggeredBy.AUTO,
        )
        return ActionOutcome(
            action_type=NDRActionType.TRIGGER_RTO.value,
            result=NDRActionResult.SUCCESS,
            metadata={"rto_event_id": rto_event.id, "reverse_awb": rto_event.reverse_awb},
        )
