"""
Ekart Logistics Carrier Implementation

- Auth: POST /integrations/v2/auth/token/{client_id} with username/password,
  returns a Bearer access_token and expires_in (seconds)
- One rate estimate per request (Surface); Ekart does not quote an ETA
- Pickup addresses are registered via /api/v2/address and referenced by alias
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Tuple

from courierhub.core.exceptions import CarrierAPIError
from courierhub.models.carrier_integration import CarrierProvider
from courierhub.models.company import Warehouse
from courierhub.models.shipment import ShipmentStatus
from courierhub.modules.shipping.carriers import register_carrier
from courierhub.modules.shipping.carriers.base import (
    AddressInput,
    BaseCarrier,
    CancelResult,
    Package,
    Rate,
    ShipmentRequest,
    ShipmentResult,
    TrackingEvent,
    TrackingInfo,
    normalize_phone,
    parse_carrier_time,
)

logger = logging.getLogger(__name__)

EKART_STATUS_MAP = {
    "ORDER_PLACED": ShipmentStatus.CREATED,
    "PICKED_UP": ShipmentStatus.PICKED_UP,
    "IN_TRANSIT": ShipmentStatus.IN_TRANSIT,
    "OUT_FOR_DELIVERY": ShipmentStatus.OUT_FOR_DELIVERY,
    "DELIVERED": ShipmentStatus.DELIVERED,
    "CANCELLED": ShipmentStatus.CANCELLED,
    "RTO_INITIATED": ShipmentStatus.RTO_INITIATED,
    "RTO_DELIVERED": ShipmentStatus.RTO_DELIVERED,
    "DELIVERY_FAILED": ShipmentStatus.NDR,
    "UNDELIVERED": ShipmentStatus.NDR,
    "LOST": ShipmentStatus.LOST,
    "DAMAGED": ShipmentStatus.DAMAGED,
}

# Ekart's rate estimate carries no TAT; surface transit is assumed
EKART_SURFACE_DAYS = 5


@register_carrier(CarrierProvider.EKART)
class EkartCarrier(BaseCarrier):
    """Ekart (Flipkart logistics) adapter."""

    display_name = "Ekart"
    quote_timeout_seconds = 35.0
    base_url_setting = "EKART_BASE_URL"
    webhook_secret_setting = "EKART_WEBHOOK_SECRET"

    STATUS_MAP = EKART_STATUS_MAP
    NDR_STATUS_CODES = ("DELIVERY_FAILED", "UNDELIVERED", "NDR")

    async def _authenticate(self) -> Tuple[str, datetime]:
        client_id = self.credentials.get("client_id", "")
        data = await self._request(
            "POST",
            f"/integrations/v2/auth/token/{client_id}",
            "authenticate",
            authenticated=False,
            json={
                "username": self.credentials.get("username", ""),
                "password": self.credentials.get("password", ""),
            },
        )
        token = data.get("access_token")
        if not token:
            raise CarrierAPIError("Ekart auth response missing access_token", provider=self.provider.value)
        expires_in = int(data.get("expires_in") or 3600)
        return token, datetime.now(timezone.utc) + timedelta(seconds=expires_in)

    async def _fetch_rates(
        self,
        origin: AddressInput,
        destination: AddressInput,
        package: Package,
        payment_mode: str,
        cod_amount: float,
    ) -> List[Rate]:
        data = await self._request(
            "POST",
            "/data/pricing/estimate",
            "get_rates",
            json={
                "pickupPincode": int(origin.pincode),
                "dropPincode": int(destination.pincode),
                "weight": max(int(round(package.chargeable_weight * 1000)), 1),
                "length": package.length,
                "width": package.width,
                "height": package.height,
                "serviceType": "SURFACE",
                "codAmount": cod_amount if payment_mode == "cod" else 0,
                "invoiceAmount": package.declared_value,
            },
        )
        if not data or data.get("serviceable") is False:
            return []

        total = float(data.get("total") or 0)
        explicit = total > 0
        if not explicit:
            total = self.estimate_fallback_rate(package.chargeable_weight)

        return [Rate(
            provider=self.provider.value,
            service_code="SURFACE",
            service_name="Surface",
            carrier_name=self.carrier_name,
            total=total,
            freight_charge=float(data.get("shippingCharge") or total),
            cod_charge=float(data.get("codCharge") or 0),
            estimated_days=EKART_SURFACE_DAYS,
            zone=data.get("zone"),
            explicit_price=explicit,
        )]

    async def _create_remote_warehouse(self, warehouse: Warehouse) -> str:
        alias = f"wh-{warehouse.company_id}-{warehouse.id}"
        data = await self._request(
            "POST",
            "/api/v2/address",
            "create_warehouse",
            json={
                "alias": alias,
                "phone": normalize_phone(warehouse.phone),
                "address_line1": warehouse.address_line1,
                "address_line2": warehouse.address_line2 or "",
                "pincode": int(warehouse.pincode),
                "city": warehouse.city,
                "state": warehouse.state,
                "country": "India",
            },
        )
        return str(data.get("alias") or alias)

    async def _create_shipment(self, request: ShipmentRequest, warehouse_ref: str) -> ShipmentResult:
        dest = request.destination
        is_cod = request.payment_mode == "cod"
        package = {
            "order_number": request.order_number,
            "payment_mode": "COD" if is_cod else "Prepaid",
            "cod_amount": request.cod_amount if is_cod else 0,
            "total_amount": request.invoice_value,
            "weight": max(int(round(request.package.weight * 1000)), 1),
            "length": request.package.length,
            "width": request.package.width,
            "height": request.package.height,
            "products_desc": request.package.description or "",
            "quantity": sum(int(item.get("quantity", 1)) for item in request.items) or 1,
            "drop_location": {
                "name": dest.name,
                "phone": normalize_phone(dest.phone),
                "address": " ".join(filter(None, [dest.address_line1, dest.address_line2])),
                "city": dest.city,
                "state": dest.state,
                "pin": int(dest.pincode),
                "country": "India",
            },
            "pickup_location": {"name": warehouse_ref},
            "return_location": {"name": warehouse_ref},
        }

        # API takes and returns a list
        data = await self._request("POST", "/api/v1/package/create", "create_shipment", json=[package])
        result = data[0] if isinstance(data, list) and data else data
        tracking_id = (result or {}).get("tracking_id")
        if not tracking_id:
            raise CarrierAPIError(
                f"Ekart create_shipment rejected: {(result or {}).get('remark') or 'no tracking_id'}",
                provider=self.provider.value,
                details={"order_number": request.order_number},
            )

        return ShipmentResult(
            tracking_number=str(tracking_id),
            carrier_name=self.carrier_name,
            carrier_shipment_id=str(tracking_id),
            raw=result,
        )

    async def track_shipment(self, tracking_number: str) -> TrackingInfo:
        data = await self._request(
            "GET", "/api/v1/track", "track_shipment", params={"tracking_ids": tracking_number}
        )
        entry = data.get(tracking_number)
        if not entry:
            raise CarrierAPIError(
                f"No Ekart tracking data for {tracking_number}",
                provider=self.provider.value,
                http_status=404,
            )

        history = entry.get("history") or []
        events = [
            TrackingEvent(
                timestamp=parse_carrier_time(item.get("timestamp")),
                status=item.get("status") or "",
                description=item.get("description") or "",
                location=item.get("location"),
            )
            for item in history
        ]
        carrier_status = entry.get("status") or (history[0].get("status") if history else "") or ""

        return TrackingInfo(
            tracking_number=tracking_number,
            status=self.map_status(carrier_status),
            carrier_status=carrier_status,
            events=events,
            estimated_delivery=parse_carrier_time(entry.get("expected_delivery_date")),
        )

    async def _cancel_remote(self, tracking_number: str) -> CancelResult:
        data = await self._request(
            "POST",
            "/api/v1/package/cancel",
            "cancel_shipment",
            json={"tracking_ids": [tracking_number]},
        )
        entry = data.get(tracking_number) or {}
        return CancelResult(
            success=entry.get("status", "Cancelled") == "Cancelled",
            tracking_number=tracking_number,
            message=entry.get("remark"),
        )
