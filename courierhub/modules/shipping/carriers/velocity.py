"""
Velocity Shipfast Carrier Implementation

Velocity is a courier aggregator: one serviceability call returns several
underlying couriers (Delhivery, Bluedart, Ekart, ...), each a separate
service option.

- Auth: POST /custom/api/v1/auth-token, token valid ~24h, raw token in the
  Authorization header
- Serviceability returns 422 when no courier serves the corridor
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

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
    ReverseShipmentResult,
    ShipmentRequest,
    ShipmentResult,
    TrackingEvent,
    TrackingInfo,
    normalize_phone,
    parse_carrier_time,
)

logger = logging.getLogger(__name__)

VELOCITY_TOKEN_TTL_HOURS = 24

VELOCITY_STATUS_MAP = {
    "NEW": ShipmentStatus.CREATED,
    "READY_FOR_PICKUP": ShipmentStatus.CREATED,
    "PKP": ShipmentStatus.PICKED_UP,
    "PICKED_UP": ShipmentStatus.PICKED_UP,
    "IT": ShipmentStatus.IN_TRANSIT,
    "IN_TRANSIT": ShipmentStatus.IN_TRANSIT,
    "OFD": ShipmentStatus.OUT_FOR_DELIVERY,
    "OUT_FOR_DELIVERY": ShipmentStatus.OUT_FOR_DELIVERY,
    "DEL": ShipmentStatus.DELIVERED,
    "DELIVERED": ShipmentStatus.DELIVERED,
    "NDR": ShipmentStatus.NDR,
    "UNDELIVERED": ShipmentStatus.NDR,
    "RTO": ShipmentStatus.RTO_INITIATED,
    "RTO_INITIATED": ShipmentStatus.RTO_INITIATED,
    "RTO_DELIVERED": ShipmentStatus.RTO_DELIVERED,
    "LOST": ShipmentStatus.LOST,
    "DAMAGED": ShipmentStatus.DAMAGED,
    "CANCELLED": ShipmentStatus.CANCELLED,
}


@register_carrier(CarrierProvider.VELOCITY)
class VelocityCarrier(BaseCarrier):
    """Velocity Shipfast aggregator adapter."""

    display_name = "Velocity"
    quote_timeout_seconds = 35.0
    base_url_setting = "VELOCITY_BASE_URL"
    webhook_secret_setting = "VELOCITY_WEBHOOK_SECRET"

    STATUS_MAP = VELOCITY_STATUS_MAP
    NDR_STATUS_CODES = ("NDR", "UNDELIVERED", "UD")

    supports_reattempt = True
    supports_reverse_shipment = True

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": token}

    @staticmethod
    def _unwrap(data: Any) -> Any:
        """Velocity wraps most payloads as {status, result|payload: ...}."""
        if isinstance(data, dict):
            for key in ("result", "payload"):
                if key in data and data[key] is not None:
                    return data[key]
        return data

    async def _authenticate(self) -> Tuple[str, datetime]:
        data = await self._request(
            "POST",
            "/custom/api/v1/auth-token",
            "authenticate",
            authenticated=False,
            json={
                "username": self.credentials.get("username", ""),
                "password": self.credentials.get("password", ""),
            },
        )
        token = data.get("token")
        if not token:
            raise CarrierAPIError("Velocity auth response missing token", provider=self.provider.value)

        expires_at = datetime.now(timezone.utc) + timedelta(hours=VELOCITY_TOKEN_TTL_HOURS)
        if data.get("expires_at"):
            try:
                parsed = datetime.fromisoformat(str(data["expires_at"]).replace("Z", "+00:00"))
                expires_at = parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
            except ValueError:
                logger.warning("Velocity returned unparseable expires_at, assuming 24h")
        return token, expires_at

    async def _fetch_rates(
        self,
        origin: AddressInput,
        destination: AddressInput,
        package: Package,
        payment_mode: str,
        cod_amount: float,
    ) -> List[Rate]:
        try:
            data = await self._request(
                "POST",
                "/custom/api/v1/serviceability",
                "get_rates",
                json={
                    "from": origin.pincode,
                    "to": destination.pincode,
                    "payment_mode": "cod" if payment_mode == "cod" else "prepaid",
                    "shipment_type": "forward",
                    "weight": package.chargeable_weight,
                },
            )
        except CarrierAPIError as e:
            if e.http_status == 422:
                return []
            raise

        body = self._unwrap(data) or {}
        results = body.get("serviceability_results") or []
        zone = body.get("zone")

        rates = []
        for carrier in results:
            explicit = float(carrier.get("rate") or 0)
            total = explicit if explicit > 0 else self.estimate_fallback_rate(package.chargeable_weight)
            rates.append(Rate(
                provider=self.provider.value,
                service_code=str(carrier.get("carrier_id")),
                service_name=carrier.get("carrier_name") or str(carrier.get("carrier_id")),
                carrier_name=carrier.get("carrier_name"),
                total=total,
                freight_charge=total,
                estimated_days=int(carrier.get("estimated_delivery_days") or 3),
                zone=zone,
                explicit_price=explicit > 0,
            ))
        return rates

    async def _create_remote_warehouse(self, warehouse: Warehouse) -> str:
        data = await self._request(
            "POST",
            "/custom/api/v1/warehouse",
            "create_warehouse",
            json={
                "name": warehouse.name,
                "phone_number": normalize_phone(warehouse.phone),
                "email": warehouse.email or "",
                "contact_person": warehouse.contact_name,
                "address_attributes": {
                    "street_address": warehouse.address_line1,
                    "zip": warehouse.pincode,
                    "city": warehouse.city,
                    "state": warehouse.state,
                    "country": "India",
                },
            },
        )
        body = self._unwrap(data) or {}
        warehouse_id = body.get("warehouse_id")
        if not warehouse_id:
            raise CarrierAPIError("Velocity warehouse response missing warehouse_id", provider=self.provider.value)
        return str(warehouse_id)

    async def _create_shipment(self, request: ShipmentRequest, warehouse_ref: str) -> ShipmentResult:
        dest = request.destination
        payload = {
            "order_id": request.order_number,
            "order_date": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M"),
            "billing_customer_name": dest.name,
            "billing_address": dest.address_line1,
            "billing_address_2": dest.address_line2 or "",
            "billing_city": dest.city,
            "billing_pincode": dest.pincode,
            "billing_state": dest.state,
            "billing_country": "India",
            "billing_email": dest.email or "",
            "billing_phone": normalize_phone(dest.phone),
            "shipping_is_billing": True,
            "order_items": [
                {
                    "name": item.get("name", "Item"),
                    "sku": item.get("sku"),
                    "units": item.get("quantity", 1),
                    "selling_price": item.get("price", 0),
                }
                for item in request.items
            ],
            "payment_method": "COD" if request.payment_mode == "cod" else "PREPAID",
            "cod_collectible": request.cod_amount if request.payment_mode == "cod" else 0,
            "sub_total": request.invoice_value,
            "length": request.package.length,
            "breadth": request.package.width,
            "height": request.package.height,
            "weight": request.package.weight,
            "pickup_location": request.warehouse.name,
            "warehouse_id": warehouse_ref,
            "carrier_id": request.service_code,
        }

        data = await self._request("POST", "/custom/api/v1/forward-order-orchestration", "create_shipment", json=payload)
        shipment = self._unwrap(data) or {}
        awb = shipment.get("awb_code")
        if not awb:
            raise CarrierAPIError(
                "Velocity shipment response missing awb_code",
                provider=self.provider.value,
                details={"order_number": request.order_number},
            )

        charges = shipment.get("frwd_charges") or {}
        cost = float(charges.get("shipping_charges") or 0) + float(charges.get("cod_charges") or 0)
        return ShipmentResult(
            tracking_number=str(awb),
            carrier_name=shipment.get("courier_name") or self.carrier_name,
            label_url=shipment.get("label_url"),
            carrier_shipment_id=shipment.get("shipment_id"),
            shipping_cost=cost,
            raw=shipment,
        )

    async def track_shipment(self, tracking_number: str) -> TrackingInfo:
        data = await self._request(
            "POST", "/custom/api/v1/order-tracking", "track_shipment", json={"awbs": [tracking_number]}
        )
        entry = (self._unwrap(data) or {}).get(tracking_number) or {}
        tracking = entry.get("tracking_data") or {}

        tracks = tracking.get("shipment_track") or []
        carrier_status = (tracks[0].get("current_status") if tracks else None) or tracking.get("shipment_status") or ""

        events = [
            TrackingEvent(
                timestamp=parse_carrier_time(activity.get("date")),
                status=activity.get("sr-status-label") or activity.get("status") or "",
                description=activity.get("activity") or "",
                location=activity.get("location"),
            )
            for activity in tracking.get("shipment_track_activities") or []
        ]

        status = self.map_status(carrier_status)
        return TrackingInfo(
            tracking_number=tracking_number,
            status=status,
            carrier_status=carrier_status,
            events=events,
            delivered_at=parse_carrier_time(tracks[0].get("delivered_date")) if tracks else None,
        )

    async def _cancel_remote(self, tracking_number: str) -> CancelResult:
        data = await self._request(
            "POST", "/custom/api/v1/cancel-order", "cancel_shipment", json={"awbs": [tracking_number]}
        )
        return CancelResult(success=True, tracking_number=tracking_number, message=str(data.get("message", "")))

    async def request_reattempt(self, tracking_number: str, remarks: Optional[str] = None) -> bool:
        await self._request(
            "POST",
            "/custom/api/v1/reattempt-delivery",
            "request_reattempt",
            json={"awb": tracking_number, "remarks": remarks or "Customer requested reattempt"},
        )
        return True

    async def create_reverse_shipment(self, tracking_number: str, reason: str) -> ReverseShipmentResult:
        data = await self._request(
            "POST",
            "/custom/api/v1/reverse-order-orchestration",
            "create_reverse_shipment",
            json={"forward_awb": tracking_number, "reason": reason},
        )
        body = self._unwrap(data) or {}
        awb = body.get("awb_code")
        if not awb:
            raise CarrierAPIError("Velocity reverse response missing awb_code", provider=self.provider.value)
        return ReverseShipmentResult(reverse_awb=str(awb), label_url=body.get("label_url"))
