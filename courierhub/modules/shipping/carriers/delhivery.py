"""
Delhivery Carrier Implementation

- Static API token per client: `Authorization: Token <api_token>`
- Two services: E (Express) and S (Surface), each rated with a separate
  invoice-charges call
- Shipment creation is a form post: format=json&data=<json>
- Pickup locations are registered by warehouse name
"""
import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

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

# Delhivery tokens do not expire; re-read from credentials yearly
STATIC_TOKEN_TTL = timedelta(days=365)

DELHIVERY_SERVICES = {
    "E": ("Express", 2),
    "S": ("Surface", 4),
}

DELHIVERY_STATUS_MAP = {
    "MANIFESTED": ShipmentStatus.CREATED,
    "NOT_PICKED": ShipmentStatus.CREATED,
    "PICKED_UP": ShipmentStatus.PICKED_UP,
    "IN_TRANSIT": ShipmentStatus.IN_TRANSIT,
    "PENDING": ShipmentStatus.IN_TRANSIT,
    "DISPATCHED": ShipmentStatus.OUT_FOR_DELIVERY,
    "DELIVERED": ShipmentStatus.DELIVERED,
    "UNDELIVERED": ShipmentStatus.NDR,
    "NDR": ShipmentStatus.NDR,
    "RTO": ShipmentStatus.RTO_INITIATED,
    "RETURNED": ShipmentStatus.RTO_INITIATED,
    "DTO": ShipmentStatus.RTO_DELIVERED,
    "RTO_DELIVERED": ShipmentStatus.RTO_DELIVERED,
    "LOST": ShipmentStatus.LOST,
    "DAMAGED": ShipmentStatus.DAMAGED,
    "CANCELLED": ShipmentStatus.CANCELLED,
}


def _to_grams(weight_kg: float) -> int:
    return max(int(round((weight_kg or 0) * 1000)), 1)


@register_carrier(CarrierProvider.DELHIVERY)
class DelhiveryCarrier(BaseCarrier):
    """Delhivery B2C adapter."""

    display_name = "Delhivery"
    quote_timeout_seconds = 20.0
    base_url_setting = "DELHIVERY_BASE_URL"
    webhook_secret_setting = "DELHIVERY_WEBHOOK_SECRET"

    STATUS_MAP = DELHIVERY_STATUS_MAP
    NDR_STATUS_CODES = ("NDR", "UD", "EOD-", "UNDELIVERED")

    supports_reattempt = True
    supports_reverse_shipment = True

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Token {token}"}

    async def _authenticate(self) -> Tuple[str, datetime]:
        token = self.credentials.get("api_token")
        if not token:
            raise CarrierAPIError("Delhivery integration has no api_token", provider=self.provider.value)
        return token, datetime.now(timezone.utc) + STATIC_TOKEN_TTL

    async def _rate_service(self, mode: str, origin, destination, package, payment_mode) -> Optional[Rate]:
        data = await self._request(
            "GET",
            "/api/kinko/v1/invoice/charges/.json",
            "get_rates",
            params={
                "md": mode,
                "ss": "Delivered",
                "d_pin": destination.pincode,
                "o_pin": origin.pincode,
                "cgm": _to_grams(package.chargeable_weight),
                "pt": "COD" if payment_mode == "cod" else "Pre-paid",
            },
        )

        # Response is a one-element list in most accounts, a bare object in some
        entry = data[0] if isinstance(data, list) and data else data
        if not isinstance(entry, dict) or not entry:
            return None

        total = float(entry.get("total_amount") or entry.get("total_charge") or 0)
        name, days = DELHIVERY_SERVICES[mode]
        explicit = total > 0
        if not explicit:
            total = self.estimate_fallback_rate(package.chargeable_weight)

        return Rate(
            provider=self.provider.value,
            service_code=mode,
            service_name=name,
            carrier_name=self.carrier_name,
            total=total,
            freight_charge=float(entry.get("charge_DL") or total),
            cod_charge=float(entry.get("charge_COD") or 0),
            estimated_days=days,
            zone=entry.get("zone"),
            explicit_price=explicit,
        )

    async def _fetch_rates(
        self,
        origin: AddressInput,
        destination: AddressInput,
        package: Package,
        payment_mode: str,
        cod_amount: float,
    ) -> List[Rate]:
        results = await asyncio.gather(
            *[self._rate_service(mode, origin, destination, package, payment_mode) for mode in DELHIVERY_SERVICES],
            return_exceptions=True,
        )

        rates: List[Rate] = []
        errors: List[BaseException] = []
        for mode, result in zip(DELHIVERY_SERVICES, results):
            if isinstance(result, CarrierAPIError) and result.http_status in (404, 422):
                continue
            if isinstance(result, BaseException):
                logger.warning(f"[delhivery] Rating service {mode} failed: {result}")
                errors.append(result)
                continue
            if result is not None:
                rates.append(result)

        # One service failing is tolerated; both failing is a provider failure
        if not rates and errors:
            raise errors[0]
        return rates

    async def _create_remote_warehouse(self, warehouse: Warehouse) -> str:
        data = await self._request(
            "POST",
            "/api/backend/clientwarehouse/create/",
            "create_warehouse",
            json={
                "name": warehouse.name,
                "email": warehouse.email or "",
                "phone": normalize_phone(warehouse.phone),
                "address": warehouse.address_line1,
                "city": warehouse.city,
                "country": "India",
                "pin": warehouse.pincode,
                "return_address": warehouse.address_line1,
                "return_pin": warehouse.pincode,
                "return_city": warehouse.city,
                "return_state": warehouse.state,
                "return_country": "India",
            },
        )
        if data.get("success") is False:
            raise CarrierAPIError(
                f"Delhivery warehouse registration failed: {data.get('error') or data.get('message')}",
                provider=self.provider.value,
            )
        # Delhivery identifies pickup locations by name
        return (data.get("data") or {}).get("name") or warehouse.name

    def _shipment_payload(self, request: ShipmentRequest, pickup_name: str, payment_mode: str) -> Dict:
        dest = request.destination
        return {
            "shipments": [{
                "name": dest.name,
                "add": " ".join(filter(None, [dest.address_line1, dest.address_line2])),
                "pin": dest.pincode,
                "city": dest.city,
                "state": dest.state,
                "country": "India",
                "phone": normalize_phone(dest.phone),
                "order": request.order_number,
                "payment_mode": payment_mode,
                "cod_amount": request.cod_amount if payment_mode == "COD" else 0,
                "total_amount": request.invoice_value,
                "products_desc": request.package.description or "",
                "quantity": sum(int(item.get("quantity", 1)) for item in request.items) or 1,
                "weight": _to_grams(request.package.weight),
                "shipment_length": request.package.length,
                "shipment_width": request.package.width,
                "shipment_height": request.package.height,
                "shipping_mode": "Express" if request.service_code == "E" else "Surface",
            }],
            "pickup_location": {"name": pickup_name},
        }

    async def _submit_manifest(self, payload: Dict, operation: str) -> Dict:
        data = await self._request(
            "POST",
            "/api/cmu/create.json",
            operation,
            data={"format": "json", "data": json.dumps(payload)},
        )
        packages = data.get("packages") or []
        pkg = packages[0] if packages else {}
        awb = pkg.get("waybill") or pkg.get("wbn") or data.get("waybill")
        if not awb:
            remarks = pkg.get("remarks") or data.get("rmk") or data.get("remark") or "no waybill returned"
            raise CarrierAPIError(
                f"Delhivery {operation} rejected: {remarks}",
                provider=self.provider.value,
                retryable=False,
            )
        pkg["waybill"] = str(awb)
        return pkg

    async def _create_shipment(self, request: ShipmentRequest, warehouse_ref: str) -> ShipmentResult:
        payment_mode = "COD" if request.payment_mode == "cod" else "Prepaid"
        pkg = await self._submit_manifest(
            self._shipment_payload(request, warehouse_ref, payment_mode), "create_shipment"
        )
        return ShipmentResult(
            tracking_number=pkg["waybill"],
            carrier_name=self.carrier_name,
            label_url=pkg.get("pdf_download_link"),
            carrier_shipment_id=pkg["waybill"],
            raw=pkg,
        )

    async def track_shipment(self, tracking_number: str) -> TrackingInfo:
        data = await self._request(
            "GET", "/api/v1/packages/json/", "track_shipment", params={"waybill": tracking_number}
        )
        shipment_data = (data.get("ShipmentData") or [{}])[0]
        shipment = shipment_data.get("Shipment")
        if not shipment:
            raise CarrierAPIError(
                f"No Delhivery tracking data for {tracking_number}",
                provider=self.provider.value,
                http_status=404,
            )

        status = shipment.get("Status") or {}
        carrier_status = status.get("Status") or ""

        events = []
        for scan in shipment.get("Scans") or []:
            detail = scan.get("ScanDetail") or scan
            events.append(TrackingEvent(
                timestamp=parse_carrier_time(detail.get("ScanDateTime")),
                status=detail.get("Scan") or "",
                description=detail.get("Instructions") or "",
                location=detail.get("ScannedLocation"),
            ))

        mapped = self.map_status(carrier_status)
        return TrackingInfo(
            tracking_number=shipment.get("AWB") or tracking_number,
            status=mapped,
            carrier_status=carrier_status,
            events=events,
            estimated_delivery=parse_carrier_time(shipment.get("ExpectedDeliveryDate")),
            delivered_at=parse_carrier_time(status.get("StatusDateTime")) if mapped == ShipmentStatus.DELIVERED else None,
        )

    async def _cancel_remote(self, tracking_number: str) -> CancelResult:
        data = await self._request(
            "POST",
            "/api/p/edit",
            "cancel_shipment",
            json={"waybill": tracking_number, "cancellation": "true"},
        )
        return CancelResult(
            success=bool(data.get("status", True)),
            tracking_number=tracking_number,
            message=data.get("remark"),
        )

    async def request_reattempt(self, tracking_number: str, remarks: Optional[str] = None) -> bool:
        await self._request(
            "POST",
            "/api/p/update",
            "request_reattempt",
            json={"data": [{"waybill": tracking_number, "act": "RE-ATTEMPT"}]},
        )
        return True

    async def create_reverse_shipment(self, tracking_number: str, reason: str) -> ReverseShipmentResult:
        # Reverse pickups ride the same manifest API with payment_mode "Pickup"
        payload = {
            "shipments": [{
                "order": f"RTO-{tracking_number}",
                "payment_mode": "Pickup",
                "return_reason": reason,
                "ref_waybill": tracking_number,
            }],
        }
        pkg = await self._submit_manifest(payload, "create_reverse_shipment")
        return ReverseShipmentResult(reverse_awb=pkg["waybill"], label_url=pkg.get("pdf_download_link"))
