"""
Base Carrier Interface

All carrier adapters implement this interface. Each adapter provides its own:
  - Authentication (token lifecycle persisted on CarrierIntegration)
  - Rate calculation
  - Warehouse sync
  - Shipment creation
  - Tracking / cancellation
  - Status mapping and NDR patterns

Shared behaviour lives here: token caching, 401 refresh, error mapping,
destination validation, warehouse resolution, cancellation guard and webhook
signature verification.
"""
import asyncio
import hashlib
import hmac
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
from sqlalchemy import select, update

from courierhub.core.config import settings
from courierhub.core.database import get_db_session
from courierhub.core.encryption import decrypt_credentials, decrypt_value, encrypt_value
from courierhub.core.exceptions import (
    CarrierAPIError,
    CarrierNotCancellableError,
    CarrierNotServiceableError,
    ValidationError,
)
from courierhub.core.http_client import (
    CircuitOpenError,
    RateLimitExceeded,
    ResilientHTTPClient,
    get_carrier_client,
)
from courierhub.models.carrier_integration import CarrierIntegration, CarrierProvider
from courierhub.models.company import Warehouse
from courierhub.models.shipment import ShipmentStatus

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^[6-9]\d{9}$")
PINCODE_PATTERN = re.compile(r"^[1-9]\d{5}$")

# Remote states from which a shipment can no longer be cancelled
NON_CANCELLABLE_STATUSES = {
    ShipmentStatus.OUT_FOR_DELIVERY,
    ShipmentStatus.DELIVERED,
    ShipmentStatus.RTO_INITIATED,
    ShipmentStatus.RTO_DELIVERED,
    ShipmentStatus.LOST,
    ShipmentStatus.DAMAGED,
    ShipmentStatus.CANCELLED,
}

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"


# =============================================================================
# Carrier-Agnostic Data Classes
# =============================================================================

@dataclass
class AddressInput:
    """Pickup or delivery address (India)."""
    name: str
    phone: str
    address_line1: str
    city: str
    state: str
    pincode: str
    country: str = "IN"
    address_line2: Optional[str] = None
    email: Optional[str] = None


@dataclass
class Package:
    """Package dimensions (cm) and weight (kg)."""
    weight: float
    length: float = 0.0
    width: float = 0.0
    height: float = 0.0
    declared_value: float = 0.0
    description: Optional[str] = None

    @property
    def volumetric_weight(self) -> float:
        return (self.length * self.width * self.height) / 5000.0

    @property
    def chargeable_weight(self) -> float:
        return round(max(self.weight, self.volumetric_weight), 3)


@dataclass
class Rate:
    """A single serviceable carrier/service option."""
    provider: str
    service_code: str
    service_name: str
    total: float
    carrier_name: Optional[str] = None
    freight_charge: float = 0.0
    cod_charge: float = 0.0
    currency: str = "INR"
    estimated_days: Optional[int] = None
    zone: Optional[str] = None
    explicit_price: bool = True  # False when the adapter had to estimate


@dataclass
class ShipmentRequest:
    """Request to create a forward shipment."""
    order_number: str
    destination: AddressInput
    package: Package
    payment_mode: str  # prepaid / cod
    warehouse: Warehouse
    service_code: Optional[str] = None
    cod_amount: float = 0.0
    invoice_value: float = 0.0
    items: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ShipmentResult:
    tracking_number: str
    carrier_name: str
    label_url: Optional[str] = None
    carrier_shipment_id: Optional[str] = None
    shipping_cost: float = 0.0
    raw: Optional[Dict[str, Any]] = None


@dataclass
class TrackingEvent:
    timestamp: Optional[datetime]
    status: str  # carrier-specific code
    description: str = ""
    location: Optional[str] = None


@dataclass
class TrackingInfo:
    tracking_number: str
    status: ShipmentStatus
    carrier_status: str
    events: List[TrackingEvent] = field(default_factory=list)
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


@dataclass
class CancelResult:
    success: bool
    tracking_number: str
    message: Optional[str] = None


@dataclass
class ReverseShipmentResult:
    reverse_awb: str
    label_url: Optional[str] = None


@dataclass
class NDRPatterns:
    status_codes: Tuple[str, ...]
    keywords: Tuple[str, ...]


@dataclass
class WebhookStatusUpdate:
    """Normalised carrier status webhook."""
    event_type: str
    awb: str
    status: str
    status_code: Optional[str] = None
    courier_name: Optional[str] = None
    current_location: Optional[str] = None
    updated_at: Optional[str] = None
    description: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Validation / signing helpers
# =============================================================================

def normalize_phone(phone: Optional[str]) -> str:
    """Strip to digits and drop a +91 / 0 prefix."""
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 12 and digits.startswith("91"):
        digits = digits[2:]
    elif len(digits) == 11 and digits.startswith("0"):
        digits = digits[1:]
    return digits


def validate_destination(destination: AddressInput) -> None:
    """Raise ValidationError unless phone is a 10-digit Indian mobile and pincode is 6 digits."""
    phone = normalize_phone(destination.phone)
    if not PHONE_PATTERN.match(phone):
        raise ValidationError(
            "Destination phone must be a valid 10-digit Indian mobile number",
            code="INVALID_PHONE",
            details={"phone": destination.phone},
        )
    if not PINCODE_PATTERN.match((destination.pincode or "").strip()):
        raise ValidationError(
            "Destination pincode must be 6 digits",
            code="INVALID_PINCODE",
            details={"pincode": destination.pincode},
        )


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def parse_carrier_time(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-ish carrier timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def compute_webhook_signature(secret: str, payload: Any, timestamp: str) -> str:
    """HMAC-SHA256 hex digest over '{timestamp}.{canonical_json(payload)}'."""
    message = f"{timestamp}.{canonical_json(payload)}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(
    secret: Optional[str],
    payload: Any,
    signature_header: Optional[str],
    timestamp_header: Optional[str],
    now: Optional[float] = None,
) -> bool:
    """
    Verify a signed webhook.

    Rejects: no configured secret, missing headers, non-numeric timestamps,
    timestamps outside the replay window (either direction), bad digests.
    """
    if not secret or not signature_header or not timestamp_header:
        return False

    try:
        sent_at = int(timestamp_header)
    except (TypeError, ValueError):
        return False

    current = time.time() if now is None else now
    if abs(current - sent_at) > settings.WEBHOOK_REPLAY_WINDOW_SECONDS:
        logger.warning(f"Webhook timestamp outside replay window: {timestamp_header}")
        return False

    provided = signature_header.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[7:]

    expected = compute_webhook_signature(secret, payload, timestamp_header)
    return hmac.compare_digest(expected, provided.lower())


# Per-integration locks guarding token refresh within this process
_token_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)


# =============================================================================
# Base Carrier Interface
# =============================================================================

class BaseCarrier(ABC):
    """
    Abstract base class for all carrier adapters.

    Instances are created by CarrierFactory and cached per
    (company_id, provider); they hold a snapshot of the integration row,
    never a live ORM object.
    """

    provider: CarrierProvider
    display_name: str = ""
    quote_timeout_seconds: float = 20.0
    request_timeout_seconds: float = 30.0
    base_url_setting: str = ""
    webhook_secret_setting: str = ""

    STATUS_MAP: Dict[str, ShipmentStatus] = {}
    NDR_STATUS_CODES: Tuple[str, ...] = ()
    NDR_KEYWORDS: Tuple[str, ...] = (
        "customer not available",
        "customer unavailable",
        "not reachable",
        "door locked",
        "premises closed",
        "address incomplete",
        "incorrect address",
        "wrong address",
        "refused",
        "rejected",
        "cod amount not ready",
        "cash not available",
        "delivery attempted",
    )

    supports_reattempt: bool = False
    supports_reverse_shipment: bool = False

    def __init__(self, integration: CarrierIntegration, http_client: Optional[ResilientHTTPClient] = None):
        self.integration_id = integration.id
        self.company_id = integration.company_id
        self.config_version = integration.config_version
        self.webhook_secret = integration.webhook_secret
        self.config = dict(integration.config_json or {})
        self.credentials = decrypt_credentials(integration.credentials_encrypted)
        self._warehouse_refs: Dict[str, str] = dict(integration.warehouse_refs or {})
        self._http = http_client or get_carrier_client(timeout=self.request_timeout_seconds)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def base_url(self) -> str:
        return self.config.get("base_url") or getattr(settings, self.base_url_setting)

    @property
    def carrier_name(self) -> str:
        return self.display_name or self.provider.value.title()

    @classmethod
    def platform_webhook_secret(cls) -> str:
        return getattr(settings, cls.webhook_secret_setting, "") if cls.webhook_secret_setting else ""

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    async def _authenticate(self) -> Tuple[str, datetime]:
        """Call the carrier auth endpoint. Returns (token, expires_at)."""

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def _load_cached_token(self) -> Optional[str]:
        """Read the persisted token; None if absent or inside the safety window."""
        async with get_db_session() as db:
            result = await db.execute(
                select(CarrierIntegration.token_encrypted, CarrierIntegration.token_expires_at)
                .where(CarrierIntegration.id == self.integration_id)
            )
            row = result.one_or_none()

        if not row or not row.token_encrypted or not row.token_expires_at:
            return None

        safety = timedelta(seconds=settings.CARRIER_TOKEN_SAFETY_WINDOW_SECONDS)
        if datetime.now(timezone.utc) >= row.token_expires_at - safety:
            return None

        return decrypt_value(row.token_encrypted)

    async def _persist_token(self, token: str, expires_at: datetime) -> None:
        async with get_db_session() as db:
            await db.execute(
                update(CarrierIntegration)
                .where(CarrierIntegration.id == self.integration_id)
                .values(token_encrypted=encrypt_value(token), token_expires_at=expires_at)
            )

    async def get_valid_token(self, stale_token: Optional[str] = None) -> str:
        """
        Return a usable token, authenticating when the persisted one is
        missing, expiring within the safety window, or equal to stale_token
        (the one that just got a 401).

        Refresh is serialised per integration inside this process; across
        processes the last writer wins.
        """
        token = await self._load_cached_token()
        if token and token != stale_token:
            return token

        async with _token_locks[self.integration_id]:
            token = await self._load_cached_token()
            if token and token != stale_token:
                return token

            logger.info(f"[{self.provider.value}] Authenticating integration {self.integration_id}")
            token, expires_at = await self._authenticate()
            await self._persist_token(token, expires_at)
            return token

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _map_http_error(self, exc: Exception, operation: str) -> CarrierAPIError:
        if isinstance(exc, httpx.HTTPStatusError):
            status_code = exc.response.status_code
            retryable = status_code in self._http.retry_config.retryable_status_codes
            return CarrierAPIError(
                f"{self.carrier_name} {operation} failed with HTTP {status_code}",
                provider=self.provider.value,
                http_status=status_code,
                retryable=retryable,
            )
        if isinstance(exc, (httpx.TimeoutException, httpx.ConnectError, RateLimitExceeded, CircuitOpenError)):
            return CarrierAPIError(
                f"{self.carrier_name} {operation} failed: {type(exc).__name__}",
                provider=self.provider.value,
                retryable=True,
            )
        return CarrierAPIError(
            f"{self.carrier_name} {operation} failed: {exc}",
            provider=self.provider.value,
            retryable=False,
        )

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        authenticated: bool = True,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> Any:
        """
        Call the carrier API and return decoded JSON.

        A 401 forces one token refresh and one retry.
        """
        url = f"{self.base_url}{path}"
        headers = dict(kwargs.pop("headers", {}) or {})
        if timeout is not None:
            kwargs["timeout"] = timeout

        token = None
        if authenticated:
            token = await self.get_valid_token()
            headers.update(self._auth_headers(token))

        try:
            response = await self._http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPStatusError as e:
            if not (authenticated and e.response.status_code == 401):
                raise self._map_http_error(e, operation) from e

            logger.warning(f"[{self.provider.value}] 401 on {operation}, refreshing token once")
            token = await self.get_valid_token(stale_token=token)
            headers.update(self._auth_headers(token))
            try:
                response = await self._http.request(method, url, headers=headers, **kwargs)
            except Exception as retry_exc:
                raise self._map_http_error(retry_exc, operation) from retry_exc
        except Exception as e:
            raise self._map_http_error(e, operation) from e

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise CarrierAPIError(
                f"{self.carrier_name} {operation} returned a non-JSON body",
                provider=self.provider.value,
                http_status=response.status_code,
            )

    async def close(self) -> None:
        await self._http.close()

    # ------------------------------------------------------------------
    # Rates
    # ------------------------------------------------------------------

    @abstractmethod
    async def _fetch_rates(
        self,
        origin: AddressInput,
        destination: AddressInput,
        package: Package,
        payment_mode: str,
        cod_amount: float,
    ) -> List[Rate]:
        """Carrier-specific rate call; may return an empty list."""

    async def get_rates(
        self,
        origin: AddressInput,
        destination: AddressInput,
        package: Package,
        payment_mode: str = "prepaid",
        cod_amount: float = 0.0,
    ) -> List[Rate]:
        """
        All serviceable options sorted ascending by total.

        Raises:
            CarrierNotServiceableError: zero options for the corridor
        """
        rates = await self._fetch_rates(origin, destination, package, payment_mode, cod_amount)
        if not rates:
            raise CarrierNotServiceableError(
                f"{self.carrier_name}: no serviceable options",
                provider=self.provider.value,
                origin_pincode=origin.pincode,
                destination_pincode=destination.pincode,
            )
        return sorted(rates, key=lambda r: r.total)

    def estimate_fallback_rate(self, weight_kg: float) -> float:
        """Weight-based estimate used when the carrier omits a price."""
        safe_weight = weight_kg if weight_kg and weight_kg > 0 else 0.5
        return round(45 + safe_weight * 18, 2)

    # ------------------------------------------------------------------
    # Warehouses
    # ------------------------------------------------------------------

    @abstractmethod
    async def _create_remote_warehouse(self, warehouse: Warehouse) -> str:
        """Register the pickup location with the carrier; returns its reference."""

    async def ensure_warehouse(self, warehouse: Warehouse) -> str:
        """
        Carrier-side reference for a warehouse, created on first use and
        cached in CarrierIntegration.warehouse_refs.
        """
        key = str(warehouse.id)
        ref = self._warehouse_refs.get(key)
        if ref:
            return ref

        logger.info(f"[{self.provider.value}] Warehouse {warehouse.id} not synced, creating")
        ref = await self._create_remote_warehouse(warehouse)

        async with get_db_session() as db:
            result = await db.execute(
                select(CarrierIntegration.warehouse_refs).where(CarrierIntegration.id == self.integration_id)
            )
            current = dict(result.scalar_one_or_none() or {})
            current[key] = ref
            await db.execute(
                update(CarrierIntegration)
                .where(CarrierIntegration.id == self.integration_id)
                .values(warehouse_refs=current)
            )

        self._warehouse_refs[key] = ref
        return ref

    # ------------------------------------------------------------------
    # Shipments
    # ------------------------------------------------------------------

    @abstractmethod
    async def _create_shipment(self, request: ShipmentRequest, warehouse_ref: str) -> ShipmentResult:
        """Carrier-specific booking call."""

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentResult:
        """
        Book a forward shipment.

        Destination contact is validated before any network call; the source
        warehouse is resolved (and synced if needed) first.
        """
        validate_destination(request.destination)
        warehouse_ref = await self.ensure_warehouse(request.warehouse)
        result = await self._create_shipment(request, warehouse_ref)
        logger.info(
            f"[{self.provider.value}] Shipment created for {request.order_number}: "
            f"{result.tracking_number} via {result.carrier_name}"
        )
        return result

    @abstractmethod
    async def track_shipment(self, tracking_number: str) -> TrackingInfo:
        """Current remote status and scan history."""

    @abstractmethod
    async def _cancel_remote(self, tracking_number: str) -> CancelResult:
        """Carrier-specific cancel call."""

    async def cancel_shipment(self, tracking_number: str) -> CancelResult:
        """
        Cancel a shipment after checking its remote status.

        Raises:
            CarrierNotCancellableError: remote status is terminal or past pickup-cancel window
        """
        tracking = await self.track_shipment(tracking_number)
        if tracking.status in NON_CANCELLABLE_STATUSES:
            raise CarrierNotCancellableError(
                f"Shipment {tracking_number} cannot be cancelled in status {tracking.status.value}",
                provider=self.provider.value,
                details={"tracking_number": tracking_number, "remote_status": tracking.carrier_status},
            )
        return await self._cancel_remote(tracking_number)

    async def request_reattempt(self, tracking_number: str, remarks: Optional[str] = None) -> bool:
        raise NotImplementedError(f"{self.carrier_name} does not support delivery reattempts")

    async def create_reverse_shipment(self, tracking_number: str, reason: str) -> ReverseShipmentResult:
        raise NotImplementedError(f"{self.carrier_name} does not support reverse shipments")

    # ------------------------------------------------------------------
    # Status mapping / NDR
    # ------------------------------------------------------------------

    @classmethod
    def map_status(cls, carrier_status: Optional[str]) -> ShipmentStatus:
        """Map a carrier status code to the internal ShipmentStatus."""
        status_upper = (carrier_status or "").upper().strip().replace(" ", "_")

        if status_upper in cls.STATUS_MAP:
            return cls.STATUS_MAP[status_upper]

        # Longest key first so UNDELIVERED is not read as DELIVERED
        for key in sorted(cls.STATUS_MAP, key=len, reverse=True):
            if key in status_upper:
                return cls.STATUS_MAP[key]

        logger.warning(f"Unknown {cls.provider.value} status: {carrier_status}, defaulting to IN_TRANSIT")
        return ShipmentStatus.IN_TRANSIT

    @classmethod
    def ndr_patterns(cls) -> NDRPatterns:
        return NDRPatterns(status_codes=cls.NDR_STATUS_CODES, keywords=cls.NDR_KEYWORDS)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def verify_webhook_signature(
        self,
        payload: Any,
        signature_header: Optional[str],
        timestamp_header: Optional[str],
    ) -> bool:
        """Verify using the integration secret, falling back to the platform secret."""
        secret = self.webhook_secret or self.platform_webhook_secret()
        return verify_signature(secret, payload, signature_header, timestamp_header)

    @classmethod
    def parse_webhook(cls, payload: Dict[str, Any]) -> WebhookStatusUpdate:
        """
        Parse {event_type, shipment_data: {awb, status, status_code, ...}}.

        Raises:
            ValidationError: structurally invalid payload
        """
        if not isinstance(payload, dict):
            raise ValidationError("Webhook payload must be a JSON object", code="INVALID_PAYLOAD")

        data = payload.get("shipment_data")
        if not isinstance(data, dict):
            raise ValidationError("Missing shipment_data", code="INVALID_PAYLOAD")

        awb = data.get("awb")
        status = data.get("status") or data.get("status_code")
        if not awb or not status:
            raise ValidationError("shipment_data requires awb and status", code="INVALID_PAYLOAD")

        return WebhookStatusUpdate(
            event_type=payload.get("event_type") or "status_update",
            awb=str(awb),
            status=str(status),
            status_code=str(data["status_code"]) if data.get("status_code") is not None else None,
            courier_name=data.get("courier_name"),
            current_location=data.get("current_location"),
            updated_at=str(data["updated_at"]) if data.get("updated_at") is not None else None,
            description=data.get("description"),
            raw=data,
        )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(company={self.company_id}, version={self.config_version})>"
