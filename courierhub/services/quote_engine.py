"""
Quote Engine

Fans out a rate request to every active carrier adapter of a company,
normalises the results into priced booking options, ranks them and stores
them as a single-use QuoteSession.

- One concurrent call per adapter, each bounded by the adapter's
  quote_timeout_seconds; a timeout is recorded in provider_timeouts and
  degrades confidence instead of failing the request
- Not-serviceable answers are not provider failures
- Every provider failing -> QuoteProvidersUnavailableError (503)
- No options at all -> CarrierNotServiceableError (422)
"""
import asyncio
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.config import settings
from courierhub.core.exceptions import (
    CarrierAPIError,
    CarrierNotServiceableError,
    NotFoundError,
    QuoteProvidersUnavailableError,
    QuoteSessionNotFoundError,
    ValidationError,
)
from courierhub.core.feature_flags import CARRIERS_MODULE, FeatureFlags
from courierhub.models.company import Warehouse
from courierhub.models.order import Order
from courierhub.models.quote_session import QuoteConfidence, QuoteSession, QuoteSessionStatus
from courierhub.modules.shipping.carriers import CarrierFactory
from courierhub.modules.shipping.carriers.base import AddressInput, BaseCarrier, Package, Rate
from courierhub.services.collaborators import FormatPincodeValidator, PincodeValidator

logger = logging.getLogger(__name__)

PRICE_WEIGHT = 0.4
SPEED_WEIGHT = 0.3
RELIABILITY_WEIGHT = 0.3
MEDIUM_CONFIDENCE_PENALTY = 0.9

# ETA assumed for ranking when a carrier gives none
UNKNOWN_ETA_DAYS = 7

TAG_CHEAPEST = "CHEAPEST"
TAG_FASTEST = "FASTEST"
TAG_RECOMMENDED = "RECOMMENDED"

_CONFIDENCE_ORDER = [QuoteConfidence.LOW, QuoteConfidence.MEDIUM, QuoteConfidence.HIGH]


@dataclass
class QuoteRequest:
    """Normalised rate request (weights in kg, dimensions in cm)."""
    destination_pincode: str
    weight: float
    length: float = 0.0
    width: float = 0.0
    height: float = 0.0
    payment_mode: str = "prepaid"
    cod_amount: float = 0.0
    declared_value: float = 0.0
    order_id: Optional[int] = None
    warehouse_id: Optional[int] = None

    @property
    def package(self) -> Package:
        return Package(
            weight=self.weight,
            length=self.length,
            width=self.width,
            height=self.height,
            declared_value=self.declared_value,
        )

    @classmethod
    def from_order(cls, order: Order) -> "QuoteRequest":
        total = float(order.operational_total)
        return cls(
            destination_pincode=order.pincode,
            weight=order.weight,
            length=order.length or 0.0,
            width=order.width or 0.0,
            height=order.height or 0.0,
            payment_mode=order.payment_method,
            cod_amount=total if order.is_cod else 0.0,
            declared_value=total,
            order_id=order.id,
            warehouse_id=order.warehouse_id,
        )


@dataclass
class ProviderQuote:
    provider: str
    rates: List[Rate] = field(default_factory=list)
    timed_out: bool = False
    elapsed_ms: int = 0
    not_serviceable: bool = False
    error: Optional[str] = None


def price_option(cost: float, payment_mode: str, cod_amount: float = 0.0) -> Dict[str, float]:
    """
    Seller price for a carrier cost: margin on top, plus the COD handling
    charge (flat or percentage of the COD amount, whichever is higher).
    """
    quoted = cost * (1 + settings.QUOTE_DEFAULT_MARGIN_PERCENT / 100)
    if payment_mode == "cod":
        quoted += max(
            settings.QUOTE_COD_HANDLING_CHARGE,
            (cod_amount or 0) * settings.QUOTE_COD_HANDLING_PERCENT / 100,
        )
    quoted = round(quoted, 2)
    return {
        "quoted_amount": quoted,
        "cost_amount": round(cost, 2),
        "margin": round(quoted - cost, 2),
    }


def address_from_warehouse(warehouse: Warehouse) -> AddressInput:
    return AddressInput(
        name=warehouse.contact_name,
        phone=warehouse.phone,
        address_line1=warehouse.address_line1,
        address_line2=warehouse.address_line2,
        city=warehouse.city,
        state=warehouse.state,
        pincode=warehouse.pincode,
        email=warehouse.email,
    )


def lowest_confidence(values: List[str]) -> QuoteConfidence:
    if not values:
        return QuoteConfidence.LOW
    return min((QuoteConfidence(v) for v in values), key=_CONFIDENCE_ORDER.index)


def downgrade_confidence(confidence: QuoteConfidence) -> QuoteConfidence:
    index = _CONFIDENCE_ORDER.index(confidence)
    return _CONFIDENCE_ORDER[max(index - 1, 0)]


class QuoteEngine:
    """Builds ranked, time-boxed quote sessions."""

    def __init__(self, db: AsyncSession, pincode_validator: Optional[PincodeValidator] = None):
        self.db = db
        self.pincode_validator = pincode_validator or FormatPincodeValidator()

    async def resolve_warehouse(self, company_id: int, warehouse_id: Optional[int] = None) -> Warehouse:
        """The requested pickup warehouse, else the company default."""
        if warehouse_id is not None:
            result = await self.db.execute(
                select(Warehouse).where(
                    Warehouse.id == warehouse_id,
                    Warehouse.company_id == company_id,
                )
            )
            warehouse = result.scalar_one_or_none()
            if warehouse is None:
                raise NotFoundError(f"Warehouse {warehouse_id} not found", details={"warehouse_id": warehouse_id})
            return warehouse

        result = await self.db.execute(
            select(Warehouse)
            .where(Warehouse.company_id == company_id, Warehouse.is_active.is_(True))
            .order_by(Warehouse.is_default.desc(), Warehouse.id)
            .limit(1)
        )
        warehouse = result.scalar_one_or_none()
        if warehouse is None:
            raise ValidationError("No pickup warehouse configured", code="NO_WAREHOUSE")
        return warehouse

    async def _reliability(self, provider: str) -> float:
        config = await FeatureFlags.get_config(CARRIERS_MODULE, provider)
        if "reliability" in config:
            return float(config["reliability"])
        return float(settings.QUOTE_PROVIDER_RELIABILITY.get(provider, settings.QUOTE_DEFAULT_RELIABILITY))

    async def _quote_provider(
        self,
        adapter: BaseCarrier,
        origin: AddressInput,
        destination: AddressInput,
        request: QuoteRequest,
    ) -> ProviderQuote:
        provider = adapter.provider.value
        started = time.monotonic()
        try:
            rates = await asyncio.wait_for(
                adapter.get_rates(origin, destination, request.package, request.payment_mode, request.cod_amount),
                timeout=adapter.quote_timeout_seconds,
            )
            return ProviderQuote(provider=provider, rates=rates)
        except asyncio.TimeoutError:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.warning(f"Quote from {provider} timed out after {elapsed_ms}ms")
            return ProviderQuote(provider=provider, timed_out=True, elapsed_ms=elapsed_ms)
        except CarrierNotServiceableError:
            return ProviderQuote(provider=provider, not_serviceable=True)
        except CarrierAPIError as e:
            if e.http_status in (404, 422):
                return ProviderQuote(provider=provider, not_serviceable=True)
            logger.error(f"Quote from {provider} failed: {e.message}")
            return ProviderQuote(provider=provider, error=e.message)
        except Exception as e:
            # One broken adapter must not sink the other providers
            logger.exception(f"Unexpected error quoting {provider}: {e}")
            return ProviderQuote(provider=provider, error=str(e))

    async def _build_options(self, quotes: List[ProviderQuote], request: QuoteRequest) -> List[Dict[str, Any]]:
        chargeable_weight = request.package.chargeable_weight
        options = []
        for quote in quotes:
            reliability = await self._reliability(quote.provider) if quote.rates else 0.0
            for rate in quote.rates:
                pricing = price_option(rate.total, request.payment_mode, request.cod_amount)
                options.append({
                    "option_id": f"opt-{rate.provider}-{rate.service_code}",
                    "provider": rate.provider,
                    "carrier_name": rate.carrier_name,
                    "service_code": rate.service_code,
                    "service_name": rate.service_name,
                    **pricing,
                    "chargeable_weight": chargeable_weight,
                    "zone": rate.zone,
                    "estimated_days": rate.estimated_days,
                    "pricing_source": "live",
                    "confidence": (QuoteConfidence.HIGH if rate.explicit_price else QuoteConfidence.MEDIUM).value,
                    "reliability": reliability,
                    "tags": [],
                })
        return options

    @staticmethod
    def rank_options(options: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Score, tag and sort options (best first).

        score = 0.4 * price + 0.3 * speed + 0.3 * reliability, where price and
        speed are relative to the best option; medium confidence costs 10%.
        """
        if not options:
            return options

        cheapest_price = min(o["quoted_amount"] for o in options)
        days = [o["estimated_days"] or UNKNOWN_ETA_DAYS for o in options]
        fastest_days = min(days)

        for option, eta in zip(options, days):
            price_score = cheapest_price / option["quoted_amount"] if option["quoted_amount"] > 0 else 1.0
            speed_score = fastest_days / eta if eta > 0 else 1.0
            score = (
                PRICE_WEIGHT * price_score
                + SPEED_WEIGHT * speed_score
                + RELIABILITY_WEIGHT * option["reliability"]
            )
            if option["confidence"] == QuoteConfidence.MEDIUM.value:
                score *= MEDIUM_CONFIDENCE_PENALTY
            option["score"] = round(score, 4)

        min(options, key=lambda o: o["quoted_amount"])["tags"].append(TAG_CHEAPEST)
        min(options, key=lambda o: o["estimated_days"] or UNKNOWN_ETA_DAYS)["tags"].append(TAG_FASTEST)
        ranked = sorted(options, key=lambda o: (-o["score"], o["quoted_amount"]))
        ranked[0]["tags"].append(TAG_RECOMMENDED)
        return ranked

    async def generate_quotes(self, company_id: int, request: QuoteRequest) -> QuoteSession:
        """
        Quote every active provider and persist the ranked session.

        Raises:
            ValidationError: bad destination pincode / no warehouse
            CarrierNotServiceableError: no provider serves the corridor
            QuoteProvidersUnavailableError: every provider failed
        """
        validation = await self.pincode_validator.validate_pincode(request.destination_pincode)
        if not validation.valid:
            raise ValidationError(
                f"Invalid destination pincode: {request.destination_pincode}",
                code="INVALID_PINCODE",
                details={"pincode": request.destination_pincode},
            )

        warehouse = await self.resolve_warehouse(company_id, request.warehouse_id)
        origin = address_from_warehouse(warehouse)
        request.warehouse_id = warehouse.id
        destination = AddressInput(
            name="", phone="", address_line1="", city="", state="",
            pincode=request.destination_pincode,
        )

        adapters = await CarrierFactory.get_active_adapters(self.db, company_id)
        if not adapters:
            raise CarrierNotServiceableError(
                "No active carrier integrations for this company",
                origin_pincode=origin.pincode,
                destination_pincode=request.destination_pincode,
            )

        quotes = await asyncio.gather(
            *[self._quote_provider(adapter, origin, destination, request) for adapter in adapters]
        )

        provider_timeouts = {q.provider: q.elapsed_ms for q in quotes if q.timed_out}
        failed = [q for q in quotes if q.timed_out or q.error]
        options = self.rank_options(await self._build_options(quotes, request))

        if not options:
            if failed:
                raise QuoteProvidersUnavailableError(
                    "All carrier providers failed to quote",
                    details={
                        "providers": [q.provider for q in failed],
                        "provider_timeouts": provider_timeouts,
                    },
                )
            raise CarrierNotServiceableError(
                "No serviceable carrier for this corridor",
                origin_pincode=origin.pincode,
                destination_pincode=request.destination_pincode,
            )

        confidence = lowest_confidence([o["confidence"] for o in options])
        if provider_timeouts:
            confidence = downgrade_confidence(confidence)

        recommendation = next(o["option_id"] for o in options if TAG_RECOMMENDED in o["tags"])

        session = QuoteSession(
            session_id=uuid.uuid4().hex,
            company_id=company_id,
            order_id=request.order_id,
            request=asdict(request),
            options=options,
            recommendation=recommendation,
            confidence=confidence.value,
            provider_timeouts=provider_timeouts,
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=settings.QUOTE_SESSION_TTL_MINUTES),
            status=QuoteSessionStatus.ACTIVE.value,
        )
        self.db.add(session)
        await self.db.flush()

        logger.info(
            f"Quote session {session.session_id} for company {company_id}: "
            f"{len(options)} options, confidence={confidence.value}, timeouts={list(provider_timeouts)}"
        )
        return session

    async def quote_order(self, company_id: int, order_id: int) -> QuoteSession:
        """Quote an existing order using its address, parcel and payment mode."""
        result = await self.db.execute(
            select(Order).where(Order.id == order_id, Order.company_id == company_id)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
        if not order.is_operational_currency and order.base_currency_total is None:
            raise ValidationError(
                "Non-INR order is missing base_currency_total",
                code="MISSING_BASE_CURRENCY_TOTAL",
                details={"order_id": order_id, "currency": order.currency},
            )
        return await self.generate_quotes(company_id, QuoteRequest.from_order(order))

    async def get_session(self, company_id: int, session_id: str) -> QuoteSession:
        """A company's quote session; other companies' sessions look absent."""
        # Status is moved by conditional UPDATEs; always reload from the row
        result = await self.db.execute(
            select(QuoteSession)
            .where(QuoteSession.session_id == session_id)
            .execution_options(populate_existing=True)
        )
        session = result.scalar_one_or_none()
        if session is None or session.company_id != company_id:
            raise QuoteSessionNotFoundError(
                f"Quote session {session_id} not found",
                details={"session_id": session_id},
            )
        return session
