"""
Tests for quote sessions and the booking saga.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from courierhub.core.exceptions import (
    CarrierAPIError,
    CarrierNotServiceableError,
    InsufficientBalanceError,
    QuoteExpiredError,
    QuoteProvidersUnavailableError,
    QuoteSessionConsumedError,
    QuoteSessionNotFoundError,
    StateConflictError,
    ValidationError,
)
from courierhub.models import (
    CarrierProvider,
    Company,
    Order,
    QuoteSession,
    QuoteSessionStatus,
    Shipment,
    WalletTransaction,
    WalletTransactionType,
)
from courierhub.modules.shipping.carriers import CarrierFactory
from courierhub.modules.shipping.carriers.base import Rate, ShipmentResult, validate_destination
from courierhub.services.booking_service import BookingService
from courierhub.services.quote_engine import QuoteEngine, QuoteRequest, price_option
from courierhub.services.wallet_service import WalletService

from tests.conftest import make_order


class FakeCarrier:
    """Stands in for a carrier adapter; rates and booking are scripted."""

    quote_timeout_seconds = 1.0

    def __init__(
        self, provider: CarrierProvider, rates=None, delay=0.0, error=None, booking_error=None, awb=None,
    ):
        self.provider = provider
        self.carrier_name = provider.value.title()
        self._rates = rates or []
        self._delay = delay
        self._error = error
        self._booking_error = booking_error
        self._awb = awb
        self.bookings = []

    async def get_rates(self, origin, destination, package, payment_mode="prepaid", cod_amount=0.0):
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error:
            raise self._error
        if not self._rates:
            raise CarrierNotServiceableError("not serviceable", provider=self.provider.value)
        return sorted(self._rates, key=lambda r: r.total)

    async def create_shipment(self, request):
        validate_destination(request.destination)
        self.bookings.append(request)
        if self._booking_error:
            raise self._booking_error
        return ShipmentResult(
            tracking_number=self._awb or f"{self.provider.value.upper()}-AWB-{len(self.bookings)}",
            carrier_name=self.carrier_name,
            carrier_shipment_id="CS-1",
            shipping_cost=80.0,
        )


def rate(provider: CarrierProvider, code: str, total: float, days=3, explicit=True) -> Rate:
    return Rate(
        provider=provider.value,
        service_code=code,
        service_name=f"Service {code}",
        carrier_name=provider.value.title(),
        total=total,
        estimated_days=days,
        explicit_price=explicit,
    )


def use_adapters(monkeypatch, *adapters):
    """Route factory lookups to the given fake adapters."""
    by_provider = {a.provider.value: a for a in adapters}

    async def get_active_adapters(db, company_id):
        return list(adapters)

    async def get_company_adapter(db, company_id, provider):
        return by_provider.get(str(provider))

    monkeypatch.setattr(CarrierFactory, "get_active_adapters", get_active_adapters)
    monkeypatch.setattr(CarrierFactory, "get_company_adapter", get_company_adapter)


class TestPricing:
    """Seller pricing on top of carrier cost."""

    def test_prepaid_margin(self):
        pricing = price_option(100.0, "prepaid")
        assert pricing == {"quoted_amount": 115.0, "cost_amount": 100.0, "margin": 15.0}

    def test_cod_flat_handling_charge(self):
        """Small COD amounts pay the flat charge."""
        assert price_option(100.0, "cod", 1000.0)["quoted_amount"] == 150.0

    def test_cod_percentage_handling_charge(self):
        """Large COD amounts pay 1.5% of the collectable."""
        assert price_option(100.0, "cod", 5000.0)["quoted_amount"] == 190.0


class TestRanking:
    """Option scoring and tags."""

    def _option(self, option_id, quoted, days, reliability, confidence="high"):
        return {
            "option_id": option_id,
            "quoted_amount": quoted,
            "estimated_days": days,
            "reliability": reliability,
            "confidence": confidence,
            "tags": [],
        }

    def test_tags_and_order(self):
        cheap = self._option("opt-a", 100.0, 5, 0.7)
        fast = self._option("opt-b", 150.0, 1, 0.9)

        ranked = QuoteEngine.rank_options([cheap, fast])

        assert [o["option_id"] for o in ranked] == ["opt-b", "opt-a"]
        assert cheap["tags"] == ["CHEAPEST"]
        assert fast["tags"] == ["FASTEST", "RECOMMENDED"]
        assert cheap["score"] == pytest.approx(0.67)
        assert fast["score"] == pytest.approx(0.8367, abs=1e-4)

    def test_medium_confidence_penalised(self):
        """An estimated price loses 10% of its score."""
        exact = self._option("opt-a", 100.0, 3, 0.8)
        estimated = self._option("opt-b", 100.0, 3, 0.8, confidence="medium")

        QuoteEngine.rank_options([exact, estimated])

        assert estimated["score"] == pytest.approx(exact["score"] * 0.9, abs=1e-4)

    def test_unknown_eta_treated_as_seven_days(self):
        known = self._option("opt-a", 100.0, 7, 0.7)
        unknown = self._option("opt-b", 100.0, None, 0.7)

        QuoteEngine.rank_options([known, unknown])

        assert known["score"] == unknown["score"]


class TestQuoteEngine:
    """Quote session generation across providers."""

    @pytest.mark.asyncio
    async def test_session_holds_ranked_priced_options(self, db, company, warehouse, monkeypatch):
        use_adapters(
            monkeypatch,
            FakeCarrier(CarrierProvider.VELOCITY, rates=[
                rate(CarrierProvider.VELOCITY, "12", 80.0, days=4),
                rate(CarrierProvider.VELOCITY, "7", 120.0, days=2),
            ]),
            FakeCarrier(CarrierProvider.EKART, rates=[rate(CarrierProvider.EKART, "SURFACE", 70.0, days=5)]),
        )

        session = await QuoteEngine(db).generate_quotes(
            company.id, QuoteRequest(destination_pincode="560001", weight=0.5)
        )

        assert session.status == QuoteSessionStatus.ACTIVE.value
        assert session.confidence == "high"
        assert session.provider_timeouts == {}
        assert len(session.options) == 3
        assert session.expires_at - datetime.now(timezone.utc) > timedelta(minutes=29)

        by_id = {o["option_id"]: o for o in session.options}
        assert set(by_id) == {"opt-velocity-12", "opt-velocity-7", "opt-ekart-SURFACE"}
        assert by_id["opt-ekart-SURFACE"]["quoted_amount"] == 80.5
        assert "CHEAPEST" in by_id["opt-ekart-SURFACE"]["tags"]
        assert "FASTEST" in by_id["opt-velocity-7"]["tags"]
        assert session.recommendation == session.options[0]["option_id"]
        assert session.request["warehouse_id"] == warehouse.id

    @pytest.mark.asyncio
    async def test_timeout_recorded_and_confidence_downgraded(self, db, company, warehouse, monkeypatch):
        """A slow provider does not fail the request."""
        slow = FakeCarrier(CarrierProvider.DELHIVERY, rates=[rate(CarrierProvider.DELHIVERY, "S", 60.0)], delay=0.5)
        slow.quote_timeout_seconds = 0.05
        use_adapters(
            monkeypatch,
            FakeCarrier(CarrierProvider.VELOCITY, rates=[rate(CarrierProvider.VELOCITY, "12", 80.0)]),
            slow,
        )

        session = await QuoteEngine(db).generate_quotes(
            company.id, QuoteRequest(destination_pincode="560001", weight=0.5)
        )

        assert list(session.provider_timeouts) == ["delhivery"]
        assert session.confidence == "medium"
        assert [o["provider"] for o in session.options] == ["velocity"]

    @pytest.mark.asyncio
    async def test_all_providers_failing_is_503(self, db, company, warehouse, monkeypatch):
        use_adapters(
            monkeypatch,
            FakeCarrier(CarrierProvider.VELOCITY, error=CarrierAPIError("boom", provider="velocity", http_status=500)),
            FakeCarrier(CarrierProvider.EKART, error=RuntimeError("adapter bug")),
        )

        with pytest.raises(QuoteProvidersUnavailableError) as exc_info:
            await QuoteEngine(db).generate_quotes(
                company.id, QuoteRequest(destination_pincode="560001", weight=0.5)
            )
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_nothing_serviceable_is_422(self, db, company, warehouse, monkeypatch):
        use_adapters(monkeypatch, FakeCarrier(CarrierProvider.VELOCITY), FakeCarrier(CarrierProvider.EKART))

        with pytest.raises(CarrierNotServiceableError) as exc_info:
            await QuoteEngine(db).generate_quotes(
                company.id, QuoteRequest(destination_pincode="560001", weight=0.5)
            )
        assert exc_info.value.status_code == 422

    @pytest.mark.asyncio
    async def test_invalid_pincode_rejected(self, db, company, warehouse, monkeypatch):
        use_adapters(monkeypatch, FakeCarrier(CarrierProvider.VELOCITY))

        with pytest.raises(ValidationError) as exc_info:
            await QuoteEngine(db).generate_quotes(
                company.id, QuoteRequest(destination_pincode="0123", weight=0.5)
            )
        assert exc_info.value.code == "INVALID_PINCODE"

    @pytest.mark.asyncio
    async def test_other_company_session_is_not_found(self, db, company, warehouse, monkeypatch):
        use_adapters(monkeypatch, FakeCarrier(CarrierProvider.VELOCITY, rates=[rate(CarrierProvider.VELOCITY, "12", 80.0)]))
        engine = QuoteEngine(db)
        session = await engine.generate_quotes(company.id, QuoteRequest(destination_pincode="560001", weight=0.5))
        await db.commit()

        with pytest.raises(QuoteSessionNotFoundError):
            await engine.get_session(company.id + 1, session.session_id)


class TestBookFromQuote:
    """Quote-session booking saga."""

    @pytest.fixture
    def carrier(self, monkeypatch):
        adapter = FakeCarrier(CarrierProvider.VELOCITY, rates=[rate(CarrierProvider.VELOCITY, "12", 80.0)])
        use_adapters(monkeypatch, adapter)
        return adapter

    async def _quote(self, db, company, order) -> QuoteSession:
        session = await QuoteEngine(db).quote_order(company.id, order.id)
        await db.commit()
        return session

    @pytest.mark.asyncio
    async def test_successful_booking_debits_quoted_amount(self, db, company, order, carrier):
        session = await self._quote(db, company, order)
        option = session.options[0]
        assert option["quoted_amount"] == 92.0

        shipment = await BookingService(db).book_from_quote(company.id, order.id, session.session_id, option["option_id"])

        assert shipment.tracking_number == "VELOCITY-AWB-1"
        assert shipment.shipping_charge == Decimal("92.00")
        assert shipment.service_code == "12"

        balance, version = await WalletService(db).get_balance(company.id)
        assert balance == Decimal("908.00")
        assert version == 1

        debit = (await db.execute(select(WalletTransaction))).scalar_one()
        assert debit.type == WalletTransactionType.DEBIT.value
        assert debit.reference_type == "shipment"
        assert debit.reference_id == str(shipment.id)

        status = (await db.execute(
            select(QuoteSession.status, QuoteSession.consumed_option_id).where(QuoteSession.id == session.id)
        )).one()
        assert status.status == QuoteSessionStatus.CONSUMED.value
        assert status.consumed_option_id == option["option_id"]

        order_status = (await db.execute(select(Order.status).where(Order.id == order.id))).scalar_one()
        assert order_status == "shipped"

    @pytest.mark.asyncio
    async def test_session_is_single_use(self, db, company, warehouse, order, carrier):
        session = await self._quote(db, company, order)
        option_id = session.options[0]["option_id"]
        booking = BookingService(db)
        await booking.book_from_quote(company.id, order.id, session.session_id, option_id)

        second = make_order(company, warehouse, order_number="ORD-1002")
        db.add(second)
        await db.commit()

        with pytest.raises(QuoteSessionConsumedError):
            await booking.book_from_quote(company.id, second.id, session.session_id, option_id)

        balance, _ = await WalletService(db).get_balance(company.id)
        assert balance == Decimal("908.00")

    @pytest.mark.asyncio
    async def test_expired_session_is_410_without_debit(self, db, company, order, carrier):
        session = await self._quote(db, company, order)
        session.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        await db.commit()

        with pytest.raises(QuoteExpiredError) as exc_info:
            await BookingService(db).book_from_quote(
                company.id, order.id, session.session_id, session.options[0]["option_id"]
            )

        assert exc_info.value.status_code == 410
        balance, version = await WalletService(db).get_balance(company.id)
        assert balance == Decimal("1000.00")
        assert version == 0
        assert carrier.bookings == []

    @pytest.mark.asyncio
    async def test_unknown_option_rejected(self, db, company, order, carrier):
        session = await self._quote(db, company, order)

        with pytest.raises(ValidationError) as exc_info:
            await BookingService(db).book_from_quote(company.id, order.id, session.session_id, "opt-ekart-XYZ")
        assert exc_info.value.code == "UNKNOWN_OPTION"

    @pytest.mark.asyncio
    async def test_carrier_failure_reverses_debit(self, db, company, order, monkeypatch):
        """The wallet is made whole and the session can be retried."""
        failing = FakeCarrier(
            CarrierProvider.VELOCITY,
            rates=[rate(CarrierProvider.VELOCITY, "12", 80.0)],
            booking_error=CarrierAPIError("carrier down", provider="velocity", http_status=502),
        )
        use_adapters(monkeypatch, failing)
        session = await self._quote(db, company, order)

        with pytest.raises(CarrierAPIError):
            await BookingService(db).book_from_quote(
                company.id, order.id, session.session_id, session.options[0]["option_id"]
            )

        balance, version = await WalletService(db).get_balance(company.id)
        assert balance == Decimal("1000.00")
        assert version == 2

        txns = (await db.execute(select(WalletTransaction).order_by(WalletTransaction.id))).scalars().all()
        assert [t.type for t in txns] == ["debit", "credit"]
        await db.refresh(txns[0])
        assert txns[0].is_reversed is True
        assert txns[1].reverses_transaction_id == txns[0].id
        assert txns[1].amount == Decimal("92.00")

        status = (await db.execute(select(QuoteSession.status).where(QuoteSession.id == session.id))).scalar_one()
        assert status == QuoteSessionStatus.ACTIVE.value
        assert (await db.execute(select(Shipment))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_failed_save_after_carrier_booking_reverses_debit(
        self, db, company, warehouse, order, carrier, monkeypatch
    ):
        """The carrier issues an AWB that is already on file; the second debit is compensated."""
        session = await self._quote(db, company, order)
        await BookingService(db).book_from_quote(company.id, order.id, session.session_id, session.options[0]["option_id"])

        second = make_order(company, warehouse, order_number="ORD-1002")
        db.add(second)
        await db.commit()
        use_adapters(monkeypatch, FakeCarrier(
            CarrierProvider.VELOCITY,
            rates=[rate(CarrierProvider.VELOCITY, "12", 80.0)],
            awb="VELOCITY-AWB-1",
        ))
        retry = await self._quote(db, company, second)
        company_id, second_id = company.id, second.id
        retry_pk, retry_session_id = retry.id, retry.session_id
        option_id = retry.options[0]["option_id"]

        with pytest.raises(IntegrityError):
            await BookingService(db).book_from_quote(company_id, second_id, retry_session_id, option_id)

        balance, _ = await WalletService(db).get_balance(company_id)
        assert balance == Decimal("908.00")

        txns = (await db.execute(
            select(WalletTransaction.type, WalletTransaction.is_reversed, WalletTransaction.reverses_transaction_id)
            .order_by(WalletTransaction.id)
        )).all()
        assert [(t.type, t.is_reversed) for t in txns] == [("debit", False), ("debit", True), ("credit", False)]
        assert txns[2].reverses_transaction_id is not None

        status = (await db.execute(select(QuoteSession.status).where(QuoteSession.id == retry_pk))).scalar_one()
        assert status == QuoteSessionStatus.ACTIVE.value
        assert (await db.execute(select(func.count(Shipment.id)))).scalar_one() == 1

    @pytest.mark.asyncio
    async def test_insufficient_balance_leaves_no_trace(self, db, company, order, carrier):
        await db.execute(update(Company).where(Company.id == company.id).values(wallet_balance=Decimal("10.00")))
        await db.commit()
        session = await self._quote(db, company, order)

        with pytest.raises(InsufficientBalanceError):
            await BookingService(db).book_from_quote(
                company.id, order.id, session.session_id, session.options[0]["option_id"]
            )

        assert carrier.bookings == []
        assert (await db.execute(select(WalletTransaction))).scalars().all() == []
        status = (await db.execute(select(QuoteSession.status).where(QuoteSession.id == session.id))).scalar_one()
        assert status == QuoteSessionStatus.ACTIVE.value


class TestBookDirect:
    """Legacy booking without a quote session."""

    @pytest.mark.asyncio
    async def test_books_cheapest_rate(self, db, company, order, monkeypatch):
        velocity = FakeCarrier(CarrierProvider.VELOCITY, rates=[rate(CarrierProvider.VELOCITY, "12", 90.0)])
        ekart = FakeCarrier(CarrierProvider.EKART, rates=[rate(CarrierProvider.EKART, "SURFACE", 60.0)])
        use_adapters(monkeypatch, velocity, ekart)

        shipment = await BookingService(db).book_direct(company.id, order.id)

        assert shipment.provider == "ekart"
        assert shipment.shipping_charge == Decimal("69.00")
        assert velocity.bookings == []

    @pytest.mark.asyncio
    async def test_order_cannot_ship_twice(self, db, company, order, monkeypatch):
        use_adapters(monkeypatch, FakeCarrier(CarrierProvider.VELOCITY, rates=[rate(CarrierProvider.VELOCITY, "12", 90.0)]))
        booking = BookingService(db)
        await booking.book_direct(company.id, order.id)

        with pytest.raises(StateConflictError) as exc_info:
            await booking.book_direct(company.id, order.id)
        assert exc_info.value.code == "ALREADY_SHIPPED"
