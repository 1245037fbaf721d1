"""
API tests: company resolution, KYC gating, error bodies and the finance routes.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from courierhub.core.feature_flags import FeatureFlags
from courierhub.models import (
    CarrierProvider,
    CODDiscrepancy,
    Company,
    FeatureFlag,
    NDREvent,
    NDRType,
    QuoteSession,
    Shipment,
)
from courierhub.services.cod import CODReconciliationService
from courierhub.services.quote_engine import QuoteEngine
from tests.conftest import make_shipment
from tests.test_quote_booking import FakeCarrier, rate, use_adapters


def auth(company) -> dict:
    return {"X-Company-Id": str(company.id)}


@pytest.fixture
def carriers(monkeypatch):
    velocity = FakeCarrier(CarrierProvider.VELOCITY, rates=[rate(CarrierProvider.VELOCITY, "12", 80.0, days=2)])
    ekart = FakeCarrier(CarrierProvider.EKART, rates=[rate(CarrierProvider.EKART, "SURFACE", 60.0, days=4)])
    use_adapters(monkeypatch, velocity, ekart)
    return velocity, ekart


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["database"] == "connected"


class TestCompanyResolution:

    @pytest.mark.asyncio
    async def test_missing_header(self, client):
        resp = await client.get("/api/finance/cod/discrepancies")

        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_company(self, client, company):
        resp = await client.get("/api/finance/cod/discrepancies", headers={"X-Company-Id": "999"})

        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_disabled_company(self, client, db, company):
        await db.execute(update(Company).where(Company.id == company.id).values(is_active=False))
        await db.commit()

        resp = await client.get("/api/finance/cod/discrepancies", headers=auth(company))

        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_kyc_tier_gates_booking(self, client, db, company, order):
        await db.execute(update(Company).where(Company.id == company.id).values(kyc_tier=0))
        await db.commit()

        resp = await client.post(f"/api/orders/{order.id}/ship", json={}, headers=auth(company))

        assert resp.status_code == 403
        body = resp.json()
        assert body["error"] == "KYC_TIER_INSUFFICIENT"
        assert body["details"] == {"required_tier": 1, "current_tier": 0}


class TestQuoteAndShip:

    @pytest.mark.asyncio
    async def test_quote_then_ship(self, client, db, company, order, carriers):
        resp = await client.post(
            "/api/quotes/courier-options", json={"order_id": order.id}, headers=auth(company)
        )

        assert resp.status_code == 201
        quote = resp.json()
        by_provider = {o["provider"]: o for o in quote["options"]}
        assert set(by_provider) == {"ekart", "velocity"}
        # Velocity is faster, which outweighs the price gap
        assert quote["recommendation"] == by_provider["velocity"]["option_id"]
        assert "CHEAPEST" in by_provider["ekart"]["tags"]

        resp = await client.post(
            f"/api/orders/{order.id}/ship",
            json={"session_id": quote["session_id"], "option_id": by_provider["ekart"]["option_id"]},
            headers=auth(company),
        )

        assert resp.status_code == 201
        shipment = resp.json()
        assert shipment["provider"] == "ekart"
        assert shipment["tracking_number"] == "EKART-AWB-1"
        assert Decimal(shipment["shipping_charge"]) == Decimal("69.00")

    @pytest.mark.asyncio
    async def test_quote_without_order_needs_parcel(self, client, company, warehouse, carriers):
        resp = await client.post("/api/quotes/courier-options", json={}, headers=auth(company))

        assert resp.status_code == 400
        assert resp.json()["error"] == "VALIDATION_FAILED"

    @pytest.mark.asyncio
    async def test_expired_quote_is_410(self, client, db, company, order, carriers):
        session = await QuoteEngine(db).quote_order(company.id, order.id)
        await db.commit()
        await db.execute(
            update(QuoteSession)
            .where(QuoteSession.id == session.id)
            .values(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        )
        await db.commit()

        resp = await client.post(
            f"/api/orders/{order.id}/ship",
            json={"session_id": session.session_id, "option_id": session.options[0]["option_id"]},
            headers=auth(company),
        )

        assert resp.status_code == 410
        body = resp.json()
        assert set(body) == {"error", "message", "details"}
        assert body["error"] == "QUOTE_EXPIRED"

    @pytest.mark.asyncio
    async def test_ship_without_session_rejected(self, client, company, order, carriers):
        resp = await client.post(f"/api/orders/{order.id}/ship", json={}, headers=auth(company))

        assert resp.status_code == 400
        assert resp.json()["error"] == "QUOTE_SESSION_REQUIRED"

    @pytest.mark.asyncio
    async def test_direct_booking_when_sessions_disabled(self, client, db, company, order, carriers):
        db.add(FeatureFlag(module="booking", feature="quote_sessions", is_enabled=False))
        await db.commit()
        FeatureFlags.invalidate_cache()
        await FeatureFlags.get_module_flags("booking", db)
        await db.commit()

        resp = await client.post(f"/api/orders/{order.id}/ship", json={}, headers=auth(company))

        assert resp.status_code == 201
        assert resp.json()["provider"] == "ekart"

    @pytest.mark.asyncio
    async def test_option_id_required_with_session(self, client, company, order, carriers):
        resp = await client.post(
            f"/api/orders/{order.id}/ship", json={"session_id": "qs-anything"}, headers=auth(company)
        )

        assert resp.status_code == 400
        assert resp.json()["details"] == {"field": "option_id"}


class TestWarehouses:

    @pytest.mark.asyncio
    async def test_create_default_warehouse(self, client, db, company, warehouse):
        resp = await client.post(
            "/api/warehouses",
            json={
                "name": "Acme Pune",
                "contact_name": "Ravi Kumar",
                "phone": "9876543210",
                "address_line1": "Survey 44, Chakan",
                "city": "Pune",
                "state": "Maharashtra",
                "pincode": "410501",
                "is_default": True,
            },
            headers=auth(company),
        )

        assert resp.status_code == 201
        assert resp.json()["is_default"] is True
        await db.refresh(warehouse)
        assert warehouse.is_default is False

    @pytest.mark.asyncio
    async def test_bad_pincode(self, client, company):
        resp = await client.post(
            "/api/warehouses",
            json={
                "name": "Nowhere",
                "contact_name": "Ravi Kumar",
                "phone": "9876543210",
                "address_line1": "1 Road",
                "city": "Pune",
                "state": "Maharashtra",
                "pincode": "012345",
            },
            headers=auth(company),
        )

        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_PINCODE"


class TestNDRRoutes:

    async def _ndr(self, db, shipment) -> NDREvent:
        ndr = NDREvent(
            shipment_id=shipment.id,
            company_id=shipment.company_id,
            provider=shipment.provider,
            tracking_number=shipment.tracking_number,
            ndr_type=NDRType.REFUSED.value,
            ndr_reason="Customer refused",
            resolution_deadline=datetime.now(timezone.utc) + timedelta(hours=48),
        )
        db.add(ndr)
        await db.commit()
        return ndr

    @pytest.mark.asyncio
    async def test_resolve(self, client, db, company, shipment):
        ndr = await self._ndr(db, shipment)

        resp = await client.post(
            f"/api/ndr/{ndr.id}/resolve",
            json={"resolution": "address_updated", "resolved_by": "ops@acme.example"},
            headers=auth(company),
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "resolved"

    @pytest.mark.asyncio
    async def test_other_company_cannot_see_ndr(self, client, db, company, shipment):
        ndr = await self._ndr(db, shipment)
        other = Company(name="Other", email="other@example.com", kyc_tier=1, wallet_balance=Decimal("0"))
        db.add(other)
        await db.commit()

        resp = await client.post(
            f"/api/ndr/{ndr.id}/rto", json={"reason": "Seller requested"}, headers=auth(other)
        )

        assert resp.status_code == 404
        assert resp.json()["error"] == "NDR_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_manual_rto(self, client, db, company, shipment):
        ndr = await self._ndr(db, shipment)

        resp = await client.post(
            f"/api/ndr/{ndr.id}/rto", json={"reason": "Seller requested"}, headers=auth(company)
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["triggered_by"] == "manual"
        assert body["ndr_event_id"] == ndr.id
        assert body["reverse_awb"].startswith("RTO-AWB100001-")


class TestFinanceRoutes:

    async def _discrepancy(self, db, cod_order) -> CODDiscrepancy:
        shipment = make_shipment(cod_order, tracking_number="AWB500001")
        db.add(shipment)
        await db.commit()
        result = await CODReconciliationService(db).reconcile_delivered_shipment(shipment.id, 900)
        await db.commit()
        return await CODReconciliationService(db).get_discrepancy(result.discrepancy_id)

    @pytest.mark.asyncio
    async def test_list_and_get_discrepancies(self, client, db, company, cod_order):
        discrepancy = await self._discrepancy(db, cod_order)

        resp = await client.get("/api/finance/cod/discrepancies?status=detected", headers=auth(company))

        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 1
        assert body["items"][0]["tracking_number"] == "AWB500001"
        assert Decimal(body["items"][0]["difference"]) == Decimal("-100.00")

        resp = await client.get(f"/api/finance/cod/discrepancies/{discrepancy.id}", headers=auth(company))
        assert resp.json()["severity"] == "medium"

    @pytest.mark.asyncio
    async def test_resolve_discrepancy(self, client, db, company, cod_order):
        discrepancy = await self._discrepancy(db, cod_order)
        request = {"resolution_method": "courier_adjustment", "adjusted_amount": "1000.00", "resolved_by": "finance"}

        resp = await client.post(
            f"/api/finance/cod/discrepancies/{discrepancy.id}/resolve", json=request, headers=auth(company)
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "resolved"
        collection = (
            await db.execute(select(Shipment.collection_status).where(Shipment.id == discrepancy.shipment_id))
        ).scalar_one()
        assert collection == "reconciled"

        resp = await client.post(
            f"/api/finance/cod/discrepancies/{discrepancy.id}/resolve", json=request, headers=auth(company)
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "DISCREPANCY_ALREADY_RESOLVED"

    @pytest.mark.asyncio
    async def test_early_program(self, client, company, cod_shipment):
        resp = await client.get("/api/finance/cod/early-program/eligibility", headers=auth(company))

        assert resp.status_code == 200
        assert resp.json()["allowed_tiers"] == ["T+3"]

        resp = await client.post(
            "/api/finance/cod/early-program/enroll", json={"tier": "T+1"}, headers=auth(company)
        )
        assert resp.status_code == 403
        assert resp.json()["error"] == "EARLY_COD_NOT_ELIGIBLE"

        resp = await client.post(
            "/api/finance/cod/early-program/enroll", json={"tier": "T+3"}, headers=auth(company)
        )
        assert resp.status_code == 200
        assert resp.json()["tier"] == "T+3"

    @pytest.mark.asyncio
    async def test_early_remittance_nothing_eligible(self, client, company, cod_shipment):
        resp = await client.post("/api/finance/cod/early-program/enroll", json={"tier": "T+3"}, headers=auth(company))
        assert resp.status_code == 200

        resp = await client.post("/api/finance/cod/remittances/early", headers=auth(company))

        assert resp.status_code == 200
        assert resp.json() == {
            "created": False,
            "count": 0,
            "message": "No eligible shipments for early remittance",
            "batch": None,
        }

    @pytest.mark.asyncio
    async def test_early_remittance_requires_enrollment(self, client, company):
        resp = await client.post("/api/finance/cod/remittances/early", headers=auth(company))

        assert resp.status_code == 400
        assert resp.json()["error"] == "NOT_ENROLLED"
