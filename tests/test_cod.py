"""
Tests for COD reconciliation, early COD, remittance batches and carrier settlement.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from courierhub.core.config import settings
from courierhub.core.exceptions import AccessDeniedError, StateConflictError, ValidationError
from courierhub.models import (
    CODDiscrepancy,
    CODRemittanceBatch,
    CollectionStatus,
    DiscrepancySeverity,
    DiscrepancyType,
    EarlyCODTier,
    EarlyCODEnrollment,
    RemittanceStatus,
    ShipmentStatus,
)
from courierhub.services.cod import (
    CODReconciliationService,
    CODRemittanceService,
    CODSettlementService,
    EarlyCODService,
)
from courierhub.services.cod.remittance import early_cutoff
from tests.conftest import make_shipment


@pytest.fixture
def relaxed_early_cod(monkeypatch):
    """A brand new account with a single COD shipment qualifies for every tier."""
    monkeypatch.setattr(settings, "EARLY_COD_MIN_VINTAGE_MONTHS", 0)
    monkeypatch.setattr(settings, "EARLY_COD_MIN_MONTHLY_VOLUME", 1)


async def add_collected(db, order, tracking_number="AWB300001", days_ago=2, **overrides):
    values = dict(
        tracking_number=tracking_number,
        status=ShipmentStatus.DELIVERED.value,
        collection_status=CollectionStatus.RECONCILED.value,
        actual_collection=order.total,
        collected_at=datetime.now(timezone.utc) - timedelta(days=days_ago),
    )
    values.update(overrides)
    shipment = make_shipment(order, **values)
    db.add(shipment)
    await db.commit()
    return shipment


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_exact_amount_reconciles(self, db, cod_shipment):
        result = await CODReconciliationService(db).reconcile_delivered_shipment(cod_shipment.id, "1000.00")

        assert result.reconciled is True
        assert result.collection_status == CollectionStatus.RECONCILED.value
        assert cod_shipment.actual_collection == Decimal("1000.00")
        assert cod_shipment.collected_at is not None
        assert (await db.execute(select(CODDiscrepancy))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_mismatch_opens_discrepancy(self, db, cod_order):
        shipment = make_shipment(cod_order, tracking_number="AWB200002", cod_amount=Decimal("2000.00"))
        db.add(shipment)
        await db.commit()

        result = await CODReconciliationService(db).reconcile_delivered_shipment(shipment.id, 1500)

        assert result.reconciled is False
        assert shipment.collection_status == CollectionStatus.DISPUTED.value
        discrepancy = (await db.execute(select(CODDiscrepancy))).scalar_one()
        assert discrepancy.id == result.discrepancy_id == shipment.discrepancy_id
        assert discrepancy.type == DiscrepancyType.AMOUNT_MISMATCH.value
        assert discrepancy.difference == Decimal("-500.00")
        assert discrepancy.percentage == Decimal("25.00")
        assert discrepancy.severity == DiscrepancySeverity.HIGH.value
        assert discrepancy.discrepancy_number.startswith("CODD-")

    @pytest.mark.asyncio
    async def test_reconcile_is_idempotent(self, db, cod_shipment):
        service = CODReconciliationService(db)
        await service.reconcile_delivered_shipment(cod_shipment.id, 1000)

        again = await service.reconcile_delivered_shipment(cod_shipment.id, 10)

        assert again.already_processed is True
        assert again.reconciled is True
        assert cod_shipment.actual_collection == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_resolve_discrepancy(self, db, cod_order):
        shipment = make_shipment(cod_order, tracking_number="AWB200003")
        db.add(shipment)
        await db.commit()
        service = CODReconciliationService(db)
        result = await service.reconcile_delivered_shipment(shipment.id, 950)

        with pytest.raises(ValidationError) as exc_info:
            await service.resolve_discrepancy(result.discrepancy_id, "shrug", 950, "ops@acme.example")
        assert exc_info.value.code == "INVALID_RESOLUTION_METHOD"

        discrepancy = await service.resolve_discrepancy(
            result.discrepancy_id, "merchant_writeoff", 950, "ops@acme.example", remarks="Customer paid short"
        )

        assert discrepancy.status == "resolved"
        assert discrepancy.adjusted_amount == Decimal("950.00")
        assert shipment.collection_status == CollectionStatus.RECONCILED.value
        assert shipment.actual_collection == Decimal("950.00")

        with pytest.raises(StateConflictError) as exc_info:
            await service.resolve_discrepancy(result.discrepancy_id, "merchant_writeoff", 950, "ops@acme.example")
        assert exc_info.value.code == "DISCREPANCY_ALREADY_RESOLVED"

    @pytest.mark.asyncio
    async def test_list_discrepancies_scoped_to_company(self, db, company, cod_order):
        shipment = make_shipment(cod_order, tracking_number="AWB200004")
        db.add(shipment)
        await db.commit()
        await CODReconciliationService(db).reconcile_delivered_shipment(shipment.id, 1)

        items, total = await CODReconciliationService(db).list_discrepancies(company.id)
        assert total == 1
        assert items[0].tracking_number == "AWB200004"

        items, total = await CODReconciliationService(db).list_discrepancies(company.id + 1)
        assert (items, total) == ([], 0)


class TestEarlyCOD:

    @pytest.mark.asyncio
    async def test_new_account_only_gets_slowest_tier(self, db, company, cod_shipment):
        eligibility = await EarlyCODService(db).check_eligibility(company.id)

        # Vintage and volume miss, RTO and dispute rates pass
        assert eligibility.score == 50
        assert eligibility.allowed_tiers == [EarlyCODTier.T3]
        assert len(eligibility.reasons) == 2
        assert eligibility.to_dict()["fees"] == {"T+3": 2.0}

    @pytest.mark.asyncio
    async def test_enroll_beyond_score_denied(self, db, company, cod_shipment):
        with pytest.raises(AccessDeniedError) as exc_info:
            await EarlyCODService(db).enroll(company.id, "T+1")

        assert exc_info.value.code == "EARLY_COD_NOT_ELIGIBLE"

    @pytest.mark.asyncio
    async def test_unknown_tier(self, db, company):
        with pytest.raises(ValidationError) as exc_info:
            await EarlyCODService(db).enroll(company.id, "T+0")

        assert exc_info.value.code == "INVALID_TIER"

    @pytest.mark.asyncio
    async def test_reenroll_replaces_active(self, db, company, cod_shipment, relaxed_early_cod):
        service = EarlyCODService(db)
        first = await service.enroll(company.id, "T+3")
        second = await service.enroll(company.id, "T+1")
        await db.commit()

        assert second.fee_percent == Decimal("3.00")
        assert second.eligibility_score == 100
        assert (await service.get_active_enrollment(company.id)).id == second.id
        await db.refresh(first)
        assert first.status == "cancelled"


class TestRemittance:

    def test_early_cutoff_is_end_of_day(self):
        now = datetime(2026, 3, 10, 8, 30, tzinfo=timezone.utc)
        assert early_cutoff(1, now) == datetime(2026, 3, 9, 23, 59, 59, 999999, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_early_batch_requires_enrollment(self, db, company):
        with pytest.raises(ValidationError) as exc_info:
            await CODRemittanceService(db).create_early_remittance_batch(company.id)

        assert exc_info.value.code == "NOT_ENROLLED"

    @pytest.mark.asyncio
    async def test_early_batch_totals(self, db, company, cod_order, relaxed_early_cod):
        shipment = await add_collected(db, cod_order)
        # Collected today: past the T+1 cutoff
        await add_collected(db, cod_order, tracking_number="AWB300002", days_ago=0)
        await EarlyCODService(db).enroll(company.id, "T+1")
        await db.commit()

        result = await CODRemittanceService(db).create_early_remittance_batch(company.id)
        await db.commit()

        batch = result.batch
        assert result.created and result.count == 1
        assert batch.remittance_id.startswith("REM-")
        assert batch.batch_number == 1
        assert batch.batch_type == "on_demand"
        assert batch.tier == "T+1"
        assert batch.total_cod == Decimal("1000.00")
        assert batch.total_early_fees == Decimal("30.00")
        assert batch.total_shipping_charges == Decimal("0.00")
        assert batch.net_payable == Decimal("970.00")
        assert batch.lines[0]["net_amount"] == "970.00"

        await db.refresh(shipment)
        assert shipment.remittance_included is True
        assert shipment.remittance_batch_id == batch.id
        assert shipment.collection_status == CollectionStatus.REMITTED.value

        # Nothing left to claim
        again = await CODRemittanceService(db).create_early_remittance_batch(company.id)
        assert again.created is False
        assert again.message == "No eligible shipments for early remittance"

    @pytest.mark.asyncio
    async def test_scheduled_batch_platform_fee_and_shipping(self, db, company, cod_order):
        await add_collected(db, cod_order, shipping_paid_from_wallet=False)

        result = await CODRemittanceService(db).create_remittance_batch(company.id, datetime.now())

        batch = result.batch
        assert batch.batch_type == "scheduled"
        assert batch.total_platform_fees == Decimal("5.00")
        assert batch.total_shipping_charges == Decimal("86.25")
        assert batch.net_payable == Decimal("908.75")

    @pytest.mark.asyncio
    async def test_cancel_releases_shipments(self, db, company, cod_order):
        shipment = await add_collected(db, cod_order)
        service = CODRemittanceService(db)
        batch = (await service.create_remittance_batch(company.id, datetime.now(timezone.utc))).batch
        await db.commit()

        cancelled = await service.cancel_batch(batch.id, "Bank details changed")
        await db.commit()

        assert cancelled.status == RemittanceStatus.CANCELLED.value
        await db.refresh(shipment)
        assert shipment.remittance_included is False
        assert shipment.remittance_batch_id is None
        assert shipment.collection_status == CollectionStatus.RECONCILED.value

        with pytest.raises(StateConflictError):
            await service.cancel_batch(batch.id, "again")

        rebatched = await service.create_remittance_batch(company.id, datetime.now(timezone.utc))
        assert rebatched.count == 1
        assert rebatched.batch.batch_number == 2

    @pytest.mark.asyncio
    async def test_approve_only_pending(self, db, company, cod_order):
        await add_collected(db, cod_order)
        service = CODRemittanceService(db)
        batch = (await service.create_remittance_batch(company.id, datetime.now(timezone.utc))).batch

        approved = await service.approve_batch(batch.id, "finance@courierhub.test")
        assert approved.status == RemittanceStatus.APPROVED.value

        with pytest.raises(StateConflictError) as exc_info:
            await service.approve_batch(batch.id, "finance@courierhub.test")
        assert exc_info.value.code == "INVALID_BATCH_STATUS"

    @pytest.mark.asyncio
    async def test_run_early_remittances(self, db, company, cod_order, relaxed_early_cod):
        await add_collected(db, cod_order)
        await EarlyCODService(db).enroll(company.id, "T+2")
        await db.commit()

        summary = await CODRemittanceService(db).run_early_remittances()

        assert summary == {"batches": 1, "shipments": 1}
        enrollment = (await db.execute(select(EarlyCODEnrollment))).scalar_one()
        assert enrollment.tier == "T+2"


class TestSettlement:

    async def _batch(self, db, company, cod_order) -> CODRemittanceBatch:
        await add_collected(db, cod_order, tracking_number="AWB400001")
        result = await CODRemittanceService(db).create_remittance_batch(company.id, datetime.now(timezone.utc))
        await db.commit()
        return result.batch

    @pytest.mark.asyncio
    async def test_all_lines_matched_settles_batch(self, db, company, cod_order):
        batch = await self._batch(db, company, cod_order)

        summary = await CODSettlementService(db).handle_settlement_webhook({
            "settlement_id": "SET-1",
            "utr_number": "UTR0001",
            "settlement_date": "2026-03-10T10:00:00Z",
            "shipments": [{"awb": "AWB400001", "net_amount": "995.00"}],
        })

        assert summary["matched"] == 1
        assert summary["discrepancies"] == 0
        assert summary["settled_batches"] == [batch.remittance_id]
        assert batch.status == RemittanceStatus.SETTLED.value
        assert batch.utr_number == "UTR0001"
        assert batch.settled_amount == Decimal("995.00")
        assert batch.settled_at == datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc)
        assert batch.lines[0]["settled"] is True

    @pytest.mark.asyncio
    async def test_unknown_awb_and_amount_mismatch(self, db, company, cod_order):
        batch = await self._batch(db, company, cod_order)

        summary = await CODSettlementService(db).handle_settlement_webhook({
            "settlement_id": "SET-2",
            "shipments": [
                {"awb": "AWB400001", "net_amount": 900},
                {"awb": "GHOST-1", "net_amount": 10},
            ],
        })

        assert summary["matched"] == 0
        assert summary["discrepancies"] == 2
        assert batch.status == RemittanceStatus.PENDING_APPROVAL.value

        types = sorted(d.type for d in (await db.execute(select(CODDiscrepancy))).scalars().all())
        assert types == [DiscrepancyType.SETTLEMENT_MISMATCH.value, DiscrepancyType.SHIPMENT_NOT_FOUND.value]

    @pytest.mark.asyncio
    async def test_settled_batch_reported_not_reprocessed(self, db, company, cod_order):
        batch = await self._batch(db, company, cod_order)
        payload = {"settlement_id": "SET-3", "shipments": [{"awb": "AWB400001", "net_amount": 995}]}
        service = CODSettlementService(db)
        await service.handle_settlement_webhook(payload)

        summary = await service.handle_settlement_webhook(payload)

        assert summary["matched"] == 0
        assert summary["already_settled"] == [batch.remittance_id]

    @pytest.mark.asyncio
    async def test_payload_validation(self, db):
        with pytest.raises(ValidationError) as exc_info:
            await CODSettlementService(db).handle_settlement_webhook({"shipments": []})

        assert exc_info.value.code == "INVALID_PAYLOAD"
