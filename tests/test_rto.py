"""
Tests for return-to-origin triggering and RTO leg progress.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from courierhub.core.exceptions import InsufficientBalanceError, StateConflictError
from courierhub.models import (
    Company,
    NDREvent,
    NDRStatus,
    NDRType,
    RTOEvent,
    RTOStatus,
    RTOTriggeredBy,
    ShipmentStatus,
    ShipmentStatusHistory,
    WalletTransaction,
)
from courierhub.modules.shipping.carriers import CarrierFactory
from courierhub.modules.shipping.carriers.base import ReverseShipmentResult
from courierhub.services.rto_service import RTOService
from courierhub.services.wallet_service import WalletService
from tests.conftest import RecordingNotifier, make_shipment


class ReverseCapableCarrier:
    supports_reverse_shipment = True

    def __init__(self):
        self.calls = []

    async def create_reverse_shipment(self, tracking_number, reason):
        self.calls.append((tracking_number, reason))
        return ReverseShipmentResult(reverse_awb=f"REV-{tracking_number}")


def use_adapter(monkeypatch, adapter):
    async def get_company_adapter(db, company_id, provider):
        return adapter

    monkeypatch.setattr(CarrierFactory, "get_company_adapter", get_company_adapter)


async def add_ndr(db, shipment) -> NDREvent:
    ndr = NDREvent(
        shipment_id=shipment.id,
        company_id=shipment.company_id,
        provider=shipment.provider,
        tracking_number=shipment.tracking_number,
        ndr_type=NDRType.REFUSED.value,
        ndr_reason="Customer refused delivery",
        resolution_deadline=datetime.now(timezone.utc) + timedelta(hours=48),
    )
    db.add(ndr)
    await db.commit()
    return ndr


class TestTriggerRTO:

    @pytest.mark.asyncio
    async def test_internal_awb_without_integration(self, db, company, order, shipment, notifier):
        rto = await RTOService(db, notifier).trigger_rto(shipment.id, "Customer refused")
        await db.commit()

        assert rto.reverse_awb.startswith("RTO-AWB100001-")
        assert rto.status == RTOStatus.INITIATED.value
        assert rto.triggered_by == RTOTriggeredBy.AUTO.value
        assert rto.charges == Decimal("50.00")

        await db.refresh(shipment)
        await db.refresh(order)
        assert shipment.status == ShipmentStatus.RTO_INITIATED.value
        assert shipment.rto_event_id == rto.id
        assert order.status == "rto"
        assert await WalletService(db).get_balance(company.id) == (Decimal("950.00"), 1)

        debit = (await db.execute(select(WalletTransaction))).scalar_one()
        assert debit.id == rto.wallet_transaction_id
        assert debit.reference_type == "rto_event"

        history = (await db.execute(select(ShipmentStatusHistory))).scalars().all()
        assert [h.source for h in history] == ["rto"]
        assert notifier.sent == [("whatsapp", "9123456780", "rto_initiated")]

    @pytest.mark.asyncio
    async def test_carrier_reverse_booking_used_when_supported(self, db, company, shipment, notifier, monkeypatch):
        carrier = ReverseCapableCarrier()
        use_adapter(monkeypatch, carrier)

        rto = await RTOService(db, notifier).trigger_rto(shipment.id, "Address not found")

        assert rto.reverse_awb == "REV-AWB100001"
        assert carrier.calls == [("AWB100001", "Address not found")]

    @pytest.mark.asyncio
    async def test_adapter_without_reverse_support_falls_back(self, db, company, shipment, notifier, monkeypatch):
        carrier = ReverseCapableCarrier()
        carrier.supports_reverse_shipment = False
        use_adapter(monkeypatch, carrier)

        rto = await RTOService(db, notifier).trigger_rto(shipment.id, "Refused")

        assert rto.reverse_awb.startswith("RTO-AWB100001-")
        assert carrier.calls == []

    @pytest.mark.asyncio
    async def test_delivered_shipment_rejected(self, db, company, order, notifier):
        delivered = make_shipment(order, status=ShipmentStatus.DELIVERED.value)
        db.add(delivered)
        await db.commit()

        with pytest.raises(StateConflictError) as exc_info:
            await RTOService(db, notifier).trigger_rto(delivered.id, "Refused")

        assert exc_info.value.code == "SHIPMENT_DELIVERED"
        assert (await db.execute(select(RTOEvent))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_second_trigger_rejected(self, db, company, shipment, notifier):
        service = RTOService(db, notifier)
        await service.trigger_rto(shipment.id, "Refused")
        await db.commit()

        with pytest.raises(StateConflictError) as exc_info:
            await service.trigger_rto(shipment.id, "Refused again")

        assert exc_info.value.code == "RTO_ALREADY_TRIGGERED"
        assert await WalletService(db).get_balance(company.id) == (Decimal("950.00"), 1)

    @pytest.mark.asyncio
    async def test_insufficient_balance_leaves_shipment_untouched(self, db, company, shipment, notifier):
        low = await db.get(Company, company.id)
        low.wallet_balance = Decimal("10.00")
        await db.commit()

        with pytest.raises(InsufficientBalanceError):
            await RTOService(db, notifier).trigger_rto(shipment.id, "Refused")

        await db.refresh(shipment)
        assert shipment.status == ShipmentStatus.IN_TRANSIT.value
        assert (await db.execute(select(RTOEvent))).scalars().all() == []
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_auto_trigger_marks_ndr(self, db, company, shipment, notifier):
        ndr = await add_ndr(db, shipment)

        await RTOService(db, notifier).trigger_rto(shipment.id, "Refused", ndr_event_id=ndr.id)
        await db.commit()
        await db.refresh(ndr)

        assert ndr.status == NDRStatus.RTO_TRIGGERED.value
        assert ndr.auto_rto_triggered is True

    @pytest.mark.asyncio
    async def test_manual_trigger_does_not_mark_auto(self, db, company, shipment, notifier):
        ndr = await add_ndr(db, shipment)

        rto = await RTOService(db, notifier).trigger_rto(
            shipment.id, "Seller requested", ndr_event_id=ndr.id, triggered_by=RTOTriggeredBy.MANUAL
        )
        await db.commit()
        await db.refresh(ndr)

        assert rto.triggered_by == "manual"
        assert ndr.status == NDRStatus.RTO_TRIGGERED.value
        assert ndr.auto_rto_triggered is False

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_rto(self, db, company, shipment):
        rto = await RTOService(db, RecordingNotifier(succeed=False)).trigger_rto(shipment.id, "Refused")

        assert rto.id is not None


class TestRTOProgress:

    @pytest.mark.asyncio
    async def test_status_updates_advance_leg(self, db, company, shipment, notifier):
        service = RTOService(db, notifier)
        rto = await service.trigger_rto(shipment.id, "Refused")
        await db.commit()

        updated = await service.update_rto_status(shipment, ShipmentStatus.RTO_INITIATED)
        assert updated.status == RTOStatus.IN_TRANSIT.value

        updated = await service.update_rto_status(shipment, ShipmentStatus.RTO_DELIVERED)
        assert updated.status == RTOStatus.DELIVERED_TO_WAREHOUSE.value

        # Terminal: a late in-transit scan does not move it back
        updated = await service.update_rto_status(shipment, ShipmentStatus.RTO_INITIATED)
        assert updated.id == rto.id
        assert updated.status == RTOStatus.DELIVERED_TO_WAREHOUSE.value

    @pytest.mark.asyncio
    async def test_forward_statuses_ignored(self, db, company, shipment, notifier):
        assert await RTOService(db, notifier).update_rto_status(shipment, ShipmentStatus.IN_TRANSIT) is None

    @pytest.mark.asyncio
    async def test_no_rto_event(self, db, company, shipment, notifier):
        assert await RTOService(db, notifier).update_rto_status(shipment, ShipmentStatus.RTO_DELIVERED) is None
