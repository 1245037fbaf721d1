"""
Tests for carrier status and COD settlement webhooks.
"""
import time

import pytest
from sqlalchemy import func, select

from courierhub.core.config import settings
from courierhub.models import (
    CODDiscrepancy,
    CollectionStatus,
    NDREvent,
    Order,
    Shipment,
    ShipmentStatus,
    ShipmentStatusHistory,
    WebhookEvent,
)
from courierhub.modules.shipping.carriers.base import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    WebhookStatusUpdate,
    compute_webhook_signature,
)
from courierhub.services.webhook_service import CarrierWebhookService, idempotency_key


def signed_headers(payload, secret="whsec-test", sent_at=None) -> dict:
    timestamp = str(int(sent_at if sent_at is not None else time.time()))
    return {
        SIGNATURE_HEADER: compute_webhook_signature(secret, payload, timestamp),
        TIMESTAMP_HEADER: timestamp,
    }


def status_payload(awb: str, status: str, **extra) -> dict:
    data = {"awb": awb, "status": status, "updated_at": "2026-03-10T10:00:00Z"}
    data.update(extra)
    return {"event_type": "status_update", "shipment_data": data}


async def post_signed(client, carrier, payload, **kwargs):
    return await client.post(f"/api/webhooks/{carrier}", json=payload, headers=signed_headers(payload, **kwargs))


async def history_count(db, shipment_id) -> int:
    result = await db.execute(
        select(func.count(ShipmentStatusHistory.id)).where(ShipmentStatusHistory.shipment_id == shipment_id)
    )
    return result.scalar_one()


async def fresh_shipment(db, shipment_id) -> Shipment:
    result = await db.execute(
        select(Shipment).where(Shipment.id == shipment_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


def test_idempotency_key_is_stable():
    assert idempotency_key("velocity", "AWB1", "OFD", None) == idempotency_key("velocity", "AWB1", "OFD", None)
    assert idempotency_key("velocity", "AWB1", "OFD", "t1") != idempotency_key("velocity", "AWB1", "OFD", "t2")


@pytest.mark.asyncio
async def test_lost_idempotency_race_keeps_pending_work(db, shipment):
    """A concurrent delivery's key collision undoes only the idempotency insert."""
    update = WebhookStatusUpdate(event_type="status_update", awb="AWB100001", status="OFD")
    db.add(ShipmentStatusHistory(shipment_id=shipment.id, status="in_transit", source="system"))
    db.add(WebhookEvent(idempotency_key="key-1", provider="velocity", tracking_number="AWB100001", status="OFD"))
    await db.flush()

    recorded = await CarrierWebhookService(db)._record("key-1", "velocity", update, "processed")

    assert recorded is False
    assert await history_count(db, shipment.id) == 1
    assert (await db.execute(select(func.count(WebhookEvent.id)))).scalar_one() == 1


class TestCarrierWebhook:

    @pytest.mark.asyncio
    async def test_status_update_applied(self, client, db, velocity_integration, shipment):
        payload = status_payload("AWB100001", "OFD", current_location="Bengaluru Hub")

        resp = await post_signed(client, "velocity", payload)

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["status"] == "processed"
        assert body["previous_status"] == "in_transit"
        assert body["new_status"] == "out_for_delivery"

        assert (await fresh_shipment(db, shipment.id)).status == "out_for_delivery"
        history = (await db.execute(select(ShipmentStatusHistory))).scalar_one()
        assert history.source == "webhook"
        assert history.carrier_status == "OFD"
        assert history.location == "Bengaluru Hub"

    @pytest.mark.asyncio
    async def test_replay_is_duplicate(self, client, db, velocity_integration, shipment):
        payload = status_payload("AWB100001", "OFD")

        first = await post_signed(client, "velocity", payload)
        second = await post_signed(client, "velocity", payload)

        assert first.json()["status"] == "processed"
        assert second.status_code == 200
        assert second.json()["status"] == "duplicate"
        assert await history_count(db, shipment.id) == 1
        assert (await db.execute(select(func.count(WebhookEvent.id)))).scalar_one() == 1

    @pytest.mark.asyncio
    async def test_same_status_unchanged(self, client, db, velocity_integration, shipment):
        resp = await post_signed(client, "velocity", status_payload("AWB100001", "IN_TRANSIT"))

        assert resp.json()["status"] == "unchanged"
        assert await history_count(db, shipment.id) == 0

    @pytest.mark.asyncio
    async def test_late_scan_after_delivery_ignored(self, client, db, velocity_integration, shipment):
        delivered = status_payload("AWB100001", "DELIVERED", updated_at="2026-03-10T12:00:00Z")
        late = status_payload("AWB100001", "IN_TRANSIT", updated_at="2026-03-10T08:00:00Z")

        first = await post_signed(client, "velocity", delivered)
        second = await post_signed(client, "velocity", late)

        assert first.json()["new_status"] == "delivered"
        body = second.json()
        assert second.status_code == 200
        assert body["status"] == "ignored"
        assert body["new_status"] == "delivered"
        assert (await fresh_shipment(db, shipment.id)).status == "delivered"
        assert await history_count(db, shipment.id) == 1
        results = (await db.execute(select(WebhookEvent.result).order_by(WebhookEvent.id))).scalars().all()
        assert results == ["processed", "ignored"]

    @pytest.mark.asyncio
    async def test_late_ndr_does_not_reopen_rto(self, client, db, velocity_integration, shipment):
        shipment.status = ShipmentStatus.RTO_INITIATED.value
        await db.commit()
        payload = status_payload("AWB100001", "NDR", description="Customer not available at address")

        resp = await post_signed(client, "velocity", payload)

        assert resp.json()["status"] == "ignored"
        assert (await fresh_shipment(db, shipment.id)).status == "rto_initiated"
        assert (await db.execute(select(NDREvent))).scalars().all() == []

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, client, db, velocity_integration, shipment):
        payload = status_payload("AWB100001", "OFD")

        resp = await post_signed(client, "velocity", payload, sent_at=time.time() - 3600)

        assert resp.status_code == 401
        assert resp.json()["detail"]["error"] == "invalid_signature"
        assert await history_count(db, shipment.id) == 0

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, client, velocity_integration, shipment):
        resp = await post_signed(client, "velocity", status_payload("AWB100001", "OFD"), secret="guess")

        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unsigned_rejected(self, client, velocity_integration, shipment):
        resp = await client.post("/api/webhooks/velocity", json=status_payload("AWB100001", "OFD"))

        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_non_json_body_rejected(self, client, velocity_integration):
        resp = await client.post(
            "/api/webhooks/velocity",
            content=b"awb=AWB100001&status=OFD",
            headers={SIGNATURE_HEADER: "abc", TIMESTAMP_HEADER: str(int(time.time()))},
        )

        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_carrier(self, client, db):
        resp = await post_signed(client, "pigeonpost", status_payload("AWB100001", "OFD"))

        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_awb_answers_200(self, client, db, monkeypatch):
        monkeypatch.setattr(settings, "VELOCITY_WEBHOOK_SECRET", "platform-secret")
        payload = status_payload("NOPE-1", "OFD")

        resp = await post_signed(client, "velocity", payload, secret="platform-secret")

        assert resp.status_code == 200
        assert resp.json()["status"] == "not_found"

    @pytest.mark.asyncio
    async def test_unusable_payload_answers_200(self, client, db, monkeypatch):
        monkeypatch.setattr(settings, "VELOCITY_WEBHOOK_SECRET", "platform-secret")

        resp = await post_signed(client, "velocity", {"event_type": "ping"}, secret="platform-secret")

        assert resp.status_code == 200
        assert resp.json()["success"] is False

    @pytest.mark.asyncio
    async def test_delivered_cod_reconciles(self, client, db, velocity_integration, cod_shipment, cod_order):
        payload = status_payload("AWB200001", "DELIVERED", cod_amount="1000.00")

        resp = await post_signed(client, "velocity", payload)

        assert resp.json()["new_status"] == "delivered"
        assert "discrepancy_id" not in resp.json()
        updated = await fresh_shipment(db, cod_shipment.id)
        assert updated.collection_status == CollectionStatus.RECONCILED.value
        assert updated.delivered_at is not None
        order_status = (await db.execute(select(Order.status).where(Order.id == cod_order.id))).scalar_one()
        assert order_status == "delivered"

    @pytest.mark.asyncio
    async def test_delivered_cod_short_collection(self, client, db, velocity_integration, cod_shipment):
        payload = status_payload("AWB200001", "DEL", collected_amount=800)

        resp = await post_signed(client, "velocity", payload)

        discrepancy = (await db.execute(select(CODDiscrepancy))).scalar_one()
        assert resp.json()["discrepancy_id"] == discrepancy.id
        assert (await fresh_shipment(db, cod_shipment.id)).collection_status == CollectionStatus.DISPUTED.value

    @pytest.mark.asyncio
    async def test_ndr_status_opens_ndr(self, client, db, velocity_integration, shipment):
        payload = status_payload("AWB100001", "NDR", description="Customer not available at address")

        resp = await post_signed(client, "velocity", payload)

        body = resp.json()
        assert body["new_status"] == "ndr"
        ndr = (await db.execute(select(NDREvent))).scalar_one()
        assert body["ndr_event_id"] == ndr.id
        assert ndr.tracking_number == "AWB100001"


class TestSettlementWebhook:

    @pytest.mark.asyncio
    async def test_requires_configured_secret(self, client, db):
        payload = {"settlement_id": "SET-9", "shipments": []}

        resp = await client.post("/api/webhooks/cod/settlement", json=payload, headers=signed_headers(payload))

        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_awb_becomes_discrepancy(self, client, db, monkeypatch):
        monkeypatch.setattr(settings, "COD_SETTLEMENT_WEBHOOK_SECRET", "settle-secret")
        payload = {"settlement_id": "SET-9", "shipments": [{"awb": "GHOST-9", "net_amount": 120}]}

        resp = await client.post(
            "/api/webhooks/cod/settlement",
            json=payload,
            headers=signed_headers(payload, secret="settle-secret"),
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["discrepancies"] == 1
        discrepancy = (await db.execute(select(CODDiscrepancy))).scalar_one()
        assert discrepancy.type == "shipment_not_found"
        assert discrepancy.settlement_id == "SET-9"

    @pytest.mark.asyncio
    async def test_bad_payload_answers_200(self, client, db, monkeypatch):
        monkeypatch.setattr(settings, "COD_SETTLEMENT_WEBHOOK_SECRET", "settle-secret")
        payload = {"shipments": "nope"}

        resp = await client.post(
            "/api/webhooks/cod/settlement",
            json=payload,
            headers=signed_headers(payload, secret="settle-secret"),
        )

        assert resp.status_code == 200
        assert resp.json()["success"] is False


@pytest.mark.asyncio
async def test_webhook_health(client):
    resp = await client.get("/api/webhooks/ekart/health")

    assert resp.json() == {"carrier": "ekart", "healthy": True, "registered": True}
