"""
COD Settlement Service

Processes the carrier's settlement notification: the carrier reports what
it paid per AWB, and each line is matched against the net amount recorded
on the remittance batch line for that shipment. Lines that cannot be
matched become discrepancies without blocking the rest of the payload.
"""
import logging
from collections import defaultdict
from decimal import Decimal
from typing import Any, Dict, List, Set

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.database import utcnow
from courierhub.core.exceptions import ValidationError
from courierhub.models.cod import (
    CODRemittanceBatch,
    DiscrepancySource,
    DiscrepancyType,
    RemittanceStatus,
)
from courierhub.models.shipment import Shipment
from courierhub.modules.shipping.carriers.base import parse_carrier_time
from courierhub.services.cod.reconciliation import CODReconciliationService, amounts_match
from courierhub.services.wallet_service import to_money

logger = logging.getLogger(__name__)


class CODSettlementService:
    """Carrier settlement matching."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.reconciliation = CODReconciliationService(db)

    async def handle_settlement_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Match settlement lines to remittance batches.

        Returns {matched, discrepancies, settled_batches, already_settled}.

        Raises:
            ValidationError: payload missing settlement_id or shipments
        """
        settlement_id = payload.get("settlement_id")
        lines = payload.get("shipments")
        if not settlement_id or not isinstance(lines, list):
            raise ValidationError(
                "Settlement payload requires settlement_id and a shipments list",
                code="INVALID_PAYLOAD",
            )

        matched = 0
        discrepancy_ids: List[int] = []
        already_settled: Set[str] = set()
        batches: Dict[int, CODRemittanceBatch] = {}
        matched_by_batch: Dict[int, Dict[int, Decimal]] = defaultdict(dict)

        for line in lines:
            awb = str(line.get("awb") or "")
            net_amount = to_money(line.get("net_amount"))

            result = await self.db.execute(select(Shipment).where(Shipment.tracking_number == awb))
            shipment = result.scalar_one_or_none()
            if shipment is None:
                discrepancy = await self.reconciliation.create_discrepancy(
                    awb,
                    Decimal("0"),
                    net_amount,
                    DiscrepancyType.SHIPMENT_NOT_FOUND,
                    DiscrepancySource.SETTLEMENT,
                    settlement_id=settlement_id,
                    remarks="Shipment not found in system",
                )
                discrepancy_ids.append(discrepancy.id)
                continue

            if shipment.remittance_batch_id is None:
                discrepancy = await self.reconciliation.create_discrepancy(
                    awb,
                    Decimal("0"),
                    net_amount,
                    DiscrepancyType.SETTLEMENT_MISMATCH,
                    DiscrepancySource.SETTLEMENT,
                    shipment=shipment,
                    settlement_id=settlement_id,
                    remarks="Shipment is not part of any remittance batch",
                )
                discrepancy_ids.append(discrepancy.id)
                continue

            batch = batches.get(shipment.remittance_batch_id)
            if batch is None:
                batch_result = await self.db.execute(
                    select(CODRemittanceBatch).where(CODRemittanceBatch.id == shipment.remittance_batch_id)
                )
                batch = batch_result.scalar_one()
                batches[batch.id] = batch

            if batch.status == RemittanceStatus.SETTLED.value:
                already_settled.add(batch.remittance_id)
                continue

            batch_line = batch.get_line(shipment.id)
            expected = to_money(batch_line["net_amount"]) if batch_line else Decimal("0")
            if batch_line is None or not amounts_match(expected, net_amount):
                discrepancy = await self.reconciliation.create_discrepancy(
                    awb,
                    expected,
                    net_amount,
                    DiscrepancyType.SETTLEMENT_MISMATCH,
                    DiscrepancySource.SETTLEMENT,
                    shipment=shipment,
                    remittance_batch_id=batch.id,
                    settlement_id=settlement_id,
                    remarks=f"Settlement net {net_amount} vs batch net {expected}",
                )
                discrepancy_ids.append(discrepancy.id)
                continue

            matched_by_batch[batch.id][shipment.id] = net_amount
            matched += 1

        settled_batches: List[str] = []
        settled_at = parse_carrier_time(payload.get("settlement_date")) or utcnow()
        for batch_id, matched_lines in matched_by_batch.items():
            batch = batches[batch_id]
            # New list so the JSON column is flagged dirty
            batch.lines = [
                dict(line, settled=True) if line.get("shipment_id") in matched_lines else dict(line)
                for line in batch.lines or []
            ]
            if all(line.get("settled") for line in batch.lines):
                batch.status = RemittanceStatus.SETTLED.value
                batch.settlement_id = settlement_id
                batch.utr_number = payload.get("utr_number")
                batch.settled_amount = sum(
                    (to_money(line["net_amount"]) for line in batch.lines), Decimal("0")
                )
                batch.settled_at = settled_at
                batch.bank_details = payload.get("bank_details")
                settled_batches.append(batch.remittance_id)
                logger.info(
                    f"[COD] Batch {batch.remittance_id} settled via {settlement_id} "
                    f"(UTR {batch.utr_number}, amount {batch.settled_amount})"
                )

        await self.db.flush()

        if already_settled:
            logger.info(f"[COD] Settlement {settlement_id}: batches already settled {sorted(already_settled)}")
        logger.info(
            f"[COD] Settlement {settlement_id}: {matched} matched, {len(discrepancy_ids)} discrepancies, "
            f"{len(settled_batches)} batches settled"
        )
        return {
            "settlement_id": settlement_id,
            "matched": matched,
            "discrepancies": len(discrepancy_ids),
            "discrepancy_ids": discrepancy_ids,
            "settled_batches": settled_batches,
            "already_settled": sorted(already_settled),
        }
