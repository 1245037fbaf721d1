"""
COD Reconciliation Service

Matches cash collected on delivery against the shipment's expected COD
amount. An exact match (within COD_AMOUNT_TOLERANCE) marks the shipment
reconciled and therefore remittable; anything else opens a CODDiscrepancy
and parks the shipment as disputed until the discrepancy is resolved.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.config import settings
from courierhub.core.database import utcnow
from courierhub.core.exceptions import NotFoundError, StateConflictError, ValidationError
from courierhub.models.cod import (
    CODDiscrepancy,
    DiscrepancySeverity,
    DiscrepancySource,
    DiscrepancyStatus,
    DiscrepancyType,
    ResolutionMethod,
)
from courierhub.models.shipment import CollectionStatus, Shipment
from courierhub.services.wallet_service import to_money

logger = logging.getLogger(__name__)

# Already settled one way or another; reconciliation leaves these alone
FINAL_COLLECTION_STATUSES = {
    CollectionStatus.RECONCILED,
    CollectionStatus.REMITTED,
    CollectionStatus.DISPUTED,
}


@dataclass
class ReconciliationResult:
    shipment_id: int
    reconciled: bool
    discrepancy_id: Optional[int] = None
    collection_status: Optional[str] = None
    already_processed: bool = False


def generate_discrepancy_number(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"CODD-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


def discrepancy_severity(percentage: Decimal) -> DiscrepancySeverity:
    if percentage <= 5:
        return DiscrepancySeverity.LOW
    if percentage <= 20:
        return DiscrepancySeverity.MEDIUM
    return DiscrepancySeverity.HIGH


def amounts_match(expected, actual) -> bool:
    return abs(to_money(actual) - to_money(expected)) <= Decimal(str(settings.COD_AMOUNT_TOLERANCE))


class CODReconciliationService:
    """Collection reconciliation and discrepancy handling."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_discrepancy(
        self,
        tracking_number: str,
        expected_amount,
        actual_amount,
        discrepancy_type: DiscrepancyType,
        source: DiscrepancySource,
        shipment: Optional[Shipment] = None,
        remittance_batch_id: Optional[int] = None,
        settlement_id: Optional[str] = None,
        provider: Optional[str] = None,
        remarks: Optional[str] = None,
    ) -> CODDiscrepancy:
        expected = to_money(expected_amount)
        actual = to_money(actual_amount)
        difference = actual - expected
        if expected > 0:
            percentage = to_money(abs(difference) / expected * 100)
        else:
            percentage = Decimal("100.00")

        severity = discrepancy_severity(percentage)
        discrepancy = CODDiscrepancy(
            discrepancy_number=generate_discrepancy_number(),
            shipment_id=shipment.id if shipment else None,
            tracking_number=tracking_number,
            company_id=shipment.company_id if shipment else None,
            provider=provider or (shipment.provider if shipment else None),
            remittance_batch_id=remittance_batch_id,
            settlement_id=settlement_id,
            expected_amount=expected,
            actual_amount=actual,
            difference=difference,
            percentage=percentage,
            type=discrepancy_type.value,
            severity=severity.value,
            source=source.value,
            status=DiscrepancyStatus.DETECTED.value,
            remarks=remarks,
        )
        self.db.add(discrepancy)
        await self.db.flush()

        logger.warning(
            f"[COD] Discrepancy {discrepancy.discrepancy_number} ({discrepancy_type.value}, {severity.value}) "
            f"for {tracking_number}: expected {expected}, actual {actual}, diff {difference}"
        )
        return discrepancy

    async def reconcile_delivered_shipment(
        self,
        shipment_id: int,
        collected_amount,
        delivered_at: Optional[datetime] = None,
        source: DiscrepancySource = DiscrepancySource.WEBHOOK,
    ) -> ReconciliationResult:
        """
        Reconcile the collected amount for a delivered COD shipment.

        Idempotent: a shipment already reconciled, remitted or disputed is
        returned unchanged.
        """
        result = await self.db.execute(select(Shipment).where(Shipment.id == shipment_id))
        shipment = result.scalar_one_or_none()
        if shipment is None:
            raise NotFoundError(f"Shipment {shipment_id} not found", details={"shipment_id": shipment_id})

        if shipment.collection_status in FINAL_COLLECTION_STATUSES:
            return ReconciliationResult(
                shipment_id=shipment.id,
                reconciled=shipment.collection_status != CollectionStatus.DISPUTED.value,
                discrepancy_id=shipment.discrepancy_id,
                collection_status=shipment.collection_status,
                already_processed=True,
            )

        expected = to_money(shipment.cod_amount)
        collected = to_money(collected_amount)
        collected_at = delivered_at or utcnow()

        if amounts_match(expected, collected):
            shipment.collection_status = CollectionStatus.RECONCILED.value
            shipment.actual_collection = collected
            shipment.collected_at = collected_at
            await self.db.flush()
            logger.info(f"[COD] Shipment {shipment.id} ({shipment.tracking_number}) reconciled at {collected}")
            return ReconciliationResult(
                shipment_id=shipment.id,
                reconciled=True,
                collection_status=shipment.collection_status,
            )

        discrepancy = await self.create_discrepancy(
            shipment.tracking_number,
            expected,
            collected,
            DiscrepancyType.AMOUNT_MISMATCH,
            source,
            shipment=shipment,
        )
        shipment.collection_status = CollectionStatus.DISPUTED.value
        shipment.actual_collection = collected
        shipment.collected_at = collected_at
        shipment.discrepancy_id = discrepancy.id
        await self.db.flush()

        return ReconciliationResult(
            shipment_id=shipment.id,
            reconciled=False,
            discrepancy_id=discrepancy.id,
            collection_status=shipment.collection_status,
        )

    # ------------------------------------------------------------------
    # Discrepancies
    # ------------------------------------------------------------------

    async def get_discrepancy(self, discrepancy_id: int, company_id: Optional[int] = None) -> CODDiscrepancy:
        query = select(CODDiscrepancy).where(CODDiscrepancy.id == discrepancy_id)
        if company_id is not None:
            query = query.where(CODDiscrepancy.company_id == company_id)
        result = await self.db.execute(query)
        discrepancy = result.scalar_one_or_none()
        if discrepancy is None:
            raise NotFoundError(
                f"Discrepancy {discrepancy_id} not found",
                details={"discrepancy_id": discrepancy_id},
            )
        return discrepancy

    async def list_discrepancies(
        self,
        company_id: int,
        status: Optional[str] = None,
        discrepancy_type: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[CODDiscrepancy], int]:
        """Returns (page of discrepancies, total count)."""
        filters = [CODDiscrepancy.company_id == company_id]
        if status:
            filters.append(CODDiscrepancy.status == status)
        if discrepancy_type:
            filters.append(CODDiscrepancy.type == discrepancy_type)

        count_result = await self.db.execute(select(func.count(CODDiscrepancy.id)).where(*filters))
        total = count_result.scalar_one()

        page = max(page, 1)
        result = await self.db.execute(
            select(CODDiscrepancy)
            .where(*filters)
            .order_by(CODDiscrepancy.created_at.desc(), CODDiscrepancy.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total

    async def resolve_discrepancy(
        self,
        discrepancy_id: int,
        method: str,
        adjusted_amount,
        resolved_by: str,
        remarks: Optional[str] = None,
        company_id: Optional[int] = None,
    ) -> CODDiscrepancy:
        """
        Close a discrepancy and make its shipment remittable at adjusted_amount.

        Raises:
            ValidationError: unknown resolution method or negative amount
            StateConflictError: discrepancy already resolved
        """
        try:
            resolution = ResolutionMethod(method)
        except ValueError:
            raise ValidationError(
                f"Unknown resolution method: {method}",
                code="INVALID_RESOLUTION_METHOD",
                details={"allowed": [m.value for m in ResolutionMethod]},
            )

        adjusted = to_money(adjusted_amount)
        if adjusted < 0:
            raise ValidationError("adjusted_amount cannot be negative", details={"adjusted_amount": str(adjusted)})

        discrepancy = await self.get_discrepancy(discrepancy_id, company_id)
        if discrepancy.status == DiscrepancyStatus.RESOLVED.value:
            raise StateConflictError(
                f"Discrepancy {discrepancy.discrepancy_number} is already resolved",
                code="DISCREPANCY_ALREADY_RESOLVED",
                details={"discrepancy_id": discrepancy_id},
            )

        discrepancy.status = DiscrepancyStatus.RESOLVED.value
        discrepancy.resolution_method = resolution.value
        discrepancy.adjusted_amount = adjusted
        discrepancy.resolved_by = resolved_by
        discrepancy.resolved_at = utcnow()
        if remarks:
            discrepancy.remarks = remarks

        if discrepancy.shipment_id is not None:
            result = await self.db.execute(select(Shipment).where(Shipment.id == discrepancy.shipment_id))
            shipment = result.scalar_one_or_none()
            if shipment is not None and shipment.collection_status == CollectionStatus.DISPUTED.value:
                shipment.actual_collection = adjusted
                shipment.collection_status = CollectionStatus.RECONCILED.value

        await self.db.flush()
        logger.warning(
            f"[COD] Discrepancy {discrepancy.discrepancy_number} resolved by {resolved_by} "
            f"via {resolution.value}: adjusted amount {adjusted}"
        )
        return discrepancy
