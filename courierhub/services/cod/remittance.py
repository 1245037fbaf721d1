"""
COD Remittance Service

Batches reconciled COD shipments into a payout for the seller.

- Early batches (T+N enrollment): cutoff is the end of the UTC day N days
  ago; each line pays an early fee of the tier's percentage.
- Scheduled batches: caller-supplied cutoff; each line pays the platform fee.

Shipments are claimed into a batch with one conditional UPDATE guarded on
remittance_included = false, so concurrent batch runs never include a
shipment twice. The batch is built from what was actually claimed.
"""
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.config import settings
from courierhub.core.database import utcnow
from courierhub.core.exceptions import NotFoundError, StateConflictError, ValidationError
from courierhub.models.cod import (
    CODRemittanceBatch,
    EarlyCODEnrollment,
    EarlyCODTier,
    EnrollmentStatus,
    RemittanceBatchType,
    RemittanceStatus,
)
from courierhub.models.shipment import CollectionStatus, Shipment, ShipmentStatus
from courierhub.services.cod.early_cod import EarlyCODService
from courierhub.services.wallet_service import to_money

logger = logging.getLogger(__name__)

NO_ELIGIBLE_EARLY = "No eligible shipments for early remittance"
NO_ELIGIBLE_SCHEDULED = "No eligible shipments for remittance"


@dataclass
class RemittanceBatchResult:
    count: int
    message: str
    batch: Optional[CODRemittanceBatch] = None

    @property
    def created(self) -> bool:
        return self.batch is not None


@dataclass
class _LineFees:
    early_fee_percent: Decimal = Decimal("0")
    platform_fee_percent: Decimal = Decimal("0")


@dataclass
class _Totals:
    cod: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    platform: Decimal = Decimal("0")
    early: Decimal = Decimal("0")
    lines: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def deductions(self) -> Decimal:
        return self.shipping + self.platform + self.early


def early_cutoff(tier_days: int, now: Optional[datetime] = None) -> datetime:
    """End of the UTC day tier_days before now."""
    now = now or utcnow()
    day = (now - timedelta(days=tier_days)).astimezone(timezone.utc).date()
    return datetime.combine(day, time(23, 59, 59, 999999), tzinfo=timezone.utc)


def build_line(shipment: Shipment, fees: _LineFees) -> Dict[str, Any]:
    cod = to_money(shipment.actual_collection if shipment.actual_collection is not None else shipment.cod_amount)
    shipping = Decimal("0") if shipment.shipping_paid_from_wallet else to_money(shipment.shipping_charge)
    platform_fee = to_money(cod * fees.platform_fee_percent / 100)
    early_fee = to_money(cod * fees.early_fee_percent / 100)
    total = shipping + platform_fee + early_fee
    return {
        "shipment_id": shipment.id,
        "tracking_number": shipment.tracking_number,
        "cod_amount": str(cod),
        "shipping_deduction": str(shipping),
        "platform_fee": str(platform_fee),
        "early_fee": str(early_fee),
        "total_deductions": str(total),
        "net_amount": str(cod - total),
        "settled": False,
    }


class CODRemittanceService:
    """Remittance batch lifecycle."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _eligible_shipment_ids(self, company_id: int, cutoff: datetime) -> List[int]:
        result = await self.db.execute(
            select(Shipment.id)
            .where(
                Shipment.company_id == company_id,
                Shipment.payment_type == "cod",
                Shipment.status == ShipmentStatus.DELIVERED.value,
                Shipment.collection_status == CollectionStatus.RECONCILED.value,
                Shipment.remittance_included.is_(False),
                Shipment.collected_at <= cutoff,
            )
            .order_by(Shipment.collected_at)
        )
        return list(result.scalars().all())

    async def _next_batch_number(self, company_id: int) -> int:
        result = await self.db.execute(
            select(func.max(CODRemittanceBatch.batch_number)).where(CODRemittanceBatch.company_id == company_id)
        )
        return (result.scalar_one_or_none() or 0) + 1

    async def _generate_remittance_id(self) -> str:
        date_part = utcnow().strftime("%Y%m%d")
        for _ in range(10):
            candidate = f"REM-{date_part}-{random.randint(1000, 9999)}"
            exists = await self.db.execute(
                select(CODRemittanceBatch.id).where(CODRemittanceBatch.remittance_id == candidate)
            )
            if exists.scalar_one_or_none() is None:
                return candidate
        raise StateConflictError("Could not allocate a remittance id, retry", code="REMITTANCE_ID_EXHAUSTED")

    async def _create_batch(
        self,
        company_id: int,
        cutoff: datetime,
        batch_type: RemittanceBatchType,
        fees: _LineFees,
        tier: Optional[str],
        empty_message: str,
    ) -> RemittanceBatchResult:
        shipment_ids = await self._eligible_shipment_ids(company_id, cutoff)
        if not shipment_ids:
            return RemittanceBatchResult(count=0, message=empty_message)

        batch = CODRemittanceBatch(
            remittance_id=await self._generate_remittance_id(),
            company_id=company_id,
            batch_number=await self._next_batch_number(company_id),
            batch_type=batch_type.value,
            tier=tier,
            cutoff_date=cutoff,
            lines=[],
            status=RemittanceStatus.PENDING_APPROVAL.value,
        )
        self.db.add(batch)
        await self.db.flush()

        now = utcnow()
        claim = await self.db.execute(
            update(Shipment)
            .where(Shipment.id.in_(shipment_ids), Shipment.remittance_included.is_(False))
            .values(
                remittance_included=True,
                remittance_batch_id=batch.id,
                remitted_at=now,
                collection_status=CollectionStatus.REMITTED.value,
            )
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount < len(shipment_ids):
            logger.warning(
                f"[COD] Batch {batch.remittance_id}: claimed {claim.rowcount} of {len(shipment_ids)} "
                f"selected shipments, the rest were taken by a concurrent batch"
            )

        if claim.rowcount == 0:
            await self.db.delete(batch)
            await self.db.flush()
            return RemittanceBatchResult(count=0, message=empty_message)

        members = await self.db.execute(
            select(Shipment)
            .where(Shipment.remittance_batch_id == batch.id)
            .order_by(Shipment.id)
            .execution_options(populate_existing=True)
        )

        totals = _Totals()
        for shipment in members.scalars().all():
            line = build_line(shipment, fees)
            totals.lines.append(line)
            totals.cod += Decimal(line["cod_amount"])
            totals.shipping += Decimal(line["shipping_deduction"])
            totals.platform += Decimal(line["platform_fee"])
            totals.early += Decimal(line["early_fee"])

        batch.lines = totals.lines
        batch.shipment_count = len(totals.lines)
        batch.total_cod = totals.cod
        batch.total_shipping_charges = totals.shipping
        batch.total_platform_fees = totals.platform
        batch.total_early_fees = totals.early
        batch.total_deductions = totals.deductions
        batch.net_payable = totals.cod - totals.deductions
        await self.db.flush()

        logger.info(
            f"[COD] Remittance batch {batch.remittance_id} ({batch_type.value}{' ' + tier if tier else ''}) "
            f"for company {company_id}: {batch.shipment_count} shipments, COD {batch.total_cod}, "
            f"net {batch.net_payable}"
        )
        return RemittanceBatchResult(
            count=batch.shipment_count,
            message=f"Remittance batch {batch.remittance_id} created",
            batch=batch,
        )

    async def create_early_remittance_batch(self, company_id: int) -> RemittanceBatchResult:
        """
        Raises:
            ValidationError: company has no active early COD enrollment
        """
        enrollment = await EarlyCODService(self.db).get_active_enrollment(company_id)
        if enrollment is None:
            raise ValidationError(
                "Company is not enrolled in early COD",
                code="NOT_ENROLLED",
                details={"company_id": company_id},
            )

        tier = EarlyCODTier(enrollment.tier)
        return await self._create_batch(
            company_id,
            early_cutoff(tier.days),
            RemittanceBatchType.ON_DEMAND,
            _LineFees(early_fee_percent=Decimal(str(enrollment.fee_percent))),
            tier.value,
            NO_ELIGIBLE_EARLY,
        )

    async def create_remittance_batch(self, company_id: int, cutoff_date: datetime) -> RemittanceBatchResult:
        if cutoff_date.tzinfo is None:
            cutoff_date = cutoff_date.replace(tzinfo=timezone.utc)
        return await self._create_batch(
            company_id,
            cutoff_date,
            RemittanceBatchType.SCHEDULED,
            _LineFees(platform_fee_percent=Decimal(str(settings.COD_PLATFORM_FEE_PERCENT))),
            None,
            NO_ELIGIBLE_SCHEDULED,
        )

    async def run_early_remittances(self) -> Dict[str, int]:
        """Create early batches for every active enrollment. Returns {batches, shipments}."""
        result = await self.db.execute(
            select(EarlyCODEnrollment.company_id).where(
                EarlyCODEnrollment.status == EnrollmentStatus.ACTIVE.value
            )
        )
        company_ids = sorted(set(result.scalars().all()))

        summary = {"batches": 0, "shipments": 0}
        for company_id in company_ids:
            try:
                batch_result = await self.create_early_remittance_batch(company_id)
                await self.db.commit()
            except Exception as e:
                logger.error(f"[COD] Early remittance failed for company {company_id}: {e}")
                await self.db.rollback()
                continue
            if batch_result.created:
                summary["batches"] += 1
                summary["shipments"] += batch_result.count
        return summary

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def get_batch(self, batch_id: int, company_id: Optional[int] = None) -> CODRemittanceBatch:
        query = select(CODRemittanceBatch).where(CODRemittanceBatch.id == batch_id)
        if company_id is not None:
            query = query.where(CODRemittanceBatch.company_id == company_id)
        result = await self.db.execute(query)
        batch = result.scalar_one_or_none()
        if batch is None:
            raise NotFoundError(f"Remittance batch {batch_id} not found", details={"batch_id": batch_id})
        return batch

    async def approve_batch(self, batch_id: int, approved_by: str) -> CODRemittanceBatch:
        batch = await self.get_batch(batch_id)
        if batch.status != RemittanceStatus.PENDING_APPROVAL.value:
            raise StateConflictError(
                f"Batch {batch.remittance_id} is {batch.status}, only pending batches can be approved",
                code="INVALID_BATCH_STATUS",
                details={"batch_id": batch_id, "status": batch.status},
            )
        batch.status = RemittanceStatus.APPROVED.value
        batch.approved_by = approved_by
        batch.approved_at = utcnow()
        await self.db.flush()
        logger.info(f"[COD] Batch {batch.remittance_id} approved by {approved_by}")
        return batch

    async def cancel_batch(self, batch_id: int, reason: str) -> CODRemittanceBatch:
        """Cancel a batch and release its shipments for a later batch."""
        batch = await self.get_batch(batch_id)
        if batch.status in (RemittanceStatus.SETTLED.value, RemittanceStatus.CANCELLED.value):
            raise StateConflictError(
                f"Batch {batch.remittance_id} is {batch.status} and cannot be cancelled",
                code="INVALID_BATCH_STATUS",
                details={"batch_id": batch_id, "status": batch.status},
            )

        released = await self.db.execute(
            update(Shipment)
            .where(Shipment.remittance_batch_id == batch.id)
            .values(
                remittance_included=False,
                remittance_batch_id=None,
                remitted_at=None,
                collection_status=CollectionStatus.RECONCILED.value,
            )
            .execution_options(synchronize_session=False)
        )

        batch.status = RemittanceStatus.CANCELLED.value
        batch.cancelled_reason = reason
        batch.cancelled_at = utcnow()
        await self.db.flush()
        logger.warning(
            f"[COD] Batch {batch.remittance_id} cancelled ({reason}); released {released.rowcount} shipments"
        )
        return batch
