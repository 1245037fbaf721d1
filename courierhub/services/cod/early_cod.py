"""
Early COD Service

Sellers with a good track record can opt into faster COD payouts (T+1, T+2,
T+3 days after collection) for a fee on the collected amount.

Eligibility scores four metrics, 25 points each:
- vintage (months since signup)         >= EARLY_COD_MIN_VINTAGE_MONTHS
- COD volume over the last 30 days      >= EARLY_COD_MIN_MONTHLY_VOLUME
- RTO rate over the last 30 days (%)    <= EARLY_COD_MAX_RTO_RATE
- COD dispute rate over 30 days (%)     <= EARLY_COD_MAX_DISPUTE_RATE

A met threshold earns the full 25; a missed one earns points in proportion
to how close it came, capped below 25.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from courierhub.core.config import settings
from courierhub.core.database import utcnow
from courierhub.core.exceptions import AccessDeniedError, NotFoundError, ValidationError
from courierhub.models.cod import (
    EARLY_COD_TIER_FEES,
    CODDiscrepancy,
    EarlyCODEnrollment,
    EarlyCODTier,
    EnrollmentStatus,
)
from courierhub.models.company import Company
from courierhub.models.shipment import RTO_STATUSES, Shipment

logger = logging.getLogger(__name__)

POINTS_PER_METRIC = 25
METRIC_WINDOW_DAYS = 30

# Minimum score -> tiers unlocked
TIER_THRESHOLDS = (
    (80, [EarlyCODTier.T1, EarlyCODTier.T2, EarlyCODTier.T3]),
    (60, [EarlyCODTier.T2, EarlyCODTier.T3]),
    (40, [EarlyCODTier.T3]),
)


@dataclass
class EligibilityResult:
    eligible: bool
    score: int
    allowed_tiers: List[EarlyCODTier] = field(default_factory=list)
    metrics: Dict[str, float] = field(default_factory=dict)
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "eligible": self.eligible,
            "score": self.score,
            "allowed_tiers": [t.value for t in self.allowed_tiers],
            "fees": {t.value: EARLY_COD_TIER_FEES[t] for t in self.allowed_tiers},
            "metrics": self.metrics,
            "reasons": self.reasons,
        }


def _at_least(value: float, threshold: float) -> int:
    if value >= threshold:
        return POINTS_PER_METRIC
    if threshold <= 0:
        return 0
    return min(int(POINTS_PER_METRIC * value / threshold), POINTS_PER_METRIC - 1)


def _at_most(value: float, threshold: float) -> int:
    if value <= threshold:
        return POINTS_PER_METRIC
    return min(int(POINTS_PER_METRIC * threshold / value), POINTS_PER_METRIC - 1)


def tiers_for_score(score: int) -> List[EarlyCODTier]:
    for minimum, tiers in TIER_THRESHOLDS:
        if score >= minimum:
            return list(tiers)
    return []


def tier_fee_percent(tier) -> Decimal:
    return Decimal(str(EARLY_COD_TIER_FEES[EarlyCODTier(tier)]))


class EarlyCODService:
    """Eligibility and enrollment for early COD payouts."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _metrics(self, company: Company) -> Dict[str, float]:
        now = utcnow()
        since = now - timedelta(days=METRIC_WINDOW_DAYS)

        vintage_months = round((now - company.created_at).days / 30, 1)

        cod_result = await self.db.execute(
            select(func.count(Shipment.id)).where(
                Shipment.company_id == company.id,
                Shipment.payment_type == "cod",
                Shipment.created_at >= since,
            )
        )
        cod_volume = cod_result.scalar_one()

        total_result = await self.db.execute(
            select(func.count(Shipment.id)).where(
                Shipment.company_id == company.id,
                Shipment.created_at >= since,
            )
        )
        total_shipments = total_result.scalar_one()

        rto_result = await self.db.execute(
            select(func.count(Shipment.id)).where(
                Shipment.company_id == company.id,
                Shipment.created_at >= since,
                Shipment.status.in_([s.value for s in RTO_STATUSES]),
            )
        )
        rto_count = rto_result.scalar_one()

        dispute_result = await self.db.execute(
            select(func.count(CODDiscrepancy.id)).where(
                CODDiscrepancy.company_id == company.id,
                CODDiscrepancy.created_at >= since,
            )
        )
        dispute_count = dispute_result.scalar_one()

        return {
            "vintage_months": vintage_months,
            "monthly_cod_volume": cod_volume,
            "rto_rate": round(rto_count / total_shipments * 100, 2) if total_shipments else 0.0,
            "dispute_rate": round(dispute_count / cod_volume * 100, 2) if cod_volume else 0.0,
        }

    async def check_eligibility(self, company_id: int) -> EligibilityResult:
        result = await self.db.execute(select(Company).where(Company.id == company_id))
        company = result.scalar_one_or_none()
        if company is None:
            raise NotFoundError(f"Company {company_id} not found", details={"company_id": company_id})

        metrics = await self._metrics(company)
        reasons = []

        if metrics["vintage_months"] < settings.EARLY_COD_MIN_VINTAGE_MONTHS:
            reasons.append(f"Account younger than {settings.EARLY_COD_MIN_VINTAGE_MONTHS} months")
        if metrics["monthly_cod_volume"] < settings.EARLY_COD_MIN_MONTHLY_VOLUME:
            reasons.append(f"Fewer than {settings.EARLY_COD_MIN_MONTHLY_VOLUME} COD shipments in 30 days")
        if metrics["rto_rate"] > settings.EARLY_COD_MAX_RTO_RATE:
            reasons.append(f"RTO rate above {settings.EARLY_COD_MAX_RTO_RATE}%")
        if metrics["dispute_rate"] > settings.EARLY_COD_MAX_DISPUTE_RATE:
            reasons.append(f"Dispute rate above {settings.EARLY_COD_MAX_DISPUTE_RATE}%")

        score = (
            _at_least(metrics["vintage_months"], settings.EARLY_COD_MIN_VINTAGE_MONTHS)
            + _at_least(metrics["monthly_cod_volume"], settings.EARLY_COD_MIN_MONTHLY_VOLUME)
            + _at_most(metrics["rto_rate"], settings.EARLY_COD_MAX_RTO_RATE)
            + _at_most(metrics["dispute_rate"], settings.EARLY_COD_MAX_DISPUTE_RATE)
        )
        tiers = tiers_for_score(score)

        return EligibilityResult(
            eligible=bool(tiers),
            score=score,
            allowed_tiers=tiers,
            metrics=metrics,
            reasons=reasons,
        )

    async def get_active_enrollment(self, company_id: int) -> Optional[EarlyCODEnrollment]:
        result = await self.db.execute(
            select(EarlyCODEnrollment)
            .where(
                EarlyCODEnrollment.company_id == company_id,
                EarlyCODEnrollment.status == EnrollmentStatus.ACTIVE.value,
            )
            .order_by(EarlyCODEnrollment.enrolled_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def enroll(self, company_id: int, tier: str) -> EarlyCODEnrollment:
        """
        Enroll in a tier, replacing any active enrollment.

        Raises:
            ValidationError: unknown tier
            AccessDeniedError: tier not unlocked by the eligibility score
        """
        try:
            requested = EarlyCODTier(tier)
        except ValueError:
            raise ValidationError(
                f"Unknown early COD tier: {tier}",
                code="INVALID_TIER",
                details={"allowed": [t.value for t in EarlyCODTier]},
            )

        eligibility = await self.check_eligibility(company_id)
        if requested not in eligibility.allowed_tiers:
            raise AccessDeniedError(
                f"Tier {requested.value} is not available for this account",
                code="EARLY_COD_NOT_ELIGIBLE",
                details={
                    "score": eligibility.score,
                    "allowed_tiers": [t.value for t in eligibility.allowed_tiers],
                    "reasons": eligibility.reasons,
                },
            )

        now = utcnow()
        await self.db.execute(
            update(EarlyCODEnrollment)
            .where(
                EarlyCODEnrollment.company_id == company_id,
                EarlyCODEnrollment.status == EnrollmentStatus.ACTIVE.value,
            )
            .values(status=EnrollmentStatus.CANCELLED.value, cancelled_at=now)
            .execution_options(synchronize_session=False)
        )

        enrollment = EarlyCODEnrollment(
            company_id=company_id,
            tier=requested.value,
            fee_percent=tier_fee_percent(requested),
            status=EnrollmentStatus.ACTIVE.value,
            eligibility_score=eligibility.score,
            enrolled_at=now,
        )
        self.db.add(enrollment)
        await self.db.flush()

        logger.info(
            f"[COD] Company {company_id} enrolled in early COD {requested.value} "
            f"(score {eligibility.score}, fee {enrollment.fee_percent}%)"
        )
        return enrollment
