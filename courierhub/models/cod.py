"""
COD Reconciliation & Remittance models

- CODDiscrepancy: collected vs. expected mismatch (or settlement mismatch)
- CODRemittanceBatch: computed payout of reconciled COD to a seller
- EarlyCODEnrollment: seller opt-in to T+1/T+2/T+3 payouts

DB Compliance:
- Numeric(12,2) for monetary fields
- Timezone-aware UTC timestamps
"""
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, Text, JSON, Numeric,
    ForeignKey, Index, UniqueConstraint
)

from courierhub.core.database import Base, UTCDateTime, utcnow


# =============================================================================
# ENUMS
# =============================================================================

class DiscrepancyType(str, PyEnum):
    AMOUNT_MISMATCH = "amount_mismatch"
    SHIPMENT_NOT_FOUND = "shipment_not_found"
    SETTLEMENT_MISMATCH = "settlement_mismatch"


class DiscrepancySeverity(str, PyEnum):
    LOW = "low"        # <= 5%
    MEDIUM = "medium"  # <= 20%
    HIGH = "high"


class DiscrepancySource(str, PyEnum):
    WEBHOOK = "webhook"
    SETTLEMENT = "settlement"
    MANUAL = "manual"


class DiscrepancyStatus(str, PyEnum):
    DETECTED = "detected"
    RESOLVED = "resolved"


class ResolutionMethod(str, PyEnum):
    COURIER_ADJUSTMENT = "courier_adjustment"
    MERCHANT_WRITEOFF = "merchant_writeoff"
    SPLIT_RESOLUTION = "split_resolution"
    SYSTEM_ERROR_FIX = "system_error_fix"


class RemittanceBatchType(str, PyEnum):
    SCHEDULED = "scheduled"
    ON_DEMAND = "on_demand"


class RemittanceStatus(str, PyEnum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    SETTLED = "settled"
    CANCELLED = "cancelled"


class EarlyCODTier(str, PyEnum):
    T1 = "T+1"
    T2 = "T+2"
    T3 = "T+3"

    @property
    def days(self) -> int:
        return int(self.value[2:])


# Early payout fee per tier (percent of collected COD)
EARLY_COD_TIER_FEES = {
    EarlyCODTier.T1: 3.0,
    EarlyCODTier.T2: 2.5,
    EarlyCODTier.T3: 2.0,
}


class EnrollmentStatus(str, PyEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


# =============================================================================
# MODELS
# =============================================================================

class CODDiscrepancy(Base):
    __tablename__ = "cod_discrepancies"
    __table_args__ = (
        Index("ix_cod_discrepancies_company_status", "company_id", "status"),
        Index("ix_cod_discrepancies_shipment_id", "shipment_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    discrepancy_number = Column(String(40), unique=True, nullable=False)

    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=True)  # NULL when AWB unknown
    tracking_number = Column(String(100), nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=True)
    provider = Column(String(30), nullable=True)
    remittance_batch_id = Column(Integer, ForeignKey("cod_remittance_batches.id"), nullable=True)
    settlement_id = Column(String(100), nullable=True)

    expected_amount = Column(Numeric(12, 2), nullable=False)
    actual_amount = Column(Numeric(12, 2), nullable=False)
    difference = Column(Numeric(12, 2), nullable=False)  # actual - expected
    percentage = Column(Numeric(8, 2), nullable=False)

    type = Column(String(30), nullable=False)
    severity = Column(String(10), nullable=False)
    source = Column(String(20), nullable=False)
    status = Column(String(20), default=DiscrepancyStatus.DETECTED.value, nullable=False)

    # Resolution
    resolution_method = Column(String(30), nullable=True)
    adjusted_amount = Column(Numeric(12, 2), nullable=True)
    resolved_by = Column(String(100), nullable=True)
    remarks = Column(Text, nullable=True)
    resolved_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<CODDiscrepancy({self.discrepancy_number}, diff={self.difference}, status={self.status})>"


class CODRemittanceBatch(Base):
    """
    A remittance batch.

    lines: [{"shipment_id", "tracking_number", "cod_amount", "shipping_deduction",
             "platform_fee", "early_fee", "total_deductions", "net_amount", "settled"}]
    """
    __tablename__ = "cod_remittance_batches"
    __table_args__ = (
        UniqueConstraint("company_id", "batch_number", name="uq_cod_remittance_company_batch"),
        Index("ix_cod_remittance_batches_status", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    remittance_id = Column(String(40), unique=True, nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    batch_number = Column(Integer, nullable=False)
    batch_type = Column(String(20), nullable=False)
    tier = Column(String(5), nullable=True)
    cutoff_date = Column(UTCDateTime, nullable=False)

    lines = Column(JSON, default=list, nullable=False)

    total_cod = Column(Numeric(12, 2), default=0, nullable=False)
    total_shipping_charges = Column(Numeric(12, 2), default=0, nullable=False)
    total_platform_fees = Column(Numeric(12, 2), default=0, nullable=False)
    total_early_fees = Column(Numeric(12, 2), default=0, nullable=False)
    total_deductions = Column(Numeric(12, 2), default=0, nullable=False)
    net_payable = Column(Numeric(12, 2), default=0, nullable=False)
    shipment_count = Column(Integer, default=0, nullable=False)

    status = Column(String(20), default=RemittanceStatus.PENDING_APPROVAL.value, nullable=False)
    approved_by = Column(String(100), nullable=True)
    approved_at = Column(UTCDateTime, nullable=True)
    cancelled_reason = Column(Text, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)

    # Settlement
    settlement_id = Column(String(100), nullable=True)
    utr_number = Column(String(100), nullable=True)
    settled_amount = Column(Numeric(12, 2), nullable=True)
    settled_at = Column(UTCDateTime, nullable=True)
    bank_details = Column(JSON, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def get_line(self, shipment_id: int):
        for line in self.lines or []:
            if line.get("shipment_id") == shipment_id:
                return line
        return None

    def __repr__(self):
        return f"<CODRemittanceBatch({self.remittance_id}, net={self.net_payable}, status={self.status})>"


class EarlyCODEnrollment(Base):
    __tablename__ = "early_cod_enrollments"
    __table_args__ = (
        Index("ix_early_cod_enrollments_company_status", "company_id", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    tier = Column(String(5), nullable=False)
    fee_percent = Column(Numeric(5, 2), nullable=False)
    status = Column(String(20), default=EnrollmentStatus.ACTIVE.value, nullable=False)
    eligibility_score = Column(Integer, nullable=False)

    enrolled_at = Column(UTCDateTime, default=utcnow, nullable=False)
    cancelled_at = Column(UTCDateTime, nullable=True)

    def __repr__(self):
        return f"<EarlyCODEnrollment(company={self.company_id}, tier={self.tier}, status={self.status})>"
