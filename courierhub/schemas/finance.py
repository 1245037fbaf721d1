"""
Finance Schemas

COD discrepancies, early COD program and remittance batches.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ==================== Discrepancy Schemas ====================


class DiscrepancyResponse(BaseModel):
    id: int
    discrepancy_number: str
    shipment_id: Optional[int] = None
    tracking_number: str
    provider: Optional[str] = None
    expected_amount: Decimal
    actual_amount: Decimal
    difference: Decimal
    percentage: Decimal
    type: str
    severity: str
    source: str
    status: str
    resolution_method: Optional[str] = None
    adjusted_amount: Optional[Decimal] = None
    resolved_by: Optional[str] = None
    remarks: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class DiscrepancyListResponse(BaseModel):
    items: List[DiscrepancyResponse]
    total: int
    page: int
    page_size: int


class ResolveDiscrepancyRequest(BaseModel):
    resolution_method: str = Field(..., description="courier_adjustment, merchant_writeoff, split_resolution, system_error_fix")
    adjusted_amount: Decimal = Field(..., ge=0)
    resolved_by: str = Field(..., min_length=1, max_length=100)
    remarks: Optional[str] = Field(None, max_length=1000)


# ==================== Early COD Schemas ====================


class EligibilityResponse(BaseModel):
    eligible: bool
    score: int
    allowed_tiers: List[str]
    fees: Dict[str, float]
    metrics: Dict[str, float]
    reasons: List[str]


class EnrollRequest(BaseModel):
    tier: str = Field(..., description="T+1, T+2 or T+3")


class EnrollmentResponse(BaseModel):
    id: int
    company_id: int
    tier: str
    fee_percent: Decimal
    status: str
    eligibility_score: int
    enrolled_at: datetime

    class Config:
        from_attributes = True


# ==================== Remittance Schemas ====================


class RemittanceBatchResponse(BaseModel):
    id: int
    remittance_id: str
    batch_number: int
    batch_type: str
    tier: Optional[str] = None
    cutoff_date: datetime
    shipment_count: int
    total_cod: Decimal
    total_shipping_charges: Decimal
    total_platform_fees: Decimal
    total_early_fees: Decimal
    total_deductions: Decimal
    net_payable: Decimal
    status: str
    lines: List[Dict[str, Any]] = []
    created_at: datetime

    class Config:
        from_attributes = True


class EarlyRemittanceResponse(BaseModel):
    created: bool
    count: int
    message: str
    batch: Optional[RemittanceBatchResponse] = None
