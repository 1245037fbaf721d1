"""
NDR and RTO Schemas
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ResolveNDRRequest(BaseModel):
    resolution: str = Field(..., min_length=1, max_length=50, description="e.g. address_updated, reattempt_scheduled")
    resolved_by: str = Field(..., min_length=1, max_length=100)
    notes: Optional[str] = Field(None, max_length=1000)


class NDRResponse(BaseModel):
    id: int
    shipment_id: int
    tracking_number: str
    provider: str
    ndr_type: str
    ndr_reason: str
    attempt_number: int
    status: str
    detected_at: datetime
    resolution_deadline: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_method: Optional[str] = None
    auto_rto_triggered: bool
    resolution_actions: List[Dict[str, Any]] = []

    class Config:
        from_attributes = True


class ManualRTORequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class RTOResponse(BaseModel):
    id: int
    shipment_id: int
    order_id: int
    ndr_event_id: Optional[int] = None
    reverse_awb: str
    rto_reason: str
    triggered_by: str
    charges: float
    status: str
    created_at: datetime

    class Config:
        from_attributes = True
