"""
Shipping Schemas

Pydantic models for quote, booking and warehouse API requests and responses.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

PAYMENT_MODES = ("prepaid", "cod")


# ==================== Quote Schemas ====================


class CourierOptionsRequest(BaseModel):
    """Rate request. Either order_id or the parcel fields must be supplied."""
    order_id: Optional[int] = None
    destination_pincode: Optional[str] = Field(None, min_length=6, max_length=6)
    weight: Optional[float] = Field(None, gt=0, description="Weight in kg")
    length: float = Field(0.0, ge=0)
    width: float = Field(0.0, ge=0)
    height: float = Field(0.0, ge=0)
    payment_mode: str = "prepaid"
    cod_amount: float = Field(0.0, ge=0)
    declared_value: float = Field(0.0, ge=0)
    warehouse_id: Optional[int] = None

    @field_validator("payment_mode")
    @classmethod
    def validate_payment_mode(cls, v):
        v = v.lower()
        if v not in PAYMENT_MODES:
            raise ValueError(f"payment_mode must be one of {PAYMENT_MODES}")
        return v


class CourierOption(BaseModel):
    option_id: str
    provider: str
    carrier_name: Optional[str] = None
    service_code: Optional[str] = None
    service_name: Optional[str] = None
    quoted_amount: float
    cost_amount: float
    margin: float
    chargeable_weight: Optional[float] = None
    zone: Optional[str] = None
    estimated_days: Optional[int] = None
    pricing_source: Optional[str] = None
    confidence: str
    score: Optional[float] = None
    tags: List[str] = []


class CourierOptionsResponse(BaseModel):
    session_id: str
    expires_at: datetime
    options: List[CourierOption]
    recommendation: Optional[str] = None
    confidence: str
    provider_timeouts: Dict[str, int] = {}


# ==================== Booking Schemas ====================


class ShipOrderRequest(BaseModel):
    """Book from a quote session, or directly when no session is given."""
    session_id: Optional[str] = None
    option_id: Optional[str] = None
    provider: Optional[str] = None
    service_code: Optional[str] = None


class ShipmentResponse(BaseModel):
    id: int
    order_id: int
    provider: str
    carrier_name: Optional[str] = None
    service_code: Optional[str] = None
    tracking_number: str
    label_url: Optional[str] = None
    status: str
    payment_type: str
    cod_amount: Decimal
    shipping_charge: Decimal
    created_at: datetime

    class Config:
        from_attributes = True


# ==================== Warehouse Schemas ====================


class WarehouseCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    contact_name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., min_length=10, max_length=20)
    email: Optional[str] = Field(None, max_length=255)
    address_line1: str = Field(..., min_length=1, max_length=255)
    address_line2: Optional[str] = Field(None, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    pincode: str = Field(..., min_length=6, max_length=6)
    is_default: bool = False


class WarehouseResponse(BaseModel):
    id: int
    name: str
    city: str
    state: str
    pincode: str
    is_default: bool
    created_at: datetime

    class Config:
        from_attributes = True


def options_from_session(options: List[Dict[str, Any]]) -> List[CourierOption]:
    return [CourierOption(**{k: v for k, v in o.items() if k in CourierOption.model_fields}) for o in options]
