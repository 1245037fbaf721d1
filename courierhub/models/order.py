"""
Order model

An order is immutable once a shipment exists, except for status and the
shipping charge mirrors written by booking.

Non-INR orders must carry base_currency_total (the operational-currency
mirror); COD and declared values downstream are computed from it.
"""
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, Float, JSON, Numeric,
    ForeignKey, Index
)

from courierhub.core.config import settings
from courierhub.core.database import Base, UTCDateTime, utcnow


class OrderStatus(str, PyEnum):
    PENDING = "pending"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    RTO = "rto"
    CANCELLED = "cancelled"


class PaymentMethod(str, PyEnum):
    PREPAID = "prepaid"
    COD = "cod"


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_company_id", "company_id"),
        Index("ix_orders_status", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=True)
    order_number = Column(String(50), nullable=False)

    # Customer
    customer_name = Column(String(255), nullable=False)
    customer_phone = Column(String(20), nullable=False)
    customer_email = Column(String(255), nullable=True)
    address_line1 = Column(String(255), nullable=False)
    address_line2 = Column(String(255), nullable=True)
    city = Column(String(100), nullable=False)
    state = Column(String(100), nullable=False)
    pincode = Column(String(10), nullable=False)
    country = Column(String(2), default="IN", nullable=False)

    # [{"sku": ..., "name": ..., "quantity": ..., "price": ...}]
    items = Column(JSON, default=list, nullable=False)

    # Package (kg / cm)
    weight = Column(Float, nullable=False)
    length = Column(Float, default=0.0)
    width = Column(Float, default=0.0)
    height = Column(Float, default=0.0)

    # Money
    currency = Column(String(3), default="INR", nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    total = Column(Numeric(12, 2), nullable=False)
    base_currency_total = Column(Numeric(12, 2), nullable=True)
    payment_method = Column(String(10), default=PaymentMethod.PREPAID.value, nullable=False)

    status = Column(String(20), default=OrderStatus.PENDING.value, nullable=False)

    # Written by booking
    shipping_charge = Column(Numeric(12, 2), nullable=True)
    base_currency_shipping_charge = Column(Numeric(12, 2), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_cod(self) -> bool:
        return self.payment_method == PaymentMethod.COD

    @property
    def is_operational_currency(self) -> bool:
        return (self.currency or settings.OPERATIONAL_CURRENCY).upper() == settings.OPERATIONAL_CURRENCY

    @property
    def operational_total(self) -> Decimal:
        """Order total in the operational currency."""
        if self.is_operational_currency:
            return Decimal(str(self.total))
        return Decimal(str(self.base_currency_total))

    def __repr__(self):
        return f"<Order(id={self.id}, number={self.order_number}, status={self.status})>"
