"""
RTO (Return-to-Origin) event model

At most one RTO event per shipment, enforced by a unique constraint on
shipment_id.
"""
from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, Text, Numeric, ForeignKey

from courierhub.core.database import Base, UTCDateTime, utcnow


class RTOTriggeredBy(str, PyEnum):
    AUTO = "auto"
    MANUAL = "manual"


class RTOStatus(str, PyEnum):
    INITIATED = "initiated"
    IN_TRANSIT = "in_transit"
    DELIVERED_TO_WAREHOUSE = "delivered_to_warehouse"


class RTOEvent(Base):
    __tablename__ = "rto_events"

    id = Column(Integer, primary_key=True, index=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id", ondelete="CASCADE"), unique=True, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    ndr_event_id = Column(Integer, ForeignKey("ndr_events.id"), nullable=True)

    reverse_awb = Column(String(100), nullable=False)
    rto_reason = Column(Text, nullable=False)
    triggered_by = Column(String(10), nullable=False)

    charges = Column(Numeric(12, 2), default=0, nullable=False)
    wallet_transaction_id = Column(Integer, ForeignKey("wallet_transactions.id"), nullable=True)
    status = Column(String(30), default=RTOStatus.INITIATED.value, nullable=False)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<RTOEvent(shipment={self.shipment_id}, reverse_awb={self.reverse_awb})>"
