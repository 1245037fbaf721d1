"""
Shipment and status history models

Tracks a booked courier shipment from creation through delivery, NDR or RTO,
plus its COD collection and remittance state.

Lifecycle:
    created -> picked_up -> in_transit -> out_for_delivery -> delivered
                                       \\-> ndr -> (resolved) | rto_initiated
    created -> cancelled

delivered, rto_delivered, cancelled, lost and damaged are final;
rto_initiated only moves on to rto_delivered, lost or damaged.

ShipmentStatusHistory is append-only: one row per applied status change.
"""
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, Boolean, Float, Text, Numeric,
    ForeignKey, Index
)
from sqlalchemy.orm import relationship

from courierhub.core.database import Base, UTCDateTime, utcnow


class ShipmentStatus(str, PyEnum):
    """Internal shipment status, carrier-agnostic."""
    CREATED = "created"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    NDR = "ndr"
    EXCEPTION = "exception"
    RTO_INITIATED = "rto_initiated"
    RTO_DELIVERED = "rto_delivered"
    LOST = "lost"
    DAMAGED = "damaged"
    CANCELLED = "cancelled"


RTO_STATUSES = {ShipmentStatus.RTO_INITIATED, ShipmentStatus.RTO_DELIVERED}

# Statuses with a restricted set of successors. Anything not listed may move
# to any status; late scans must not reopen a closed shipment.
STATUS_TRANSITIONS = {
    ShipmentStatus.DELIVERED: set(),
    ShipmentStatus.RTO_DELIVERED: set(),
    ShipmentStatus.CANCELLED: set(),
    ShipmentStatus.LOST: set(),
    ShipmentStatus.DAMAGED: set(),
    ShipmentStatus.RTO_INITIATED: {
        ShipmentStatus.RTO_DELIVERED,
        ShipmentStatus.LOST,
        ShipmentStatus.DAMAGED,
    },
}


def can_transition(current: str, target: ShipmentStatus) -> bool:
    """True if a shipment in `current` may move to `target`."""
    try:
        allowed = STATUS_TRANSITIONS.get(ShipmentStatus(current))
    except ValueError:
        return True
    return allowed is None or target in allowed


class CollectionStatus(str, PyEnum):
    """COD collection state. Only reconciled shipments are remittable."""
    PENDING = "pending"
    RECONCILED = "reconciled"
    DISPUTED = "disputed"
    REMITTED = "remitted"


class Shipment(Base):
    __tablename__ = "shipments"
    __table_args__ = (
        Index("ix_shipments_company_id", "company_id"),
        Index("ix_shipments_status", "status"),
        Index("ix_shipments_collection", "company_id", "collection_status", "remittance_included"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="RESTRICT"), unique=True, nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=True)

    # Carrier
    provider = Column(String(30), nullable=False)
    carrier_name = Column(String(100), nullable=True)  # courier display name
    service_code = Column(String(50), nullable=True)
    tracking_number = Column(String(100), unique=True, nullable=False, index=True)
    carrier_shipment_id = Column(String(100), nullable=True)
    label_url = Column(String(500), nullable=True)

    status = Column(String(30), default=ShipmentStatus.CREATED.value, nullable=False)
    delivered_at = Column(UTCDateTime, nullable=True)

    # Weight (kg)
    declared_weight = Column(Float, nullable=False)
    actual_weight = Column(Float, nullable=True)

    # Payment / COD
    payment_type = Column(String(10), nullable=False)  # prepaid / cod
    cod_amount = Column(Numeric(12, 2), default=0, nullable=False)
    collection_status = Column(String(20), default=CollectionStatus.PENDING.value, nullable=False)
    actual_collection = Column(Numeric(12, 2), nullable=True)
    collected_at = Column(UTCDateTime, nullable=True)
    discrepancy_id = Column(Integer, nullable=True)

    # Remittance inclusion (set exactly once)
    remittance_included = Column(Boolean, default=False, nullable=False)
    remittance_batch_id = Column(Integer, nullable=True, index=True)
    remitted_at = Column(UTCDateTime, nullable=True)

    # Charges
    shipping_charge = Column(Numeric(12, 2), default=0, nullable=False)
    wallet_transaction_id = Column(Integer, ForeignKey("wallet_transactions.id"), nullable=True)
    shipping_paid_from_wallet = Column(Boolean, default=True, nullable=False)

    # NDR / RTO
    current_ndr_id = Column(Integer, nullable=True)
    last_ndr_at = Column(UTCDateTime, nullable=True)  # dedup window claim
    rto_event_id = Column(Integer, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    history = relationship(
        "ShipmentStatusHistory",
        back_populates="shipment",
        order_by="ShipmentStatusHistory.id",
        lazy="selectin",
    )

    @property
    def is_cod(self) -> bool:
        return self.payment_type == "cod"

    def __repr__(self):
        return f"<Shipment(id={self.id}, awb={self.tracking_number}, status={self.status})>"


class ShipmentStatusHistory(Base):
    """Append-only status log for a shipment."""
    __tablename__ = "shipment_status_history"
    __table_args__ = (
        Index("ix_shipment_status_history_shipment_id", "shipment_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False)

    status = Column(String(30), nullable=False)
    carrier_status = Column(String(50), nullable=True)
    location = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    source = Column(String(30), default="system", nullable=False)  # booking, webhook, ndr, rto, system

    timestamp = Column(UTCDateTime, default=utcnow, nullable=False)

    shipment = relationship("Shipment", back_populates="history")

    def __repr__(self):
        return f"<ShipmentStatusHistory(shipment={self.shipment_id}, status={self.status})>"
