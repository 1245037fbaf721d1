"""
NDR (Non-Delivery Report) models

NDREvent state machine:
    detected -> in_resolution -> resolved | escalated | rto_triggered

resolved and rto_triggered are terminal. escalated NDRs are handed to humans
and may still be resolved manually.

resolution_actions is an append-only JSON log; writers must assign a new
list (never mutate entries in place).

NDRWorkflow rows are declarative configuration: an ordered list of action
descriptors per NDR type, optionally overridden per company.
"""
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, Integer, String, Boolean, Text, JSON,
    ForeignKey, Index, UniqueConstraint
)

from courierhub.core.database import Base, UTCDateTime, utcnow


class NDRType(str, PyEnum):
    ADDRESS_ISSUE = "address_issue"
    CUSTOMER_UNAVAILABLE = "customer_unavailable"
    REFUSED = "refused"
    PAYMENT_ISSUE = "payment_issue"
    OTHER = "other"


class NDRStatus(str, PyEnum):
    DETECTED = "detected"
    IN_RESOLUTION = "in_resolution"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    RTO_TRIGGERED = "rto_triggered"


TERMINAL_NDR_STATUSES = {NDRStatus.RESOLVED, NDRStatus.RTO_TRIGGERED}


class NDRActionType(str, PyEnum):
    CALL_CUSTOMER = "call_customer"
    SEND_WHATSAPP = "send_whatsapp"
    SEND_EMAIL = "send_email"
    UPDATE_ADDRESS = "update_address"
    REQUEST_REATTEMPT = "request_reattempt"
    TRIGGER_RTO = "trigger_rto"


class NDRActionResult(str, PyEnum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    PENDING = "pending"


class NDREvent(Base):
    __tablename__ = "ndr_events"
    __table_args__ = (
        Index("ix_ndr_events_shipment_detected", "shipment_id", "detected_at"),
        Index("ix_ndr_events_sweep", "status", "resolution_deadline"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    provider = Column(String(30), nullable=False)
    tracking_number = Column(String(100), nullable=False)

    ndr_type = Column(String(30), default=NDRType.OTHER.value, nullable=False)
    classification_source = Column(String(10), default="keyword", nullable=False)  # ai / keyword
    ndr_reason = Column(Text, nullable=False)
    raw_status_code = Column(String(50), nullable=True)

    attempt_number = Column(Integer, default=1, nullable=False)
    detected_at = Column(UTCDateTime, default=utcnow, nullable=False)
    resolution_deadline = Column(UTCDateTime, nullable=False)

    status = Column(String(20), default=NDRStatus.DETECTED.value, nullable=False)
    resolution_actions = Column(JSON, default=list, nullable=False)

    auto_rto_triggered = Column(Boolean, default=False, nullable=False)
    escalated_at = Column(UTCDateTime, nullable=True)
    escalation_reason = Column(Text, nullable=True)
    resolved_at = Column(UTCDateTime, nullable=True)
    resolved_by = Column(String(100), nullable=True)
    resolution_method = Column(String(50), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_NDR_STATUSES

    def __repr__(self):
        return f"<NDREvent(id={self.id}, shipment={self.shipment_id}, type={self.ndr_type}, status={self.status})>"


class NDRWorkflow(Base):
    """
    Resolution workflow for one NDR type.

    actions: [{"sequence": 1, "action_type": "send_whatsapp", "delay_minutes": 0,
               "auto_execute": true, "action_config": {...}}]
    rto_trigger_conditions: {"auto_trigger": true, "max_attempts": 3, "max_hours": 72}
    """
    __tablename__ = "ndr_workflows"
    __table_args__ = (
        UniqueConstraint("company_id", "ndr_type", name="uq_ndr_workflows_company_type"),
    )

    id = Column(Integer, primary_key=True, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=True)  # NULL = global
    ndr_type = Column(String(30), nullable=False)
    name = Column(String(100), nullable=True)

    actions = Column(JSON, default=list, nullable=False)
    rto_trigger_conditions = Column(JSON, default=dict, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<NDRWorkflow(type={self.ndr_type}, company={self.company_id})>"
