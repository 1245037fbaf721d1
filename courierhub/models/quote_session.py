"""
Quote session model

A time-boxed, single-use set of ranked courier options.

Status machine:
    active -> booking -> consumed
    booking -> active   (booking failed and was compensated)

Sessions are never revoked explicitly; they lapse at expires_at.
"""
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, JSON, ForeignKey, Index

from courierhub.core.database import Base, UTCDateTime, utcnow


class QuoteSessionStatus(str, PyEnum):
    ACTIVE = "active"
    BOOKING = "booking"
    CONSUMED = "consumed"


class QuoteConfidence(str, PyEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class QuoteSession(Base):
    __tablename__ = "quote_sessions"
    __table_args__ = (
        Index("ix_quote_sessions_company_id", "company_id"),
        Index("ix_quote_sessions_expires_at", "expires_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(32), unique=True, nullable=False, index=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)

    request = Column(JSON, nullable=False)           # normalised rate request snapshot
    options = Column(JSON, default=list, nullable=False)
    recommendation = Column(String(100), nullable=True)
    confidence = Column(String(10), default=QuoteConfidence.HIGH.value, nullable=False)
    provider_timeouts = Column(JSON, default=dict, nullable=False)  # {provider: elapsed_ms}

    expires_at = Column(UTCDateTime, nullable=False)
    status = Column(String(20), default=QuoteSessionStatus.ACTIVE.value, nullable=False)
    consumed_option_id = Column(String(100), nullable=True)
    consumed_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at

    def get_option(self, option_id: str):
        for option in self.options or []:
            if option.get("option_id") == option_id:
                return option
        return None

    def __repr__(self):
        return f"<QuoteSession(session_id={self.session_id}, status={self.status}, expires={self.expires_at})>"
